"""Worker processes for CPU-bound sync stages.

Modules:
    pool    WorkerPool: lazy spawn, call routing, idle teardown
    worker  Worker process loop and the OPERATIONS table
"""
