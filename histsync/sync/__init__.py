"""HistSync incremental activity sync engine.

Modules:
    base           Canonical records (Athlete, Activity, Stream, Peak)
    manifest       Versioned stage registry and eligibility rules
    ratelimit      Persisted sliding-window limiters for stream fetches
    discovery      Activity discovery (self paged scan, peer month windows)
    job            One athlete's sync run (fetch and local pipelines)
    manager        Multi-athlete scheduling and control surface
    offload        Stage unit contracts (inline units, offload processors)
    exchange       Bulk export/import of records
    config_loader  Load/validate/hot-reload sync_config.yaml
"""
