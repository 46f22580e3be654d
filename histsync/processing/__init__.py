"""Local processing stages for synced activities.

Modules:
    peaks       Rolling peak math (runs inside worker processes)
    processors  Stage units: hr-zones, extra-streams, activity-stats,
                peaks, training-load
    stages      Default stage manifest registration
"""
