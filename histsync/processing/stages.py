"""Default stage manifest.

Declaration order is execution order; each stage names the stages it
depends on, and those must already be registered.
"""

from __future__ import annotations

from histsync.processing.processors import (
    PeaksProcessor,
    TrainingLoadProcessor,
    activity_stats,
    extra_streams,
    hr_zones,
)
from histsync.sync.config_loader import SyncConfig
from histsync.sync.manifest import LOCAL, REMOTE, ManifestRegistry, SyncStage


def register_default_stages(registry: ManifestRegistry, config: SyncConfig) -> ManifestRegistry:
    """Register the streams fetch and the built-in local stages."""
    registry.register(SyncStage(
        REMOTE, "streams", config.streams.version,
        error_backoff=config.streams.error_backoff_seconds,
        data={"streams": tuple(config.streams.types)},
    ))
    registry.register(SyncStage(LOCAL, "hr-zones", 1, unit=hr_zones))
    registry.register(SyncStage(LOCAL, "extra-streams", 1, unit=extra_streams))
    registry.register(SyncStage(
        LOCAL, "activity-stats", 3, unit=activity_stats,
        depends=("extra-streams", "hr-zones"),
    ))
    registry.register(SyncStage(
        LOCAL, "peaks", 4, unit=PeaksProcessor,
        depends=("extra-streams",),
        data={"periods": tuple(config.peaks.periods), "distances": tuple(config.peaks.distances)},
    ))
    registry.register(SyncStage(
        LOCAL, "training-load", 4, unit=TrainingLoadProcessor,
        depends=("activity-stats",),
    ))
    return registry
