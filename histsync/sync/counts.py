"""Per-athlete sync progress counts."""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass
from typing import Iterable

from histsync.sync.base import Activity
from histsync.sync.manifest import LOCAL, REMOTE, ManifestRegistry


@dataclass
class ActivityCounts:
    """Snapshot of where an athlete's activities stand.

    Attributes:
        total:          Activities known locally.
        imported:       Every remote stage succeeded with data.
        unavailable:    A remote stage has no data or failed.
        processed:      Every local stage is current.
        unprocessable:  A local stage failed.
    """

    total: int = 0
    imported: int = 0
    unavailable: int = 0
    processed: int = 0
    unprocessable: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def activity_counts(activities: Iterable[Activity], registry: ManifestRegistry) -> ActivityCounts:
    remote = registry.get_stages(REMOTE)
    local = registry.get_stages(LOCAL)
    counts = ActivityCounts()
    for a in activities:
        counts.total += 1
        if remote and all(a.has_sync_success(s) for s in remote):
            counts.imported += 1
        elif any(a.is_not_applicable(s) or a.has_sync_error(s) for s in remote):
            counts.unavailable += 1
        if all(a.is_current(s) for s in local):
            counts.processed += 1
        elif any(a.has_sync_error(s) for s in local):
            counts.unprocessable += 1
    return counts


def content_hash(payload: dict) -> str:
    """SHA-256 of the canonical JSON form; used to skip duplicate progress events."""
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
