"""Integrity check and repair of an athlete's synced data."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from histsync.services.store import Stores
from histsync.sync.manifest import LOCAL, REMOTE, ManifestRegistry

logger = logging.getLogger("histsync.sync.maintenance")


@dataclass
class IntegrityReport:
    """Inconsistencies between activities, their sync state and their streams.

    Attributes:
        missing_streams_for:   Marked fetched with data but no streams stored.
        detached_streams_for:  Streams stored for activities that no longer exist.
        in_false_error_state:  Streams stored but a remote stage recorded an error.
    """

    missing_streams_for: set[int] = field(default_factory=set)
    detached_streams_for: set[int] = field(default_factory=set)
    in_false_error_state: set[int] = field(default_factory=set)

    @property
    def clean(self) -> bool:
        return not (self.missing_streams_for or self.detached_streams_for or self.in_false_error_state)


async def integrity_check(
    stores: Stores,
    registry: ManifestRegistry,
    athlete_id: int,
    *,
    repair: bool = False,
    prune: bool = False,
) -> IntegrityReport:
    """Find (and optionally repair) sync state that disagrees with stored streams.

    Repairs:
        * missing streams: remote and local sync state is cleared so the next
          job refetches.
        * false error: remote stages are marked successful, local state cleared.
        * detached streams: deleted only when ``prune`` is set.
    """
    report = IntegrityReport()
    have_streams = await stores.streams.activity_ids_for_athlete(athlete_id, "time")
    activities = {a.id: a for a in await stores.activities.get_all_for_athlete(athlete_id)}
    remote = registry.get_stages(REMOTE)
    local = registry.get_stages(LOCAL)

    for a in activities.values():
        if a.id in have_streams:
            if registry.has_group_error(a, REMOTE):
                report.in_false_error_state.add(a.id)
        elif any(a.has_sync_success(s) for s in remote):
            report.missing_streams_for.add(a.id)
    report.detached_streams_for = have_streams - activities.keys()

    if not repair:
        return report

    for activity_id in report.missing_streams_for:
        logger.warning("Repairing activity with missing streams: %s", activity_id)
        a = activities[activity_id]
        for m in remote + local:
            a.clear_sync_state(m)
        await stores.activities.put(a)
    for activity_id in report.in_false_error_state:
        logger.warning("Repairing activity with false-error state: %s", activity_id)
        a = activities[activity_id]
        for m in remote:
            a.set_sync_success(m)
        for m in local:
            a.clear_sync_state(m)
        await stores.activities.put(a)
    for activity_id in report.detached_streams_for:
        if prune:
            logger.warning("Removing detached streams for activity: %s", activity_id)
            await stores.streams.delete_for_activity(activity_id)
        else:
            logger.warning("Ignoring detached streams for %s (use prune to remove)", activity_id)
    return report
