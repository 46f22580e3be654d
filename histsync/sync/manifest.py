"""Registry of versioned sync stages.

Each processor group ('remote' fetches, 'local' computations) is an ordered
list of ``SyncStage`` entries.  An activity owes work for a stage until it is
*current* for it: its recorded version reaches the declared version, or it
holds a definitive not-applicable outcome.  ``next_eligible_stage`` is the one
place that decides what an activity should run next; the job pipeline, the
counts and the maintenance tools all go through it.

Usage::

    registry = ManifestRegistry()
    registry.register(SyncStage("local", "hr-zones", 1, unit=hr_zones))
    registry.register(SyncStage("local", "activity-stats", 3, unit=activity_stats,
                                depends=("hr-zones",)))
    stage = registry.next_eligible_stage(activity, "local", now=time.time())
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Container

from histsync.errors import DuplicateStageError, RegistryFrozenError, UnknownStageError
from histsync.sync.base import Activity
from histsync.sync.offload import OffloadProcessor

logger = logging.getLogger("histsync.sync.manifest")

REMOTE = "remote"
LOCAL = "local"
GROUPS = (REMOTE, LOCAL)


@dataclass(frozen=True)
class SyncStage:
    """Immutable descriptor for one unit of sync work.

    Attributes:
        group:          'remote' or 'local'.
        name:           Stage name, unique within its group.
        version:        Declared version; bump to force recomputation.
        unit:           Async callable taking a ``StageContext``, or an
                        ``OffloadProcessor`` subclass.  Unused for remote stages.
        depends:        Names of stages in the same group that must be current first.
        error_backoff:  Seconds per recorded failure before a retry is allowed.
        data:           Free-form stage parameters (e.g. requested stream types).
    """

    group: str
    name: str
    version: int
    unit: Any = field(default=None, compare=False)
    depends: tuple[str, ...] = ()
    error_backoff: float = 0.0
    data: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def qualifier(self) -> str:
        return f"{self.group}/{self.name}"

    @property
    def is_offloaded(self) -> bool:
        return isinstance(self.unit, type) and issubclass(self.unit, OffloadProcessor)

    def __str__(self) -> str:
        return f"{self.qualifier} v{self.version}"


class ManifestRegistry:
    """Ordered, per-group catalog of sync stages.

    Registration happens once at startup.  ``freeze()`` is called when the
    first sync job starts; later registrations raise ``RegistryFrozenError``.
    """

    def __init__(self) -> None:
        self._stages: dict[str, list[SyncStage]] = {g: [] for g in GROUPS}
        self._frozen = False

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, stage: SyncStage) -> SyncStage:
        """Add a stage to its group.

        Dependencies must name stages already registered in the same group, so
        declaration order is always a valid execution order.

        Raises:
            RegistryFrozenError: After ``freeze()``.
            DuplicateStageError: If ``(group, name)`` is already registered.
            UnknownStageError:   For an unknown group or dependency, or a bad version.
        """
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register {stage} after the registry is frozen")
        if stage.group not in self._stages:
            raise UnknownStageError(f"Unknown processor group: {stage.group!r}")
        if stage.version < 1:
            raise UnknownStageError(f"{stage.qualifier}: version must be >= 1")
        if self.get_stage(stage.group, stage.name) is not None:
            raise DuplicateStageError(f"Stage already registered: {stage.qualifier}")
        for dep in stage.depends:
            if self.get_stage(stage.group, dep) is None:
                raise UnknownStageError(
                    f"{stage.qualifier} depends on unregistered stage '{dep}'"
                )
        self._stages[stage.group].append(stage)
        logger.debug("Registered sync stage %s", stage)
        return stage

    def freeze(self) -> None:
        if not self._frozen:
            logger.debug("Manifest registry frozen with hash %s", self.version_hash()[:12])
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_stage(self, group: str, name: str) -> SyncStage | None:
        for stage in self._stages.get(group, ()):
            if stage.name == name:
                return stage
        return None

    def get_stages(self, group: str) -> list[SyncStage]:
        """Stages of ``group`` in declaration order."""
        return list(self._stages.get(group, ()))

    def version_hash(self) -> str:
        """Digest of every stage's group, name and version.

        Changes whenever a stage is added or its version bumped, which makes
        the scheduler re-check every athlete.
        """
        records = sorted(
            f"{s.group}-{s.name}-v{s.version}" for group in GROUPS for s in self._stages[group]
        )
        return hashlib.sha256(json.dumps(records).encode()).hexdigest()

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def is_group_current(self, activity: Activity, group: str) -> bool:
        return all(activity.is_current(s) for s in self._stages[group])

    def has_group_error(self, activity: Activity, group: str) -> bool:
        return any(activity.has_sync_error(s) for s in self._stages[group])

    def next_eligible_stage(
        self,
        activity: Activity,
        group: str,
        now: float,
        skip: Container[str] = (),
    ) -> SyncStage | None:
        """Return the first stage of ``group`` the activity should run now.

        A stage qualifies when the activity is not current for it, every
        dependency is current, and it is not inside its error backoff window.
        Local stages additionally wait for the whole remote group.  Stage
        qualifiers in ``skip`` are passed over.
        """
        if group == LOCAL and not self.is_group_current(activity, REMOTE):
            return None
        by_name = {s.name: s for s in self._stages[group]}
        for stage in self._stages[group]:
            if stage.qualifier in skip or activity.is_current(stage):
                continue
            if not all(activity.is_current(by_name[d]) for d in stage.depends):
                continue
            if activity.in_error_backoff(stage, now):
                continue
            return stage
        return None


# ---------------------------------------------------------------------------
# Process-wide registry
# ---------------------------------------------------------------------------

_registry: ManifestRegistry | None = None
_registry_lock = threading.Lock()


def get_registry() -> ManifestRegistry:
    """Return the process-wide registry, creating it empty on first call."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:  # double-checked locking
                _registry = ManifestRegistry()
    return _registry
