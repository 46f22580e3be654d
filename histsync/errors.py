"""Exception hierarchy shared across the sync engine."""

from __future__ import annotations

import httpx


class HistSyncError(Exception):
    """Base class for all engine errors."""


class AthleteNotFoundError(HistSyncError, LookupError):
    """Raised when an athlete id has no record."""

    def __init__(self, athlete_id: int) -> None:
        super().__init__(f"Athlete not found: {athlete_id}")
        self.athlete_id = athlete_id


class ActivityNotFoundError(HistSyncError, LookupError):
    """Raised when an activity id has no record."""

    def __init__(self, activity_id: int) -> None:
        super().__init__(f"Activity not found: {activity_id}")
        self.activity_id = activity_id


class SyncDisabledError(HistSyncError):
    """Raised when a sync is requested for an athlete that is not enabled."""


class SyncJobError(HistSyncError):
    """Raised to callers waiting on a sync job that ended in error."""


# ---------- Manifest ----------


class ManifestError(HistSyncError, ValueError):
    """Invalid stage registration or lookup."""


class DuplicateStageError(ManifestError):
    pass


class UnknownStageError(ManifestError):
    pass


class RegistryFrozenError(HistSyncError, RuntimeError):
    """Raised when a stage is registered after scheduling has started."""


# ---------- Transport ----------


class FetchError(HistSyncError):
    """Non-retryable response from the remote source.

    Attributes:
        response: The failing ``httpx.Response``.
    """

    def __init__(self, message: str, response: httpx.Response | None = None) -> None:
        super().__init__(message)
        self.response = response

    @classmethod
    def from_response(cls, response: httpx.Response) -> FetchError:
        try:
            url = str(response.request.url)
        except RuntimeError:  # response built without a request
            url = "<unknown>"
        return cls(f"{cls.__name__}: {url} [{response.status_code}]", response)

    @property
    def status(self) -> int | None:
        return self.response.status_code if self.response is not None else None


class ThrottledFetchError(FetchError):
    """The remote source answered 429."""


# ---------- Worker pool ----------


class WorkerError(HistSyncError):
    """An offloaded operation failed inside a worker process."""


class WorkerDiedError(WorkerError):
    """The worker process exited while a call was in flight."""


class WorkerPoolClosedError(WorkerError):
    pass
