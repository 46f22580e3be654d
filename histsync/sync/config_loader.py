"""Load, validate, and hot-reload the HistSync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk; the previous config is kept if the new one fails validation.

Usage::

    from histsync.sync.config_loader import get_sync_config

    config = get_sync_config()
    config.pipeline.max_batch_size          # 500
    [r.label for r in config.rate_limits]   # ['streams-min', 'streams-hour', 'streams-day']
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("histsync.sync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class RateLimitConfig:
    """One sliding window of the stream fetch limiter group."""

    label: str
    period_seconds: float
    limit: int
    spread: bool = False


@dataclass
class StreamsStageConfig:
    """The remote streams fetch stage."""

    version: int
    error_backoff_seconds: float
    types: list[str]


@dataclass
class PeaksStageConfig:
    periods: list[float]
    distances: list[float]


@dataclass
class DiscoveryConfig:
    """Activity discovery scan settings."""

    max_concurrency: int = 25
    min_empty_windows: int = 12      # consecutive empty months = start of history
    min_redundant_windows: int = 2   # months with nothing new = caught up


@dataclass
class PipelineConfig:
    """Local processing pipeline settings."""

    initial_batch_size: int = 20
    max_batch_size: int = 500
    batch_growth: float = 1.3
    handoff_queue_size: int = 1000
    offload_batch_size: int = 50
    rate_limit_notice_seconds: float = 10.0


@dataclass
class TransportConfig:
    max_retries: int = 5
    retry_delay_seconds: float = 1.0
    throttle_delay_seconds: float = 60.0


@dataclass
class ManagerConfig:
    """Sync manager scheduling settings."""

    refresh_interval_seconds: float = 6 * 3600
    refresh_error_backoff_seconds: float = 3600
    loop_error_backoff_seconds: float = 1.0


@dataclass
class ExchangeConfig:
    """Bulk export/import batching estimates (bytes)."""

    batch_size_limit_bytes: int = 10 * 1024 * 1024
    athlete_size_estimate: float = 1000
    activity_size_estimate: float = 1500
    stream_base_size_estimate: float = 100
    stream_entry_size_estimate: float = 6.4
    import_flush_threshold: int = 1000


@dataclass
class SyncConfig:
    """Complete, validated engine configuration.

    Attributes:
        version:      Config schema version string.
        rate_limits:  Stream fetch quota windows, in declaration order.
        streams:      Remote streams stage settings.
        peaks:        Peaks stage periods (seconds) and distances (meters).
        discovery:    Activity discovery thresholds.
        pipeline:     Local pipeline batch sizing.
        transport:    Retry settings for remote requests.
        manager:      Refresh cadence and backoff.
        exchange:     Bulk export/import limits.
    """

    version: str
    rate_limits: list[RateLimitConfig]
    streams: StreamsStageConfig
    peaks: PeaksStageConfig
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    manager: ManagerConfig = field(default_factory=ManagerConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    _raw: dict = field(default_factory=dict, repr=False)

    def rate_limit(self, label: str) -> RateLimitConfig | None:
        for x in self.rate_limits:
            if x.label == label:
                return x
        return None


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _number(errors: list[str], where: str, value: Any, cast: type = float, minimum: float | None = 0) -> Any:
    try:
        result = cast(value)
    except (TypeError, ValueError):
        errors.append(f"{where} must be a number, got {value!r}")
        return None
    if minimum is not None and result < minimum:
        errors.append(f"{where} = {result} must be >= {minimum}")
    return result


def _section(errors: list[str], raw: dict, key: str, cls: type, casts: dict[str, type]) -> Any:
    """Build a flat dataclass section, defaulting missing keys."""
    values = raw.get(key) or {}
    if not isinstance(values, dict):
        errors.append(f"'{key}' must be a mapping")
        return cls()
    kwargs = {}
    for name, value in values.items():
        if name not in casts:
            errors.append(f"Unknown key '{name}' in section '{key}'")
            continue
        kwargs[name] = _number(errors, f"{key}.{name}", value, casts[name])
    kwargs = {k: v for k, v in kwargs.items() if v is not None}
    return cls(**kwargs)


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Raises:
        ConfigValidationError: Listing every problem found.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Rate limits ──
    rate_limits: list[RateLimitConfig] = []
    rl_raw = raw.get("rate_limits") or {}
    if not rl_raw:
        errors.append("'rate_limits' section is missing or empty")
    for label, cfg in (rl_raw if isinstance(rl_raw, dict) else {}).items():
        if not isinstance(cfg, dict):
            errors.append(f"rate_limits.{label} must be a mapping")
            continue
        period = _number(errors, f"rate_limits.{label}.period_seconds", cfg.get("period_seconds"), float, 1)
        limit = _number(errors, f"rate_limits.{label}.limit", cfg.get("limit"), int, 1)
        if period is None or limit is None:
            continue
        rate_limits.append(
            RateLimitConfig(label=label, period_seconds=period, limit=limit, spread=bool(cfg.get("spread", False)))
        )

    # ── Stages ──
    stages_raw = raw.get("stages") or {}
    st_raw = stages_raw.get("streams") or {}
    types = st_raw.get("types") or []
    if not types or not all(isinstance(x, str) for x in types):
        errors.append("stages.streams.types must be a non-empty list of stream names")
    streams = StreamsStageConfig(
        version=_number(errors, "stages.streams.version", st_raw.get("version", 1), int, 1) or 1,
        error_backoff_seconds=_number(
            errors, "stages.streams.error_backoff_seconds", st_raw.get("error_backoff_seconds", 0)
        ) or 0.0,
        types=list(types),
    )
    pk_raw = stages_raw.get("peaks") or {}
    peaks = PeaksStageConfig(
        periods=[_number(errors, "stages.peaks.periods", x, float, 1) for x in pk_raw.get("periods", [])],
        distances=[_number(errors, "stages.peaks.distances", x, float, 1) for x in pk_raw.get("distances", [])],
    )

    # ── Flat sections ──
    discovery = _section(errors, raw, "discovery", DiscoveryConfig, {
        "max_concurrency": int, "min_empty_windows": int, "min_redundant_windows": int,
    })
    pipeline = _section(errors, raw, "pipeline", PipelineConfig, {
        "initial_batch_size": int, "max_batch_size": int, "batch_growth": float,
        "handoff_queue_size": int, "offload_batch_size": int, "rate_limit_notice_seconds": float,
    })
    transport = _section(errors, raw, "transport", TransportConfig, {
        "max_retries": int, "retry_delay_seconds": float, "throttle_delay_seconds": float,
    })
    manager = _section(errors, raw, "manager", ManagerConfig, {
        "refresh_interval_seconds": float, "refresh_error_backoff_seconds": float,
        "loop_error_backoff_seconds": float,
    })
    exchange = _section(errors, raw, "exchange", ExchangeConfig, {
        "batch_size_limit_bytes": int, "athlete_size_estimate": float,
        "activity_size_estimate": float, "stream_base_size_estimate": float,
        "stream_entry_size_estimate": float, "import_flush_threshold": int,
    })

    if discovery.max_concurrency < 1:
        errors.append("discovery.max_concurrency must be >= 1")
    if pipeline.initial_batch_size < 1 or pipeline.max_batch_size < pipeline.initial_batch_size:
        errors.append("pipeline batch sizes must satisfy 1 <= initial_batch_size <= max_batch_size")
    if pipeline.batch_growth < 1.0:
        errors.append("pipeline.batch_growth must be >= 1.0")

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        rate_limits=rate_limits,
        streams=streams,
        peaks=peaks,
        discovery=discovery,
        pipeline=pipeline,
        transport=transport,
        manager=manager,
        exchange=exchange,
        _raw=raw,
    )


def load_sync_config(path: Path | str | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = Path(path) if path else _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Honors ``Settings.sync_config_path`` when set.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                from histsync.config import get_settings

                _config = load_sync_config(get_settings().sync_config_path)
    return _config


def reload_sync_config(path: Path | str | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.
    """
    global _config
    new_config = load_sync_config(path)
    with _config_lock:
        _config = new_config
    logger.info("Sync config reloaded (v%s)", new_config.version)
    return new_config
