"""Engine timing and retry configuration.

// [LAW:one-source-of-truth] Config keys and defaults are the SyncConfig fields;
// SCHEMA is derived from them.
// [LAW:dataflow-not-control-flow] One normalization pipeline for every layer
// (file, environment, overrides).

Resolution order, lowest to highest: SCHEMA defaults, settings file,
PREVIEW_SYNC_<KEY> environment variables, explicit overrides.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields

import preview_sync.io.settings

logger = logging.getLogger(__name__)

ENV_PREFIX = "PREVIEW_SYNC_"


@dataclass(frozen=True)
class SyncConfig:
    refresh_buffer: float = 0.25
    heartbeat_interval: float = 1.0
    keep_alive_timeout: float = 10.0
    partial_retry_max: int = 3
    partial_retry_base_delay: float = 0.5
    partial_retry_max_delay: float = 4.0
    request_timeout: float = 30.0
    search_debounce: float = 0.3
    scroll_debounce: float = 0.2
    preview_refresh_debounce: float = 0.25

    def retry_delay(self, attempt: int) -> float:
        """Capped exponential backoff for the given 1-based retry attempt."""
        delay = self.partial_retry_base_delay * (2 ** max(0, attempt - 1))
        return min(delay, self.partial_retry_max_delay)


SCHEMA: dict[str, object] = {f.name: f.default for f in fields(SyncConfig)}

# Periods and timeouts that must stay positive; 0 would mean "fire continuously".
POSITIVE_KEYS = frozenset({"heartbeat_interval", "keep_alive_timeout", "request_timeout"})


def _normalize_float(value: object, default: float) -> float:
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return max(0.0, parsed)


def _normalize_int(value: object, default: int) -> int:
    try:
        parsed = int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return max(0, parsed)


def _normalize_value(key: str, value: object) -> object:
    default = SCHEMA[key]
    if isinstance(default, int) and not isinstance(default, bool):
        return _normalize_int(value, default)
    normalized = _normalize_float(value, float(default))  # type: ignore[arg-type]
    if key in POSITIVE_KEYS and normalized <= 0:
        logger.warning("Config %s must be positive, got %r; using %s", key, value, default)
        return float(default)  # type: ignore[arg-type]
    return normalized


def _env_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for key in SCHEMA:
        raw = environ.get(ENV_PREFIX + key.upper())
        if raw is not None and raw.strip():
            layer[key] = raw.strip()
    return layer


def load_config(
    overrides: Mapping[str, object] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    use_settings_file: bool = True,
) -> SyncConfig:
    merged: dict[str, object] = dict(SCHEMA)
    if use_settings_file:
        file_data = preview_sync.io.settings.load_settings()
        # Filter file data to known keys only
        merged.update({k: v for k, v in file_data.items() if k in SCHEMA})
    merged.update(_env_layer(os.environ if environ is None else environ))
    for key, value in (overrides or {}).items():
        if key not in SCHEMA:
            logger.warning("Ignoring unknown config key %r", key)
            continue
        merged[key] = value
    normalized = {key: _normalize_value(key, value) for key, value in merged.items()}
    known = {f.name for f in fields(SyncConfig)}
    return SyncConfig(**{k: v for k, v in normalized.items() if k in known})


def save_config(config: SyncConfig) -> None:
    """Persist config values into the settings file, keeping unrelated keys."""
    preview_sync.io.settings.update_settings(asdict(config))
