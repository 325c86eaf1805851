"""Playback configuration.

Values come from explicit arguments, a dict (e.g. the ``playback`` block of a
library settings file) or ``MESMERLINE_*`` environment variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

ENV_TICK_MS = "MESMERLINE_TICK_MS"
ENV_MINUTE_SECONDS = "MESMERLINE_MINUTE_SECONDS"
ENV_SLOW_SINK_MS = "MESMERLINE_SLOW_SINK_MS"


@dataclass(frozen=True)
class PlaybackConfig:
    """Timing knobs for the scheduler and its drivers.

    Attributes:
        tick_interval_ms: How often a driver calls ``tick()``
        minute_seconds: Wall-clock seconds per session minute (60 in production,
            smaller for previews and dry runs)
        slow_sink_warn_ms: Sink calls slower than this are logged as warnings
        error_sample_interval_s: Window for coalescing repeated sink failures
    """

    tick_interval_ms: int = 250
    minute_seconds: float = 60.0
    slow_sink_warn_ms: float = 20.0
    error_sample_interval_s: float = 5.0

    def __post_init__(self):
        if self.tick_interval_ms <= 0:
            raise ValueError(f"tick_interval_ms must be positive, got {self.tick_interval_ms}")
        if self.minute_seconds <= 0:
            raise ValueError(f"minute_seconds must be positive, got {self.minute_seconds}")
        if self.slow_sink_warn_ms < 0:
            raise ValueError(f"slow_sink_warn_ms must be non-negative, got {self.slow_sink_warn_ms}")

    def with_overrides(self, **overrides: Any) -> "PlaybackConfig":
        """Return a copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "PlaybackConfig":
        """Build from a mapping, ignoring unknown keys."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.debug("[config] Ignoring unknown playback keys: %s", sorted(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PlaybackConfig":
        """Build from ``MESMERLINE_*`` variables; malformed or out-of-range values are ignored."""
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for name, attr, cast, allow_zero in (
            (ENV_TICK_MS, "tick_interval_ms", int, False),
            (ENV_MINUTE_SECONDS, "minute_seconds", float, False),
            (ENV_SLOW_SINK_MS, "slow_sink_warn_ms", float, True),
        ):
            raw = env.get(name)
            if raw is None or not raw.strip():
                continue
            try:
                value = cast(raw)
            except ValueError:
                logger.warning("[config] Ignoring %s=%r (not a number)", name, raw)
                continue
            if value < 0 or (value == 0 and not allow_zero):
                logger.warning("[config] Ignoring %s=%r (out of range)", name, raw)
                continue
            overrides[attr] = value
        return cls(**overrides)
