"""
Feature Sinks - The boundary every feature back-end implements.

The scheduler only ever calls three methods on a sink:

- ``activate(feature_id, settings)``: start producing the effect
- ``update_ramp(feature_id, value)``: apply a new ramp intensity immediately
- ``deactivate(feature_id)``: stop the effect (idempotent)

A call fails by raising or by returning ``False``; anything else counts as
success. Calls must return promptly: slow work (file I/O, decoding) belongs
on the back-end's own worker.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple


class FeatureSink(ABC):
    """Capability interface implemented by concrete feature back-ends."""

    @abstractmethod
    def activate(self, feature_id: str, settings: Mapping[str, Any]) -> Optional[bool]:
        """Begin producing the feature's effect with ``settings``."""
        pass

    @abstractmethod
    def update_ramp(self, feature_id: str, value: int) -> Optional[bool]:
        """Apply a new ramp intensity; called every tick while ramping."""
        pass

    @abstractmethod
    def deactivate(self, feature_id: str) -> Optional[bool]:
        """Stop producing the effect. Safe on an already inactive feature."""
        pass


class NullSink(FeatureSink):
    """Accepts every call and does nothing."""

    def activate(self, feature_id: str, settings: Mapping[str, Any]) -> Optional[bool]:
        return True

    def update_ramp(self, feature_id: str, value: int) -> Optional[bool]:
        return True

    def deactivate(self, feature_id: str) -> Optional[bool]:
        return True


class LoggingSink(FeatureSink):
    """Logs every call; the default back-end for headless dry runs.

    Ramp updates are only logged when the value changes, so a 250ms tick does
    not print the same intensity four times a second.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, level: int = logging.INFO):
        self.logger = logger or logging.getLogger(__name__)
        self.level = level
        self._last_ramp: Dict[str, int] = {}

    def activate(self, feature_id: str, settings: Mapping[str, Any]) -> Optional[bool]:
        self.logger.log(self.level, "[sink] activate %s %s", feature_id, dict(settings))
        return True

    def update_ramp(self, feature_id: str, value: int) -> Optional[bool]:
        if self._last_ramp.get(feature_id) != value:
            self._last_ramp[feature_id] = value
            self.logger.log(self.level, "[sink] ramp %s -> %d", feature_id, value)
        return True

    def deactivate(self, feature_id: str) -> Optional[bool]:
        self._last_ramp.pop(feature_id, None)
        self.logger.log(self.level, "[sink] deactivate %s", feature_id)
        return True


@dataclass
class SinkCall:
    """One recorded sink invocation."""
    operation: str  # "activate" | "update_ramp" | "deactivate"
    feature_id: str
    payload: Any = None
    timestamp: float = field(default_factory=time.monotonic)


class RecordingSink(FeatureSink):
    """Records calls in order and tracks which features are on.

    Used by tests and previews. ``fail_on`` makes chosen calls fail, e.g.
    ``RecordingSink(fail_on={("activate", "corner_gif")})``.
    """

    def __init__(self, fail_on: Optional[set[Tuple[str, str]]] = None, *, raise_errors: bool = True):
        self.calls: List[SinkCall] = []
        self.active: Dict[str, Dict[str, Any]] = {}
        self.ramp_values: Dict[str, int] = {}
        self.fail_on = set(fail_on or ())
        self.raise_errors = raise_errors

    def _fails(self, operation: str, feature_id: str) -> bool:
        if (operation, feature_id) in self.fail_on:
            if self.raise_errors:
                raise RuntimeError(f"{operation} failed for {feature_id}")
            return True
        return False

    def activate(self, feature_id: str, settings: Mapping[str, Any]) -> Optional[bool]:
        self.calls.append(SinkCall("activate", feature_id, dict(settings)))
        if self._fails("activate", feature_id):
            return False
        self.active[feature_id] = dict(settings)
        return True

    def update_ramp(self, feature_id: str, value: int) -> Optional[bool]:
        self.calls.append(SinkCall("update_ramp", feature_id, value))
        if self._fails("update_ramp", feature_id):
            return False
        self.ramp_values[feature_id] = value
        return True

    def deactivate(self, feature_id: str) -> Optional[bool]:
        self.calls.append(SinkCall("deactivate", feature_id))
        self.active.pop(feature_id, None)
        if self._fails("deactivate", feature_id):
            return False
        return True

    def calls_for(self, feature_id: str) -> List[SinkCall]:
        return [c for c in self.calls if c.feature_id == feature_id]

    def operations(self, feature_id: Optional[str] = None) -> List[Tuple[str, Any]]:
        """Compact ``(operation, payload)`` view, optionally for one feature."""
        calls = self.calls if feature_id is None else self.calls_for(feature_id)
        return [(c.operation, c.payload) for c in calls]

    def ramp_history(self, feature_id: str) -> List[int]:
        return [c.payload for c in self.calls_for(feature_id) if c.operation == "update_ramp"]

    def clear(self) -> None:
        self.calls.clear()


class RoutingSink(FeatureSink):
    """Dispatches each feature id to the back-end registered for it.

    Example:
        sink = RoutingSink({"spiral": overlay_backend, "audio_whispers": audio_backend},
                           fallback=LoggingSink())
    """

    def __init__(self, routes: Optional[Mapping[str, FeatureSink]] = None, fallback: Optional[FeatureSink] = None):
        self._routes: Dict[str, FeatureSink] = dict(routes or {})
        self._fallback = fallback

    def register(self, feature_id: str, sink: FeatureSink) -> None:
        self._routes[feature_id] = sink

    def unregister(self, feature_id: str) -> Optional[FeatureSink]:
        return self._routes.pop(feature_id, None)

    def route(self, feature_id: str) -> FeatureSink:
        sink = self._routes.get(feature_id, self._fallback)
        if sink is None:
            raise LookupError(f"No back-end registered for feature '{feature_id}'")
        return sink

    def activate(self, feature_id: str, settings: Mapping[str, Any]) -> Optional[bool]:
        return self.route(feature_id).activate(feature_id, settings)

    def update_ramp(self, feature_id: str, value: int) -> Optional[bool]:
        return self.route(feature_id).update_ramp(feature_id, value)

    def deactivate(self, feature_id: str) -> Optional[bool]:
        return self.route(feature_id).deactivate(feature_id)
