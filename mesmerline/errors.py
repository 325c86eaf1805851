"""Error taxonomy shared by the timeline model, resolver and scheduler.

Only :class:`TimelineValidationError` (and the :class:`ConfigurationError`
raised while registering feature definitions) ever reach a caller as an
exception. The others are recorded, logged and recovered from.
"""

from __future__ import annotations

from typing import Iterable, List, Optional


class MesmerLineError(Exception):
    """Base class for all MesmerLine errors."""


class ConfigurationError(MesmerLineError):
    """Unknown feature id or malformed timeline / feature declaration."""

    def __init__(self, message: str, *, feature_id: Optional[str] = None, event_id: Optional[str] = None):
        super().__init__(message)
        self.feature_id = feature_id
        self.event_id = event_id


class TimelineValidationError(ConfigurationError):
    """Timeline failed invariant validation at load time."""

    def __init__(self, problems: Iterable[str], *, source: Optional[str] = None):
        self.problems: List[str] = list(problems)
        self.source = source
        head = f"Invalid timeline{f' in {source}' if source else ''}"
        if self.problems:
            summary = "; ".join(self.problems[:5])
            more = len(self.problems) - 5
            if more > 0:
                summary += f" (+{more} more)"
            message = f"{head}: {summary}"
        else:
            message = head
        super().__init__(message)


class ValueCoercionError(MesmerLineError):
    """A stored setting value does not match its declared type."""

    def __init__(self, feature_id: str, key: str, value: object, expected: str):
        super().__init__(
            f"Setting '{key}' of feature '{feature_id}': cannot use {value!r} as {expected}"
        )
        self.feature_id = feature_id
        self.key = key
        self.value = value
        self.expected = expected


class SinkError(MesmerLineError):
    """A FeatureSink call failed."""

    def __init__(self, operation: str, feature_id: str, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Sink {operation} failed for '{feature_id}'{detail}")
        self.operation = operation
        self.feature_id = feature_id
        self.cause = cause


class SchedulerStateError(MesmerLineError):
    """Requested transition is not valid from the current scheduler state."""

    def __init__(self, action: str, state: str):
        super().__init__(f"Cannot {action} while scheduler is {state}")
        self.action = action
        self.state = state


__all__ = [
    "MesmerLineError",
    "ConfigurationError",
    "TimelineValidationError",
    "ValueCoercionError",
    "SinkError",
    "SchedulerStateError",
]
