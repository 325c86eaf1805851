"""
Timeline Data Model - Authored sequence of feature Start/Stop events.

A Timeline places events on a minute-indexed axis of fixed length. A Start
event turns a feature on with its settings (and, for ramp-capable features,
start/end ramp values); the paired Stop event turns it off again.

Timelines are mutable while authored. ``snapshot()`` returns a deep, frozen
copy that a scheduler keeps for the duration of one run.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING
import copy
import json
import logging
import uuid

from ..errors import ConfigurationError, TimelineValidationError

if TYPE_CHECKING:
    from ..features.registry import FeatureRegistry

logger = logging.getLogger(__name__)

TIMELINE_FORMAT_VERSION = "1.0"
SESSION_FILE_SUFFIX = ".session.json"


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def _whole_number(value: Any, name: str) -> int:
    """Parse a persisted integer field; fractional values are rejected, not truncated."""
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a whole number, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{name} must be a whole number, got {value!r}")
        return int(value)
    return int(value)


class TimelineEventType(Enum):
    """Whether an event turns its feature on or off."""
    START = "start"
    STOP = "stop"


class _Freezable:
    """Mixin: attribute assignment raises once ``_freeze()`` was called."""

    _frozen = False

    def __setattr__(self, name: str, value: Any) -> None:
        if self._frozen:
            raise ConfigurationError(
                f"{type(self).__name__} is a read-only playback snapshot; edit the authoring copy instead"
            )
        super().__setattr__(name, value)

    def _freeze(self) -> None:
        object.__setattr__(self, "_frozen", True)

    @property
    def frozen(self) -> bool:
        return self._frozen


@dataclass(eq=False)
class TimelineEvent(_Freezable):
    """
    One Start or Stop marker on the timeline.

    Attributes:
        feature_id: Feature this event controls (key into the FeatureRegistry)
        event_type: START or STOP
        minute: Session minute at which the event fires
        settings: Stored setting values (Start events only)
        start_value: Ramp value at the Start minute (ramp-capable features only)
        end_value: Ramp value at the paired Stop minute
        paired_event_id: Id of the other half of a Start/Stop pair
        id: Unique event id
    """
    feature_id: str
    event_type: TimelineEventType
    minute: int
    settings: Dict[str, Any] = field(default_factory=dict)
    start_value: Optional[int] = None
    end_value: Optional[int] = None
    paired_event_id: Optional[str] = None
    id: str = field(default_factory=_new_id)

    def __post_init__(self):
        if isinstance(self.event_type, str):
            self.event_type = TimelineEventType(self.event_type.lower())
        if self.settings is None:
            self.settings = {}

    @property
    def is_start(self) -> bool:
        return self.event_type is TimelineEventType.START

    @property
    def is_stop(self) -> bool:
        return self.event_type is TimelineEventType.STOP

    @property
    def has_ramp(self) -> bool:
        return self.start_value is not None or self.end_value is not None

    def get_setting(self, key: str, default: Any = None) -> Any:
        return self.settings.get(key, default)

    def set_setting(self, key: str, value: Any) -> None:
        if self.is_stop:
            raise ConfigurationError("Stop events carry no settings", event_id=self.id)
        if self._frozen:
            raise ConfigurationError("Cannot edit settings of a playback snapshot", event_id=self.id)
        self.settings[key] = value

    def _freeze(self) -> None:
        object.__setattr__(self, "settings", MappingProxyType(dict(self.settings)))
        super()._freeze()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        data: Dict[str, Any] = {
            "id": self.id,
            "feature_id": self.feature_id,
            "event_type": self.event_type.value,
            "minute": self.minute,
        }
        if self.is_start:
            data["settings"] = dict(self.settings)
        if self.start_value is not None:
            data["start_value"] = self.start_value
        if self.end_value is not None:
            data["end_value"] = self.end_value
        if self.paired_event_id:
            data["paired_event_id"] = self.paired_event_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TimelineEvent:
        """Deserialize from dict."""
        start_value = data.get("start_value")
        end_value = data.get("end_value")
        return cls(
            id=str(data.get("id") or _new_id()),
            feature_id=str(data["feature_id"]),
            event_type=TimelineEventType(str(data["event_type"]).lower()),
            minute=_whole_number(data["minute"], "minute"),
            settings=dict(data.get("settings") or {}),
            start_value=None if start_value is None else _whole_number(start_value, "start_value"),
            end_value=None if end_value is None else _whole_number(end_value, "end_value"),
            paired_event_id=data.get("paired_event_id"),
        )


@dataclass(eq=False)
class SessionPhase(_Freezable):
    """Named section of a session, announced when playback reaches ``start_minute``."""
    start_minute: int
    name: str
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"start_minute": self.start_minute, "name": self.name, "description": self.description}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SessionPhase:
        return cls(
            start_minute=_whole_number(data["start_minute"], "start_minute"),
            name=str(data["name"]),
            description=str(data.get("description", "")),
        )


@dataclass(frozen=True)
class PairingResult:
    """Outcome of matching Stops to Starts in playback order."""
    pairs: Dict[str, TimelineEvent]  # start id -> stop event
    open_starts: Tuple[TimelineEvent, ...]
    problems: Tuple[str, ...]


@dataclass(eq=False)
class Timeline(_Freezable):
    """
    Complete authored session: fixed length plus ordered Start/Stop events.

    Attributes:
        name: Display name
        session_length: Session length in whole minutes (fixed per timeline)
        events: Events in authored order
        phases: Optional named sections of the session
        description: Free text shown before the session starts
        icon: Display glyph
        id: Unique timeline id
        version: Persisted format version
        metadata: Additional custom metadata
    """
    name: str = "Untitled Session"
    session_length: int = 30
    events: List[TimelineEvent] = field(default_factory=list)
    phases: List[SessionPhase] = field(default_factory=list)
    description: str = ""
    icon: str = "🎯"
    id: str = field(default_factory=_new_id)
    version: str = TIMELINE_FORMAT_VERSION
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.events = list(self.events)
        self.phases = list(self.phases)
        for event in self.events:
            event.minute = self.clamp_minute(event.minute)

    # ===== Queries =====

    def clamp_minute(self, minute: int) -> int:
        """Clamp ``minute`` into [0, session_length]."""
        return max(0, min(int(minute), max(0, self.session_length)))

    def get_event(self, event_id: str) -> Optional[TimelineEvent]:
        for event in self.events:
            if event.id == event_id:
                return event
        return None

    def events_for_feature(self, feature_id: str) -> List[TimelineEvent]:
        return [e for e in self.events if e.feature_id == feature_id]

    def sorted_events(self) -> List[TimelineEvent]:
        """Events in playback order: ascending minute, ties by authored order."""
        indexed = sorted(enumerate(self.events), key=lambda item: (item[1].minute, item[0]))
        return [event for _, event in indexed]

    def features_used(self) -> List[str]:
        """Distinct feature ids with at least one Start, in first-use order."""
        seen: List[str] = []
        for event in self.sorted_events():
            if event.is_start and event.feature_id not in seen:
                seen.append(event.feature_id)
        return seen

    def pair_events(self) -> PairingResult:
        """
        Match each Stop to the open Start of the same feature, walking in
        playback order (a feature has at most one open Start at a time).

        Returns:
            PairingResult with matched pairs, unclosed Starts and any problems
        """
        problems: List[str] = []
        pairs: Dict[str, TimelineEvent] = {}
        open_by_feature: Dict[str, TimelineEvent] = {}

        for event in self.sorted_events():
            fid = event.feature_id
            if event.is_start:
                current = open_by_feature.get(fid)
                if current is not None:
                    problems.append(
                        f"Start {event.id} of '{fid}' at minute {event.minute} overlaps "
                        f"open Start {current.id} (minute {current.minute})"
                    )
                    continue
                open_by_feature[fid] = event
                continue

            start = open_by_feature.pop(fid, None)
            if start is None:
                problems.append(f"Stop {event.id} of '{fid}' at minute {event.minute} has no open Start")
                continue
            if event.paired_event_id and event.paired_event_id != start.id:
                problems.append(
                    f"Stop {event.id} of '{fid}' names Start {event.paired_event_id} "
                    f"but closes Start {start.id}"
                )
            if start.paired_event_id and start.paired_event_id != event.id:
                problems.append(
                    f"Start {start.id} of '{fid}' names Stop {start.paired_event_id} "
                    f"but is closed by Stop {event.id}"
                )
            if event.minute <= start.minute:
                problems.append(
                    f"Stop {event.id} of '{fid}' at minute {event.minute} must come after "
                    f"its Start at minute {start.minute}"
                )
            pairs[start.id] = event

        return PairingResult(
            pairs=pairs,
            open_starts=tuple(open_by_feature.values()),
            problems=tuple(problems),
        )

    def open_starts(self) -> List[TimelineEvent]:
        """Start events that no Stop closes (they run to the session end)."""
        return list(self.pair_events().open_starts)

    def unknown_features(self, registry: FeatureRegistry) -> List[str]:
        """Feature ids referenced by events but missing from ``registry``."""
        missing: List[str] = []
        for event in self.events:
            if event.feature_id not in registry and event.feature_id not in missing:
                missing.append(event.feature_id)
        return missing

    # ===== Validation =====

    def collect_problems(self, registry: Optional[FeatureRegistry] = None) -> List[str]:
        """
        Check every timeline invariant.

        Events referencing features unknown to ``registry`` are not problems
        here; playback skips them (see ``unknown_features``).

        Returns:
            List of human-readable problems (empty when valid)
        """
        problems: List[str] = []

        if not self.name or not self.name.strip():
            problems.append("Timeline name cannot be empty")
        if self.session_length < 1:
            problems.append(f"session_length must be at least 1 minute, got {self.session_length}")

        ids = [e.id for e in self.events]
        if len(ids) != len(set(ids)):
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            problems.append(f"Duplicate event ids: {duplicates}")

        for event in self.events:
            label = f"Event {event.id} ('{event.feature_id}')"
            if not (0 <= event.minute <= self.session_length):
                problems.append(f"{label}: minute {event.minute} outside [0, {self.session_length}]")
            if event.is_stop:
                if event.settings:
                    problems.append(f"{label}: Stop events carry no settings")
                if event.has_ramp:
                    problems.append(f"{label}: Stop events carry no ramp values")
                continue
            problems.extend(self._ramp_problems(event, label, registry))

        for phase in self.phases:
            if not (0 <= phase.start_minute <= self.session_length):
                problems.append(
                    f"Phase '{phase.name}': start minute {phase.start_minute} outside [0, {self.session_length}]"
                )

        problems.extend(self.pair_events().problems)
        return problems

    @staticmethod
    def _ramp_problems(event: TimelineEvent, label: str, registry: Optional[FeatureRegistry]) -> List[str]:
        if not event.has_ramp:
            return []
        problems: List[str] = []
        for name in ("start_value", "end_value"):
            value = getattr(event, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                problems.append(f"{label}: {name} must be an integer, got {value!r}")
        if problems or registry is None:
            return problems

        feature = registry.find(event.feature_id)
        if feature is None:
            return problems
        ramp = feature.ramp_setting
        if not feature.supports_ramping or ramp is None:
            problems.append(f"{label}: feature does not support ramping")
            return problems
        for name in ("start_value", "end_value"):
            value = getattr(event, name)
            if value is not None and not ramp.contains(value):
                problems.append(
                    f"{label}: {name} {value} outside '{ramp.key}' range [{ramp.min:g}, {ramp.max:g}]"
                )
        return problems

    def validate(self, registry: Optional[FeatureRegistry] = None) -> tuple[bool, str]:
        """
        Validate timeline configuration.

        Returns:
            (is_valid, error_message)
        """
        problems = self.collect_problems(registry)
        if problems:
            return False, problems[0]
        return True, ""

    def ensure_valid(self, registry: Optional[FeatureRegistry] = None, *, source: Optional[str] = None) -> None:
        """
        Raises:
            TimelineValidationError: If any invariant is violated
        """
        problems = self.collect_problems(registry)
        if problems:
            raise TimelineValidationError(problems, source=source or self.name)

    # ===== Authoring =====

    def add_start_event(
        self,
        feature_id: str,
        minute: int,
        settings: Optional[Dict[str, Any]] = None,
        start_value: Optional[int] = None,
        end_value: Optional[int] = None,
    ) -> TimelineEvent:
        """
        Add a Start event for ``feature_id``.

        Raises:
            ConfigurationError: If the feature already has an unclosed Start
        """
        for pending in self.open_starts():
            if pending.feature_id == feature_id:
                raise ConfigurationError(
                    f"Feature '{feature_id}' already has an open Start at minute {pending.minute}",
                    feature_id=feature_id,
                    event_id=pending.id,
                )
        event = TimelineEvent(
            feature_id=feature_id,
            event_type=TimelineEventType.START,
            minute=self.clamp_minute(minute),
            settings=dict(settings or {}),
            start_value=start_value,
            end_value=end_value,
        )
        self.events.append(event)
        return event

    def add_stop_event(self, start_event: TimelineEvent, minute: int) -> TimelineEvent:
        """
        Close ``start_event`` with a Stop. A Stop placed at or before the
        Start moves to the minute after it.

        Raises:
            ConfigurationError: If the Start is not an unpaired Start of this
                timeline, or sits at the very end of the session
        """
        if start_event not in self.events or not start_event.is_start:
            raise ConfigurationError("Stop must close a Start event of this timeline", event_id=start_event.id)
        if start_event.paired_event_id and self.get_event(start_event.paired_event_id) is not None:
            raise ConfigurationError(
                f"Start {start_event.id} is already closed", event_id=start_event.id
            )

        minute = self.clamp_minute(minute)
        if minute <= start_event.minute:
            minute = min(start_event.minute + 1, self.session_length)
        if minute <= start_event.minute:
            raise ConfigurationError(
                f"No room for a Stop after minute {start_event.minute} in a "
                f"{self.session_length}-minute session",
                event_id=start_event.id,
            )

        stop = TimelineEvent(
            feature_id=start_event.feature_id,
            event_type=TimelineEventType.STOP,
            minute=minute,
            paired_event_id=start_event.id,
        )
        start_event.paired_event_id = stop.id
        self.events.append(stop)
        return stop

    def add_feature_interval(
        self,
        feature_id: str,
        start_minute: int,
        stop_minute: Optional[int] = None,
        settings: Optional[Dict[str, Any]] = None,
        start_value: Optional[int] = None,
        end_value: Optional[int] = None,
    ) -> Tuple[TimelineEvent, Optional[TimelineEvent]]:
        """Add a Start and, when ``stop_minute`` is given, its Stop."""
        start = self.add_start_event(feature_id, start_minute, settings, start_value, end_value)
        stop = self.add_stop_event(start, stop_minute) if stop_minute is not None else None
        return start, stop

    def remove_event(self, event: TimelineEvent) -> List[TimelineEvent]:
        """
        Remove ``event`` and the other half of its pair.

        Returns:
            The removed events
        """
        removed: List[TimelineEvent] = []
        partner: Optional[TimelineEvent] = None
        if event.paired_event_id:
            partner = self.get_event(event.paired_event_id)
        if partner is None and event.is_start:
            partner = self.pair_events().pairs.get(event.id)
        for candidate in (event, partner):
            if candidate is not None and candidate in self.events:
                self.events.remove(candidate)
                removed.append(candidate)
        return removed

    def move_event(self, event: TimelineEvent, minute: int) -> int:
        """Move ``event`` to ``minute`` (clamped). Returns the applied minute."""
        if event not in self.events:
            raise ConfigurationError("Event does not belong to this timeline", event_id=event.id)
        event.minute = self.clamp_minute(minute)
        return event.minute

    def set_session_length(self, minutes: int) -> None:
        """Change the session length, pulling later events back to the new end."""
        minutes = int(minutes)
        if minutes < 1:
            raise ConfigurationError(f"session_length must be at least 1 minute, got {minutes}")
        self.session_length = minutes
        for event in self.events:
            if event.minute > minutes:
                event.minute = minutes
        for phase in self.phases:
            if phase.start_minute > minutes:
                phase.start_minute = minutes

    def add_phase(self, start_minute: int, name: str, description: str = "") -> SessionPhase:
        phase = SessionPhase(start_minute=self.clamp_minute(start_minute), name=name, description=description)
        self.phases.append(phase)
        self.phases.sort(key=lambda p: p.start_minute)
        return phase

    # ===== Stats =====

    def calculate_xp(self, registry: FeatureRegistry) -> int:
        """XP for completing this session: one per minute plus each used feature's bonus once."""
        bonus = 0
        for feature_id in self.features_used():
            feature = registry.find(feature_id)
            if feature is not None:
                bonus += feature.xp_bonus
        return self.session_length + bonus

    def calculate_difficulty(self, registry: FeatureRegistry) -> int:
        """Sum of difficulty weights of the distinct features used."""
        total = 0
        for feature_id in self.features_used():
            feature = registry.find(feature_id)
            if feature is not None:
                total += feature.difficulty_weight
        return total

    def difficulty_label(self, registry: FeatureRegistry) -> str:
        score = self.calculate_difficulty(registry)
        if score <= 0:
            return "Easy"
        if score <= 2:
            return "Medium"
        if score <= 4:
            return "Hard"
        return "Extreme"

    # ===== Snapshot / persistence =====

    def snapshot(self) -> Timeline:
        """Deep, read-only copy for one playback run."""
        clone = copy.deepcopy(self) if not self._frozen else self
        if clone is self:
            return self
        for event in clone.events:
            event._freeze()
        for phase in clone.phases:
            phase._freeze()
        object.__setattr__(clone, "events", tuple(clone.events))
        object.__setattr__(clone, "phases", tuple(clone.phases))
        object.__setattr__(clone, "metadata", MappingProxyType(dict(clone.metadata)))
        clone._freeze()
        return clone

    def copy(self) -> Timeline:
        """Mutable deep copy (e.g. to edit a snapshot's content)."""
        return Timeline.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize timeline to JSON-compatible dict."""
        return {
            "version": self.version,
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "session_length": self.session_length,
            "events": [event.to_dict() for event in self.events],
            "phases": [phase.to_dict() for phase in self.phases],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, source: Optional[str] = None) -> Timeline:
        """
        Deserialize from dict.

        Raises:
            TimelineValidationError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise TimelineValidationError([f"Expected a JSON object, got {type(data).__name__}"], source=source)
        try:
            events = [TimelineEvent.from_dict(item) for item in data.get("events", [])]
            phases = [SessionPhase.from_dict(item) for item in data.get("phases", [])]
            return cls(
                id=str(data.get("id") or _new_id()),
                name=str(data.get("name", "Untitled Session")),
                description=str(data.get("description", "")),
                icon=str(data.get("icon", "🎯")),
                session_length=_whole_number(data["session_length"], "session_length"),
                events=events,
                phases=phases,
                version=str(data.get("version", TIMELINE_FORMAT_VERSION)),
                metadata=dict(data.get("metadata") or {}),
            )
        except KeyError as exc:
            raise TimelineValidationError([f"Missing field {exc}"], source=source) from exc
        except (TypeError, ValueError, AttributeError) as exc:
            raise TimelineValidationError([f"Malformed value: {exc}"], source=source) from exc

    def save(self, path: Path, registry: Optional[FeatureRegistry] = None) -> Path:
        """
        Save timeline to JSON file.

        Args:
            path: Output file path (typically .session.json)
            registry: Optional registry for ramp range checks

        Raises:
            TimelineValidationError: If validation fails
            OSError: If file cannot be written
        """
        path = Path(path)
        self.ensure_valid(registry, source=str(path))
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        logger.info("[timeline] Saved '%s' (%d events) to %s", self.name, len(self.events), path)
        return path

    @classmethod
    def load(cls, path: Path, registry: Optional[FeatureRegistry] = None) -> Timeline:
        """
        Load timeline from JSON file.

        Raises:
            FileNotFoundError: If file doesn't exist
            TimelineValidationError: If the file is not valid JSON or the
                timeline violates an invariant
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Timeline file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as exc:
                raise TimelineValidationError([f"Invalid JSON: {exc}"], source=str(path)) from exc

        timeline = cls.from_dict(data, source=str(path))
        timeline.ensure_valid(registry, source=str(path))
        return timeline

