"""
Playback Scheduler - Execution engine for timeline playback.

The PlaybackScheduler turns a validated Timeline into sink calls:
- Elapsed session minutes derive from the clock (minus paused time), never
  from tick counts, so pausing never drifts events against the timeline
- Due Start/Stop events are processed exactly once, in minute order
- Ramp-capable features receive an interpolated value on every tick
- Sink failures are logged and recovered; playback always continues
- State machine: IDLE -> RUNNING <-> PAUSED -> COMPLETED, or CANCELLED

Architecture:
    driver calls scheduler.tick() every ``config.tick_interval_ms``
    -> compute elapsed minutes
    -> process due events (activate / final ramp + deactivate)
    -> at session end: close open features, COMPLETED
    -> otherwise push live ramp values to every ramping feature
"""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from ..config import PlaybackConfig
from ..errors import ConfigurationError, MesmerLineError, SchedulerStateError, SinkError
from ..logging_utils import BurstSampler
from .events import SessionEvent, SessionEventEmitter, SessionEventType
from .ramp import interpolate_ramp
from .settings import SettingsResolver, ramp_end_value, ramp_start_value
from .timeline import SessionPhase, Timeline, TimelineEvent

if TYPE_CHECKING:
    from ..features.registry import FeatureDefinition, FeatureRegistry
    from .sinks import FeatureSink

_MAX_RECOVERED_ERRORS = 200


class SchedulerState(Enum):
    """Playback states."""
    IDLE = auto()       # No run started yet (timeline may be loaded)
    RUNNING = auto()    # Timer advancing, events processed
    PAUSED = auto()     # Elapsed time frozen, features hold their last value
    COMPLETED = auto()  # Reached session end, every feature closed
    CANCELLED = auto()  # Stopped by the caller, every feature closed

    @property
    def is_terminal(self) -> bool:
        return self in (SchedulerState.COMPLETED, SchedulerState.CANCELLED)

    @property
    def is_active(self) -> bool:
        return self in (SchedulerState.RUNNING, SchedulerState.PAUSED)


@dataclass
class ActiveRamp:
    """Live ramp of one active feature."""
    feature_id: str
    setting_key: str
    start_value: int
    end_value: int
    start_minute: float
    stop_minute: float
    last_value: Optional[int] = None

    def value_at(self, minute: float) -> int:
        return interpolate_ramp(self.start_value, self.end_value, self.start_minute, self.stop_minute, minute)


@dataclass
class _ActiveFeature:
    start_event: TimelineEvent
    feature: FeatureDefinition
    settings: Dict[str, Any]
    ramp: Optional[ActiveRamp]
    activated_minute: float


class PlaybackScheduler:
    """
    Drives one timeline run at a time against a FeatureSink.

    Responsibilities:
    - Validate and snapshot timelines (``load``); stage reloads during a run
    - Advance elapsed minutes from the clock on every ``tick``
    - Activate / deactivate features and feed ramp values to the sink
    - Handle pause / resume / cancel and report progress through events

    Usage:
        scheduler = PlaybackScheduler(FeatureRegistry.builtin(), LoggingSink())
        scheduler.load(timeline)
        scheduler.start()

        # From a timer (see driver.py):
        scheduler.tick()
    """

    def __init__(
        self,
        registry: FeatureRegistry,
        sink: FeatureSink,
        event_emitter: Optional[SessionEventEmitter] = None,
        config: Optional[PlaybackConfig] = None,
        resolver: Optional[SettingsResolver] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize playback scheduler.

        Args:
            registry: Feature definitions used to resolve events
            sink: Back-end receiving activate/update_ramp/deactivate calls
            event_emitter: Event bus for observers (created when omitted)
            config: Timing configuration (defaults to PlaybackConfig())
            resolver: Settings resolver (created when omitted)
            clock: Monotonic seconds source (defaults to time.monotonic)
        """
        self.registry = registry
        self.sink = sink
        self.event_emitter = event_emitter or SessionEventEmitter()
        self.config = config or PlaybackConfig()
        self.resolver = resolver or SettingsResolver(on_coercion_error=self._record_recovered)
        self._clock = clock or time.monotonic

        self.logger = logging.getLogger(__name__)

        # State machine
        self._state = SchedulerState.IDLE
        self._in_tick = False

        # Timeline snapshots
        self._timeline: Optional[Timeline] = None
        self._staged: Optional[Timeline] = None

        # Run bookkeeping (reset by start())
        self._queue: List[TimelineEvent] = []
        self._next_index = 0
        self._stops_by_start: Dict[str, TimelineEvent] = {}
        self._active: Dict[str, _ActiveFeature] = {}
        self._processed_ids: List[str] = []
        self._skipped_ids: List[str] = []
        self._phases: List[SessionPhase] = []
        self._phase_index = -1

        # Time tracking (clock seconds)
        self._run_start_time: Optional[float] = None
        self._pause_start_time: Optional[float] = None
        self._total_paused_time = 0.0
        self._end_time: Optional[float] = None
        self._last_elapsed = 0.0

        # Error tracking
        self.last_error: Optional[MesmerLineError] = None
        self.recovered_errors: List[MesmerLineError] = []
        self._ramp_failure_samplers: Dict[str, BurstSampler] = {}

    # ===== State Queries =====

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def timeline(self) -> Optional[Timeline]:
        """Snapshot used by the current (or next) run."""
        return self._timeline

    @property
    def has_staged_timeline(self) -> bool:
        return self._staged is not None

    def is_idle(self) -> bool:
        return self._state is SchedulerState.IDLE

    def is_running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    def is_paused(self) -> bool:
        return self._state is SchedulerState.PAUSED

    def is_completed(self) -> bool:
        return self._state is SchedulerState.COMPLETED

    def is_cancelled(self) -> bool:
        return self._state is SchedulerState.CANCELLED

    def is_finished(self) -> bool:
        return self._state.is_terminal

    @property
    def session_length(self) -> int:
        return self._timeline.session_length if self._timeline else 0

    @property
    def elapsed_minutes(self) -> float:
        """Session minutes elapsed in the current run (excluding pauses)."""
        if self._run_start_time is None:
            return 0.0
        if self._state is SchedulerState.PAUSED and self._pause_start_time is not None:
            now = self._pause_start_time
        elif self._state.is_terminal and self._end_time is not None:
            now = self._end_time
        else:
            now = self._clock()
        elapsed = (now - self._run_start_time - self._total_paused_time) / self.config.minute_seconds
        # A clock that steps backwards must not rewind the session
        self._last_elapsed = max(self._last_elapsed, elapsed, 0.0)
        return self._last_elapsed

    @property
    def remaining_minutes(self) -> float:
        return max(0.0, self.session_length - self.elapsed_minutes)

    @property
    def progress_percent(self) -> float:
        if not self.session_length:
            return 0.0
        return min(100.0, self.elapsed_minutes / self.session_length * 100.0)

    @property
    def active_features(self) -> List[str]:
        """Feature ids currently switched on, in activation order."""
        return list(self._active)

    @property
    def active_ramps(self) -> Dict[str, ActiveRamp]:
        return {fid: a.ramp for fid, a in self._active.items() if a.ramp is not None}

    @property
    def processed_event_ids(self) -> List[str]:
        return list(self._processed_ids)

    @property
    def skipped_event_ids(self) -> List[str]:
        return list(self._skipped_ids)

    @property
    def current_phase(self) -> Optional[SessionPhase]:
        if 0 <= self._phase_index < len(self._phases):
            return self._phases[self._phase_index]
        return None

    def get_status(self) -> Dict[str, Any]:
        """Plain-dict snapshot for CLIs and UIs."""
        phase = self.current_phase
        return {
            "state": self._state.name,
            "timeline": self._timeline.name if self._timeline else None,
            "elapsed_minutes": round(self.elapsed_minutes, 3),
            "remaining_minutes": round(self.remaining_minutes, 3),
            "progress_percent": round(self.progress_percent, 1),
            "active_features": self.active_features,
            "ramps": {fid: ramp.last_value for fid, ramp in self.active_ramps.items()},
            "phase": phase.name if phase else None,
            "processed_events": len(self._processed_ids),
            "total_events": len(self._queue),
        }

    # ===== Loading =====

    def load(self, timeline: Timeline) -> Timeline:
        """
        Validate ``timeline`` and keep a read-only snapshot of it.

        While a run is active the snapshot is staged and swapped in by the
        next ``start()``; the running snapshot is never touched.

        Returns:
            The snapshot that will be played

        Raises:
            TimelineValidationError: If the timeline violates an invariant
        """
        timeline.ensure_valid(self.registry)
        snapshot = timeline.snapshot()

        for feature_id in snapshot.unknown_features(self.registry):
            error = ConfigurationError(
                f"Unknown feature '{feature_id}'; its events will be skipped", feature_id=feature_id
            )
            self.logger.warning(f"[scheduler] {error}")
            self._record_recovered(error)

        if self._state.is_active:
            self._staged = snapshot
            self.logger.info(f"[scheduler] Staged '{snapshot.name}' for the next run")
        else:
            self._timeline = snapshot
            self._staged = None
            self._reset_run_state()
            self._state = SchedulerState.IDLE
            self.logger.info(
                f"[scheduler] Loaded '{snapshot.name}' ({len(snapshot.events)} events, "
                f"{snapshot.session_length} min)"
            )
        return snapshot

    # ===== Lifecycle =====

    def start(self) -> bool:
        """Start a run of the loaded timeline.

        Events at minute 0 are processed immediately.

        Returns:
            True if started, False if a run is active or nothing is loaded
        """
        if self._state.is_active:
            return self._reject("start")

        if self._staged is not None:
            self._timeline, self._staged = self._staged, None

        if self._timeline is None:
            return self._reject("start", state="IDLE (no timeline loaded)")

        timeline = self._timeline
        self._reset_run_state()
        pairing = timeline.pair_events()
        self._queue = timeline.sorted_events()
        self._stops_by_start = dict(pairing.pairs)
        self._phases = sorted(timeline.phases, key=lambda p: p.start_minute)
        self.last_error = None

        self._run_start_time = self._clock()
        self._state = SchedulerState.RUNNING

        self.logger.info(
            f"[scheduler] Run started: '{timeline.name}' ({len(self._queue)} events, "
            f"{timeline.session_length} min, {self.config.minute_seconds:g}s/min)"
        )
        self.event_emitter.emit(SessionEvent(
            SessionEventType.SESSION_START,
            data={
                "timeline": timeline.name,
                "session_length": timeline.session_length,
                "event_count": len(self._queue),
            },
        ))

        self.tick()
        return True

    def pause(self) -> bool:
        """Pause the run; active features keep their last delivered value.

        Returns:
            True if paused, False if not running
        """
        if self._state is not SchedulerState.RUNNING:
            return self._reject("pause")

        self._pause_start_time = self._clock()
        elapsed = self.elapsed_minutes
        self._state = SchedulerState.PAUSED
        self.logger.info(f"[scheduler] Paused at minute {elapsed:.2f}")
        self.event_emitter.emit(SessionEvent(
            SessionEventType.SESSION_PAUSE,
            data={"elapsed_minutes": elapsed},
        ))
        return True

    def resume(self) -> bool:
        """Resume a paused run.

        Returns:
            True if resumed, False if not paused
        """
        if self._state is not SchedulerState.PAUSED:
            return self._reject("resume")

        if self._pause_start_time is not None:
            pause_duration = self._clock() - self._pause_start_time
            self._total_paused_time += max(0.0, pause_duration)
            self._pause_start_time = None

        self._state = SchedulerState.RUNNING
        elapsed = self.elapsed_minutes
        self.logger.info(f"[scheduler] Resumed at minute {elapsed:.2f}")
        self.event_emitter.emit(SessionEvent(
            SessionEventType.SESSION_RESUME,
            data={"elapsed_minutes": elapsed},
        ))
        return True

    def stop(self) -> bool:
        """Cancel the run. Every active feature is deactivated before the
        CANCELLED state becomes observable.

        Returns:
            True if cancelled, False if no run was active
        """
        if not self._state.is_active:
            return self._reject("stop")

        elapsed = self.elapsed_minutes
        for feature_id in list(self._active):
            self._close_feature(feature_id, minute=None, reason="cancelled")

        self._end_time = self._pause_start_time if self._state is SchedulerState.PAUSED else self._clock()
        if self._pause_start_time is not None:
            self._total_paused_time += max(0.0, self._end_time - self._pause_start_time)
            self._pause_start_time = None
        self._state = SchedulerState.CANCELLED

        self.logger.info(f"[scheduler] Run cancelled at minute {elapsed:.2f}")
        self.event_emitter.emit(SessionEvent(
            SessionEventType.SESSION_STOP,
            data={"elapsed_minutes": elapsed, "processed_events": len(self._processed_ids)},
        ))
        return True

    def _reset_run_state(self) -> None:
        """Forget the previous run's queue, progress and timing."""
        self._queue = []
        self._next_index = 0
        self._stops_by_start = {}
        self._active = {}
        self._processed_ids = []
        self._skipped_ids = []
        self._phases = []
        self._phase_index = -1
        self._ramp_failure_samplers = {}

        self._run_start_time = None
        self._pause_start_time = None
        self._total_paused_time = 0.0
        self._end_time = None
        self._last_elapsed = 0.0

    def _reject(self, action: str, *, state: Optional[str] = None) -> bool:
        error = SchedulerStateError(action, state or self._state.name)
        self.last_error = error
        self.logger.warning(f"[scheduler] {error}")
        self.event_emitter.emit(SessionEvent(
            SessionEventType.ERROR,
            data={"kind": "state", "action": action, "message": str(error)},
        ))
        return False

    # ===== Tick =====

    def tick(self) -> None:
        """Timer callback: process due events, then refresh ramps."""
        if self._state is not SchedulerState.RUNNING:
            return
        if self._in_tick:
            self.logger.warning("[scheduler] Re-entrant tick ignored")
            return

        self._in_tick = True
        try:
            elapsed = self.elapsed_minutes
            self._process_due_events(elapsed)
            if self._state is not SchedulerState.RUNNING:
                return

            self._update_phase(elapsed)
            if self._state is not SchedulerState.RUNNING:
                return

            if elapsed >= self.session_length:
                self._complete()
                return

            self._update_ramps(elapsed)
            self.event_emitter.emit(SessionEvent(
                SessionEventType.PROGRESS,
                data={
                    "elapsed_minutes": elapsed,
                    "remaining_minutes": max(0.0, self.session_length - elapsed),
                    "progress_percent": min(100.0, elapsed / self.session_length * 100.0),
                },
            ))
        finally:
            self._in_tick = False

    def _process_due_events(self, elapsed: float) -> None:
        while self._next_index < len(self._queue):
            if self._state is not SchedulerState.RUNNING:
                return
            event = self._queue[self._next_index]
            if event.minute > elapsed:
                return
            self._next_index += 1
            self._processed_ids.append(event.id)
            if event.is_start:
                self._process_start(event, elapsed)
            else:
                self._process_stop(event)

    def _process_start(self, event: TimelineEvent, elapsed: float) -> None:
        feature = self.registry.find(event.feature_id)
        if feature is None:
            error = ConfigurationError(
                f"Skipping Start {event.id}: unknown feature '{event.feature_id}'",
                feature_id=event.feature_id,
                event_id=event.id,
            )
            self._skip(event, error)
            return

        if event.feature_id in self._active:
            # Validation rules this out; close the stale instance rather than leak it
            self.logger.warning(f"[scheduler] '{event.feature_id}' restarted while active; closing previous instance")
            self._close_feature(event.feature_id, minute=event.minute, reason="restarted")

        settings = self.resolver.resolve(event, feature)
        ramp = self._build_ramp(event, feature)

        self._active[event.feature_id] = _ActiveFeature(
            start_event=event,
            feature=feature,
            settings=settings,
            ramp=ramp,
            activated_minute=elapsed,
        )
        self.logger.info(
            f"[scheduler] Activate '{event.feature_id}' (event minute {event.minute}, now {elapsed:.2f})"
            + (f" ramp {ramp.start_value}->{ramp.end_value} until minute {ramp.stop_minute:g}" if ramp else "")
        )
        self._call_sink("activate", event.feature_id, settings)
        self.event_emitter.emit(SessionEvent(
            SessionEventType.FEATURE_ACTIVATED,
            data={
                "feature_id": event.feature_id,
                "event_id": event.id,
                "minute": event.minute,
                "settings": dict(settings),
                "ramp": (ramp.start_value, ramp.end_value) if ramp else None,
            },
        ))

    def _build_ramp(self, event: TimelineEvent, feature: FeatureDefinition) -> Optional[ActiveRamp]:
        setting = feature.ramp_setting
        if not feature.supports_ramping or setting is None or not event.has_ramp:
            return None
        stop = self._stops_by_start.get(event.id)
        stop_minute = stop.minute if stop is not None else self.session_length
        return ActiveRamp(
            feature_id=event.feature_id,
            setting_key=setting.key,
            start_value=ramp_start_value(event, setting),
            end_value=ramp_end_value(event, setting),
            start_minute=event.minute,
            stop_minute=stop_minute,
        )

    def _process_stop(self, event: TimelineEvent) -> None:
        if event.feature_id not in self._active:
            error = ConfigurationError(
                f"Skipping Stop {event.id}: '{event.feature_id}' is not active",
                feature_id=event.feature_id,
                event_id=event.id,
            )
            self._skip(event, error, level=logging.DEBUG if event.feature_id not in self.registry else logging.WARNING)
            return
        self._close_feature(event.feature_id, minute=event.minute, reason="stop", event_id=event.id)

    def _skip(self, event: TimelineEvent, error: ConfigurationError, level: int = logging.WARNING) -> None:
        self._skipped_ids.append(event.id)
        self.logger.log(level, f"[scheduler] {error}")
        self._record_recovered(error)
        self.event_emitter.emit(SessionEvent(
            SessionEventType.ERROR,
            data={"kind": "configuration", "event_id": event.id, "feature_id": event.feature_id, "message": str(error)},
        ))

    def _close_feature(
        self,
        feature_id: str,
        *,
        minute: Optional[float],
        reason: str,
        event_id: Optional[str] = None,
    ) -> None:
        """Deactivate ``feature_id``; with a ``minute``, first deliver the ramp's value there."""
        active = self._active.pop(feature_id, None)
        if active is None:
            return
        if active.ramp is not None and minute is not None:
            value = active.ramp.value_at(minute)
            active.ramp.last_value = value
            self._call_sink("update_ramp", feature_id, value)
        self.logger.info(f"[scheduler] Deactivate '{feature_id}' ({reason})")
        self._call_sink("deactivate", feature_id)
        self._ramp_failure_samplers.pop(feature_id, None)
        self.event_emitter.emit(SessionEvent(
            SessionEventType.FEATURE_DEACTIVATED,
            data={"feature_id": feature_id, "event_id": event_id, "reason": reason, "minute": minute},
        ))

    def _update_ramps(self, elapsed: float) -> None:
        for feature_id, active in list(self._active.items()):
            ramp = active.ramp
            if ramp is None:
                continue
            value = ramp.value_at(elapsed)
            ramp.last_value = value
            self.logger.debug(f"[ramp.trace] {feature_id} minute={elapsed:.3f} value={value}")
            self._call_sink("update_ramp", feature_id, value)

    def _update_phase(self, elapsed: float) -> None:
        index = -1
        for i, phase in enumerate(self._phases):
            if phase.start_minute <= elapsed:
                index = i
        if index == self._phase_index or index < 0:
            return
        self._phase_index = index
        phase = self._phases[index]
        self.logger.info(f"[scheduler] Phase {index}: {phase.name}")
        self.event_emitter.emit(SessionEvent(
            SessionEventType.PHASE_CHANGED,
            data={"index": index, "name": phase.name, "description": phase.description, "start_minute": phase.start_minute},
        ))

    def _complete(self) -> None:
        length = self.session_length
        for feature_id in list(self._active):
            self._close_feature(feature_id, minute=length, reason="session end")

        self._end_time = self._clock()
        self._state = SchedulerState.COMPLETED
        self.logger.info(
            f"[scheduler] Run completed: {len(self._processed_ids)} events processed, "
            f"{len(self._skipped_ids)} skipped"
        )
        self.event_emitter.emit(SessionEvent(
            SessionEventType.SESSION_END,
            data={
                "timeline": self._timeline.name if self._timeline else None,
                "session_length": length,
                "processed_events": len(self._processed_ids),
                "skipped_events": len(self._skipped_ids),
                "xp": self._timeline.calculate_xp(self.registry) if self._timeline else 0,
            },
        ))

    # ===== Sink calls =====

    def _call_sink(self, operation: str, feature_id: str, *args: Any) -> bool:
        method = getattr(self.sink, operation)
        started = time.perf_counter()
        error: Optional[SinkError] = None
        try:
            result = method(feature_id, *args)
        except Exception as exc:
            error = SinkError(operation, feature_id, exc)
        else:
            if result is False:
                error = SinkError(operation, feature_id)

        duration_ms = (time.perf_counter() - started) * 1000.0
        if duration_ms > self.config.slow_sink_warn_ms:
            self.logger.warning(
                f"[perf] Sink {operation} for '{feature_id}' took {duration_ms:.1f}ms "
                f"(limit {self.config.slow_sink_warn_ms:g}ms)"
            )

        if error is None:
            return True
        self._report_sink_error(error)
        return False

    def _report_sink_error(self, error: SinkError) -> None:
        self._record_recovered(error)
        if error.operation == "update_ramp":
            sampler = self._ramp_failure_samplers.get(error.feature_id)
            if sampler is not None:
                repeated = sampler.record()
                if repeated:
                    self.logger.warning(
                        f"[scheduler] {repeated} more update_ramp failures for '{error.feature_id}'"
                    )
                return
            self._ramp_failure_samplers[error.feature_id] = BurstSampler(
                self.config.error_sample_interval_s, clock=self._clock
            )

        self.logger.error(f"[scheduler] {error} (playback continues)", exc_info=error.cause)
        self.event_emitter.emit(SessionEvent(
            SessionEventType.ERROR,
            data={"kind": "sink", "operation": error.operation, "feature_id": error.feature_id, "message": str(error)},
        ))

    def _record_recovered(self, error: MesmerLineError) -> None:
        self.recovered_errors.append(error)
        if len(self.recovered_errors) > _MAX_RECOVERED_ERRORS:
            del self.recovered_errors[:-_MAX_RECOVERED_ERRORS]
