"""Tests for PlaybackScheduler.

Validates:
- Event processing order and exactly-once semantics
- Ramp delivery (activate, per-tick updates, final value on stop)
- Synthetic stops at session end
- Pause/resume shifting wall-clock times only
- Cancellation deactivating every active feature first
- Sink failure recovery and sampling
- Invalid transitions returning False with SchedulerStateError
- Staged reloads, phases and progress reporting
"""

import logging
import time

import pytest

from mesmerline.config import PlaybackConfig
from mesmerline.errors import ConfigurationError, SchedulerStateError, SinkError, TimelineValidationError
from mesmerline.features.registry import FeatureDefinition, FeatureRegistry, FeatureSettingDefinition, SettingType
from mesmerline.session import (
    PlaybackScheduler,
    RecordingSink,
    SchedulerState,
    SessionEventEmitter,
    SessionEventType,
    Timeline,
    TimelineEvent,
    TimelineEventType,
)

MINUTE = 60.0


@pytest.fixture
def test_registry():
    return FeatureRegistry([
        FeatureDefinition(
            id="glow",
            name="Glow",
            supports_ramping=True,
            settings=(
                FeatureSettingDefinition("opacity", SettingType.SLIDER, min=0, max=100, default=50, supports_ramp=True),
                FeatureSettingDefinition("color", SettingType.DROPDOWN, options=("pink", "blue"), default="pink"),
            ),
        ),
        FeatureDefinition(
            id="hum",
            name="Hum",
            settings=(FeatureSettingDefinition("volume", SettingType.SLIDER, min=0, max=100, default=30),),
        ),
        FeatureDefinition(
            id="spark",
            name="Spark",
            settings=(FeatureSettingDefinition("bright", SettingType.TOGGLE, default=False),),
        ),
    ])


@pytest.fixture
def emitter():
    return SessionEventEmitter()


@pytest.fixture
def make_scheduler(test_registry, sink, emitter, clock):
    def _make(**config_overrides):
        config = PlaybackConfig(**config_overrides)
        return PlaybackScheduler(test_registry, sink, event_emitter=emitter, config=config, clock=clock)
    return _make


@pytest.fixture
def scheduler(make_scheduler):
    return make_scheduler()


@pytest.fixture
def glow_timeline():
    tl = Timeline(name="Glow", session_length=12)
    tl.add_feature_interval("glow", 2, 10, start_value=10, end_value=90)
    return tl


def _collect(emitter, *event_types):
    events = []
    for event_type in event_types:
        emitter.subscribe(event_type, events.append)
    return events


def _advance_minutes(scheduler, clock, minutes):
    clock.advance(minutes * MINUTE)
    scheduler.tick()


class TestGlowScenario:
    def test_activate_then_ramp_then_final_value_and_deactivate(self, scheduler, sink, clock, glow_timeline):
        scheduler.load(glow_timeline)
        assert scheduler.start()
        assert sink.calls == []

        _advance_minutes(scheduler, clock, 2)
        assert sink.operations("glow") == [("activate", {"opacity": 10, "color": "pink"}), ("update_ramp", 10)]

        _advance_minutes(scheduler, clock, 4)
        assert sink.ramp_history("glow")[-1] == 50

        _advance_minutes(scheduler, clock, 4)
        assert sink.operations("glow")[-2:] == [("update_ramp", 90), ("deactivate", None)]
        assert scheduler.active_features == []

        _advance_minutes(scheduler, clock, 2)
        assert scheduler.state is SchedulerState.COMPLETED
        assert sink.ramp_history("glow") == [10, 50, 90]

    def test_intermediate_ticks_interpolate(self, make_scheduler, sink, clock, glow_timeline):
        scheduler = make_scheduler()
        scheduler.load(glow_timeline)
        scheduler.start()
        for _ in range(10 * 4):
            clock.advance(MINUTE / 4)
            scheduler.tick()
        history = sink.ramp_history("glow")
        assert history == sorted(history)
        assert history[0] == 10
        assert history[-1] == 90
        assert all(10 <= value <= 90 for value in history)


class TestEventProcessing:
    def test_every_event_processed_once_in_minute_order(self, scheduler, clock):
        tl = Timeline(name="Busy", session_length=20)
        tl.add_feature_interval("hum", 5, 9)
        tl.add_feature_interval("glow", 0, 15, start_value=0, end_value=100)
        tl.add_feature_interval("spark", 5, 6)
        tl.add_feature_interval("hum", 12, 18)
        scheduler.load(tl)
        scheduler.start()
        for _ in range(25):
            _advance_minutes(scheduler, clock, 1)

        processed = scheduler.processed_event_ids
        assert sorted(processed) == sorted(e.id for e in tl.events)
        assert len(processed) == len(set(processed))
        minutes = [tl.get_event(event_id).minute for event_id in processed]
        assert minutes == sorted(minutes)
        assert processed == [e.id for e in tl.sorted_events()]

    def test_minute_zero_events_fire_on_start(self, scheduler, sink):
        tl = Timeline(name="Immediate", session_length=5)
        tl.add_start_event("hum", 0, settings={"volume": 70})
        scheduler.load(tl)
        scheduler.start()
        assert sink.operations("hum") == [("activate", {"volume": 70})]

    def test_late_tick_processes_start_and_stop_together(self, scheduler, sink, clock, glow_timeline):
        scheduler.load(glow_timeline)
        scheduler.start()
        _advance_minutes(scheduler, clock, 11)
        assert sink.operations("glow") == [
            ("activate", {"opacity": 10, "color": "pink"}),
            ("update_ramp", 90),
            ("deactivate", None),
        ]
        assert scheduler.is_running()

    def test_every_activate_matched_by_one_deactivate(self, scheduler, sink, clock):
        tl = Timeline(name="Pairs", session_length=10)
        tl.add_feature_interval("hum", 1, 3)
        tl.add_feature_interval("hum", 4, 6)
        tl.add_start_event("spark", 2)
        tl.add_start_event("glow", 7, start_value=20)
        scheduler.load(tl)
        scheduler.start()
        _advance_minutes(scheduler, clock, 5)
        _advance_minutes(scheduler, clock, 10)
        assert scheduler.is_completed()

        for feature_id in ("hum", "spark", "glow"):
            ops = [op for op, _ in sink.operations(feature_id) if op != "update_ramp"]
            # Strict alternation: activate, deactivate, activate, ...
            assert ops == ["activate", "deactivate"] * (len(ops) // 2)
            assert ops
        assert sink.active == {}


class TestSessionEnd:
    def test_open_start_ramps_to_session_length_and_closes(self, scheduler, sink, clock):
        tl = Timeline(name="Open", session_length=12)
        tl.add_start_event("glow", 4, start_value=10, end_value=90)
        scheduler.load(tl)
        scheduler.start()

        _advance_minutes(scheduler, clock, 8)
        assert sink.ramp_history("glow")[-1] == 50

        _advance_minutes(scheduler, clock, 4)
        assert sink.operations("glow")[-2:] == [("update_ramp", 90), ("deactivate", None)]
        assert scheduler.is_completed()

    def test_completion_emits_session_end_once(self, scheduler, emitter, clock, glow_timeline):
        ends = _collect(emitter, SessionEventType.SESSION_END)
        scheduler.load(glow_timeline)
        scheduler.start()
        _advance_minutes(scheduler, clock, 30)
        scheduler.tick()
        assert len(ends) == 1
        assert ends[0].data["processed_events"] == 2
        assert ends[0].data["xp"] == 12
        assert scheduler.progress_percent == 100.0
        assert scheduler.remaining_minutes == 0.0

    def test_session_end_xp_includes_feature_bonus(self, sink, emitter, clock):
        registry = FeatureRegistry([
            FeatureDefinition(id="hum", name="Hum", xp_bonus=25),
            FeatureDefinition(id="spark", name="Spark", xp_bonus=5),
        ])
        scheduler = PlaybackScheduler(
            registry, sink, event_emitter=emitter, config=PlaybackConfig(), clock=clock
        )
        ends = _collect(emitter, SessionEventType.SESSION_END)
        tl = Timeline(name="Bonus", session_length=4)
        tl.add_feature_interval("hum", 0, 1)
        tl.add_feature_interval("hum", 2, 3)
        scheduler.load(tl)
        scheduler.start()
        _advance_minutes(scheduler, clock, 4)
        assert ends[0].data["xp"] == 4 + 25

    def test_tick_after_completion_is_noop(self, scheduler, sink, clock, glow_timeline):
        scheduler.load(glow_timeline)
        scheduler.start()
        _advance_minutes(scheduler, clock, 12)
        calls = len(sink.calls)
        _advance_minutes(scheduler, clock, 5)
        assert len(sink.calls) == calls

    def test_restart_after_completion(self, scheduler, sink, clock, glow_timeline):
        scheduler.load(glow_timeline)
        scheduler.start()
        _advance_minutes(scheduler, clock, 12)
        assert scheduler.start()
        assert scheduler.is_running()
        assert scheduler.processed_event_ids == []
        assert scheduler.elapsed_minutes == 0.0


class TestPauseResume:
    def test_pause_shifts_wall_clock_not_minutes(self, scheduler, emitter, clock):
        tl = Timeline(name="Pause", session_length=10)
        tl.add_feature_interval("hum", 3, 6)
        scheduler.load(tl)
        activations = []
        emitter.subscribe(SessionEventType.FEATURE_ACTIVATED, lambda evt: activations.append(clock.now))

        t0 = clock.now
        scheduler.start()
        _advance_minutes(scheduler, clock, 2)
        assert scheduler.pause()
        clock.advance(10 * MINUTE)
        scheduler.tick()
        assert scheduler.elapsed_minutes == pytest.approx(2.0)
        assert activations == []

        assert scheduler.resume()
        assert scheduler.elapsed_minutes == pytest.approx(2.0)
        _advance_minutes(scheduler, clock, 1)
        assert activations == [t0 + 13 * MINUTE]

    def test_paused_features_receive_no_calls(self, scheduler, sink, clock, glow_timeline):
        scheduler.load(glow_timeline)
        scheduler.start()
        _advance_minutes(scheduler, clock, 4)
        scheduler.pause()
        calls = len(sink.calls)
        for _ in range(5):
            _advance_minutes(scheduler, clock, 1)
        assert len(sink.calls) == calls
        assert scheduler.active_ramps["glow"].last_value == 30

    def test_pause_and_resume_events(self, scheduler, emitter, glow_timeline):
        events = _collect(emitter, SessionEventType.SESSION_PAUSE, SessionEventType.SESSION_RESUME)
        scheduler.load(glow_timeline)
        scheduler.start()
        scheduler.pause()
        scheduler.resume()
        assert [e.event_type for e in events] == [SessionEventType.SESSION_PAUSE, SessionEventType.SESSION_RESUME]


class _StateProbeSink(RecordingSink):
    """Records the scheduler state seen during each deactivate call."""

    def __init__(self):
        super().__init__()
        self.scheduler = None
        self.states_on_deactivate = []

    def deactivate(self, feature_id):
        self.states_on_deactivate.append(self.scheduler.state)
        return super().deactivate(feature_id)


class TestCancel:
    def test_cancel_deactivates_all_before_cancelled(self, test_registry, emitter, clock):
        sink = _StateProbeSink()
        scheduler = PlaybackScheduler(test_registry, sink, event_emitter=emitter, clock=clock)
        sink.scheduler = scheduler
        seen_on_stop = []
        emitter.subscribe(SessionEventType.SESSION_STOP, lambda evt: seen_on_stop.append(dict(sink.active)))

        tl = Timeline(name="Cancel", session_length=30)
        tl.add_start_event("hum", 0)
        tl.add_start_event("glow", 1, start_value=10, end_value=20)
        scheduler.load(tl)
        scheduler.start()
        _advance_minutes(scheduler, clock, 2)
        assert set(sink.active) == {"hum", "glow"}

        assert scheduler.stop()
        assert scheduler.state is SchedulerState.CANCELLED
        assert sorted(c.feature_id for c in sink.calls if c.operation == "deactivate") == ["glow", "hum"]
        assert sink.states_on_deactivate == [SchedulerState.RUNNING, SchedulerState.RUNNING]
        assert seen_on_stop == [{}]

    def test_cancel_while_paused(self, scheduler, sink, clock, glow_timeline):
        scheduler.load(glow_timeline)
        scheduler.start()
        _advance_minutes(scheduler, clock, 3)
        scheduler.pause()
        clock.advance(5 * MINUTE)
        assert scheduler.stop()
        assert sink.active == {}
        assert scheduler.elapsed_minutes == pytest.approx(3.0)

    def test_stop_from_inside_sink_callback(self, test_registry, emitter, clock):
        class _StopOnActivate(RecordingSink):
            def activate(self, feature_id, settings):
                result = super().activate(feature_id, settings)
                scheduler.stop()
                return result

        sink = _StopOnActivate()
        scheduler = PlaybackScheduler(test_registry, sink, event_emitter=emitter, clock=clock)
        tl = Timeline(name="Abort", session_length=10)
        tl.add_start_event("hum", 0)
        tl.add_start_event("spark", 0)
        scheduler.load(tl)
        scheduler.start()
        assert scheduler.is_cancelled()
        assert sink.operations() == [("activate", {"volume": 30}), ("deactivate", None)]


class TestStateErrors:
    def test_pause_when_idle(self, scheduler, emitter, glow_timeline):
        errors = _collect(emitter, SessionEventType.ERROR)
        scheduler.load(glow_timeline)
        assert scheduler.pause() is False
        assert isinstance(scheduler.last_error, SchedulerStateError)
        assert scheduler.last_error.action == "pause"
        assert errors[0].data["kind"] == "state"
        assert scheduler.is_idle()

    def test_start_without_timeline(self, scheduler):
        assert scheduler.start() is False
        assert "no timeline loaded" in str(scheduler.last_error)

    @pytest.mark.parametrize("action", ["start", "resume"])
    def test_invalid_while_running(self, scheduler, glow_timeline, action):
        scheduler.load(glow_timeline)
        scheduler.start()
        assert getattr(scheduler, action)() is False
        assert scheduler.last_error.state == "RUNNING"
        assert scheduler.is_running()

    def test_stop_when_not_running(self, scheduler):
        assert scheduler.stop() is False
        assert scheduler.last_error.action == "stop"

    def test_last_error_cleared_by_next_start(self, scheduler, glow_timeline):
        scheduler.load(glow_timeline)
        scheduler.resume()
        assert scheduler.last_error is not None
        scheduler.start()
        assert scheduler.last_error is None


class TestLoading:
    def test_invalid_timeline_rejected(self, scheduler):
        tl = Timeline(name="Orphan", session_length=10, events=[
            TimelineEvent(feature_id="hum", event_type=TimelineEventType.STOP, minute=3),
        ])
        with pytest.raises(TimelineValidationError):
            scheduler.load(tl)
        assert scheduler.timeline is None

    def test_out_of_range_ramp_rejected(self, scheduler):
        tl = Timeline(name="Too bright", session_length=10)
        tl.add_start_event("glow", 0, start_value=10, end_value=150)
        with pytest.raises(TimelineValidationError):
            scheduler.load(tl)

    def test_snapshot_isolated_from_authoring(self, scheduler, sink, clock, glow_timeline):
        scheduler.load(glow_timeline)
        glow_timeline.events[0].minute = 0
        glow_timeline.events[0].start_value = 70
        scheduler.start()
        assert sink.calls == []
        _advance_minutes(scheduler, clock, 2)
        assert sink.ramp_history("glow") == [10]

    def test_load_during_run_is_staged(self, scheduler, sink, clock, glow_timeline):
        scheduler.load(glow_timeline)
        scheduler.start()
        other = Timeline(name="Other", session_length=5)
        other.add_start_event("hum", 0)
        scheduler.load(other)
        assert scheduler.has_staged_timeline
        assert scheduler.timeline.name == "Glow"

        scheduler.stop()
        scheduler.start()
        assert scheduler.timeline.name == "Other"
        assert not scheduler.has_staged_timeline
        assert sink.operations("hum") == [("activate", {"volume": 30})]

    def test_load_after_completed_run_zeroes_status(self, scheduler, clock, glow_timeline):
        scheduler.load(glow_timeline)
        scheduler.start()
        _advance_minutes(scheduler, clock, 12)
        assert scheduler.is_completed()

        scheduler.load(Timeline(name="Next", session_length=30))
        clock.advance(10 * MINUTE)

        status = scheduler.get_status()
        assert status["state"] == "IDLE"
        assert status["timeline"] == "Next"
        assert status["elapsed_minutes"] == 0.0
        assert status["remaining_minutes"] == 30.0
        assert status["progress_percent"] == 0.0
        assert status["processed_events"] == 0
        assert status["total_events"] == 0
        assert status["phase"] is None
        assert scheduler.skipped_event_ids == []

    def test_unknown_feature_skipped(self, scheduler, sink, clock):
        tl = Timeline(name="Future", session_length=6)
        tl.add_feature_interval("hologram", 1, 3)
        tl.add_feature_interval("hum", 1, 3)
        scheduler.load(tl)
        assert any(isinstance(e, ConfigurationError) for e in scheduler.recovered_errors)
        scheduler.start()
        _advance_minutes(scheduler, clock, 6)

        assert scheduler.is_completed()
        assert sink.calls_for("hologram") == []
        assert [op for op, _ in sink.operations("hum")] == ["activate", "deactivate"]
        hologram_ids = {e.id for e in tl.events_for_feature("hologram")}
        assert set(scheduler.skipped_event_ids) == hologram_ids


class TestSinkFailures:
    def test_failed_activate_still_deactivates(self, test_registry, emitter, clock):
        sink = RecordingSink(fail_on={("activate", "hum")})
        errors = _collect(emitter, SessionEventType.ERROR)
        scheduler = PlaybackScheduler(test_registry, sink, event_emitter=emitter, clock=clock)
        tl = Timeline(name="Broken", session_length=5)
        tl.add_feature_interval("hum", 0, 2)
        tl.add_start_event("spark", 1)
        scheduler.load(tl)
        scheduler.start()
        _advance_minutes(scheduler, clock, 5)

        assert scheduler.is_completed()
        assert [op for op, _ in sink.operations("hum")] == ["activate", "deactivate"]
        assert [op for op, _ in sink.operations("spark")] == ["activate", "deactivate"]
        assert [e.data["kind"] for e in errors] == ["sink"]
        assert isinstance(scheduler.recovered_errors[-1], SinkError)

    def test_false_return_is_a_failure(self, test_registry, clock):
        sink = RecordingSink(fail_on={("deactivate", "hum")}, raise_errors=False)
        scheduler = PlaybackScheduler(test_registry, sink, clock=clock)
        tl = Timeline(name="Quiet failure", session_length=3)
        tl.add_feature_interval("hum", 0, 1)
        scheduler.load(tl)
        scheduler.start()
        _advance_minutes(scheduler, clock, 3)
        assert scheduler.is_completed()
        errors = [e for e in scheduler.recovered_errors if isinstance(e, SinkError)]
        assert [(e.operation, e.feature_id) for e in errors] == [("deactivate", "hum")]

    def test_repeated_ramp_failures_are_sampled(self, test_registry, emitter, clock, caplog):
        sink = RecordingSink(fail_on={("update_ramp", "glow")})
        errors = _collect(emitter, SessionEventType.ERROR)
        config = PlaybackConfig(minute_seconds=1.0, error_sample_interval_s=5.0)
        scheduler = PlaybackScheduler(test_registry, sink, event_emitter=emitter, config=config, clock=clock)
        tl = Timeline(name="Flaky", session_length=60)
        tl.add_start_event("glow", 0, start_value=0, end_value=60)
        scheduler.load(tl)

        with caplog.at_level(logging.WARNING, logger="mesmerline.session.scheduler"):
            scheduler.start()
            for _ in range(5):
                clock.advance(1.0)
                scheduler.tick()

        assert len(sink.ramp_history("glow")) == 6
        assert len(errors) == 1
        assert "5 more update_ramp failures for 'glow'" in caplog.text
        assert scheduler.is_running()

    def test_slow_sink_warns(self, test_registry, clock, caplog):
        class _SlowSink(RecordingSink):
            def activate(self, feature_id, settings):
                time.sleep(0.01)
                return super().activate(feature_id, settings)

        scheduler = PlaybackScheduler(
            test_registry, _SlowSink(), config=PlaybackConfig(slow_sink_warn_ms=1.0), clock=clock
        )
        tl = Timeline(name="Slow", session_length=2)
        tl.add_start_event("hum", 0)
        scheduler.load(tl)
        with caplog.at_level(logging.WARNING, logger="mesmerline.session.scheduler"):
            scheduler.start()
        assert "[perf] Sink activate for 'hum'" in caplog.text


class TestReentrancy:
    def test_tick_from_sink_is_ignored(self, test_registry, clock, caplog):
        class _TickingSink(RecordingSink):
            def activate(self, feature_id, settings):
                scheduler.tick()
                return super().activate(feature_id, settings)

        sink = _TickingSink()
        scheduler = PlaybackScheduler(test_registry, sink, clock=clock)
        tl = Timeline(name="Reentrant", session_length=5)
        tl.add_start_event("hum", 0)
        tl.add_start_event("spark", 0)
        scheduler.load(tl)
        with caplog.at_level(logging.WARNING, logger="mesmerline.session.scheduler"):
            scheduler.start()
        assert [c.feature_id for c in sink.calls] == ["hum", "spark"]
        assert "Re-entrant tick ignored" in caplog.text


class TestIntrospection:
    def test_progress_and_status(self, scheduler, clock, glow_timeline):
        glow_timeline.add_phase(0, "Induction")
        glow_timeline.add_phase(5, "Deepener")
        scheduler.load(glow_timeline)
        scheduler.start()
        _advance_minutes(scheduler, clock, 6)

        assert scheduler.elapsed_minutes == pytest.approx(6.0)
        assert scheduler.remaining_minutes == pytest.approx(6.0)
        assert scheduler.progress_percent == pytest.approx(50.0)
        assert scheduler.current_phase.name == "Deepener"

        status = scheduler.get_status()
        assert status["state"] == "RUNNING"
        assert status["active_features"] == ["glow"]
        assert status["ramps"] == {"glow": 50}
        assert status["phase"] == "Deepener"
        assert status["processed_events"] == 1
        assert status["total_events"] == 2

    def test_phase_events(self, scheduler, emitter, clock, glow_timeline):
        phases = _collect(emitter, SessionEventType.PHASE_CHANGED)
        glow_timeline.add_phase(0, "Induction")
        glow_timeline.add_phase(5, "Deepener")
        scheduler.load(glow_timeline)
        scheduler.start()
        for _ in range(12):
            _advance_minutes(scheduler, clock, 1)
        assert [e.data["name"] for e in phases] == ["Induction", "Deepener"]

    def test_progress_event_each_tick(self, scheduler, emitter, clock, glow_timeline):
        progress = _collect(emitter, SessionEventType.PROGRESS)
        scheduler.load(glow_timeline)
        scheduler.start()
        _advance_minutes(scheduler, clock, 3)
        assert len(progress) == 2
        assert progress[-1].data["elapsed_minutes"] == pytest.approx(3.0)

    def test_elapsed_never_decreases(self, scheduler, clock, glow_timeline):
        scheduler.load(glow_timeline)
        scheduler.start()
        _advance_minutes(scheduler, clock, 4)
        clock.advance(-2 * MINUTE)
        scheduler.tick()
        assert scheduler.elapsed_minutes == pytest.approx(4.0)

    def test_session_start_event(self, scheduler, emitter, glow_timeline):
        starts = _collect(emitter, SessionEventType.SESSION_START)
        scheduler.load(glow_timeline)
        scheduler.start()
        assert starts[0].data == {"timeline": "Glow", "session_length": 12, "event_count": 2}
