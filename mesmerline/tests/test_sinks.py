"""Tests for the stock feature sinks."""

import logging
from unittest.mock import Mock

import pytest

from mesmerline.session.sinks import FeatureSink, LoggingSink, NullSink, RecordingSink, RoutingSink


class TestRecordingSink:
    def test_tracks_active_features_and_ramps(self):
        sink = RecordingSink()
        sink.activate("spiral", {"opacity": 15})
        sink.update_ramp("spiral", 20)
        assert sink.active == {"spiral": {"opacity": 15}}
        assert sink.ramp_values == {"spiral": 20}
        sink.deactivate("spiral")
        assert sink.active == {}
        assert sink.operations() == [
            ("activate", {"opacity": 15}),
            ("update_ramp", 20),
            ("deactivate", None),
        ]

    def test_deactivate_is_idempotent(self):
        sink = RecordingSink()
        assert sink.deactivate("spiral") is True
        assert sink.deactivate("spiral") is True

    def test_fail_on_raises_or_returns_false(self):
        with pytest.raises(RuntimeError):
            RecordingSink(fail_on={("activate", "flash")}).activate("flash", {})
        quiet = RecordingSink(fail_on={("activate", "flash")}, raise_errors=False)
        assert quiet.activate("flash", {}) is False
        assert quiet.active == {}
        assert len(quiet.calls) == 1

    def test_settings_are_copied(self):
        sink = RecordingSink()
        settings = {"opacity": 15}
        sink.activate("spiral", settings)
        settings["opacity"] = 99
        assert sink.calls[0].payload == {"opacity": 15}


class TestLoggingSink:
    def test_logs_ramp_only_on_change(self, caplog):
        sink = LoggingSink(logger=logging.getLogger("test.sink"))
        with caplog.at_level(logging.INFO, logger="test.sink"):
            sink.activate("spiral", {"opacity": 15})
            sink.update_ramp("spiral", 20)
            sink.update_ramp("spiral", 20)
            sink.update_ramp("spiral", 21)
            sink.deactivate("spiral")
        ramp_lines = [r for r in caplog.records if "ramp" in r.getMessage()]
        assert len(ramp_lines) == 2
        assert "deactivate spiral" in caplog.text


class TestRoutingSink:
    def test_routes_by_feature(self):
        audio = Mock(spec=FeatureSink)
        fallback = RecordingSink()
        sink = RoutingSink({"audio_whispers": audio}, fallback=fallback)
        sink.activate("audio_whispers", {"volume": 50})
        sink.activate("spiral", {"opacity": 15})
        audio.activate.assert_called_once_with("audio_whispers", {"volume": 50})
        assert list(fallback.active) == ["spiral"]

    def test_unrouted_without_fallback(self):
        sink = RoutingSink()
        with pytest.raises(LookupError):
            sink.deactivate("spiral")

    def test_register_and_unregister(self):
        sink = RoutingSink(fallback=NullSink())
        backend = RecordingSink()
        sink.register("flash", backend)
        sink.update_ramp("flash", 40)
        assert backend.ramp_values == {"flash": 40}
        assert sink.unregister("flash") is backend
        assert sink.update_ramp("flash", 50) is True
        assert backend.ramp_history("flash") == [40]


def test_feature_sink_is_abstract():
    with pytest.raises(TypeError):
        FeatureSink()
