"""
Timeline playback for MesmerLine.

This package turns an authored Timeline of feature Start/Stop events into
calls on feature back-ends while a session runs.

Core Components:
- Timeline / TimelineEvent: authored events on a minute axis
- SettingsResolver: stored values -> concrete typed settings
- interpolate_ramp: live values for ramp-capable settings
- PlaybackScheduler: execution engine driven by a periodic tick
- FeatureSink: the boundary every back-end implements
"""

from .timeline import (
    Timeline,
    TimelineEvent,
    TimelineEventType,
    SessionPhase,
    PairingResult,
    SESSION_FILE_SUFFIX,
)

from .settings import SettingsResolver

from .ramp import interpolate_ramp, ramp_ratio

from .events import (
    SessionEventType,
    SessionEvent,
    SessionEventEmitter
)

from .sinks import (
    FeatureSink,
    NullSink,
    LoggingSink,
    RecordingSink,
    RoutingSink,
)

from .scheduler import PlaybackScheduler, SchedulerState

from .driver import AsyncTickDriver, QtTickDriver, run_blocking

__all__ = [
    # Timeline model
    'Timeline',
    'TimelineEvent',
    'TimelineEventType',
    'SessionPhase',
    'PairingResult',
    'SESSION_FILE_SUFFIX',

    # Resolution
    'SettingsResolver',
    'interpolate_ramp',
    'ramp_ratio',

    # Events
    'SessionEventType',
    'SessionEvent',
    'SessionEventEmitter',

    # Sinks
    'FeatureSink',
    'NullSink',
    'LoggingSink',
    'RecordingSink',
    'RoutingSink',

    # Execution
    'PlaybackScheduler',
    'SchedulerState',
    'AsyncTickDriver',
    'QtTickDriver',
    'run_blocking',
]
