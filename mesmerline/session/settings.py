"""Settings resolution: stored event values -> concrete typed values.

Every declared setting of a feature gets a value. Stored values are used when
they match the declaration; mismatches are coerced where possible and
otherwise replaced by the declared default (or the type's fallback).
Coercion failures never abort resolution.
"""

from __future__ import annotations

import logging
import math
import os
from typing import Any, Callable, Dict, List, Optional

from ..errors import ValueCoercionError
from ..features.registry import FeatureDefinition, FeatureSettingDefinition, SettingType
from .timeline import TimelineEvent

logger = logging.getLogger(__name__)

_TRUE_WORDS = {"1", "true", "yes", "on", "enabled"}
_FALSE_WORDS = {"0", "false", "no", "off", "disabled", ""}

_MISSING = object()


def _coerce_number(value: Any, setting: FeatureSettingDefinition) -> float | int:
    if isinstance(value, bool):
        raise TypeError("bool is not a slider value")
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        text = value.strip().rstrip("%").strip()
        number = float(text)
    else:
        raise TypeError(f"{type(value).__name__} is not numeric")
    if isinstance(number, float) and not math.isfinite(number):
        raise ValueError("non-finite number")
    if isinstance(number, float) and number.is_integer():
        number = int(number)
    return max(setting.min, min(setting.max, number))


def _coerce_bool(value: Any, setting: FeatureSettingDefinition) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ValueError(f"{value!r} is not a boolean")


def _coerce_option(value: Any, setting: FeatureSettingDefinition) -> str:
    if isinstance(value, str):
        if value in setting.options:
            return value
        lowered = value.strip().lower()
        for option in setting.options:
            if option.lower() == lowered:
                return option
    elif isinstance(value, int) and not isinstance(value, bool) and 0 <= value < len(setting.options):
        # Older editors stored the selected index
        return setting.options[value]
    raise ValueError(f"{value!r} is not one of {list(setting.options)}")


def _coerce_path(value: Any, setting: FeatureSettingDefinition) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, os.PathLike):
        return os.fspath(value)
    raise TypeError(f"{type(value).__name__} is not a path")


def _coerce_text_list(value: Any, setting: FeatureSettingDefinition) -> List[str]:
    if isinstance(value, str):
        return [line.strip() for line in value.splitlines() if line.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    raise TypeError(f"{type(value).__name__} is not a list of phrases")


_COERCERS: Dict[SettingType, Callable[[Any, FeatureSettingDefinition], Any]] = {
    SettingType.SLIDER: _coerce_number,
    SettingType.TOGGLE: _coerce_bool,
    SettingType.DROPDOWN: _coerce_option,
    SettingType.FILE_PICKER: _coerce_path,
    SettingType.TEXT_LIST: _coerce_text_list,
}


def _matches(value: Any, setting: FeatureSettingDefinition) -> bool:
    """Exact type match, no coercion needed."""
    kind = setting.type
    if kind is SettingType.SLIDER:
        return (
            isinstance(value, (int, float))
            and not isinstance(value, bool)
            and setting.min <= value <= setting.max
        )
    if kind is SettingType.TOGGLE:
        return isinstance(value, bool)
    if kind is SettingType.DROPDOWN:
        return isinstance(value, str) and value in setting.options
    if kind is SettingType.FILE_PICKER:
        return isinstance(value, str)
    if kind is SettingType.TEXT_LIST:
        return isinstance(value, list) and all(isinstance(item, str) for item in value)
    return False


def fallback_value(setting: FeatureSettingDefinition) -> Any:
    """Declared default, else the type's neutral value."""
    if setting.default is not None:
        if setting.type is SettingType.TEXT_LIST:
            return list(setting.default)
        return setting.default
    kind = setting.type
    if kind is SettingType.SLIDER:
        minimum = setting.min if setting.min is not None else 0
        return int(minimum) if float(minimum).is_integer() else minimum
    if kind is SettingType.TOGGLE:
        return False
    if kind is SettingType.DROPDOWN:
        return setting.options[0] if setting.options else ""
    if kind is SettingType.TEXT_LIST:
        return []
    return ""


class SettingsResolver:
    """
    Resolves the concrete settings a Start event activates its feature with.

    Example:
        resolver = SettingsResolver()
        values = resolver.resolve(event, registry.get(event.feature_id))
        values["opacity"]  # stored value, coerced value, or default
    """

    def __init__(self, on_coercion_error: Optional[Callable[[ValueCoercionError], None]] = None):
        """
        Args:
            on_coercion_error: Optional observer for recovered coercion errors
        """
        self._on_coercion_error = on_coercion_error

    def resolve(self, event: TimelineEvent, feature: FeatureDefinition) -> Dict[str, Any]:
        """Return a value for every setting ``feature`` declares.

        Stop events resolve to an empty mapping.
        """
        if event.is_stop:
            return {}

        resolved: Dict[str, Any] = {}
        for setting in feature.settings:
            stored = event.settings.get(setting.key, _MISSING)
            if setting.supports_ramp and feature.supports_ramping and event.has_ramp:
                stored = ramp_start_value(event, setting)
            resolved[setting.key] = self._resolve_one(feature, setting, stored)

        extra = set(event.settings) - set(resolved)
        if extra:
            logger.debug("[settings] %s: ignoring undeclared keys %s", feature.id, sorted(extra))
        return resolved

    def _resolve_one(self, feature: FeatureDefinition, setting: FeatureSettingDefinition, stored: Any) -> Any:
        if stored is _MISSING or stored is None:
            return fallback_value(setting)
        if _matches(stored, setting):
            return list(stored) if setting.type is SettingType.TEXT_LIST else stored

        try:
            coerced = _COERCERS[setting.type](stored, setting)
        except (TypeError, ValueError) as exc:
            error = ValueCoercionError(feature.id, setting.key, stored, setting.type.value)
            logger.warning("[settings] %s; using fallback (%s)", error, exc)
            if self._on_coercion_error is not None:
                try:
                    self._on_coercion_error(error)
                except Exception as cb_exc:
                    logger.error("[settings] Coercion observer failed: %s", cb_exc, exc_info=True)
            return fallback_value(setting)

        logger.debug("[settings] %s.%s coerced %r -> %r", feature.id, setting.key, stored, coerced)
        return coerced


def ramp_start_value(event: TimelineEvent, setting: FeatureSettingDefinition) -> int:
    """Start value of an event's ramp, defaulting to the setting's default/min."""
    if event.start_value is not None:
        return int(event.start_value)
    return int(fallback_value(setting))


def ramp_end_value(event: TimelineEvent, setting: FeatureSettingDefinition) -> int:
    """End value of an event's ramp; a missing end holds the start value."""
    if event.end_value is not None:
        return int(event.end_value)
    return ramp_start_value(event, setting)
