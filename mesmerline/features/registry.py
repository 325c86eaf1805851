"""
Feature Definitions - Schema of every effect a timeline can schedule.

A FeatureDefinition describes one pluggable effect (audio cue, overlay,
flash images...) and the settings it accepts. Definitions are immutable and
held by a FeatureRegistry for the life of the process; the registry never
knows how a feature is rendered, only what it accepts.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..errors import ConfigurationError


class FeatureCategory(Enum):
    """Grouping used by editors and listings."""
    AUDIO = "audio"
    VIDEO = "video"
    OVERLAYS = "overlays"
    INTERACTIVE = "interactive"
    EXTRAS = "extras"


class SettingType(Enum):
    """Tag of a setting declaration; decides resolution and coercion rules."""
    SLIDER = "slider"  # Numeric range [min, max]
    TOGGLE = "toggle"  # Boolean
    DROPDOWN = "dropdown"  # One of ``options``
    FILE_PICKER = "file_picker"  # Path string
    TEXT_LIST = "text_list"  # List of phrases

    @property
    def is_numeric(self) -> bool:
        return self is SettingType.SLIDER


@dataclass(frozen=True)
class FeatureSettingDefinition:
    """
    Declaration of a single setting within a feature.

    Attributes:
        key: Identifier, unique within the feature
        type: Setting tag (slider/toggle/dropdown/file picker/text list)
        name: Display label
        min: Lower bound (sliders only)
        max: Upper bound (sliders only)
        default: Typed default value (None = use the type's fallback)
        options: Allowed values (dropdowns only)
        supports_ramp: True for the one setting eligible for start/end ramping
    """
    key: str
    type: SettingType
    name: str = ""
    min: Optional[float] = None
    max: Optional[float] = None
    default: Any = None
    options: Tuple[str, ...] = ()
    supports_ramp: bool = False

    def __post_init__(self):
        if isinstance(self.type, str):
            object.__setattr__(self, "type", SettingType(self.type))
        if not isinstance(self.options, tuple):
            object.__setattr__(self, "options", tuple(self.options or ()))
        if not self.name:
            object.__setattr__(self, "name", self.key)

    def validate(self) -> tuple[bool, str]:
        """
        Validate declaration consistency.

        Returns:
            (is_valid, error_message)
        """
        if not self.key or not self.key.strip():
            return False, "Setting key cannot be empty"

        if self.type.is_numeric:
            if self.min is None or self.max is None:
                return False, f"Slider '{self.key}' needs both min and max"
            if self.min > self.max:
                return False, f"Slider '{self.key}': min ({self.min}) exceeds max ({self.max})"
            if self.default is not None and (
                isinstance(self.default, bool)
                or not isinstance(self.default, (int, float))
                or not (self.min <= self.default <= self.max)
            ):
                return False, f"Slider '{self.key}': default {self.default} outside [{self.min}, {self.max}]"
        elif self.min is not None or self.max is not None:
            return False, f"Setting '{self.key}': min/max only apply to sliders"

        if self.type is SettingType.DROPDOWN:
            if not self.options:
                return False, f"Dropdown '{self.key}' has no options"
            if self.default is not None and self.default not in self.options:
                return False, f"Dropdown '{self.key}': default {self.default!r} is not an option"
        elif self.options:
            return False, f"Setting '{self.key}': options only apply to dropdowns"

        if self.supports_ramp and not self.type.is_numeric:
            return False, f"Setting '{self.key}': only sliders can ramp"

        return True, ""

    def contains(self, value: float) -> bool:
        """True when ``value`` lies within this slider's [min, max]."""
        if not self.type.is_numeric:
            return False
        return self.min <= value <= self.max


@dataclass(frozen=True)
class FeatureDefinition:
    """
    Definition of a feature available to timelines.

    Attributes:
        id: Unique identifier referenced by timeline events
        name: Display name
        supports_ramping: Whether start/end ramp values are accepted
        settings: Ordered setting declarations
        icon: Display glyph for editors
        category: Listing group
        xp_bonus: XP contributed when a session uses this feature
        difficulty_weight: Contribution to the session difficulty score
    """
    id: str
    name: str
    supports_ramping: bool = False
    settings: Tuple[FeatureSettingDefinition, ...] = ()
    icon: str = ""
    category: FeatureCategory = FeatureCategory.EXTRAS
    xp_bonus: int = 0
    difficulty_weight: int = 0

    def __post_init__(self):
        if not isinstance(self.settings, tuple):
            object.__setattr__(self, "settings", tuple(self.settings))
        if isinstance(self.category, str):
            object.__setattr__(self, "category", FeatureCategory(self.category))

    def get_setting(self, key: str) -> Optional[FeatureSettingDefinition]:
        for setting in self.settings:
            if setting.key == key:
                return setting
        return None

    @property
    def ramp_setting(self) -> Optional[FeatureSettingDefinition]:
        """The setting that start/end ramp values drive, if any."""
        for setting in self.settings:
            if setting.supports_ramp:
                return setting
        return None

    @property
    def setting_keys(self) -> List[str]:
        return [s.key for s in self.settings]

    def validate(self) -> tuple[bool, str]:
        """
        Validate the feature and all its setting declarations.

        Returns:
            (is_valid, error_message)
        """
        if not self.id or not self.id.strip():
            return False, "Feature id cannot be empty"

        keys = self.setting_keys
        if len(keys) != len(set(keys)):
            duplicates = sorted({k for k in keys if keys.count(k) > 1})
            return False, f"Duplicate setting keys: {duplicates}"

        for setting in self.settings:
            is_valid, msg = setting.validate()
            if not is_valid:
                return False, msg

        ramp_count = sum(1 for s in self.settings if s.supports_ramp)
        if ramp_count > 1:
            return False, f"At most one ramp setting allowed, found {ramp_count}"
        if self.supports_ramping and ramp_count == 0:
            return False, "supports_ramping requires a setting with supports_ramp"
        if not self.supports_ramping and ramp_count:
            return False, "Ramp setting declared but supports_ramping is False"

        return True, ""

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for listings (CLI --json)."""
        return {
            "id": self.id,
            "name": self.name,
            "icon": self.icon,
            "category": self.category.value,
            "supports_ramping": self.supports_ramping,
            "xp_bonus": self.xp_bonus,
            "difficulty_weight": self.difficulty_weight,
            "settings": [
                {
                    "key": s.key,
                    "name": s.name,
                    "type": s.type.value,
                    "min": s.min,
                    "max": s.max,
                    "default": s.default,
                    "options": list(s.options),
                    "supports_ramp": s.supports_ramp,
                }
                for s in self.settings
            ],
        }


class FeatureRegistry:
    """Read-only catalog of feature definitions keyed by id.

    Example:
        registry = FeatureRegistry.builtin()
        spiral = registry.get("spiral")
        spiral.ramp_setting.key  # "opacity"
    """

    def __init__(self, features: Iterable[FeatureDefinition] = ()):
        self._features: Dict[str, FeatureDefinition] = {}
        for feature in features:
            is_valid, msg = feature.validate()
            if not is_valid:
                raise ConfigurationError(f"Feature '{feature.id}': {msg}", feature_id=feature.id)
            if feature.id in self._features:
                raise ConfigurationError(f"Duplicate feature id '{feature.id}'", feature_id=feature.id)
            self._features[feature.id] = feature

    @classmethod
    def builtin(cls) -> "FeatureRegistry":
        """Registry holding the stock feature catalog."""
        from .catalog import builtin_features

        return cls(builtin_features())

    def get(self, feature_id: str) -> FeatureDefinition:
        """Look up a feature.

        Raises:
            ConfigurationError: If no feature has this id
        """
        try:
            return self._features[feature_id]
        except KeyError:
            raise ConfigurationError(f"Unknown feature '{feature_id}'", feature_id=feature_id) from None

    def find(self, feature_id: str) -> Optional[FeatureDefinition]:
        return self._features.get(feature_id)

    def all(self) -> List[FeatureDefinition]:
        return list(self._features.values())

    def by_category(self, category: FeatureCategory) -> List[FeatureDefinition]:
        return [f for f in self._features.values() if f.category is category]

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._features

    def __iter__(self) -> Iterator[FeatureDefinition]:
        return iter(self._features.values())

    def __len__(self) -> int:
        return len(self._features)
