"""Feature catalog: definitions, setting declarations and the registry."""

from .registry import (
    FeatureCategory,
    FeatureDefinition,
    FeatureRegistry,
    FeatureSettingDefinition,
    SettingType,
)
from .catalog import builtin_features

__all__ = [
    'FeatureCategory',
    'FeatureDefinition',
    'FeatureRegistry',
    'FeatureSettingDefinition',
    'SettingType',
    'builtin_features',
]
