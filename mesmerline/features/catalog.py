"""Stock feature catalog.

Ranges and defaults match what the session editor offers for each effect.
"""

from __future__ import annotations

from typing import List

from .registry import FeatureCategory, FeatureDefinition, FeatureSettingDefinition, SettingType

_S = FeatureSettingDefinition


def _slider(key: str, name: str, lo: float, hi: float, default: float, *, ramp: bool = False) -> FeatureSettingDefinition:
    return _S(key=key, name=name, type=SettingType.SLIDER, min=lo, max=hi, default=default, supports_ramp=ramp)


def _toggle(key: str, name: str, default: bool) -> FeatureSettingDefinition:
    return _S(key=key, name=name, type=SettingType.TOGGLE, default=default)


def builtin_features() -> List[FeatureDefinition]:
    """Return fresh definitions for every built-in feature."""
    return [
        # === AUDIO ===
        FeatureDefinition(
            id="audio_whispers",
            name="Audio Whispers",
            icon="🔊",
            category=FeatureCategory.AUDIO,
            xp_bonus=20,
            settings=(
                _slider("volume", "Volume", 0, 100, 50),
                _slider("duckLevel", "Duck Level", 0, 100, 50),
            ),
        ),
        FeatureDefinition(
            id="mind_wipe",
            name="Mind Wipe",
            icon="🧠",
            category=FeatureCategory.AUDIO,
            xp_bonus=50,
            difficulty_weight=1,
            settings=(
                _slider("multiplier", "Multiplier", 1, 5, 1),
                _slider("volume", "Volume", 0, 100, 50),
                _toggle("loopBackground", "Loop in Background", False),
            ),
        ),
        # === VIDEO ===
        FeatureDefinition(
            id="flash",
            name="Flash Images",
            icon="⚡",
            category=FeatureCategory.VIDEO,
            supports_ramping=True,
            xp_bonus=50,
            difficulty_weight=1,
            settings=(
                _slider("perHour", "Per Hour", 1, 600, 30),
                _slider("opacity", "Opacity %", 10, 100, 50, ramp=True),
                _slider("imagesCount", "Images Count", 1, 5, 2),
                _slider("scale", "Scale %", 50, 200, 100),
                _toggle("clickable", "Clickable", True),
                _toggle("audioEnabled", "Audio Enabled", False),
            ),
        ),
        FeatureDefinition(
            id="mandatory_videos",
            name="Mandatory Videos",
            icon="🎬",
            category=FeatureCategory.VIDEO,
            xp_bonus=100,
            difficulty_weight=2,
            settings=(_slider("perHour", "Per Hour", 1, 10, 2),),
        ),
        FeatureDefinition(
            id="subliminal",
            name="Subliminal Text",
            icon="💭",
            category=FeatureCategory.VIDEO,
            xp_bonus=30,
            settings=(
                _slider("perMin", "Per Minute", 1, 20, 5),
                _slider("frames", "Frames", 1, 10, 2),
                _slider("opacity", "Opacity %", 10, 100, 70),
                _S(key="phrases", name="Phrases", type=SettingType.TEXT_LIST),
            ),
        ),
        FeatureDefinition(
            id="bouncing_text",
            name="Bouncing Text",
            icon="📝",
            category=FeatureCategory.VIDEO,
            xp_bonus=20,
            settings=(
                _slider("speed", "Speed", 1, 10, 5),
                _slider("size", "Size %", 50, 200, 100),
                _slider("opacity", "Opacity %", 10, 100, 80),
                _S(key="phrases", name="Phrases", type=SettingType.TEXT_LIST),
            ),
        ),
        # === OVERLAYS ===
        FeatureDefinition(
            id="pink_filter",
            name="Pink Filter",
            icon="💗",
            category=FeatureCategory.OVERLAYS,
            supports_ramping=True,
            xp_bonus=40,
            settings=(_slider("opacity", "Opacity %", 5, 80, 20, ramp=True),),
        ),
        FeatureDefinition(
            id="spiral",
            name="Spiral Overlay",
            icon="🌀",
            category=FeatureCategory.OVERLAYS,
            supports_ramping=True,
            xp_bonus=50,
            difficulty_weight=1,
            settings=(_slider("opacity", "Opacity %", 5, 50, 15, ramp=True),),
        ),
        FeatureDefinition(
            id="brain_drain",
            name="Brain Drain",
            icon="😵",
            category=FeatureCategory.OVERLAYS,
            supports_ramping=True,
            xp_bonus=80,
            difficulty_weight=2,
            settings=(_slider("intensity", "Intensity %", 1, 20, 5, ramp=True),),
        ),
        # === INTERACTIVE ===
        FeatureDefinition(
            id="bubbles",
            name="Bubbles",
            icon="🫧",
            category=FeatureCategory.INTERACTIVE,
            xp_bonus=30,
            settings=(
                _S(
                    key="mode",
                    name="Mode",
                    type=SettingType.DROPDOWN,
                    options=("Continuous", "Intermittent"),
                    default="Continuous",
                ),
                _toggle("clickable", "Clickable", True),
                _slider("frequency", "Frequency", 1, 20, 5),
                _slider("burstCount", "Burst Count", 1, 10, 5),
                _slider("perBurst", "Per Burst", 1, 5, 3),
            ),
        ),
        FeatureDefinition(
            id="lock_cards",
            name="Lock Cards",
            icon="🔒",
            category=FeatureCategory.INTERACTIVE,
            xp_bonus=60,
            difficulty_weight=1,
            settings=(_slider("perHour", "Per Hour", 1, 10, 2),),
        ),
        FeatureDefinition(
            id="bubble_count",
            name="Bubble Count Game",
            icon="🔢",
            category=FeatureCategory.INTERACTIVE,
            xp_bonus=40,
            settings=(_slider("perHour", "Per Hour", 1, 10, 2),),
        ),
        # === EXTRAS ===
        FeatureDefinition(
            id="corner_gif",
            name="Corner GIF",
            icon="🖼️",
            category=FeatureCategory.EXTRAS,
            xp_bonus=10,
            settings=(
                _S(key="filePath", name="File", type=SettingType.FILE_PICKER, default=""),
                _slider("opacity", "Opacity %", 5, 100, 20),
                _S(
                    key="position",
                    name="Position",
                    type=SettingType.DROPDOWN,
                    options=("Top Left", "Top Right", "Bottom Left", "Bottom Right"),
                    default="Bottom Left",
                ),
                _slider("size", "Size (px)", 100, 500, 300),
            ),
        ),
    ]
