"""MesmerLine: timeline authoring and playback for layered session effects."""

__version__ = "0.1.0"
