"""Seasonal Sentinel-1/Sentinel-2 compositing and random forest wetland classification."""

__all__ = [
    "config",
    "seasons",
    "regions",
    "sensors",
    "stacking",
    "sampling",
    "classifier",
    "evaluation",
    "pipeline",
    "cli",
]
