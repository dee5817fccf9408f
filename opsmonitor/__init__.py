"""Alert rule evaluation, event grouping, muting, notification and endpoint probing."""

__version__ = "0.1.0"

__all__ = [
    "backends",
    "conditions",
    "config",
    "consumer",
    "evaluator",
    "models",
    "mute",
    "probing",
    "process",
    "storage",
]