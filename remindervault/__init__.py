"""Personal reminder manager with tiered, capability-probed storage."""

__version__ = "1.0.0"
