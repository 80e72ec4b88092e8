"""crosswire: cross-platform contact resolution and incremental message sync."""

__version__ = "0.1.0"
