"""Background job infrastructure for a course management platform."""

__version__ = "1.0.0"
