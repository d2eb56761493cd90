"""mioty EdgeCard watchdog."""

__version__ = "1.0.0"
