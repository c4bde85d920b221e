"""RideConnect - live ride tracking for motorcyclists."""

__version__ = "0.1.0"
