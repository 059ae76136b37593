"""craftlocal-fraud: marketplace fraud detection engine."""

__version__ = "1.0.0"
