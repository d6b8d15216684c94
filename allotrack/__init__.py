"""IPO allotment tracking and prediction engine."""

__version__ = "1.0.0"
