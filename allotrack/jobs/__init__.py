"""Background scheduling."""

from .scheduler import PumpScheduler


__all__ = ["PumpScheduler"]
