"""Valkey-backed cache and event broadcast."""

from .broadcast import ValkeyBroadcastNotifier
from .cache import Cache
from .client import ValkeyConnection


__all__ = ["Cache", "ValkeyBroadcastNotifier", "ValkeyConnection"]
