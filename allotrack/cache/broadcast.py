"""Event broadcast over Valkey pub/sub.

Downstream consumers (websocket fan-out, mail workers) subscribe to the
configured channel and receive one JSON message per event:

    {"type": "allotment_result", "data": {...}, "timestamp": "..."}
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from allotrack.core.exceptions import ExternalServiceError
from allotrack.core.logging import get_logger

from .cache import ClientFactory


logger = get_logger("cache.broadcast")

DEFAULT_CHANNEL = "allotrack:alerts"


class ValkeyBroadcastNotifier:
    """Publishes engine events to a Valkey channel."""

    def __init__(self, client_factory: ClientFactory, channel: str = DEFAULT_CHANNEL):
        self.channel = channel
        self._client_factory = client_factory

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        """Publish one event.

        Raises:
            ExternalServiceError: If Valkey rejects the publish
        """
        message = json.dumps(
            {
                "type": event_type,
                "data": payload,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        try:
            client = await self._client_factory()
            receivers = await client.publish(self.channel, message)
        except Exception as e:
            logger.warning(f"Broadcast of {event_type} failed: {e}")
            raise ExternalServiceError(
                message="Notification channel unavailable",
                details={"channel": self.channel, "event_type": event_type},
            ) from e
        logger.debug(f"Published {event_type} to {receivers} subscribers")
