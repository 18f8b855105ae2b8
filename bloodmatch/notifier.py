"""
Best-effort delivery of match events to connected donors and requesters.

Channels are registered per user id by whatever transport owns the live
connection (socket, push, SMS gateway). Delivery never raises: a missing
channel or a failing one is logged and reported as `False`.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

logger = logging.getLogger(__name__)

Channel = Callable[[str, dict[str, Any]], Awaitable[None]]

NEW_MATCH = "new_match"
CASCADE_MATCH = "cascade_match"
NO_DONORS_FOUND = "no_donors_found"
REQUEST_ACCEPTED = "request_accepted"
REQUEST_REJECTED = "request_rejected"
CASCADE_FAILED = "cascade_failed"
DONATION_COMPLETED = "donation_completed"


class Notifier:
    def __init__(self) -> None:
        self._channels: dict[str, Channel] = {}

    def register(self, user_id: str, channel: Channel) -> None:
        self._channels[str(user_id)] = channel
        logger.info("user %s registered for notifications", user_id)

    def unregister(self, user_id: str) -> None:
        if self._channels.pop(str(user_id), None) is not None:
            logger.info("user %s unregistered", user_id)

    def lookup(self, user_id: str) -> Channel | None:
        return self._channels.get(str(user_id))

    def is_connected(self, user_id: str) -> bool:
        return str(user_id) in self._channels

    def connected_count(self) -> int:
        return len(self._channels)

    async def notify(
        self, target_id: str, event: str, payload: dict[str, Any]
    ) -> bool:
        channel = self.lookup(target_id)
        if channel is None:
            logger.info("user %s not connected, dropped %r", target_id, event)
            return False
        try:
            await channel(event, payload)
        except Exception:
            logger.warning(
                "delivery of %r to user %s failed", event, target_id, exc_info=True
            )
            return False
        logger.debug("emitted %r to user %s", event, target_id)
        return True

    async def notify_many(
        self, deliveries: Iterable[tuple[str, str, dict[str, Any]]]
    ) -> list[bool]:
        return list(
            await asyncio.gather(
                *(self.notify(target, event, payload) for target, event, payload in deliveries)
            )
        )
