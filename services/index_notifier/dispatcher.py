"""
Notification fan-out.

For every event coming from the index worker the dispatcher announces it once
in the broadcast chat and then to every subscriber of the package, one by one
with a pause between sends to stay under Telegram's outbound limits. Only when
both flows are done is the event's token released.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from html import escape
from typing import Any, Dict, Iterable, Optional

from shared.database import SubscriberLookup
from shared.events import AckChannel, LifecycleEvent
from services.index_notifier.errors import SendError
from services.index_notifier.sender import RateLimitedSender

logger = logging.getLogger(__name__)


def format_message(event: LifecycleEvent) -> str:
    """HTML notification text for an event."""
    record = event.record
    return (
        f"Crate was {event.kind.verb}: "
        f"<code>{escape(record.name)}#{escape(record.vers)}</code> {record.html_links()}"
    )


@dataclass
class DispatchStats:
    dispatched: int = 0
    deliveries: int = 0
    delivery_failures: int = 0
    lookup_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Dispatcher:
    """Consumes (event, token) pairs and delivers notifications."""

    def __init__(
        self,
        sender: RateLimitedSender,
        subscribers: SubscriberLookup,
        broadcast_chat: Optional[int] = None,
        banned_packages: Iterable[str] = (),
        broadcast_delay: float = 0.05,
    ):
        self.sender = sender
        self.subscribers = subscribers
        self.broadcast_chat = broadcast_chat
        self.banned_packages = frozenset(banned_packages)
        self.broadcast_delay = broadcast_delay
        self.stats = DispatchStats()

    async def run(self, channel: AckChannel):
        """Process events until the channel is closed and drained."""
        async for event, token in channel:
            try:
                await self.notify(event)
            except Exception as e:
                logger.exception(f"Error while dispatching {event}: {e}")
            finally:
                # Unblocks the index worker
                token.release()

        logger.info("Dispatcher stopped, channel closed")

    async def notify(self, event: LifecycleEvent):
        """Run the broadcast and subscriber flows for one event concurrently."""
        message = format_message(event)
        logger.info(f"Dispatching {event}")

        await asyncio.gather(
            self.broadcast(event, message),
            self.fan_out(event, message),
        )
        self.stats.dispatched += 1

    async def broadcast(self, event: LifecycleEvent, message: str):
        if self.broadcast_chat is None:
            return
        if event.package in self.banned_packages:
            logger.debug(f"Not broadcasting banned package {event.package}")
            return

        await self.deliver(self.broadcast_chat, message, event, quiet=False)

    async def fan_out(self, event: LifecycleEvent, message: str):
        try:
            subscribers = await self.subscribers.list_subscribers(event.package)
        except Exception as e:
            self.stats.lookup_failures += 1
            logger.error(f"db error while getting subscribers of {event.package}: {e}")
            subscribers = []

        for chat_id in subscribers:
            await self.deliver(chat_id, message, event, quiet=True)
            await asyncio.sleep(self.broadcast_delay)

    async def deliver(self, chat_id: int, message: str, event: LifecycleEvent, quiet: bool):
        try:
            await self.sender.send(chat_id, message, quiet)
        except SendError as e:
            self.stats.delivery_failures += 1
            logger.error(f"error while trying to send notification about {event} to {chat_id}: {e}")
        else:
            self.stats.deliveries += 1
