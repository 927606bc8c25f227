"""Message delivery with a bounded number of attempts."""

import asyncio
import logging
from typing import Optional

from shared.transport import TelegramTransport, TransportError
from services.index_notifier.errors import SendError

logger = logging.getLogger(__name__)


class RateLimitedSender:
    """
    Sends one message to one chat, retrying transient failures.

    Every attempt is followed, on failure, by a fixed ``retry_delay``; when the
    Bot API answers 429 with ``retry_after`` the longer of the two is used.
    """

    def __init__(self, transport: TelegramTransport, attempts: int = 5, retry_delay: float = 1.0):
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.transport = transport
        self.attempts = attempts
        self.retry_delay = retry_delay

    async def send(self, destination: int, text: str, quiet: bool) -> None:
        """
        Deliver ``text`` to ``destination``.

        Raises:
            SendError: with the last transport error once every attempt failed
        """
        last_error: Optional[TransportError] = None
        for attempt in range(1, self.attempts + 1):
            try:
                await self.transport.send_message(
                    destination,
                    text,
                    disable_notification=quiet,
                    disable_web_page_preview=True,
                )
                return
            except TransportError as e:
                last_error = e
                if attempt == self.attempts:
                    break
                delay = max(self.retry_delay, e.retry_after or 0)
                logger.warning(
                    f"Send to {destination} failed ({e}), retrying in {delay}s "
                    f"(attempt {attempt}/{self.attempts})"
                )
                await asyncio.sleep(delay)

        raise SendError(destination, self.attempts, last_error)
