"""
Telegram Bot API transport.

Only ``sendMessage`` is needed: the dispatcher sends HTML formatted text to a
chat, optionally without a notification sound.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from config.settings import Settings, settings

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """A single Bot API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class TelegramTransport:
    """Thin async client for the Telegram Bot API."""

    def __init__(self, config: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or settings
        token = self.config.telegram.bot_token.get_secret_value()
        self.base_url = f"{self.config.telegram.api_url}/bot{token}"
        self.client = client or httpx.AsyncClient(timeout=self.config.telegram.timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.client.aclose()

    async def send_message(
        self,
        chat_id: int,
        text: str,
        disable_notification: bool = False,
        disable_web_page_preview: bool = True,
    ) -> Dict[str, Any]:
        """
        Send an HTML message to a chat.

        Returns:
            Dict[str, Any]: the sent Message object

        Raises:
            TransportError: on network errors and on any non-ok API response
        """
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_notification": disable_notification,
            "disable_web_page_preview": disable_web_page_preview,
        }
        try:
            response = await self.client.post(f"{self.base_url}/sendMessage", json=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"network error: {e}") from e

        try:
            body = response.json()
        except ValueError:
            raise TransportError(
                f"unexpected response ({response.status_code})", status_code=response.status_code
            )

        if response.status_code != 200 or not body.get("ok"):
            parameters = body.get("parameters") or {}
            raise TransportError(
                body.get("description", f"HTTP {response.status_code}"),
                status_code=response.status_code,
                retry_after=parameters.get("retry_after"),
            )

        return body.get("result", {})
