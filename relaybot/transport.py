"""
Message transport: long-poll fetch and outbound send for the chat platform.

Usage:
    transport = TelegramTransport(token)
    updates = await transport.fetch_updates(since=cursor, timeout=30)
    await transport.deliver(chat_id, "<b>hello</b>")
    await transport.close()
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .exceptions import TransportError
from .formatter import EMPTY_RESPONSE, chunk_text, strip_markup

logger = logging.getLogger(__name__)


@dataclass
class Update:
    """One inbound transport update.

    Updates that carry no text message (edits, joins, stickers) still have
    an id so the cursor can move past them; their `text` is empty.
    """

    id: int
    chat_id: str = ""
    text: str = ""
    sender_id: str = ""
    sender_name: str = "unknown"

    @property
    def has_message(self) -> bool:
        return bool(self.chat_id and self.text.strip())


class Transport(ABC):
    """Abstract chat transport.

    Implementations provide the three primitives; `deliver` builds the
    chunked, markup-with-plain-fallback send on top of them.
    """

    message_limit: int = 4000
    chunk_delay: float = 0.5

    @abstractmethod
    async def fetch_updates(self, since: int, timeout: int) -> list[Update]:
        """Updates with id > since, in arrival order. Raises TransportError."""

    @abstractmethod
    async def send_text(self, chat_id: str, text: str, parse_mode: Optional[str] = "HTML") -> bool:
        """Send one message. Returns False on failure (never raises)."""

    @abstractmethod
    async def send_typing(self, chat_id: str) -> None:
        """Best-effort "still working" indicator."""

    async def close(self) -> None:
        pass

    async def deliver(self, chat_id: str, text: str) -> bool:
        """Send a possibly long HTML reply.

        Splits at the message limit with "[i/n]" markers; a chunk the platform
        rejects as HTML is retried once as plain text. Failures are logged only.
        """
        if not text or not text.strip():
            text = EMPTY_RESPONSE

        chunks = chunk_text(text, self.message_limit)
        delivered = True
        for i, chunk in enumerate(chunks):
            if not await self.send_text(chat_id, chunk, parse_mode="HTML"):
                logger.warning(f"HTML send failed for chat {chat_id}, retrying as plain text")
                if not await self.send_text(chat_id, strip_markup(chunk), parse_mode=None):
                    logger.error(f"Failed to send message to chat {chat_id} (chunk {i + 1}/{len(chunks)})")
                    delivered = False
            if i < len(chunks) - 1 and self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
        return delivered


class TelegramTransport(Transport):
    """Telegram Bot API over httpx."""

    def __init__(
        self,
        token: str,
        api_base: str = "https://api.telegram.org",
        message_limit: int = 4000,
        chunk_delay: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the transport.

        Args:
            token: Bot token from @BotFather
            api_base: API root (overridable for tests or a local Bot API server)
            message_limit: Max characters per outbound message
            chunk_delay: Pause between chunks of one reply
            client: Optional pre-built httpx client (tests inject a MockTransport)
        """
        self.base_url = f"{api_base.rstrip('/')}/bot{token}"
        self.message_limit = message_limit
        self.chunk_delay = chunk_delay
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))

    async def _request(self, method: str, payload: Optional[dict] = None, timeout: float = 10.0) -> Any:
        """Call a Bot API method and return its `result`. Raises TransportError."""
        url = f"{self.base_url}/{method}"
        try:
            response = await self._client.post(url, json=payload or {}, timeout=timeout)
        except httpx.TimeoutException:
            raise TransportError(f"{method} timed out after {timeout}s")
        except httpx.RequestError as e:
            raise TransportError(f"{method} network error: {e}")

        try:
            data = response.json()
        except ValueError:
            raise TransportError(f"{method} returned invalid JSON (HTTP {response.status_code})")

        if not isinstance(data, dict):
            raise TransportError(f"{method} returned an unexpected body (HTTP {response.status_code})")
        if not data.get("ok"):
            raise TransportError(f"{method} failed: {data.get('description', response.status_code)}")
        return data.get("result")

    async def get_me(self) -> dict:
        return await self._request("getMe", timeout=5.0)

    async def fetch_updates(self, since: int, timeout: int) -> list[Update]:
        results = await self._request(
            "getUpdates",
            {"offset": since + 1, "timeout": timeout, "allowed_updates": ["message"]},
            timeout=timeout + 5,
        )
        return [self._parse_update(u) for u in results or [] if "update_id" in u]

    @staticmethod
    def _parse_update(raw: dict) -> Update:
        message = raw.get("message") or {}
        sender = message.get("from") or {}
        chat_id = message.get("chat", {}).get("id")
        return Update(
            id=int(raw["update_id"]),
            chat_id=str(chat_id) if chat_id is not None else "",
            text=(message.get("text") or "").strip(),
            sender_id=str(sender.get("id", "")),
            sender_name=sender.get("username") or sender.get("first_name") or "unknown",
        )

    async def send_text(self, chat_id: str, text: str, parse_mode: Optional[str] = "HTML") -> bool:
        payload = {"chat_id": chat_id, "text": text, "disable_web_page_preview": True}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        try:
            await self._request("sendMessage", payload)
            return True
        except TransportError as e:
            logger.warning(f"sendMessage to {chat_id} failed: {e}")
            return False

    async def send_typing(self, chat_id: str) -> None:
        try:
            await self._request("sendChatAction", {"chat_id": chat_id, "action": "typing"})
        except TransportError as e:
            logger.debug(f"Typing indicator failed: {e}")

    async def close(self) -> None:
        await self._client.aclose()
