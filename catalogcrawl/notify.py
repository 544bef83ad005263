"""
Best-effort operator notifications.

Delivery failures are logged and dropped; a notification can never change the
outcome of a crawl.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import aiohttp

logger = logging.getLogger(__name__)

LEVEL_EMOJI = {
    "info": "ℹ️",
    "success": "✅",
    "warning": "⚠️",
    "error": "❌",
}

# Transient noise that is not worth waking anyone up for.
IGNORED_ERRORS = (
    "DNS lookup failed",
    "getaddrinfo ENOTFOUND",
    "Name or service not known",
    "Temporary failure in name resolution",
    "timeout",
    "Timeout",
)


class Notifier(Protocol):
    async def notify(self, message: str, level: str = "info") -> None: ...


def format_message(message: str, level: str) -> str:
    emoji = LEVEL_EMOJI.get(level, LEVEL_EMOJI["info"])
    return f"{emoji} *{level.upper()}*\n\n{message}"


def is_ignored(message: str) -> bool:
    return any(token in message for token in IGNORED_ERRORS)


class LogNotifier:
    """Writes notifications to the log. Used when no channel is configured."""

    async def notify(self, message: str, level: str = "info") -> None:
        log_level = logging.WARNING if level in ("warning", "error") else logging.INFO
        logger.log(log_level, "[Notify] %s", format_message(message, level).replace("\n\n", " | "))


class TelegramNotifier:
    """
    Telegram Bot API channel.

    Args:
        token: Bot token
        chat_id: Destination chat
        session: Optional shared ClientSession; one is created per call otherwise
        timeout_sec: Request timeout
    """

    API_URL = "https://api.telegram.org/bot{token}/sendMessage"

    def __init__(
        self,
        token: str,
        chat_id: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_sec: float = 10.0,
    ):
        self.token = token
        self.chat_id = chat_id
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout_sec)

    async def notify(self, message: str, level: str = "info") -> None:
        if level == "error" and is_ignored(message):
            logger.debug("[Notify] Suppressed noisy error: %s", message)
            return

        payload = {
            "chat_id": self.chat_id,
            "text": format_message(message, level),
            "parse_mode": "Markdown",
        }
        url = self.API_URL.format(token=self.token)

        if self._session is not None:
            await self._post(self._session, url, payload)
            return
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            await self._post(session, url, payload)

    async def _post(self, session: aiohttp.ClientSession, url: str, payload: dict) -> None:
        async with session.post(url, json=payload, timeout=self._timeout) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise aiohttp.ClientResponseError(
                    resp.request_info, resp.history,
                    status=resp.status, message=body[:200],
                )


async def safe_notify(notifier: Optional[Notifier], message: str, level: str = "info") -> None:
    """Deliver a notification, logging and swallowing any failure."""
    if notifier is None:
        return
    try:
        await notifier.notify(message, level)
    except Exception as e:
        logger.warning("[Notify] Delivery failed (%s): %s", type(e).__name__, e)


def build_notifier(cfg) -> Notifier:
    """Telegram when enabled and fully configured, the log otherwise."""
    if cfg.notify_enabled and cfg.telegram_token and cfg.telegram_chat_id:
        return TelegramNotifier(cfg.telegram_token, cfg.telegram_chat_id, timeout_sec=cfg.timeout_sec)
    if cfg.notify_enabled:
        logger.warning("[Notify] Notifications enabled but Telegram token/chat id missing; logging instead")
    return LogNotifier()
