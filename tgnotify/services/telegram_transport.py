"""Telegram Bot API transport and the one place its failures are classified."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum
from typing import Any

from telegram import Bot, LinkPreviewOptions
from telegram.error import (
    BadRequest,
    Forbidden,
    InvalidToken,
    RetryAfter,
    TelegramError,
)

from tgnotify.services.errors import TransportError
from tgnotify.util.logger import logger

DEFAULT_RETRY_AFTER_SECONDS = 60.0


@dataclass(frozen=True, slots=True)
class SentMessage:
    message_id: str


class FailureKind(StrEnum):
    BLOCKED = "blocked"
    NOT_FOUND = "not_found"
    THROTTLED = "throttled"
    TRANSIENT = "transient"


@dataclass(frozen=True, slots=True)
class TransportFailure:
    kind: FailureKind
    description: str
    retry_after: float | None = None

    @property
    def error_message(self) -> str:
        if self.kind is FailureKind.BLOCKED:
            return f"Bot blocked: {self.description}"
        if self.kind is FailureKind.NOT_FOUND:
            return f"Chat not found: {self.description}"
        if self.kind is FailureKind.THROTTLED:
            return f"Rate limited: retry after {self.retry_after:g}s"
        return self.description


def classify_transport_error(exc: BaseException) -> TransportFailure:
    """Map any send failure onto the closed set of outcomes the worker handles."""
    if not isinstance(exc, TransportError):
        return TransportFailure(kind=FailureKind.TRANSIENT, description=str(exc) or type(exc).__name__)

    description = exc.description or str(exc)
    if exc.code == 403:
        return TransportFailure(kind=FailureKind.BLOCKED, description=description)
    if exc.code == 400 and "not found" in description.lower():
        return TransportFailure(kind=FailureKind.NOT_FOUND, description=description)
    if exc.code == 429:
        retry_after = exc.retry_after if exc.retry_after is not None else DEFAULT_RETRY_AFTER_SECONDS
        return TransportFailure(
            kind=FailureKind.THROTTLED,
            description=description,
            retry_after=max(0.0, float(retry_after)),
        )
    return TransportFailure(kind=FailureKind.TRANSIENT, description=str(exc))


def _retry_after_seconds(value: Any) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    try:
        return float(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS


def to_transport_error(exc: TelegramError) -> TransportError:
    """Translate python-telegram-bot exceptions into Bot API style error codes."""
    if isinstance(exc, RetryAfter):
        return TransportError(
            exc.message,
            code=429,
            retry_after=_retry_after_seconds(exc.retry_after),
        )
    if isinstance(exc, Forbidden):
        return TransportError(exc.message, code=403)
    if isinstance(exc, InvalidToken):
        return TransportError(exc.message, code=401)
    if isinstance(exc, BadRequest):
        return TransportError(exc.message, code=400)
    return TransportError(exc.message or type(exc).__name__)


class TelegramTransport:
    """Sends rendered notifications through a python-telegram-bot ``Bot``."""

    def __init__(
        self,
        *,
        token: str | None = None,
        bot: Bot | None = None,
        parse_mode: str = "Markdown",
        timeout_seconds: float = 10.0,
    ) -> None:
        if bot is None:
            cleaned = (token or "").strip()
            if not cleaned:
                raise RuntimeError("TELEGRAM_BOT_TOKEN is not configured.")
            bot = Bot(token=cleaned)
        self._bot = bot
        self._parse_mode = parse_mode
        self._timeout_seconds = max(1.0, float(timeout_seconds))
        self._opened = False

    @classmethod
    def from_settings(cls, settings: Any) -> TelegramTransport:
        return cls(
            token=settings.telegram_bot_token,
            parse_mode=settings.telegram_parse_mode,
            timeout_seconds=settings.notifications_delivery_timeout_seconds,
        )

    async def open(self) -> None:
        if not self._opened:
            await self._bot.initialize()
            self._opened = True

    async def close(self) -> None:
        if self._opened:
            try:
                await self._bot.shutdown()
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "[notifications-transport] bot shutdown failed error=%s",
                    type(exc).__name__,
                )
            self._opened = False

    async def send(self, chat_id: str, text: str) -> SentMessage:
        """Send one message; raises ``TransportError`` with the Bot API error code."""
        try:
            message = await self._bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=self._parse_mode or None,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
                read_timeout=self._timeout_seconds,
                write_timeout=self._timeout_seconds,
                connect_timeout=self._timeout_seconds,
            )
        except TelegramError as exc:
            raise to_transport_error(exc) from exc
        return SentMessage(message_id=str(message.message_id))
