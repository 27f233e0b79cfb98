"""
Messaging gateway — Telegram Bot API через requests.

Используется как sink уведомлений: личное сообщение, сообщение в чат,
удаление участника из чата (ban + сразу unban, чтобы можно было вернуться).
Любая ошибка доставки → MessagingError; решение, что с ней делать,
принимает вызывающий (свипы собирают ошибки в список).
"""
import logging
import time
from datetime import datetime, timedelta, timezone

import requests

from earlyrise.config import get_settings
from earlyrise.domain.errors import ExternalDependencyError

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
REQUEST_TIMEOUT_SECONDS = 5
# Telegram трактует бан короче 30 секунд как вечный, поэтому с запасом
BAN_SECONDS = 60


class MessagingError(ExternalDependencyError):
    code = "messaging_failed"


def inline_keyboard(rows: list[list[tuple[str, str]]]) -> dict:
    """[[(text, callback_data), ...], ...] → reply_markup."""
    return {
        "inline_keyboard": [
            [{"text": text, "callback_data": data} for text, data in row]
            for row in rows
        ]
    }


class TelegramGateway:
    def __init__(self, token: str | None = None, group_chat_id: str | None = None):
        settings = get_settings()
        self.token = settings.TELEGRAM_BOT_TOKEN if token is None else token
        self.group_chat_id = settings.GROUP_CHAT_ID if group_chat_id is None else group_chat_id

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def _call(self, method: str, payload: dict) -> dict:
        if not self.token:
            raise MessagingError("Telegram bot token is not configured")
        try:
            resp = requests.post(
                f"{TELEGRAM_API}/bot{self.token}/{method}",
                json=payload,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise MessagingError(f"{method} failed: {exc}") from exc

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code != 200 or not body.get("ok", False):
            description = body.get("description") or resp.text[:200]
            raise MessagingError(f"{method} failed: HTTP {resp.status_code} {description}")
        return body

    def send_message(self, chat_id: int | str, text: str, reply_markup: dict | None = None) -> None:
        payload: dict = {"chat_id": chat_id, "text": text}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        self._call("sendMessage", payload)

    def send_group_message(self, text: str) -> None:
        if not self.group_chat_id:
            raise MessagingError("GROUP_CHAT_ID is not configured")
        self.send_message(self.group_chat_id, text)

    def remove_member(self, user_id: int, chat_id: int | str | None = None) -> None:
        """Убрать из чата без постоянного бана: ban с коротким until_date, затем unban."""
        chat_id = chat_id or self.group_chat_id
        if not chat_id:
            raise MessagingError("GROUP_CHAT_ID is not configured")
        until = datetime.now(timezone.utc) + timedelta(seconds=BAN_SECONDS)
        self._call("banChatMember", {
            "chat_id": chat_id,
            "user_id": user_id,
            "until_date": int(until.timestamp()),
        })
        self._call("unbanChatMember", {
            "chat_id": chat_id,
            "user_id": user_id,
            "only_if_banned": True,
        })


def pace(delay_ms: int) -> None:
    """Пауза между отправками в свипах (rate limit Telegram)."""
    if delay_ms > 0:
        time.sleep(delay_ms / 1000)


def try_send(gateway: TelegramGateway, chat_id: int | str, text: str, reply_markup: dict | None = None) -> bool:
    """Best-effort DM for request handlers: failures are logged and reported as False."""
    try:
        gateway.send_message(chat_id, text, reply_markup=reply_markup)
        return True
    except MessagingError:
        logger.warning("Direct message to %s failed", chat_id, exc_info=True)
        return False
