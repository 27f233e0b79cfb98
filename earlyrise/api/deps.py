"""
FastAPI dependencies (DB session, admin token, внешние клиенты)
"""
import secrets
from functools import lru_cache

from fastapi import Header, HTTPException, status

from earlyrise.application.curator import CuratorClient
from earlyrise.application.messaging import TelegramGateway
from earlyrise.application.reminder_cache import ReminderCache
from earlyrise.config import get_settings
from earlyrise.infrastructure.db.session import get_db as _get_db


# Re-export get_db для удобства
get_db = _get_db


def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    """
    Проверка X-Admin-Token для admin/sweep endpoints.

    Пустой ADMIN_TOKEN в настройках закрывает admin API полностью.

    Raises:
        HTTPException(403)
    """
    expected = get_settings().ADMIN_TOKEN
    if not expected or not x_admin_token or not secrets.compare_digest(expected, x_admin_token):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Доступ запрещён")


def get_gateway() -> TelegramGateway:
    return TelegramGateway()


def get_curator() -> CuratorClient:
    return CuratorClient()


@lru_cache
def get_reminder_cache() -> ReminderCache:
    """Один кэш напоминаний на процесс."""
    return ReminderCache(ttl_seconds=get_settings().REMINDER_CACHE_TTL_SECONDS)
