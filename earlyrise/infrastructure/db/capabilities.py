"""
Schema capability probe.

Старые инсталляции могут не иметь опциональных колонок (payments.plan_code,
users.last_seen_at). Схема проверяется один раз на движок, результат
кэшируется; запросы выбирают колонку только если она есть.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchemaCapabilities:
    payments_plan_code: bool = True
    users_last_seen_at: bool = True


_cache: dict[int, SchemaCapabilities] = {}


def probe(engine: Engine) -> SchemaCapabilities:
    inspector = inspect(engine)
    payment_cols = {c["name"] for c in inspector.get_columns("payments")}
    user_cols = {c["name"] for c in inspector.get_columns("users")}
    caps = SchemaCapabilities(
        payments_plan_code="plan_code" in payment_cols,
        users_last_seen_at="last_seen_at" in user_cols,
    )
    missing = [name for name, present in vars(caps).items() if not present]
    if missing:
        logger.warning("Schema is missing optional columns: %s", ", ".join(missing))
    return caps


def get_capabilities(db: Session) -> SchemaCapabilities:
    """Cached per engine; the first call probes the schema."""
    engine = db.get_bind()
    key = id(engine)
    caps = _cache.get(key)
    if caps is None:
        caps = probe(engine)
        _cache[key] = caps
    return caps


def reset_capabilities() -> None:
    _cache.clear()
