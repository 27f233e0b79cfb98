"""
Ledger markers — append-only idempotency tokens.

Вместо блокировок все повторяемые эффекты (уведомление, пропуск, кик)
проверяются по наличию маркера и записываются новым маркером.
Строки ledger никогда не изменяются.
"""
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from earlyrise.infrastructure.db.models import LedgerEntry

# ---------------------------------------------------------------------------
# Reason keys
# ---------------------------------------------------------------------------

TRIAL_START = "trial_7d_start"
TRIAL_OFFER_SENT = "trial_offer_sent"


def penalty_miss(local_date: str) -> str:
    return f"penalty:miss:{local_date}"


def penalty_notice_sent(local_date: str) -> str:
    return f"penalty:notice_sent:{local_date}"


def penalty_choice(choice: str, local_date: str) -> str:
    return f"penalty:choice_{choice}:{local_date}"


def penalty_kicked(local_date: str) -> str:
    return f"penalty:kicked:{local_date}"


def penalty_pay_intent(local_date: str, provider_payment_id: str, amount: int) -> str:
    return f"penalty:pay_intent:{local_date}|{provider_payment_id}|{amount}"


def penalty_pay_notified(local_date: str, provider_payment_id: str) -> str:
    return f"penalty:pay_notified:{local_date}|{provider_payment_id}"


def penalty_task_submitted(local_date: str) -> str:
    return f"penalty:task_submitted:{local_date}"


def penalty_task_approved(local_date: str) -> str:
    return f"penalty:task_approved:{local_date}"


def tap_rejected_notice(local_date: str) -> str:
    return f"tap_rejected_notice:{local_date}"


def sub_reminder_sent(paid_until: datetime) -> str:
    return f"sub:reminder_2d_sent:{paid_until.isoformat()}"


def sub_expiry_prompt_sent(paid_until: datetime) -> str:
    return f"sub:expiry_prompt_sent:{paid_until.isoformat()}"


def sub_kicked(paid_until: datetime) -> str:
    return f"sub:kicked:{paid_until.isoformat()}"


def refund_notice_sent(provider_payment_id: str) -> str:
    return f"refund_notice_sent:{provider_payment_id}"


def chat_invite_sent(challenge_id: int) -> str:
    return f"chat_invite_sent:{challenge_id}"


def renew_prompt_sent(paid_until: datetime) -> str:
    return f"renew_prompt_sent:{paid_until.isoformat()}"


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _scoped(db: Session, user_id: int, challenge_id: int | None):
    q = db.query(LedgerEntry).filter(LedgerEntry.user_id == user_id)
    if challenge_id is None:
        return q.filter(LedgerEntry.challenge_id.is_(None))
    return q.filter(LedgerEntry.challenge_id == challenge_id)


def has_marker(db: Session, user_id: int, challenge_id: int | None, reason: str) -> bool:
    return _scoped(db, user_id, challenge_id).filter(LedgerEntry.reason == reason).first() is not None


def put_marker(
    db: Session,
    user_id: int,
    challenge_id: int | None,
    reason: str,
    now: datetime | None = None,
) -> LedgerEntry:
    entry = LedgerEntry(
        user_id=user_id,
        challenge_id=challenge_id,
        delta=0,
        reason=reason,
        created_at=now or datetime.now(timezone.utc),
    )
    db.add(entry)
    db.flush()
    return entry


def ensure_marker(
    db: Session,
    user_id: int,
    challenge_id: int | None,
    reason: str,
    now: datetime | None = None,
) -> bool:
    """Put the marker unless present. Returns True if it was written now."""
    if has_marker(db, user_id, challenge_id, reason):
        return False
    put_marker(db, user_id, challenge_id, reason, now)
    return True


def latest_marker(db: Session, user_id: int, reason: str) -> LedgerEntry | None:
    """Последний маркер по reason вне зависимости от челленджа (например, trial)."""
    return (
        db.query(LedgerEntry)
        .filter(LedgerEntry.user_id == user_id, LedgerEntry.reason == reason)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .first()
    )


def miss_dates(db: Session, user_id: int, challenge_id: int | None) -> set[str]:
    prefix = penalty_miss("")
    rows = (
        _scoped(db, user_id, challenge_id)
        .filter(LedgerEntry.reason.startswith(prefix, autoescape=True))
        .with_entities(LedgerEntry.reason)
        .all()
    )
    return {r.reason[len(prefix):] for r in rows}
