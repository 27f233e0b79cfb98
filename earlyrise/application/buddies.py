"""
Buddy pairs — взаимная ответственность двух участников.

Инвариант: у участия не больше одной active пары (проверяется при назначении).
Терминальный пропуск одного из напарников останавливает обоих (см. penalties.py).
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import or_
from sqlalchemy.orm import Session

from earlyrise.application.participation import get_active_participation, require_open_challenge, require_user
from earlyrise.domain.errors import DataIntegrityError, UserError
from earlyrise.domain.wake import WAKE_MODE_FIXED
from earlyrise.infrastructure.db.models import BuddyPair, BuddyWaitlist, Participation, User

logger = logging.getLogger(__name__)

PAIR_ACTIVE = "active"
PAIR_INACTIVE = "inactive"
WAITLIST_WAITING = "waiting"
WAITLIST_MATCHED = "matched"


def find_active_pair(db: Session, participation_id: int) -> BuddyPair | None:
    return db.query(BuddyPair).filter(
        BuddyPair.status == PAIR_ACTIVE,
        or_(
            BuddyPair.participation_a_id == participation_id,
            BuddyPair.participation_b_id == participation_id,
        ),
    ).first()


def partner_participation_id(pair: BuddyPair, participation_id: int) -> int:
    if pair.participation_a_id == participation_id:
        return pair.participation_b_id
    return pair.participation_a_id


def _create_pair(db: Session, a: Participation, b: Participation, now: datetime) -> BuddyPair:
    pair = BuddyPair(
        challenge_id=a.challenge_id,
        participation_a_id=a.id,
        participation_b_id=b.id,
        status=PAIR_ACTIVE,
        created_at=now,
    )
    db.add(pair)
    db.flush()
    return pair


class AssignBuddyUseCase:
    """Ручное назначение пары администратором."""

    def __init__(self, db: Session):
        self.db = db

    def execute(self, participation_a_id: int, participation_b_id: int, now: datetime | None = None) -> BuddyPair:
        now = now or datetime.now(timezone.utc)
        if participation_a_id == participation_b_id:
            raise UserError("Нельзя назначить напарником самого себя", code="same_participation")

        parts = []
        for pid in (participation_a_id, participation_b_id):
            p = self.db.get(Participation, pid)
            if p is None:
                raise DataIntegrityError(f"Участие {pid} не найдено", code="participation_not_found")
            if p.left_at is not None:
                raise UserError(f"Участие {pid} не активно", code="participation_inactive")
            parts.append(p)
        a, b = parts
        if a.challenge_id != b.challenge_id:
            raise UserError("Участники из разных челленджей", code="different_challenges")
        if find_active_pair(self.db, a.id) or find_active_pair(self.db, b.id):
            raise UserError("Один из участников уже в паре", code="already_paired")

        pair = _create_pair(self.db, a, b, now)
        self.db.query(BuddyWaitlist).filter(
            BuddyWaitlist.participation_id.in_((a.id, b.id)),
        ).update({BuddyWaitlist.status: WAITLIST_MATCHED}, synchronize_session=False)
        self.db.commit()
        logger.info("Buddy pair %s assigned: %s + %s", pair.id, a.id, b.id)
        return pair


class UnpairBuddyUseCase:
    def __init__(self, db: Session):
        self.db = db

    def execute(self, pair_id: int, now: datetime | None = None) -> BuddyPair:
        now = now or datetime.now(timezone.utc)
        pair = self.db.get(BuddyPair, pair_id)
        if pair is None:
            raise DataIntegrityError("Пара не найдена", code="pair_not_found")
        if pair.status == PAIR_ACTIVE:
            pair.status = PAIR_INACTIVE
            pair.ended_at = now
            self.db.commit()
        return pair


class RequestBuddyUseCase:
    """
    Встать в очередь на напарника.

    Сначала ищем ожидающего с той же таймзоной и тем же временем подъёма,
    затем — с тем же wake_utc_minutes (подъём в один момент по UTC).
    Returns: новая пара или None (остался в очереди).
    """

    def __init__(self, db: Session):
        self.db = db

    def execute(self, telegram_user_id: int, now: datetime | None = None) -> BuddyPair | None:
        now = now or datetime.now(timezone.utc)
        _, challenge = require_open_challenge(self.db)
        user = require_user(self.db, telegram_user_id)
        me = get_active_participation(self.db, user.id, challenge.id)
        if me is None:
            raise UserError("Ты ещё не присоединился(ась) к челленджу", code="not_joined")
        if me.wake_mode != WAKE_MODE_FIXED or not me.wake_time_local:
            raise UserError("Напарник подбирается по времени подъёма — сначала выбери время", code="missing_wake_time")
        if find_active_pair(self.db, me.id):
            raise UserError("У тебя уже есть напарник", code="already_paired")

        candidates = (
            self.db.query(BuddyWaitlist, Participation, User)
            .join(Participation, Participation.id == BuddyWaitlist.participation_id)
            .join(User, User.id == Participation.user_id)
            .filter(
                BuddyWaitlist.challenge_id == challenge.id,
                BuddyWaitlist.status == WAITLIST_WAITING,
                BuddyWaitlist.participation_id != me.id,
                Participation.left_at.is_(None),
                Participation.wake_mode == WAKE_MODE_FIXED,
            )
            .order_by(BuddyWaitlist.created_at, BuddyWaitlist.id)
            .all()
        )
        match = next(
            (c for c in candidates
             if c[2].timezone == user.timezone and c[1].wake_time_local == me.wake_time_local),
            None,
        ) or next(
            (c for c in candidates
             if me.wake_utc_minutes is not None and c[1].wake_utc_minutes == me.wake_utc_minutes),
            None,
        )

        entry = self.db.query(BuddyWaitlist).filter(BuddyWaitlist.participation_id == me.id).first()
        if match is None or find_active_pair(self.db, match[1].id):
            if entry is None:
                self.db.add(BuddyWaitlist(
                    participation_id=me.id,
                    challenge_id=challenge.id,
                    status=WAITLIST_WAITING,
                    created_at=now,
                ))
            else:
                entry.status = WAITLIST_WAITING
            self.db.commit()
            return None

        pair = _create_pair(self.db, match[1], me, now)
        match[0].status = WAITLIST_MATCHED
        if entry is not None:
            entry.status = WAITLIST_MATCHED
        self.db.commit()
        logger.info("Buddy pair %s matched from waitlist", pair.id)
        return pair
