"""
Submit anti-cheat answer — единственный путь, которым отчёт становится approved.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from earlyrise.application.checkins import STATUS_APPROVED, STATUS_REJECTED
from earlyrise.application.participation import require_user
from earlyrise.domain import anticheat
from earlyrise.domain.errors import DataIntegrityError
from earlyrise.infrastructure.db.models import AntiCheatChallenge, Checkin, VoiceTranscript

logger = logging.getLogger(__name__)

_MESSAGES = {
    anticheat.OUTCOME_PASSED: "Засчитано ✅",
    anticheat.OUTCOME_EXPIRED: "Время вышло. Напиши новое голосовое, пожалуйста.",
    anticheat.OUTCOME_FAILED: "Ответ неверный. Я передам модератору на проверку.",
    anticheat.OUTCOME_INVALID: "Ответ должен быть числом.",
    anticheat.OUTCOME_NOT_PENDING: "Эта задачка уже закрыта.",
}

_REJECT_REASONS = {
    anticheat.OUTCOME_EXPIRED: "anticheat_expired",
    anticheat.OUTCOME_FAILED: "anticheat_failed",
}


@dataclass
class AntiCheatResult:
    ok: bool
    outcome: str
    message: str
    remaining_attempts: int = 0
    reply_text: str | None = None


class SubmitAntiCheatAnswerUseCase:
    def __init__(self, db: Session):
        self.db = db

    def execute(
        self,
        telegram_user_id: int,
        checkin_id: int,
        answer: str,
        now: datetime | None = None,
    ) -> AntiCheatResult:
        """
        Raises:
            UserError: пользователь не найден
            DataIntegrityError: чек-ин или задачка не найдены
        """
        now = now or datetime.now(timezone.utc)
        user = require_user(self.db, telegram_user_id)

        checkin = self.db.query(Checkin).filter(
            Checkin.id == checkin_id,
            Checkin.user_id == user.id,
        ).first()
        if checkin is None:
            raise DataIntegrityError("Чек-ин не найден", code="checkin_not_found")
        challenge = self.db.query(AntiCheatChallenge).filter(
            AntiCheatChallenge.checkin_id == checkin.id,
        ).first()
        if challenge is None:
            raise DataIntegrityError("Задачка не найдена", code="challenge_not_found")

        result = anticheat.evaluate(
            status=challenge.status,
            expires_at=challenge.expires_at,
            attempts=challenge.attempts,
            expected=challenge.expected_answer,
            text=answer,
            now=now,
        )
        if result.outcome in (anticheat.OUTCOME_NOT_PENDING, anticheat.OUTCOME_INVALID):
            return AntiCheatResult(
                ok=False,
                outcome=result.outcome,
                message=_MESSAGES[result.outcome],
                remaining_attempts=result.remaining_attempts,
            )

        challenge.attempts = result.attempts
        challenge.status = result.status
        reply_text = None

        if result.outcome == anticheat.OUTCOME_PASSED:
            challenge.resolved_at = now
            checkin.status = STATUS_APPROVED
            checkin.anticheat_passed = True
            transcript = self.db.query(VoiceTranscript).filter(
                VoiceTranscript.checkin_id == checkin.id,
            ).first()
            reply_text = transcript.reply_text if transcript else None
        elif result.outcome in _REJECT_REASONS:
            challenge.resolved_at = now
            checkin.status = STATUS_REJECTED
            checkin.reject_reason = _REJECT_REASONS[result.outcome]

        self.db.commit()

        if result.outcome == anticheat.OUTCOME_WRONG:
            message = f"Неверно. Попробуй ещё раз ({result.remaining_attempts} попытки)."
        else:
            message = _MESSAGES[result.outcome]
        logger.info("Anti-cheat for checkin %s: %s", checkin.id, result.outcome)
        return AntiCheatResult(
            ok=result.outcome == anticheat.OUTCOME_PASSED,
            outcome=result.outcome,
            message=message,
            remaining_attempts=result.remaining_attempts,
            reply_text=reply_text,
        )
