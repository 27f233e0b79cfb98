"""
Bot-facing API: Telegram-бот пересылает сюда события и показывает ответы.

Ожидаемые отказы (UserError) возвращаются как 200 с ok=false — см. main.py.
"""
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from earlyrise.api.deps import get_curator, get_db, get_gateway, get_reminder_cache
from earlyrise.application.access import ClaimTrialUseCase, GetProfileUseCase
from earlyrise.application.anticheat import SubmitAntiCheatAnswerUseCase
from earlyrise.application.buddies import RequestBuddyUseCase
from earlyrise.application.checkins import (
    AdmissionVerdict,
    GroupTapCheckinUseCase,
    TextCheckinUseCase,
    VoiceCheckinUseCase,
)
from earlyrise.application.curator import CuratorClient
from earlyrise.application.messaging import TelegramGateway
from earlyrise.application.participation import (
    JoinChallengeUseCase,
    SetTimezoneUseCase,
    SetWakeTimeUseCase,
    ensure_user,
)
from earlyrise.application.penalties import (
    ApprovePenaltyTaskUseCase,
    ChoosePenaltyUseCase,
    PenaltyChoice,
    RegisterFineIntentUseCase,
    SubmitPenaltyTaskUseCase,
)
from earlyrise.application.reminder_cache import ReminderCache
from earlyrise.infrastructure.db.models import Participation

router = APIRouter(prefix="/api/bot", tags=["bot"])


# === Request models ===

class UserRef(BaseModel):
    telegram_user_id: int


class UpsertUserRequest(UserRef):
    username: str | None = None
    first_name: str | None = None


class TimezoneRequest(UserRef):
    timezone: str


class WakeRequest(UserRef):
    wake: str  # "06:30" или "flex"


class GroupTapRequest(UserRef):
    text: str
    chat_id: int | str | None = None
    message_id: int | None = None
    username: str | None = None
    first_name: str | None = None


class VoiceRequest(UserRef):
    file_id: str | None = None
    duration: int | None = None
    audio_base64: str | None = None
    audio_mime: str | None = None


class TextReportRequest(UserRef):
    text: str


class AntiCheatAnswerRequest(UserRef):
    checkin_id: int
    answer: str


class PenaltyChoiceRequest(UserRef):
    choice: str  # task | pay
    local_date: str | None = None

    @field_validator("choice")
    @classmethod
    def normalize_choice(cls, v: str) -> str:
        return v.strip().lower()


class FineIntentRequest(UserRef):
    provider_payment_id: str
    local_date: str | None = None


class PenaltyTaskRequest(UserRef):
    local_date: str | None = None


class ApproveTaskRequest(UserRef):
    local_date: str
    curator_telegram_user_id: int


# === Serializers ===

def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _verdict(v: AdmissionVerdict) -> dict:
    return {
        "ok": v.ok,
        "verdict": v.verdict,
        "reason": v.reason,
        "message": v.message,
        "checkin_id": v.checkin_id,
        "local_date": v.local_date,
        "question": v.question,
        "expires_at": _iso(v.expires_at),
        "needs_voice": v.needs_voice,
        "notified": v.notified,
    }


def _participation(p: Participation) -> dict:
    return {
        "ok": True,
        "participation_id": p.id,
        "challenge_id": p.challenge_id,
        "wake_mode": p.wake_mode,
        "wake_time_local": p.wake_time_local,
        "wake_utc_minutes": p.wake_utc_minutes,
    }


def _penalty(c: PenaltyChoice) -> dict:
    return {
        "ok": True,
        "choice": c.choice,
        "local_date": c.local_date,
        "level": c.level,
        "squats": c.squats,
        "fine": c.fine,
        "message": c.message,
    }


# === Users / participation ===

@router.post("/users/upsert")
def upsert_user(body: UpsertUserRequest, db: Session = Depends(get_db)):
    user = ensure_user(db, body.telegram_user_id, body.username, body.first_name)
    db.commit()
    return {"ok": True, "user_id": user.id, "timezone": user.timezone}


@router.post("/timezone")
def set_timezone(body: TimezoneRequest, db: Session = Depends(get_db)):
    user = SetTimezoneUseCase(db).execute(body.telegram_user_id, body.timezone)
    return {"ok": True, "timezone": user.timezone}


@router.post("/join")
def join(body: WakeRequest, db: Session = Depends(get_db)):
    return _participation(JoinChallengeUseCase(db).execute(body.telegram_user_id, body.wake))


@router.post("/wake")
def set_wake(body: WakeRequest, db: Session = Depends(get_db)):
    return _participation(SetWakeTimeUseCase(db).execute(body.telegram_user_id, body.wake))


# === Check-ins ===

@router.post("/checkins/group-tap")
def group_tap(
    body: GroupTapRequest,
    db: Session = Depends(get_db),
    gateway: TelegramGateway = Depends(get_gateway),
    reminder_cache: ReminderCache = Depends(get_reminder_cache),
):
    verdict = GroupTapCheckinUseCase(db, gateway=gateway, reminder_cache=reminder_cache).execute(
        body.telegram_user_id,
        body.text,
        chat_id=body.chat_id,
        message_id=body.message_id,
        username=body.username,
        first_name=body.first_name,
    )
    return _verdict(verdict)


@router.post("/checkins/voice")
def voice_checkin(body: VoiceRequest, db: Session = Depends(get_db), curator: CuratorClient = Depends(get_curator)):
    verdict = VoiceCheckinUseCase(db, curator=curator).execute(
        body.telegram_user_id,
        file_id=body.file_id,
        duration=body.duration,
        audio_base64=body.audio_base64,
        audio_mime=body.audio_mime,
    )
    return _verdict(verdict)


@router.post("/checkins/text")
def text_checkin(body: TextReportRequest, db: Session = Depends(get_db), curator: CuratorClient = Depends(get_curator)):
    return _verdict(TextCheckinUseCase(db, curator=curator).execute(body.telegram_user_id, body.text))


@router.post("/anticheat/answer")
def anticheat_answer(body: AntiCheatAnswerRequest, db: Session = Depends(get_db)):
    result = SubmitAntiCheatAnswerUseCase(db).execute(body.telegram_user_id, body.checkin_id, body.answer)
    return {
        "ok": result.ok,
        "error": None if result.ok else result.outcome,
        "message": result.message,
        "remaining_attempts": result.remaining_attempts,
        "reply_text": result.reply_text,
    }


# === Profile / access ===

@router.get("/me")
def me(telegram_user_id: int, db: Session = Depends(get_db)):
    profile = GetProfileUseCase(db).execute(telegram_user_id)
    return {
        "ok": True,
        "user_id": profile.user_id,
        "timezone": profile.timezone,
        "challenge_id": profile.challenge_id,
        "participation": profile.participation,
        "access": profile.access.as_dict(),
        "offer": profile.offer,
        "tariffs": profile.tariffs,
    }


@router.post("/trial/claim")
def claim_trial(body: UserRef, db: Session = Depends(get_db)):
    info = ClaimTrialUseCase(db).execute(body.telegram_user_id)
    return {"ok": True, "access": info.as_dict()}


# === Penalties ===

@router.post("/penalty/choose")
def choose_penalty(body: PenaltyChoiceRequest, db: Session = Depends(get_db)):
    return _penalty(ChoosePenaltyUseCase(db).execute(body.telegram_user_id, body.choice, body.local_date))


@router.post("/penalty/fine")
def register_fine(body: FineIntentRequest, db: Session = Depends(get_db)):
    choice = RegisterFineIntentUseCase(db).execute(body.telegram_user_id, body.provider_payment_id, body.local_date)
    return _penalty(choice)


@router.post("/penalty/task/submit")
def submit_task(body: PenaltyTaskRequest, db: Session = Depends(get_db)):
    return {"ok": True, **SubmitPenaltyTaskUseCase(db).execute(body.telegram_user_id, body.local_date)}


@router.post("/penalty/task/approve")
def approve_task(body: ApproveTaskRequest, db: Session = Depends(get_db)):
    ApprovePenaltyTaskUseCase(db).execute(body.telegram_user_id, body.local_date, body.curator_telegram_user_id)
    return {"ok": True, "local_date": body.local_date}


# === Buddies ===

@router.post("/buddy/request")
def request_buddy(body: UserRef, db: Session = Depends(get_db)):
    pair = RequestBuddyUseCase(db).execute(body.telegram_user_id)
    if pair is None:
        return {"ok": True, "matched": False}
    return {"ok": True, "matched": True, "pair_id": pair.id}
