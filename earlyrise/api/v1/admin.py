"""
Admin API: sweeps для внешнего cron, пары, платежи, глобальные настройки.

Access: header X-Admin-Token == ADMIN_TOKEN.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from earlyrise.api.deps import get_db, get_gateway, require_admin
from earlyrise.application.access import RecordPaymentUseCase, TrialOfferSweep
from earlyrise.application.buddies import AssignBuddyUseCase, UnpairBuddyUseCase
from earlyrise.application.messaging import TelegramGateway
from earlyrise.application.participation import UpdateGlobalSettingsUseCase, get_global_settings
from earlyrise.application.penalties import PenaltySweep
from earlyrise.application.subscriptions import SubscriptionSweep
from earlyrise.infrastructure.db.models import GlobalSettings

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class AssignBuddyRequest(BaseModel):
    participation_a_id: int
    participation_b_id: int


class PaymentFactRequest(BaseModel):
    telegram_user_id: int
    provider_payment_id: str
    status: str
    amount: int
    plan_code: str | None = None


class SettingsUpdateRequest(BaseModel):
    challenge_active: bool | None = None
    voice_feedback_enabled: bool | None = None


def _settings(row: GlobalSettings) -> dict:
    return {
        "ok": True,
        "challenge_active": row.challenge_active,
        "voice_feedback_enabled": row.voice_feedback_enabled,
    }


# ── Sweeps ───────────────────────────────────────────────────────────────────

@router.post("/sweeps/penalties")
def sweep_penalties(
    dry_run: bool = False,
    db: Session = Depends(get_db),
    gateway: TelegramGateway = Depends(get_gateway),
):
    return PenaltySweep(db, gateway=gateway).run(dry_run=dry_run).as_dict()


@router.post("/sweeps/subscriptions")
def sweep_subscriptions(
    dry_run: bool = False,
    db: Session = Depends(get_db),
    gateway: TelegramGateway = Depends(get_gateway),
):
    return SubscriptionSweep(db, gateway=gateway).run(dry_run=dry_run).as_dict()


@router.post("/sweeps/trial-offers")
def sweep_trial_offers(
    dry_run: bool = False,
    limit: int = 200,
    db: Session = Depends(get_db),
    gateway: TelegramGateway = Depends(get_gateway),
):
    return TrialOfferSweep(db, gateway=gateway).run(dry_run=dry_run, limit=limit).as_dict()


# ── Buddies ──────────────────────────────────────────────────────────────────

@router.post("/buddies/assign")
def assign_buddies(body: AssignBuddyRequest, db: Session = Depends(get_db)):
    pair = AssignBuddyUseCase(db).execute(body.participation_a_id, body.participation_b_id)
    return {"ok": True, "pair_id": pair.id}


@router.post("/buddies/{pair_id}/unpair")
def unpair_buddies(pair_id: int, db: Session = Depends(get_db)):
    pair = UnpairBuddyUseCase(db).execute(pair_id)
    return {"ok": True, "pair_id": pair.id, "status": pair.status}


# ── Payments / settings ──────────────────────────────────────────────────────

@router.post("/payments")
def record_payment(body: PaymentFactRequest, db: Session = Depends(get_db)):
    payment = RecordPaymentUseCase(db).execute(
        body.telegram_user_id,
        body.provider_payment_id,
        body.status,
        body.amount,
        plan_code=body.plan_code,
    )
    return {"ok": True, "payment_id": payment.id, "status": payment.status}


@router.get("/settings")
def read_settings(db: Session = Depends(get_db)):
    row = get_global_settings(db)
    db.commit()
    return _settings(row)


@router.post("/settings")
def update_settings(body: SettingsUpdateRequest, db: Session = Depends(get_db)):
    row = UpdateGlobalSettingsUseCase(db).execute(body.challenge_active, body.voice_feedback_enabled)
    return _settings(row)
