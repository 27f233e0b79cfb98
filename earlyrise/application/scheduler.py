"""
Background scheduler — периодические sweeps внутри процесса FastAPI.

Jobs (включаются SCHEDULER_ENABLED):
  - Penalty sweep (каждые PENALTY_SWEEP_INTERVAL_MINUTES)
  - Subscription sweep (каждые SUBSCRIPTION_SWEEP_INTERVAL_MINUTES)
  - Trial offer sweep (каждые TRIAL_OFFER_SWEEP_INTERVAL_MINUTES)

Без планировщика те же sweeps дёргаются внешним cron через /api/admin/sweeps/*.
Повторный запуск безопасен: все эффекты закрыты ledger-маркерами.
"""
import logging

from apscheduler.schedulers.background import BackgroundScheduler

from earlyrise.config import get_settings

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(daemon=True)


def _run_penalty_sweep():
    from earlyrise.infrastructure.db.session import session_scope
    from earlyrise.application.penalties import PenaltySweep

    try:
        with session_scope() as db:
            report = PenaltySweep(db).run()
            logger.info("Penalty sweep job: %s", report.counts)
    except Exception:
        logger.exception("Penalty sweep job failed")


def _run_subscription_sweep():
    from earlyrise.infrastructure.db.session import session_scope
    from earlyrise.application.subscriptions import SubscriptionSweep

    try:
        with session_scope() as db:
            SubscriptionSweep(db).run()
    except Exception:
        logger.exception("Subscription sweep job failed")


def _run_trial_offer_sweep():
    from earlyrise.infrastructure.db.session import session_scope
    from earlyrise.application.access import TrialOfferSweep

    try:
        with session_scope() as db:
            TrialOfferSweep(db).run()
    except Exception:
        logger.exception("Trial offer sweep job failed")


def start_scheduler():
    """Start the background scheduler with all periodic sweeps."""
    settings = get_settings()

    scheduler.add_job(
        _run_penalty_sweep,
        "interval",
        minutes=settings.PENALTY_SWEEP_INTERVAL_MINUTES,
        id="penalty_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        _run_subscription_sweep,
        "interval",
        minutes=settings.SUBSCRIPTION_SWEEP_INTERVAL_MINUTES,
        id="subscription_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        _run_trial_offer_sweep,
        "interval",
        minutes=settings.TRIAL_OFFER_SWEEP_INTERVAL_MINUTES,
        id="trial_offer_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started: penalty_sweep (every %s min), subscription_sweep (every %s min), "
        "trial_offer_sweep (every %s min)",
        settings.PENALTY_SWEEP_INTERVAL_MINUTES,
        settings.SUBSCRIPTION_SWEEP_INTERVAL_MINUTES,
        settings.TRIAL_OFFER_SWEEP_INTERVAL_MINUTES,
    )


def shutdown_scheduler():
    """Gracefully stop the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
