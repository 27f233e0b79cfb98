"""
Create (or activate) a challenge and the global settings row.
Run:  python seed_challenge.py "Ранний подъём — ноябрь"
"""
import sys
from datetime import datetime, timezone

from earlyrise.infrastructure.db.session import get_session_factory
from earlyrise.infrastructure.db.models import Challenge
from earlyrise.application.participation import get_active_challenge, get_global_settings

title = sys.argv[1] if len(sys.argv) > 1 else "EarlyRise"

db = get_session_factory()()
try:
    get_global_settings(db)

    active = get_active_challenge(db)
    if active is not None:
        print(f"Active challenge already exists: {active.title} (ID: {active.id})")
    else:
        challenge = Challenge(
            title=title,
            status="active",
            starts_at=datetime.now(timezone.utc),
        )
        db.add(challenge)
        db.commit()
        print(f"Created challenge: {challenge.title} (ID: {challenge.id})")
    db.commit()
finally:
    db.close()
