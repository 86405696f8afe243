"""
Bootstrap the first administrator account (idempotent).

Every other account registers itself and waits for an administrator to verify
it, so at least one verified administrator must exist from the start. The
self-registration path cannot produce one (it always starts pending), so the
seed writes the row directly and leaves an `actor.bootstrap` audit entry.

Usage:
  ADMIN_EMAIL=admin@example.com python scripts/init_db.py
"""
import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.pms.audit import record_event  # noqa: E402
from app.pms.constants import ACTOR_VERIFIED, ROLE_ADMINISTRATOR  # noqa: E402
from app.pms.models import Actor  # noqa: E402
from app.pms.modules.actors.service import normalize_email  # noqa: E402
from scripts._db_utils import script_database_url, script_session  # noqa: E402


def seed_only(*, database_url: str | None = None) -> int | None:
    """
    Ensure the bootstrap administrator exists and is verified and active.
    Returns its id, or None when the email belongs to a non-administrator
    (existing accounts are never promoted).
    """
    admin_email = normalize_email(os.environ.get("ADMIN_EMAIL") or "admin@example.com")
    admin_name = (os.environ.get("ADMIN_NAME") or "Administrator").strip()

    with script_session(script_database_url(database_url)) as s:
        actor = s.query(Actor).filter(Actor.email == admin_email).one_or_none()
        if actor is not None and actor.role != ROLE_ADMINISTRATOR:
            print(f"Refusing to promote existing {actor.role} account {admin_email}.")
            return None

        before = None
        if actor is None:
            actor = Actor(email=admin_email, display_name=admin_name, role=ROLE_ADMINISTRATOR)
            s.add(actor)
        else:
            before = (actor.verification_status, bool(actor.is_active))
        actor.verification_status = ACTOR_VERIFIED
        actor.is_active = True
        s.flush()

        if before != (ACTOR_VERIFIED, True):
            record_event(
                s,
                actor=None,
                action="actor.bootstrap",
                entity_type="Actor",
                entity_id=str(actor.id),
                metadata={"created": before is None, "from": before[0] if before else None},
            )
        actor_id = actor.id

    print("Initialized database (seed_only).")
    print(f"Administrator email: {admin_email} (actor_id={actor_id})")
    return actor_id


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
