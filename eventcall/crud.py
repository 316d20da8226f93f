"""CRUD helpers for locally held pending submissions and invite rosters."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from .models import PendingSubmission, RosterEntry
from .utils import normalize_email, utcnow

LOCAL_STORAGE_METHOD = "local_storage"


def _now() -> datetime:
    return utcnow()


def get_pending_submission(
    session: Session, *, event_id: str, email: str
) -> PendingSubmission | None:
    stmt = select(PendingSubmission).where(
        PendingSubmission.event_id == event_id,
        PendingSubmission.email == normalize_email(email),
    )
    return session.scalars(stmt).first()


def upsert_pending_submission(
    session: Session,
    *,
    event_id: str,
    payload: dict[str, Any],
    submission_method: str = LOCAL_STORAGE_METHOD,
) -> PendingSubmission:
    """Store ``payload`` for ``event_id``, replacing any entry with the same email."""
    email = normalize_email(payload.get("email"))
    if not email:
        raise ValueError("Pending submissions require an email address")
    stored_payload = {**payload, "submissionMethod": submission_method}
    pending = get_pending_submission(session, event_id=event_id, email=email)
    if pending is None:
        pending = PendingSubmission(
            event_id=event_id,
            email=email,
            created_at=_now(),
        )
    pending.rsvp_id = str(payload.get("rsvpId") or "")
    pending.payload = json.dumps(stored_payload, sort_keys=True)
    pending.submission_method = submission_method
    pending.last_modified = _now()
    session.add(pending)
    session.flush()
    return pending


def list_pending_submissions(
    session: Session, event_id: str | None = None
) -> Sequence[PendingSubmission]:
    stmt = select(PendingSubmission).order_by(
        PendingSubmission.event_id, PendingSubmission.created_at
    )
    if event_id is not None:
        stmt = stmt.where(PendingSubmission.event_id == event_id)
    return session.scalars(stmt).all()


def count_pending_submissions(session: Session, event_id: str | None = None) -> int:
    stmt = select(func.count()).select_from(PendingSubmission)
    if event_id is not None:
        stmt = stmt.where(PendingSubmission.event_id == event_id)
    return session.scalar(stmt) or 0


def delete_pending_submission(session: Session, *, event_id: str, email: str) -> bool:
    result = session.execute(
        delete(PendingSubmission).where(
            PendingSubmission.event_id == event_id,
            PendingSubmission.email == normalize_email(email),
        )
    )
    return bool(result.rowcount)


def pending_payload(pending: PendingSubmission) -> dict[str, Any]:
    return json.loads(pending.payload)


def add_roster_entries(
    session: Session, *, event_id: str, entries: list[tuple[str, str | None]]
) -> int:
    """Add ``(email, name)`` pairs to the roster; returns the number added."""
    existing = {
        entry.email for entry in list_roster(session, event_id=event_id)
    }
    added = 0
    for raw_email, name in entries:
        email = normalize_email(raw_email)
        if not email or email in existing:
            continue
        session.add(
            RosterEntry(event_id=event_id, email=email, name=name, created_at=_now())
        )
        existing.add(email)
        added += 1
    session.flush()
    return added


def list_roster(session: Session, *, event_id: str) -> Sequence[RosterEntry]:
    stmt = (
        select(RosterEntry)
        .where(RosterEntry.event_id == event_id)
        .order_by(RosterEntry.created_at, RosterEntry.email)
    )
    return session.scalars(stmt).all()


def clear_roster(session: Session, *, event_id: str) -> int:
    result = session.execute(delete(RosterEntry).where(RosterEntry.event_id == event_id))
    return result.rowcount or 0
