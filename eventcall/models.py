"""SQLAlchemy models for the local EventCall store.

Only data that must survive a failed remote round-trip lives here: RSVPs that
could not be submitted, the organizer's invite roster, and small bookkeeping
values. Events and canonical RSVPs live in the remote store.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Meta(Base):
    __tablename__ = "meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class PendingSubmission(Base):
    __tablename__ = "pending_submissions"
    __table_args__ = (UniqueConstraint("event_id", "email", name="uq_pending_event_email"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), nullable=False, index=True)
    # Lower-cased; the dedup key within an event.
    email = Column(String(255), nullable=False)
    rsvp_id = Column(String(36), nullable=False)
    payload = Column(Text, nullable=False)
    submission_method = Column(String(32), nullable=False, default="local_storage")
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class RosterEntry(Base):
    __tablename__ = "roster_entries"
    __table_args__ = (UniqueConstraint("event_id", "email", name="uq_roster_event_email"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    name = Column(String(120), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
