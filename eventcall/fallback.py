"""Durable local store for RSVPs whose remote submission failed."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from . import database
from .crud import (
    LOCAL_STORAGE_METHOD,
    count_pending_submissions,
    delete_pending_submission,
    list_pending_submissions,
    pending_payload,
    upsert_pending_submission,
)

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class StoreReceipt:
    method: str
    pending_count: int
    requires_manual_processing: bool = True

    def as_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "success": True,
            "pendingCount": self.pending_count,
            "requiresManualProcessing": self.requires_manual_processing,
        }


class SubmissionQueue:
    """Pending RSVPs keyed by event id and deduplicated by email."""

    def store(self, event_id: str, payload: dict[str, Any]) -> StoreReceipt:
        with database.get_session() as session:
            upsert_pending_submission(session, event_id=event_id, payload=payload)
            session.flush()
            count = count_pending_submissions(session, event_id)
        logger.info(
            "Stored RSVP %s for event %s locally (%d pending)",
            payload.get("rsvpId"),
            event_id,
            count,
        )
        return StoreReceipt(method=LOCAL_STORAGE_METHOD, pending_count=count)

    def pending(self, event_id: str | None = None) -> list[dict[str, Any]]:
        with database.get_session() as session:
            return [
                pending_payload(entry)
                for entry in list_pending_submissions(session, event_id)
            ]

    def count(self, event_id: str | None = None) -> int:
        with database.get_session() as session:
            return count_pending_submissions(session, event_id)

    def remove(self, event_id: str, email: str) -> bool:
        with database.get_session() as session:
            return delete_pending_submission(session, event_id=event_id, email=email)
