"""Reconciliation between the in-memory app state and the remote store."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from . import storage
from .errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RemoteError,
    SyncInProgressError,
)
from .fallback import SubmissionQueue
from .ownership import Identity, can_manage, filter_owned, require_owner
from .remote import DataStore
from .retry import retry_async
from .schemas import RSVP, Event, IntakeEntry
from .submitter import RemoteSubmitter
from .utils import now_ms, utcnow

logger = logging.getLogger("uvicorn.error")

SYSTEM_IDENTITY = Identity(username="eventcall-scheduler", is_admin=True)

Mutation = Callable[[list[RSVP]], list[RSVP] | Awaitable[list[RSVP]]]


class AppState:
    """Cached events and responses shared by presenters and commands."""

    def __init__(self) -> None:
        self.events: dict[str, Event] = {}
        self.responses: dict[str, list[RSVP]] = {}
        self.pending_count = 0
        self.last_error: str | None = None
        self.loaded_at: int | None = None

    def reload(self, events: dict[str, Event], responses: dict[str, list[RSVP]]) -> None:
        self.events = dict(events)
        self.responses = {event_id: list(items) for event_id, items in responses.items()}
        self.last_error = None
        self.loaded_at = now_ms()

    def apply_delta(
        self,
        event_id: str,
        *,
        event: Event | None = None,
        responses: list[RSVP] | None = None,
    ) -> None:
        if event is not None:
            self.events[event_id] = event
        if responses is not None:
            self.responses[event_id] = list(responses)

    def remove_event(self, event_id: str) -> None:
        self.events.pop(event_id, None)
        self.responses.pop(event_id, None)

    def responses_for(self, event_id: str) -> list[RSVP]:
        return list(self.responses.get(event_id, []))

    def visible_to(self, user: Identity | None) -> tuple[dict[str, Event], dict[str, list[RSVP]]]:
        events = filter_owned(self.events, user)
        responses = {event_id: self.responses_for(event_id) for event_id in events}
        return events, responses


@dataclass
class SyncReport:
    total: int = 0
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    rejected: int = 0
    event_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "errors": self.errors,
            "skipped": self.skipped,
            "rejected": self.rejected,
            "eventIds": list(self.event_ids),
        }


def _locate(existing: list[RSVP], incoming: RSVP) -> tuple[int | None, str | None]:
    """Return ``(index, refusal)`` for where ``incoming`` belongs in ``existing``."""
    key = incoming.email_key
    for index, current in enumerate(existing):
        if current.rsvp_id != incoming.rsvp_id:
            continue
        if current.edit_token and current.edit_token != incoming.edit_token:
            return None, "edit token does not match"
        if key and any(
            other.email_key == key for i, other in enumerate(existing) if i != index
        ):
            return None, "email already belongs to another RSVP"
        return index, None
    if key:
        for index, current in enumerate(existing):
            if current.email_key == key:
                return index, None
    return None, None


def merge_responses(
    existing: Iterable[RSVP], incoming: Iterable[RSVP], *, now: int | None = None
) -> tuple[list[RSVP], list[RSVP]]:
    """Fold ``incoming`` submissions into ``existing``.

    A submission replaces the record with the same ``rsvpId`` when its edit
    token matches, otherwise the record with the same email. The newer fields
    win but the stored ids, tokens and check-in state are kept. A submission
    naming a known ``rsvpId`` with the wrong edit token, or moving it onto an
    email another record already holds, is rejected.

    Returns ``(merged, rejected)``.
    """
    stamp = now if now is not None else now_ms()
    merged = list(existing)
    rejected: list[RSVP] = []
    for rsvp in incoming:
        index, refusal = _locate(merged, rsvp)
        if refusal:
            logger.warning("Rejected update to RSVP %s: %s", rsvp.rsvp_id, refusal)
            rejected.append(rsvp)
            continue
        if index is None:
            merged.append(rsvp)
            continue
        current = merged[index]
        merged[index] = rsvp.model_copy(
            update={
                "rsvp_id": current.rsvp_id,
                "edit_token": current.edit_token or rsvp.edit_token,
                "check_in_token": current.check_in_token or rsvp.check_in_token,
                "checked_in": current.checked_in,
                "checked_in_at": current.checked_in_at,
                "is_update": True,
                "last_modified": stamp,
            }
        )
    return merged, rejected


async def update_responses(
    store: DataStore,
    event_id: str,
    mutate: Mutation,
    *,
    attempts: int = 3,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> list[RSVP]:
    """Read, mutate and conditionally write an event's response file.

    A stale version triggers a fresh read and another pass of ``mutate``.
    """

    async def attempt(number: int) -> list[RSVP]:
        current = await store.get_responses(event_id)
        updated = mutate(list(current.value))
        if asyncio.iscoroutine(updated):
            updated = await updated
        await store.save_responses(event_id, updated, sha=current.sha)
        return updated

    return await retry_async(
        attempt,
        attempts=max(attempts, 1),
        delay=0,
        retry_on=(ConflictError,),
        sleep=sleep,
    )


class SyncOrchestrator:
    """Loads remote data, drains the intake queue and replays local fallbacks.

    Only one intake pass runs at a time; overlapping callers get
    ``SyncInProgressError`` immediately.
    """

    def __init__(
        self,
        store: DataStore,
        state: AppState | None = None,
        *,
        queue: SubmissionQueue | None = None,
        submitter: RemoteSubmitter | None = None,
        conflict_retries: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.state = state or AppState()
        self.queue = queue or SubmissionQueue()
        self.submitter = submitter
        self.conflict_retries = conflict_retries
        self.sleep = sleep
        self._in_flight = False

    @property
    def in_progress(self) -> bool:
        return self._in_flight

    async def load_all(self, user: Identity | None = None) -> dict[str, Any]:
        """Refresh the cache; failures yield empty collections plus an error."""
        try:
            events = await self.store.load_events()
            responses = await self.store.load_responses()
        except RemoteError as exc:
            logger.error("Loading remote data failed: %s", exc)
            self.state.last_error = exc.message
            return {"events": {}, "responses": {}, "error": exc.message}
        self.state.reload(events, responses)
        visible_events, visible_responses = self.state.visible_to(user)
        return {"events": visible_events, "responses": visible_responses, "error": None}

    async def _event_for(self, event_id: str) -> Event | None:
        event = self.state.events.get(event_id)
        if event is not None:
            return event
        versioned = await self.store.get_event(event_id)
        if versioned is None:
            return None
        self.state.apply_delta(event_id, event=versioned.value)
        return versioned.value

    def _to_rsvp(self, entry: IntakeEntry) -> RSVP | None:
        data = {
            **entry.payload,
            "eventId": entry.event_id,
            "intakeId": entry.entry_id,
            "processedAt": now_ms(),
        }
        if entry.url:
            data["intakeUrl"] = entry.url
        try:
            return RSVP.model_validate(data)
        except PydanticValidationError as exc:
            logger.warning("Intake entry %s is not a valid RSVP: %s", entry.entry_id, exc)
            return None

    async def _drain(self, user: Identity, *, only_event: str | None = None) -> SyncReport:
        entries = await self.store.list_pending()
        report = SyncReport(total=len(entries))
        groups: dict[str, list[tuple[IntakeEntry, RSVP]]] = {}
        for entry in entries:
            if only_event is not None and entry.event_id != only_event:
                report.skipped += 1
                continue
            rsvp = self._to_rsvp(entry) if entry.event_id else None
            if rsvp is None:
                report.errors += 1
                continue
            groups.setdefault(entry.event_id, []).append((entry, rsvp))

        for event_id, items in groups.items():
            event = await self._event_for(event_id)
            if not can_manage(event, user):
                report.skipped += len(items)
                continue
            try:
                await self._promote(event_id, items, report)
            except RemoteError as exc:
                logger.error("Failed to process RSVPs for event %s: %s", event_id, exc)
                self.state.last_error = exc.message
                report.errors += len(items)
        return report

    async def _promote(
        self, event_id: str, items: list[tuple[IntakeEntry, RSVP]], report: SyncReport
    ) -> None:
        rejected: list[RSVP] = []

        def merge(current: list[RSVP]) -> list[RSVP]:
            merged, refused = merge_responses(current, [rsvp for _, rsvp in items])
            rejected[:] = refused
            return merged

        merged = await update_responses(
            self.store,
            event_id,
            merge,
            attempts=self.conflict_retries,
            sleep=self.sleep,
        )
        self.state.apply_delta(event_id, responses=merged)
        refused_ids = {id(rsvp) for rsvp in rejected}
        for entry, rsvp in items:
            if id(rsvp) in refused_ids:
                note = "Rejected: edit token mismatch or email already used by another RSVP."
                report.rejected += 1
            else:
                note = f"Processed into rsvps/{event_id}.json"
                report.processed += 1
            await self.store.mark_processed(entry, note=note)
        report.event_ids.append(event_id)
        logger.info("Merged %d RSVP(s) into event %s", len(items), event_id)

    async def _guarded(self, user: Identity | None, run) -> SyncReport:
        if user is None or not user.is_authenticated:
            raise AuthorizationError("You must be signed in to sync RSVPs", status_code=401)
        if self._in_flight:
            raise SyncInProgressError()
        self._in_flight = True
        try:
            report = await run()
        finally:
            self._in_flight = False
        self.state.pending_count = max(report.total - report.processed - report.rejected, 0)
        storage.set_meta(storage.LAST_SYNC_KEY, utcnow().isoformat())
        logger.info(
            "Sync finished: %d processed, %d errors, %d skipped",
            report.processed,
            report.errors,
            report.skipped,
        )
        return report

    async def process_pending_intake(self, user: Identity | None) -> SyncReport:
        """Promote queued RSVPs for events ``user`` manages."""
        return await self._guarded(user, lambda: self._drain(user))

    async def sync_event_rsvps(self, event_id: str, user: Identity | None) -> SyncReport:
        """Promote queued RSVPs for a single owned event."""
        event = await self._event_for(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        require_owner(event, user, action="sync RSVPs for")
        return await self._guarded(user, lambda: self._drain(user, only_event=event_id))

    async def pending_count(self) -> int:
        """Count unprocessed intake entries; called on demand, never polled."""
        entries = await self.store.list_pending()
        self.state.pending_count = len(entries)
        return self.state.pending_count

    async def periodic_sync(self) -> SyncReport | None:
        if self._in_flight:
            logger.warning("Skipping periodic sync: a sync is already running")
            return None
        return await self.process_pending_intake(SYSTEM_IDENTITY)

    async def replay_local_fallback(
        self, user: Identity | None, *, event_id: str | None = None
    ) -> dict[str, int]:
        """Resubmit locally stored RSVPs and drop the ones the backend accepts."""
        if self.submitter is None:
            raise RuntimeError("replay_local_fallback needs a RemoteSubmitter")
        if event_id is not None:
            event = await self._event_for(event_id)
            if event is None:
                raise NotFoundError(f"Event {event_id} not found")
            require_owner(event, user, action="replay pending RSVPs for")
        elif user is None or not user.is_authenticated:
            raise AuthorizationError("You must be signed in to replay RSVPs", status_code=401)

        replayed = failed = skipped = 0
        for payload in self.queue.pending(event_id):
            pending_event = str(payload.get("eventId") or "")
            if event_id is None and not can_manage(await self._event_for(pending_event), user):
                skipped += 1
                continue
            body = {**payload, "submissionMethod": "secure_backend"}
            try:
                await self.submitter.submit(body)
            except RemoteError as exc:
                logger.warning(
                    "Replay of RSVP %s for event %s failed: %s",
                    payload.get("rsvpId"),
                    pending_event,
                    exc,
                )
                failed += 1
                continue
            self.queue.remove(pending_event, str(payload.get("email") or ""))
            replayed += 1
        remaining = self.queue.count(event_id)
        logger.info("Replayed %d local RSVP(s); %d remaining", replayed, remaining)
        return {"replayed": replayed, "failed": failed, "skipped": skipped, "remaining": remaining}
