"""Owner-only commands for events, seating, check-in and rosters."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from . import database
from .crud import add_roster_entries, clear_roster, list_roster
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .ownership import Identity, require_owner
from .remote import DataStore
from .retry import retry_async
from .schemas import RSVP, Event
from .seating import SeatingAllocator, SeatingResult
from .stats import attending_guests
from .sync import AppState, update_responses
from .utils import is_valid_email, new_uuid, now_ms, sanitize_text

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

IMMUTABLE_FIELDS = {"id", "created", "createdBy", "createdByUsername", "created_by", "created_by_username"}
_SANITIZED_FIELDS = ("title", "location", "description", "date", "time")
# Changed only through the seating commands.
SEATING_FIELDS = {"seatingChart", "seating_chart"}


def _clean_event_fields(data: dict[str, Any]) -> dict[str, Any]:
    cleaned = {
        key: value
        for key, value in data.items()
        if key not in IMMUTABLE_FIELDS and key not in SEATING_FIELDS
    }
    for key in _SANITIZED_FIELDS:
        if key in cleaned:
            cleaned[key] = sanitize_text(cleaned[key])
    return cleaned


def _require_signed_in(user: Identity | None, action: str) -> Identity:
    if user is None or not user.is_authenticated:
        raise AuthorizationError(f"You must be signed in to {action}", status_code=401)
    return user


class EventManager:
    """Mutating event commands.

    Every command loads the current remote version, runs the ownership guard
    and writes back conditionally on the version it read.
    """

    def __init__(
        self,
        store: DataStore,
        state: AppState | None = None,
        *,
        conflict_retries: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.state = state or AppState()
        self.conflict_retries = conflict_retries
        self.sleep = sleep

    async def _load_owned(self, event_id: str, user: Identity | None, action: str):
        versioned = await self.store.get_event(event_id)
        if versioned is None:
            raise NotFoundError(f"Event {event_id} not found")
        require_owner(versioned.value, user, action=action)
        return versioned

    async def _with_conflict_retry(self, operation: Callable[[int], Awaitable[T]]) -> T:
        return await retry_async(
            operation,
            attempts=max(self.conflict_retries, 1),
            delay=0,
            retry_on=(ConflictError,),
            sleep=self.sleep,
        )

    async def create_event(self, user: Identity | None, data: dict[str, Any]) -> Event:
        user = _require_signed_in(user, "create events")
        fields = _clean_event_fields(data)
        if not fields.get("title"):
            raise ValidationError(["Event title is required"])
        event = Event.model_validate(
            {
                **fields,
                "id": new_uuid(),
                "created": now_ms(),
                "createdBy": user.email or None,
                "createdByUsername": user.username or None,
                "status": fields.get("status") or "active",
            }
        )
        await self.store.save_event(event, sha=None)
        self.state.apply_delta(event.id, event=event, responses=[])
        logger.info("Created event %s (%s)", event.id, event.title)
        return event

    async def edit_event(
        self, event_id: str, user: Identity | None, changes: dict[str, Any]
    ) -> Event:
        """Apply ``changes``; a concurrent write surfaces as ``ConflictError``."""
        versioned = await self._load_owned(event_id, user, "edit")
        fields = _clean_event_fields(changes)
        if "title" in fields and not fields["title"]:
            raise ValidationError(["Event title is required"])
        current = versioned.value.to_wire()
        event = Event.model_validate({**current, **fields})
        await self.store.save_event(event, sha=versioned.sha)
        self.state.apply_delta(event_id, event=event)
        logger.info("Updated event %s", event_id)
        return event

    async def delete_event(self, event_id: str, user: Identity | None) -> None:
        versioned = await self._load_owned(event_id, user, "delete")
        event = versioned.value
        await self.store.delete_event(event.id, event.title, event.cover_image or None)
        with database.get_session() as session:
            clear_roster(session, event_id=event_id)
        self.state.remove_event(event_id)

    async def delete_response(self, event_id: str, user: Identity | None, rsvp_id: str) -> bool:
        await self._load_owned(event_id, user, "remove RSVPs from")
        removed: list[bool] = [False]

        def drop(current: list[RSVP]) -> list[RSVP]:
            kept = [rsvp for rsvp in current if rsvp.rsvp_id != rsvp_id]
            removed[0] = len(kept) != len(current)
            return kept

        responses = await update_responses(
            self.store, event_id, drop, attempts=self.conflict_retries, sleep=self.sleep
        )
        self.state.apply_delta(event_id, responses=responses)
        return removed[0]

    async def _seating_command(
        self,
        event_id: str,
        user: Identity | None,
        action: str,
        operate: Callable[[SeatingAllocator, list[RSVP]], T],
        *,
        persist: bool = True,
    ) -> T:
        """Run ``operate`` on a synced chart; write back only if the chart changed."""

        async def attempt(number: int) -> T:
            versioned = await self._load_owned(event_id, user, action)
            event = versioned.value
            if not event.seating_enabled:
                raise ValidationError(["Seating is not enabled for this event"])
            responses = (await self.store.get_responses(event_id)).value
            before = event.seating_chart.model_dump()
            allocator = SeatingAllocator(event.seating_chart)
            allocator.sync_unassigned_guests(attending_guests(responses))
            result = operate(allocator, responses)
            if persist and event.seating_chart.model_dump() != before:
                await self.store.save_event(event, sha=versioned.sha)
                self.state.apply_delta(event_id, event=event, responses=responses)
            return result

        return await self._with_conflict_retry(attempt)

    async def enable_seating(
        self, event_id: str, user: Identity | None, *, tables: int, seats_per_table: int
    ) -> Event:
        if tables < 1 or seats_per_table < 1:
            raise ValidationError(["Tables and seats per table must be at least 1"])

        async def attempt(number: int) -> Event:
            versioned = await self._load_owned(event_id, user, "manage seating for")
            event = versioned.value
            if event.seating_chart is None:
                event.seating_chart = SeatingAllocator.initialize(tables, seats_per_table)
            else:
                event.seating_chart.enabled = True
                SeatingAllocator(event.seating_chart).resize(tables, seats_per_table)
            responses = (await self.store.get_responses(event_id)).value
            SeatingAllocator(event.seating_chart).sync_unassigned_guests(
                attending_guests(responses)
            )
            await self.store.save_event(event, sha=versioned.sha)
            self.state.apply_delta(event_id, event=event, responses=responses)
            return event

        return await self._with_conflict_retry(attempt)

    async def disable_seating(self, event_id: str, user: Identity | None) -> Event:
        async def attempt(number: int) -> Event:
            versioned = await self._load_owned(event_id, user, "manage seating for")
            event = versioned.value
            if event.seating_chart is not None:
                event.seating_chart.enabled = False
            await self.store.save_event(event, sha=versioned.sha)
            self.state.apply_delta(event_id, event=event)
            return event

        return await self._with_conflict_retry(attempt)

    async def seating_view(self, event_id: str, user: Identity | None) -> dict[str, Any]:
        """Synced chart, stats and unassigned guest details for the manage view."""

        def view(allocator: SeatingAllocator, responses: list[RSVP]) -> dict[str, Any]:
            return {
                "chart": allocator.chart.to_wire(),
                "stats": allocator.stats(),
                "unassigned": [
                    rsvp.to_wire()
                    for rsvp in allocator.unassigned_details(attending_guests(responses))
                ],
            }

        return await self._seating_command(
            event_id, user, "view seating for", view, persist=False
        )

    async def assign_seat(
        self, event_id: str, user: Identity | None, rsvp_id: str, table_number: int
    ) -> SeatingResult:
        def assign(allocator: SeatingAllocator, responses: list[RSVP]) -> SeatingResult:
            guest = _attending_guest(responses, rsvp_id)
            if guest is None:
                return SeatingResult(False, "Guest not found")
            return allocator.assign(rsvp_id, table_number, guest)

        return await self._seating_command(event_id, user, "manage seating for", assign)

    async def unassign_seat(self, event_id: str, user: Identity | None, rsvp_id: str) -> bool:
        return await self._seating_command(
            event_id,
            user,
            "manage seating for",
            lambda allocator, responses: allocator.unassign(rsvp_id),
        )

    async def reassign_seat(
        self, event_id: str, user: Identity | None, rsvp_id: str, table_number: int
    ) -> SeatingResult:
        def reassign(allocator: SeatingAllocator, responses: list[RSVP]) -> SeatingResult:
            guest = _attending_guest(responses, rsvp_id)
            if guest is None:
                return SeatingResult(False, "Guest not found")
            return allocator.reassign(rsvp_id, table_number, guest)

        return await self._seating_command(event_id, user, "manage seating for", reassign)

    async def auto_assign(self, event_id: str, user: Identity | None) -> dict[str, int]:
        def auto(allocator: SeatingAllocator, responses: list[RSVP]) -> dict[str, int]:
            waiting = allocator.unassigned_details(attending_guests(responses))
            return allocator.auto_assign(waiting)

        result = await self._seating_command(event_id, user, "manage seating for", auto)
        logger.info(
            "Auto-assigned %d guest(s) for event %s (%d did not fit)",
            result["assigned"],
            event_id,
            result["failed"],
        )
        return result

    async def set_vip_table(
        self, event_id: str, user: Identity | None, table_number: int, vip: bool
    ) -> SeatingResult:
        return await self._seating_command(
            event_id,
            user,
            "manage seating for",
            lambda allocator, responses: allocator.set_vip(table_number, vip),
        )

    async def seating_csv(self, event_id: str, user: Identity | None) -> str:
        versioned = await self._load_owned(event_id, user, "export seating for")
        event = versioned.value
        if not event.seating_enabled:
            raise ValidationError(["Seating is not enabled for this event"])
        responses = (await self.store.get_responses(event_id)).value
        allocator = SeatingAllocator(event.seating_chart)
        allocator.sync_unassigned_guests(attending_guests(responses))
        return allocator.export_csv(responses)

    async def check_in(self, event_id: str, user: Identity | None, token: str) -> RSVP:
        await self._load_owned(event_id, user, "check guests in to")
        if not token:
            raise ValidationError(["Check-in token is required"])
        found: list[RSVP] = []

        def stamp(current: list[RSVP]) -> list[RSVP]:
            found.clear()
            updated: list[RSVP] = []
            for rsvp in current:
                if rsvp.check_in_token and rsvp.check_in_token == token:
                    if not rsvp.checked_in:
                        rsvp = rsvp.model_copy(
                            update={"checked_in": True, "checked_in_at": now_ms()}
                        )
                    found.append(rsvp)
                updated.append(rsvp)
            if not found:
                raise NotFoundError("No RSVP matches this check-in token")
            return updated

        responses = await update_responses(
            self.store, event_id, stamp, attempts=self.conflict_retries, sleep=self.sleep
        )
        self.state.apply_delta(event_id, responses=responses)
        logger.info("Checked in RSVP %s for event %s", found[0].rsvp_id, event_id)
        return found[0]

    async def add_roster(
        self, event_id: str, user: Identity | None, entries: list[tuple[str, str | None]]
    ) -> int:
        await self._load_owned(event_id, user, "manage the roster for")
        invalid = [email for email, _ in entries if not is_valid_email((email or "").strip())]
        if invalid:
            raise ValidationError([f"Invalid email address: {email}" for email in invalid])
        with database.get_session() as session:
            return add_roster_entries(session, event_id=event_id, entries=entries)

    async def roster(self, event_id: str, user: Identity | None) -> list[tuple[str, str]]:
        await self._load_owned(event_id, user, "view the roster for")
        with database.get_session() as session:
            return [(entry.email, entry.name or "") for entry in list_roster(session, event_id=event_id)]

    async def clear_roster(self, event_id: str, user: Identity | None) -> int:
        await self._load_owned(event_id, user, "manage the roster for")
        with database.get_session() as session:
            return clear_roster(session, event_id=event_id)


def _attending_guest(responses: list[RSVP], rsvp_id: str) -> RSVP | None:
    for rsvp in responses:
        if rsvp.rsvp_id == rsvp_id and rsvp.is_attending:
            return rsvp
    return None
