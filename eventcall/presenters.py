"""View-ready dictionaries for the dashboard and the event management page."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from . import database
from .crud import list_roster
from .errors import NotFoundError
from .ownership import Identity, require_owner
from .schemas import RSVP, Attendance, Event
from .seating import SeatingAllocator
from .stats import Stats, attending_guests, compute_stats, roster_summary, with_roster_placeholders
from .sync import AppState

RosterLookup = Callable[[str], list[tuple[str, str]]]


def load_roster(event_id: str) -> list[tuple[str, str]]:
    with database.get_session() as session:
        return [(entry.email, entry.name or "") for entry in list_roster(session, event_id=event_id)]


def _event_sort_key(event: Event) -> tuple[str, str, str]:
    return (event.date or "9999-99-99", event.time or "", event.title.casefold())


class DashboardPresenter:
    def __init__(self, state: AppState, *, roster_lookup: RosterLookup = load_roster):
        self.state = state
        self.roster_lookup = roster_lookup

    def render(self, user: Identity | None) -> dict[str, Any]:
        events, responses = self.state.visible_to(user)
        cards: list[dict[str, Any]] = []
        totals = Stats()
        all_responses: list[RSVP] = []
        for event in sorted(events.values(), key=_event_sort_key):
            event_responses = responses.get(event.id, [])
            all_responses.extend(event_responses)
            stats = compute_stats(event_responses)
            cards.append(
                {
                    "id": event.id,
                    "title": event.title,
                    "date": event.date,
                    "time": event.time,
                    "location": event.location,
                    "status": event.status,
                    "seatingEnabled": event.seating_enabled,
                    "stats": stats.as_dict(),
                }
            )
        if all_responses:
            totals = compute_stats(all_responses)
        return {
            "events": cards,
            "totals": totals.as_dict(),
            "pendingCount": self.state.pending_count,
            "error": self.state.last_error,
        }


class EventManagementPresenter:
    def __init__(self, state: AppState, *, roster_lookup: RosterLookup = load_roster):
        self.state = state
        self.roster_lookup = roster_lookup

    def render(self, event_id: str, user: Identity | None) -> dict[str, Any]:
        event = self.state.events.get(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        require_owner(event, user, action="manage")

        responses = self.state.responses_for(event_id)
        roster = self.roster_lookup(event_id)
        baseline = with_roster_placeholders(responses, roster, event_id=event_id)
        groups: dict[str, list[dict[str, Any]]] = {"attending": [], "notAttending": [], "invited": []}
        for rsvp in baseline:
            key = {
                Attendance.YES: "attending",
                Attendance.NO: "notAttending",
                Attendance.INVITED: "invited",
            }[rsvp.attending]
            groups[key].append(rsvp.to_wire())

        view: dict[str, Any] = {
            "event": event.to_wire(),
            "stats": compute_stats(responses).as_dict(),
            "rosterStats": compute_stats(baseline).as_dict(),
            "roster": roster_summary(responses, [email for email, _ in roster]),
            "responses": groups,
            "seating": None,
        }
        if event.seating_enabled:
            # Work on a copy; persisting the synced chart is a command's job.
            allocator = SeatingAllocator(event.seating_chart.model_copy(deep=True))
            attending = attending_guests(responses)
            allocator.sync_unassigned_guests(attending)
            view["seating"] = {
                "chart": allocator.chart.to_wire(),
                "stats": allocator.stats(),
                "unassigned": [rsvp.to_wire() for rsvp in allocator.unassigned_details(attending)],
            }
        return view
