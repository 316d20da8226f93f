from __future__ import annotations

import pytest

from eventcall.errors import AuthorizationError, NotFoundError
from eventcall.presenters import DashboardPresenter, EventManagementPresenter
from eventcall.sync import AppState

from conftest import OWNER, STRANGER, make_event, make_rsvp


@pytest.fixture()
def state() -> AppState:
    state = AppState()
    state.reload(
        {
            "evt-1": make_event(),
            "evt-0": make_event(id="evt-0", title="Earlier", date="2030-01-01"),
            "evt-x": make_event(id="evt-x", createdBy="x@y.com", createdByUsername="x"),
        },
        {
            "evt-1": [
                make_rsvp("a", guests=2),
                make_rsvp("b", attending=False),
            ],
            "evt-0": [make_rsvp("c", event_id="evt-0")],
            "evt-x": [make_rsvp("d", event_id="evt-x", guests=5)],
        },
    )
    return state


def no_roster(event_id: str):
    return []


def test_dashboard_lists_owned_events_by_date(state):
    state.pending_count = 4
    view = DashboardPresenter(state, roster_lookup=no_roster).render(OWNER)

    assert [card["id"] for card in view["events"]] == ["evt-0", "evt-1"]
    assert view["events"][1]["stats"]["totalHeadcount"] == 3
    assert view["totals"]["total"] == 3
    assert view["totals"]["totalHeadcount"] == 4
    assert view["pendingCount"] == 4
    assert view["error"] is None


def test_dashboard_for_stranger_is_empty(state):
    view = DashboardPresenter(state, roster_lookup=no_roster).render(STRANGER)
    assert view["events"] == []
    assert view["totals"]["total"] == 0


def test_management_view_groups_responses_and_roster(state):
    roster = {"evt-1": [("a@example.com", "A"), ("late@example.com", "Late")]}
    presenter = EventManagementPresenter(state, roster_lookup=lambda event_id: roster.get(event_id, []))

    view = presenter.render("evt-1", OWNER)

    assert [r["rsvpId"] for r in view["responses"]["attending"]] == ["a"]
    assert [r["rsvpId"] for r in view["responses"]["notAttending"]] == ["b"]
    assert [r["email"] for r in view["responses"]["invited"]] == ["late@example.com"]
    assert view["stats"]["responseRate"] == 100
    assert view["rosterStats"]["responseRate"] == 67
    assert view["roster"] == {
        "invited": 2,
        "respondedFromRoster": 1,
        "pendingFromRoster": 1,
        "unlistedResponses": 1,
    }
    assert view["seating"] is None


def test_management_view_syncs_seating_without_mutating_state(state):
    event = make_event(
        seatingChart={
            "numberOfTables": 1,
            "seatsPerTable": 4,
            "tables": [{"tableNumber": 1, "capacity": 4}],
        }
    )
    state.apply_delta("evt-1", event=event)

    view = EventManagementPresenter(state, roster_lookup=no_roster).render("evt-1", OWNER)

    assert view["seating"]["chart"]["unassignedGuests"] == ["a"]
    assert view["seating"]["stats"]["capacity"] == 4
    assert state.events["evt-1"].seating_chart.unassigned_guests == []


def test_management_view_is_owner_only(state):
    presenter = EventManagementPresenter(state, roster_lookup=no_roster)
    with pytest.raises(AuthorizationError):
        presenter.render("evt-1", STRANGER)
    with pytest.raises(NotFoundError):
        presenter.render("missing", OWNER)
