from __future__ import annotations

import asyncio
import csv
import io

import pytest

from eventcall.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from eventcall.events import EventManager
from eventcall.ownership import Identity
from eventcall.sync import AppState

from conftest import OWNER, STRANGER, make_event, make_rsvp, no_sleep


@pytest.fixture()
def manager(file_store) -> EventManager:
    return EventManager(file_store, AppState(), sleep=no_sleep)


def _seed(store, event=None, responses=None):
    async def run():
        await store.save_event(event or make_event())
        if responses is not None:
            await store.save_responses("evt-1", responses, sha=None)

    asyncio.run(run())


def _seated_event():
    return make_event(
        seatingChart={
            "enabled": True,
            "numberOfTables": 2,
            "seatsPerTable": 4,
            "tables": [
                {"tableNumber": 1, "capacity": 4, "assignedGuests": []},
                {"tableNumber": 2, "capacity": 4, "assignedGuests": []},
            ],
            "unassignedGuests": [],
        }
    )


def test_create_event_stamps_owner_and_sanitizes(manager, file_store):
    event = asyncio.run(
        manager.create_event(OWNER, {"title": " <Gala> ", "id": "chosen", "createdBy": "x@y.com"})
    )

    assert event.id != "chosen"
    assert event.title == "Gala"
    assert event.created_by == OWNER.email


def test_edit_event_leaves_seating_chart_alone(manager, file_store):
    _seed(file_store, _seated_event(), responses=[make_rsvp("r1")])
    forged = {
        "tables": [
            {
                "tableNumber": 1,
                "capacity": 2,
                "assignedGuests": [{"rsvpId": "r1", "guestCount": 9}],
            }
        ],
        "unassignedGuests": ["r1"],
    }

    event = asyncio.run(
        manager.edit_event("evt-1", OWNER, {"location": "Annex", "seatingChart": forged})
    )

    assert event.location == "Annex"
    assert [table.capacity for table in event.seating_chart.tables] == [4, 4]
    assert all(not table.assigned_guests for table in event.seating_chart.tables)
    assert event.created_by_username == OWNER.username
    assert asyncio.run(file_store.get_event(event.id)) is not None
    assert manager.state.events[event.id] == event


def test_create_event_requires_user_and_title(manager):
    with pytest.raises(AuthorizationError):
        asyncio.run(manager.create_event(None, {"title": "Gala"}))
    with pytest.raises(ValidationError):
        asyncio.run(manager.create_event(OWNER, {"title": "  "}))


def test_edit_event_keeps_immutable_fields(manager, file_store):
    _seed(file_store)
    event = asyncio.run(
        manager.edit_event("evt-1", OWNER, {"title": "Renamed", "createdBy": "thief@x.com"})
    )
    assert event.title == "Renamed"
    assert event.created_by == OWNER.email


def test_stranger_cannot_mutate_anything(manager, file_store):
    _seed(file_store, responses=[make_rsvp("a")])
    before = (file_store.root / "events" / "evt-1.json").read_bytes()

    with pytest.raises(AuthorizationError):
        asyncio.run(manager.edit_event("evt-1", STRANGER, {"title": "Hacked"}))
    with pytest.raises(AuthorizationError):
        asyncio.run(manager.delete_event("evt-1", STRANGER))
    with pytest.raises(AuthorizationError):
        asyncio.run(manager.delete_response("evt-1", STRANGER, "a"))
    with pytest.raises(AuthorizationError):
        asyncio.run(manager.enable_seating("evt-1", STRANGER, tables=2, seats_per_table=4))

    assert (file_store.root / "events" / "evt-1.json").read_bytes() == before
    assert len(asyncio.run(file_store.get_responses("evt-1")).value) == 1


def test_admin_may_manage_any_event(manager, file_store):
    _seed(file_store)
    admin = Identity(email="boss@example.com", is_admin=True)
    event = asyncio.run(manager.edit_event("evt-1", admin, {"location": "Hangar 3"}))
    assert event.location == "Hangar 3"


def test_edit_event_surfaces_concurrent_write(file_store):
    _seed(file_store)

    class RacingStore(type(file_store)):
        async def get_event(self, event_id):
            current = await super().get_event(event_id)
            (self.root / "events" / f"{event_id}.json").write_text('{"id": "evt-1", "title": "Other"}')
            return current

    manager = EventManager(RacingStore(file_store.root), sleep=no_sleep)
    with pytest.raises(ConflictError):
        asyncio.run(manager.edit_event("evt-1", OWNER, {"title": "Mine"}))


def test_delete_event_cascades(manager, file_store):
    _seed(file_store, responses=[make_rsvp("a")])
    asyncio.run(manager.add_roster("evt-1", OWNER, [("a@example.com", "A")]))
    manager.state.apply_delta("evt-1", event=make_event(), responses=[make_rsvp("a")])

    asyncio.run(manager.delete_event("evt-1", OWNER))

    assert asyncio.run(file_store.get_event("evt-1")) is None
    assert not (file_store.root / "rsvps" / "evt-1.json").exists()
    assert "evt-1" not in manager.state.events
    with pytest.raises(NotFoundError):
        asyncio.run(manager.roster("evt-1", OWNER))


def test_delete_response(manager, file_store):
    _seed(file_store, responses=[make_rsvp("a"), make_rsvp("b")])
    assert asyncio.run(manager.delete_response("evt-1", OWNER, "a")) is True
    assert asyncio.run(manager.delete_response("evt-1", OWNER, "zzz")) is False
    assert [r.rsvp_id for r in manager.state.responses["evt-1"]] == ["b"]


def test_seating_commands_require_enabled_chart(manager, file_store):
    _seed(file_store)
    with pytest.raises(ValidationError):
        asyncio.run(manager.assign_seat("evt-1", OWNER, "a", 1))
    with pytest.raises(ValidationError):
        asyncio.run(manager.seating_csv("evt-1", OWNER))


def test_enable_seating_syncs_attending_guests(manager, file_store):
    _seed(
        file_store,
        responses=[make_rsvp("a", guests=1), make_rsvp("b", attending=False), make_rsvp("c")],
    )

    event = asyncio.run(manager.enable_seating("evt-1", OWNER, tables=3, seats_per_table=6))

    chart = event.seating_chart
    assert chart.number_of_tables == 3
    assert chart.unassigned_guests == ["a", "c"]
    stored = asyncio.run(file_store.get_event("evt-1")).value
    assert stored.seating_chart.unassigned_guests == ["a", "c"]
    with pytest.raises(ValidationError):
        asyncio.run(manager.enable_seating("evt-1", OWNER, tables=0, seats_per_table=6))


def test_assign_reassign_and_unassign_persist(manager, file_store):
    _seed(file_store, _seated_event(), responses=[make_rsvp("a", guests=2), make_rsvp("b", attending=False)])

    assert asyncio.run(manager.assign_seat("evt-1", OWNER, "a", 1)).success
    not_attending = asyncio.run(manager.assign_seat("evt-1", OWNER, "b", 1))
    assert not not_attending.success and not_attending.message == "Guest not found"
    assert asyncio.run(manager.reassign_seat("evt-1", OWNER, "a", 2)).success

    chart = asyncio.run(file_store.get_event("evt-1")).value.seating_chart
    assert [g.rsvp_id for g in chart.tables[1].assigned_guests] == ["a"]
    assert chart.tables[1].assigned_guests[0].guest_count == 2

    assert asyncio.run(manager.unassign_seat("evt-1", OWNER, "a")) is True
    chart = asyncio.run(file_store.get_event("evt-1")).value.seating_chart
    assert chart.unassigned_guests == ["a"]


def test_auto_assign_and_view(manager, file_store):
    _seed(file_store, _seated_event(), responses=[make_rsvp(f"g{i}", guests=1) for i in range(5)])

    result = asyncio.run(manager.auto_assign("evt-1", OWNER))
    view = asyncio.run(manager.seating_view("evt-1", OWNER))

    assert result == {"assigned": 4, "failed": 1}
    assert view["stats"]["assigned"] == 8
    assert view["stats"]["unassigned"] == 1
    assert [guest["rsvpId"] for guest in view["unassigned"]] == ["g4"]


def test_seating_reads_and_failed_commands_do_not_write(manager, file_store):
    _seed(file_store, _seated_event(), responses=[make_rsvp("a", guests=5)])
    asyncio.run(manager.enable_seating("evt-1", OWNER, tables=2, seats_per_table=4))
    sha = asyncio.run(file_store.get_event("evt-1")).sha

    asyncio.run(manager.seating_view("evt-1", OWNER))
    assert not asyncio.run(manager.assign_seat("evt-1", OWNER, "a", 1)).success
    assert asyncio.run(manager.unassign_seat("evt-1", OWNER, "missing")) is False

    assert asyncio.run(file_store.get_event("evt-1")).sha == sha


def test_vip_and_csv_export(manager, file_store):
    _seed(file_store, _seated_event(), responses=[make_rsvp("a", name="Alice")])
    asyncio.run(manager.assign_seat("evt-1", OWNER, "a", 2))
    assert asyncio.run(manager.set_vip_table("evt-1", OWNER, 2, True)).success

    rows = list(csv.reader(io.StringIO(asyncio.run(manager.seating_csv("evt-1", OWNER)))))

    assert rows[1][:3] == ["2", "Yes", "Alice"]


def test_disable_seating(manager, file_store):
    _seed(file_store, _seated_event())
    event = asyncio.run(manager.disable_seating("evt-1", OWNER))
    assert event.seating_enabled is False


def test_check_in_by_token(manager, file_store):
    _seed(file_store, responses=[make_rsvp("a", checkInToken="tok-a"), make_rsvp("b")])

    rsvp = asyncio.run(manager.check_in("evt-1", OWNER, "tok-a"))

    assert rsvp.rsvp_id == "a" and rsvp.checked_in and rsvp.checked_in_at
    stored = {r.rsvp_id: r for r in asyncio.run(file_store.get_responses("evt-1")).value}
    assert stored["a"].checked_in is True
    assert stored["b"].checked_in is False
    with pytest.raises(NotFoundError):
        asyncio.run(manager.check_in("evt-1", OWNER, "unknown"))
    with pytest.raises(ValidationError):
        asyncio.run(manager.check_in("evt-1", OWNER, ""))


def test_roster_management(manager, file_store):
    _seed(file_store)

    added = asyncio.run(
        manager.add_roster("evt-1", OWNER, [("A@Example.com", "Ann"), ("a@example.com", None)])
    )

    assert added == 1
    assert asyncio.run(manager.roster("evt-1", OWNER)) == [("a@example.com", "Ann")]
    with pytest.raises(ValidationError):
        asyncio.run(manager.add_roster("evt-1", OWNER, [("not-an-email", None)]))
    with pytest.raises(AuthorizationError):
        asyncio.run(manager.roster("evt-1", STRANGER))
    assert asyncio.run(manager.clear_roster("evt-1", OWNER)) == 1
