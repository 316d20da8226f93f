from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from eventcall import storage
from eventcall.errors import (
    AuthorizationError,
    NotFoundError,
    SyncInProgressError,
    TransientRemoteError,
)
from eventcall.fallback import SubmissionQueue
from eventcall.remote import FileDataStore, encode_json
from eventcall.stats import compute_stats
from eventcall.sync import AppState, SyncOrchestrator, merge_responses, update_responses

from conftest import OWNER, STRANGER, make_event, make_rsvp, make_submitter, no_sleep


def _orchestrator(store, **kwargs) -> SyncOrchestrator:
    return SyncOrchestrator(store, AppState(), sleep=no_sleep, **kwargs)


def _seed(store, *events, responses=None):
    async def run():
        for event in events:
            await store.save_event(event)
        for event_id, items in (responses or {}).items():
            await store.save_responses(event_id, items, sha=None)

    asyncio.run(run())


def _intake(store, *payloads):
    async def run():
        return [await store.create_intake(payload) for payload in payloads]

    return asyncio.run(run())


def test_merge_same_email_twice_keeps_one_record_with_latest_values():
    first = make_rsvp("r1", email="pat@example.com", guests=2)
    second = make_rsvp("r2", email="PAT@example.com ", guests=0, name="Pat Updated")

    merged, rejected = merge_responses([], [first, second], now=42)

    assert rejected == []
    assert len(merged) == 1
    record = merged[0]
    assert record.rsvp_id == "r1"
    assert record.edit_token == "token-r1"
    assert record.guest_count == 0
    assert record.name == "Pat Updated"
    assert record.is_update is True
    assert record.last_modified == 42
    assert compute_stats(merged).total_headcount == 1


def test_merge_by_rsvp_id_requires_matching_edit_token():
    stored = make_rsvp("r1", checkedIn=True, checkInToken="ci-1")
    good = make_rsvp("r1", email="new@example.com", guests=3)
    bad = make_rsvp("r1", guests=5, edit_token="forged")

    merged, rejected = merge_responses([stored], [bad, good], now=1)

    assert rejected == [bad]
    assert len(merged) == 1
    assert merged[0].email == "new@example.com"
    assert merged[0].guest_count == 3
    assert merged[0].checked_in is True
    assert merged[0].check_in_token == "ci-1"


def test_merge_is_idempotent_for_the_same_submission():
    submission = make_rsvp("r1", guests=1)
    once, _ = merge_responses([], [submission], now=5)
    twice, _ = merge_responses(once, [submission], now=5)
    assert len(twice) == 1
    assert twice[0].guest_count == once[0].guest_count


def test_edit_cannot_take_over_another_records_email():
    first = make_rsvp("x", email="a@x.com")
    second = make_rsvp("y", email="b@x.com")
    moved = make_rsvp("x", email="B@x.com", guests=2)

    merged, rejected = merge_responses([first, second], [moved], now=1)

    assert rejected == [moved]
    assert [r.email for r in merged] == ["a@x.com", "b@x.com"]
    assert merged[0].guest_count == 0


def test_process_pending_intake_promotes_and_closes_entries(file_store):
    _seed(file_store, make_event())
    _intake(
        file_store,
        make_rsvp("r1", email="pat@example.com", guests=2).to_wire(),
        make_rsvp("r2", email="pat@example.com", guests=0).to_wire(),
    )
    orchestrator = _orchestrator(file_store)

    report = asyncio.run(orchestrator.process_pending_intake(OWNER))

    assert report.as_dict() == {
        "total": 2,
        "processed": 2,
        "errors": 0,
        "skipped": 0,
        "rejected": 0,
        "eventIds": ["evt-1"],
    }
    stored = json.loads((file_store.root / "rsvps" / "evt-1.json").read_text())
    assert len(stored) == 1
    assert stored[0]["guestCount"] == 0
    assert stored[0]["intakeId"]
    assert asyncio.run(file_store.list_pending()) == []
    assert orchestrator.state.pending_count == 0
    assert compute_stats(orchestrator.state.responses["evt-1"]).total_headcount == 1
    assert storage.get_meta(storage.LAST_SYNC_KEY)


def test_wrong_edit_token_is_rejected_and_closed(file_store):
    _seed(file_store, make_event(), responses={"evt-1": [make_rsvp("r1", guests=1)]})
    _intake(file_store, make_rsvp("r1", guests=4, edit_token="forged").to_wire())
    orchestrator = _orchestrator(file_store)

    report = asyncio.run(orchestrator.process_pending_intake(OWNER))

    assert report.rejected == 1 and report.processed == 0
    stored = asyncio.run(file_store.get_responses("evt-1")).value
    assert stored[0].guest_count == 1
    assert asyncio.run(file_store.list_pending()) == []
    intake_file = next((file_store.root / "intake").glob("*.json"))
    assert "Rejected" in json.loads(intake_file.read_text())["note"]


def test_entries_for_unowned_events_are_skipped(file_store):
    _seed(
        file_store,
        make_event(),
        make_event(id="evt-2", createdBy="x@y.com", createdByUsername="x"),
    )
    _intake(
        file_store,
        make_rsvp("r1").to_wire(),
        make_rsvp("r2", event_id="evt-2").to_wire(),
        {"name": "No event"},
    )
    orchestrator = _orchestrator(file_store)

    report = asyncio.run(orchestrator.process_pending_intake(OWNER))

    assert (report.processed, report.skipped, report.errors) == (1, 1, 1)
    assert orchestrator.state.pending_count == 2
    remaining = asyncio.run(file_store.list_pending())
    assert {entry.event_id for entry in remaining} == {"evt-2", ""}


def test_sync_event_rsvps_is_scoped_and_guarded(file_store):
    _seed(file_store, make_event(), make_event(id="evt-2"))
    _intake(file_store, make_rsvp("r1").to_wire(), make_rsvp("r2", event_id="evt-2").to_wire())
    orchestrator = _orchestrator(file_store)

    with pytest.raises(AuthorizationError):
        asyncio.run(orchestrator.sync_event_rsvps("evt-1", STRANGER))
    assert len(asyncio.run(file_store.list_pending())) == 2
    with pytest.raises(NotFoundError):
        asyncio.run(orchestrator.sync_event_rsvps("missing", OWNER))

    report = asyncio.run(orchestrator.sync_event_rsvps("evt-1", OWNER))
    assert (report.processed, report.skipped) == (1, 1)
    assert asyncio.run(orchestrator.pending_count()) == 1


def test_sync_requires_signed_in_user(file_store):
    orchestrator = _orchestrator(file_store)
    with pytest.raises(AuthorizationError) as excinfo:
        asyncio.run(orchestrator.process_pending_intake(None))
    assert excinfo.value.status_code == 401


class BlockingStore(FileDataStore):
    release: asyncio.Event

    async def list_pending(self):
        await self.release.wait()
        return await super().list_pending()


def test_overlapping_sync_is_refused(tmp_path):
    store = BlockingStore(tmp_path / "store")
    orchestrator = _orchestrator(store)

    async def run():
        store.release = asyncio.Event()
        first = asyncio.create_task(orchestrator.process_pending_intake(OWNER))
        await asyncio.sleep(0)
        assert orchestrator.in_progress
        with pytest.raises(SyncInProgressError):
            await orchestrator.process_pending_intake(OWNER)
        skipped = await orchestrator.periodic_sync()
        store.release.set()
        return skipped, await first

    skipped, report = asyncio.run(run())
    assert skipped is None
    assert report.total == 0
    assert orchestrator.in_progress is False


class RacingStore(FileDataStore):
    """Lets another writer slip in between the first read and write."""

    raced = False

    async def get_responses(self, event_id):
        current = await super().get_responses(event_id)
        if not self.raced:
            self.raced = True
            competing = [make_rsvp("other", email="other@example.com").to_wire()]
            (self.root / "rsvps" / f"{event_id}.json").write_bytes(encode_json(competing))
        return current


def test_conflicting_write_is_retried_against_fresh_data(tmp_path):
    store = RacingStore(tmp_path / "store")
    _seed(store, make_event())
    _intake(store, make_rsvp("r1").to_wire())
    orchestrator = _orchestrator(store)

    report = asyncio.run(orchestrator.process_pending_intake(OWNER))

    assert report.processed == 1
    stored = asyncio.run(store.get_responses("evt-1")).value
    assert sorted(r.rsvp_id for r in stored) == ["other", "r1"]


def test_update_responses_applies_mutation(file_store):
    _seed(file_store, make_event(), responses={"evt-1": [make_rsvp("a"), make_rsvp("b")]})

    result = asyncio.run(
        update_responses(file_store, "evt-1", lambda rs: [r for r in rs if r.rsvp_id != "a"])
    )

    assert [r.rsvp_id for r in result] == ["b"]


class BrokenStore(FileDataStore):
    async def load_events(self):
        raise TransientRemoteError("Read events failed: 503")


def test_load_all_degrades_to_empty_with_error(tmp_path):
    orchestrator = _orchestrator(BrokenStore(tmp_path / "store"))
    result = asyncio.run(orchestrator.load_all(OWNER))
    assert result == {"events": {}, "responses": {}, "error": "Read events failed: 503"}
    assert orchestrator.state.last_error == "Read events failed: 503"


def test_load_all_skips_unreadable_files(file_store):
    _seed(file_store, make_event(), responses={"evt-1": [make_rsvp("a")]})
    (file_store.root / "events" / "broken.json").write_text("{not json")
    (file_store.root / "rsvps" / "evt-9.json").write_text("\x00garbage")
    orchestrator = _orchestrator(file_store)

    result = asyncio.run(orchestrator.load_all(OWNER))

    assert list(result["events"]) == ["evt-1"]
    assert [r.rsvp_id for r in result["responses"]["evt-1"]] == ["a"]
    assert orchestrator.state.responses["evt-9"] == []
    assert result["error"] is None


def test_malformed_intake_files_do_not_stop_a_sync(file_store):
    _seed(file_store, make_event())
    (file_store.root / "intake" / "0001-bad.json").write_text("[1, 2]")
    (file_store.root / "intake" / "0002-bad.json").write_text("{broken")
    (file_store.root / "intake" / "0003-bad.json").write_text('{"payload": "nope"}')
    _intake(file_store, make_rsvp("r1").to_wire())
    orchestrator = _orchestrator(file_store)

    report = asyncio.run(orchestrator.process_pending_intake(OWNER))

    assert (report.total, report.processed, report.errors) == (1, 1, 0)
    assert [r.rsvp_id for r in orchestrator.state.responses["evt-1"]] == ["r1"]


def test_load_all_filters_to_owned_events(file_store):
    _seed(
        file_store,
        make_event(),
        make_event(id="evt-2", createdBy="x@y.com", createdByUsername="x"),
        responses={"evt-1": [make_rsvp("a")], "evt-2": [make_rsvp("b", event_id="evt-2")]},
    )
    orchestrator = _orchestrator(file_store)

    result = asyncio.run(orchestrator.load_all(OWNER))

    assert list(result["events"]) == ["evt-1"]
    assert list(result["responses"]) == ["evt-1"]
    assert set(orchestrator.state.events) == {"evt-1", "evt-2"}


def test_periodic_sync_uses_system_identity(file_store):
    _seed(file_store, make_event(createdBy="x@y.com", createdByUsername="x"))
    _intake(file_store, make_rsvp("r1").to_wire())
    orchestrator = _orchestrator(file_store)

    report = asyncio.run(orchestrator.periodic_sync())

    assert report.processed == 1


def test_replay_local_fallback_resubmits_and_clears(file_store):
    _seed(file_store, make_event())
    queue = SubmissionQueue()
    queue.store("evt-1", make_rsvp("r1").to_wire())
    queue.store("evt-1", make_rsvp("r2").to_wire())
    submitter, recorder = make_submitter([httpx.Response(202), httpx.Response(401)])
    orchestrator = _orchestrator(file_store, queue=queue, submitter=submitter)

    result = asyncio.run(orchestrator.replay_local_fallback(OWNER, event_id="evt-1"))

    assert result == {"replayed": 1, "failed": 1, "skipped": 0, "remaining": 1}
    sent = json.loads(recorder.requests[0].content)["client_payload"]
    assert sent["submissionMethod"] == "secure_backend"
    assert [p["rsvpId"] for p in queue.pending("evt-1")] == ["r2"]


def test_replay_skips_events_the_user_does_not_manage(file_store):
    _seed(file_store, make_event(createdBy="x@y.com", createdByUsername="x"))
    queue = SubmissionQueue()
    queue.store("evt-1", make_rsvp("r1").to_wire())
    submitter, recorder = make_submitter([])
    orchestrator = _orchestrator(file_store, queue=queue, submitter=submitter)

    result = asyncio.run(orchestrator.replay_local_fallback(OWNER))

    assert result == {"replayed": 0, "failed": 0, "skipped": 1, "remaining": 1}
    assert recorder.calls == 0
    with pytest.raises(AuthorizationError):
        asyncio.run(orchestrator.replay_local_fallback(OWNER, event_id="evt-1"))
