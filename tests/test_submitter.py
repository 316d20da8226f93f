from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from eventcall.errors import (
    RATE_LIMIT,
    AuthorizationError,
    NotFoundError,
    TransientRemoteError,
)

from conftest import make_submitter


def test_submit_posts_dispatch_envelope():
    submitter, recorder = make_submitter([httpx.Response(202, json={"accepted": True})])
    result = asyncio.run(submitter.submit({"rsvpId": "r1", "email": "a@x.com"}))

    assert result == {"accepted": True}
    assert recorder.calls == 1
    body = json.loads(recorder.requests[0].content)
    assert body == {
        "event_type": "submit_rsvp",
        "client_payload": {"rsvpId": "r1", "email": "a@x.com"},
    }


def test_submit_retries_server_errors_then_succeeds():
    submitter, recorder = make_submitter(
        [httpx.Response(502), httpx.Response(202, json={"accepted": True})]
    )
    asyncio.run(submitter.submit({"rsvpId": "r1"}))
    assert recorder.calls == 2


def test_submit_gives_up_after_max_retries():
    submitter, recorder = make_submitter(
        [httpx.ConnectError("offline")] * 3 + [httpx.Response(202)]
    )
    with pytest.raises(TransientRemoteError):
        asyncio.run(submitter.submit({"rsvpId": "r1"}))
    assert recorder.calls == 3


def test_rate_limit_is_transient_with_its_own_category():
    submitter, _ = make_submitter([httpx.Response(429)], max_retries=1)
    with pytest.raises(TransientRemoteError) as excinfo:
        asyncio.run(submitter.submit({"rsvpId": "r1"}))
    assert excinfo.value.category == RATE_LIMIT


@pytest.mark.parametrize(
    ("status", "error"), [(401, AuthorizationError), (403, AuthorizationError), (404, NotFoundError)]
)
def test_client_errors_are_not_retried(status, error):
    submitter, recorder = make_submitter([httpx.Response(status, json={"message": "nope"})])
    with pytest.raises(error) as excinfo:
        asyncio.run(submitter.submit({"rsvpId": "r1"}))
    assert recorder.calls == 1
    assert excinfo.value.status_code == status
