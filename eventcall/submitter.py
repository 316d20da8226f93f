"""Client for the RSVP dispatch backend."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from .config import Settings
from .errors import TransientRemoteError
from .remote import raise_for_status
from .retry import RetryHook, Sleep, retry_async

logger = logging.getLogger("uvicorn.error")

SUBMIT_EVENT_TYPE = "submit_rsvp"


class RemoteSubmitter:
    """Posts RSVP payloads to the dispatch endpoint with fixed-delay retries.

    Failures are translated into the shared error taxonomy: transient errors
    (network, 429, 5xx) are retried, everything else surfaces on the first
    attempt.
    """

    def __init__(
        self,
        *,
        dispatch_url: str,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.dispatch_url = dispatch_url
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.transport = transport
        self.sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> "RemoteSubmitter":
        return cls(
            dispatch_url=settings.dispatch_url,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay_seconds,
            timeout=settings.request_timeout_seconds,
            transport=transport,
            sleep=sleep,
        )

    async def submit_once(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> dict[str, Any]:
        body = {"event_type": SUBMIT_EVENT_TYPE, "client_payload": payload}
        try:
            response = await client.post(self.dispatch_url, json=body)
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"Submission failed: network error ({exc})") from exc
        raise_for_status(response, context="Submission")
        try:
            return response.json()
        except ValueError:
            return {}

    async def submit(
        self, payload: dict[str, Any], *, on_retry: RetryHook | None = None
    ) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:

            async def attempt(number: int) -> dict[str, Any]:
                logger.info(
                    "Submitting RSVP %s (attempt %d/%d)",
                    payload.get("rsvpId"),
                    number,
                    self.max_retries,
                )
                return await self.submit_once(client, payload)

            return await retry_async(
                attempt,
                attempts=self.max_retries,
                delay=self.retry_delay,
                on_retry=on_retry,
                sleep=self.sleep,
            )
