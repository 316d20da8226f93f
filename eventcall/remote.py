"""Remote JSON data stores for events, RSVPs and the intake queue.

Two interchangeable backends share one async interface:

* ``FileDataStore`` keeps the same tree a data repository would hold
  (``events/<id>.json``, ``rsvps/<eventId>.json``, ``intake/<entry>.json``)
  under a local directory. Used for development and tests.
* ``GitHubDataStore`` talks to the GitHub contents and issues APIs through
  httpx. Pending intake entries are open issues carrying a fenced JSON body.

Every file write is conditional on the blob SHA that was read. Writing with a
stale SHA, or without one against an existing file, raises ``ConflictError``.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError as PydanticValidationError

from .config import Settings
from .errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RATE_LIMIT,
    RemoteError,
    TransientRemoteError,
)
from .schemas import RSVP, Event, IntakeEntry
from .utils import now_ms

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

EVENTS_DIR = "events"
RSVPS_DIR = "rsvps"
INTAKE_DIR = "intake"
IMAGES_DIR = "images"

_json_block = re.compile(r"```json\s*([\s\S]*?)\s*```")


@dataclass(frozen=True)
class Versioned(Generic[T]):
    value: T
    sha: str | None


class DataStore(Protocol):
    async def load_events(self) -> dict[str, Event]: ...

    async def load_responses(self) -> dict[str, list[RSVP]]: ...

    async def get_event(self, event_id: str) -> Versioned[Event] | None: ...

    async def save_event(self, event: Event, *, sha: str | None = None) -> str: ...

    async def delete_event(
        self, event_id: str, title: str, cover_image_ref: str | None = None
    ) -> None: ...

    async def get_responses(self, event_id: str) -> Versioned[list[RSVP]]: ...

    async def save_responses(
        self, event_id: str, responses: list[RSVP], *, sha: str | None
    ) -> str: ...

    async def list_pending(self) -> list[IntakeEntry]: ...

    async def create_intake(self, payload: dict[str, Any]) -> IntakeEntry: ...

    async def mark_processed(self, entry: IntakeEntry, *, note: str = "") -> None: ...

    async def aclose(self) -> None: ...


def blob_sha(data: bytes) -> str:
    """Return the git blob SHA-1 for ``data``."""
    header = f"blob {len(data)}\0".encode("ascii")
    return hashlib.sha1(header + data).hexdigest()


def encode_json(value: Any) -> bytes:
    return (json.dumps(value, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


def _decode(data: bytes, *, source: str) -> Any:
    """Decode a stored JSON document; ``None`` when it is not valid JSON."""
    try:
        return json.loads(data)
    except ValueError as exc:
        logger.warning("Skipping unreadable JSON in %s: %s", source, exc)
        return None


def _parse_events(raw: Any, *, source: str) -> Event | None:
    if raw is None:
        return None
    try:
        return Event.model_validate(raw)
    except PydanticValidationError as exc:
        logger.warning("Skipping malformed event in %s: %s", source, exc)
        return None


def _parse_responses(raw: Any, *, event_id: str, source: str) -> list[RSVP]:
    if not isinstance(raw, list):
        logger.warning("Skipping malformed response list in %s", source)
        return []
    responses: list[RSVP] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        item = {"eventId": event_id, **item}
        try:
            responses.append(RSVP.model_validate(item))
        except PydanticValidationError as exc:
            logger.warning("Skipping malformed RSVP in %s: %s", source, exc)
    return responses


def raise_for_status(response: httpx.Response, *, context: str) -> None:
    """Translate an HTTP error status into the EventCall error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    try:
        detail = response.json().get("message") or response.json().get("error")
    except (ValueError, AttributeError):
        detail = None
    message = f"{context} failed: {status}" + (f" ({detail})" if detail else "")
    if status in (401, 403):
        if status == 403 and response.headers.get("x-ratelimit-remaining") == "0":
            raise TransientRemoteError(message, category=RATE_LIMIT, status_code=status)
        raise AuthorizationError(message, status_code=status)
    if status == 404:
        raise NotFoundError(message, status_code=status)
    if status in (409, 412, 422):
        raise ConflictError(message, status_code=status)
    if status == 429:
        raise TransientRemoteError(message, category=RATE_LIMIT, status_code=status)
    if status >= 500:
        raise TransientRemoteError(message, status_code=status)
    raise RemoteError(message, status_code=status)


class FileDataStore:
    """Data repository layout on the local filesystem."""

    def __init__(self, root: Path):
        self.root = Path(root)
        for name in (EVENTS_DIR, RSVPS_DIR, INTAKE_DIR, IMAGES_DIR):
            (self.root / name).mkdir(parents=True, exist_ok=True)

    def _read(self, relative: str) -> tuple[bytes, str] | None:
        path = self.root / relative
        if not path.is_file():
            return None
        data = path.read_bytes()
        return data, blob_sha(data)

    def _write(self, relative: str, data: bytes, *, sha: str | None) -> str:
        path = self.root / relative
        current = self._read(relative)
        if current is not None and current[1] != sha:
            raise ConflictError(f"{relative} changed since it was read")
        if current is None and sha is not None:
            raise ConflictError(f"{relative} was removed since it was read")
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
        return blob_sha(data)

    def _delete(self, relative: str) -> bool:
        path = self.root / relative
        if not path.exists():
            return False
        path.unlink()
        return True

    async def load_events(self) -> dict[str, Event]:
        events: dict[str, Event] = {}
        for path in sorted((self.root / EVENTS_DIR).glob("*.json")):
            event = _parse_events(
                _decode(path.read_bytes(), source=str(path)), source=str(path)
            )
            if event is not None:
                events[event.id] = event
        return events

    async def load_responses(self) -> dict[str, list[RSVP]]:
        responses: dict[str, list[RSVP]] = {}
        for path in sorted((self.root / RSVPS_DIR).glob("*.json")):
            event_id = path.stem
            responses[event_id] = _parse_responses(
                _decode(path.read_bytes(), source=str(path)),
                event_id=event_id,
                source=str(path),
            )
        return responses

    async def get_event(self, event_id: str) -> Versioned[Event] | None:
        current = self._read(f"{EVENTS_DIR}/{event_id}.json")
        if current is None:
            return None
        event = _parse_events(_decode(current[0], source=event_id), source=event_id)
        if event is None:
            return None
        return Versioned(event, current[1])

    async def save_event(self, event: Event, *, sha: str | None = None) -> str:
        return self._write(
            f"{EVENTS_DIR}/{event.id}.json", encode_json(event.to_wire()), sha=sha
        )

    async def delete_event(
        self, event_id: str, title: str, cover_image_ref: str | None = None
    ) -> None:
        self._delete(f"{EVENTS_DIR}/{event_id}.json")
        self._delete(f"{RSVPS_DIR}/{event_id}.json")
        if cover_image_ref:
            name = Path(urlparse(cover_image_ref).path).name
            if name:
                self._delete(f"{IMAGES_DIR}/{name}")
        logger.info("Deleted event %s (%s) from file store", event_id, title)

    async def get_responses(self, event_id: str) -> Versioned[list[RSVP]]:
        current = self._read(f"{RSVPS_DIR}/{event_id}.json")
        if current is None:
            return Versioned([], None)
        responses = _parse_responses(
            _decode(current[0], source=event_id), event_id=event_id, source=event_id
        )
        return Versioned(responses, current[1])

    async def save_responses(
        self, event_id: str, responses: list[RSVP], *, sha: str | None
    ) -> str:
        payload = [response.to_wire() for response in responses]
        return self._write(f"{RSVPS_DIR}/{event_id}.json", encode_json(payload), sha=sha)

    async def list_pending(self) -> list[IntakeEntry]:
        entries: list[IntakeEntry] = []
        for path in sorted((self.root / INTAKE_DIR).glob("*.json")):
            raw = _decode(path.read_bytes(), source=str(path))
            if not isinstance(raw, dict) or not isinstance(raw.get("payload") or {}, dict):
                logger.warning("Skipping malformed intake entry %s", path.name)
                continue
            if raw.get("processed"):
                continue
            entries.append(
                IntakeEntry(entry_id=path.stem, payload=raw.get("payload") or {})
            )
        return entries

    async def create_intake(self, payload: dict[str, Any]) -> IntakeEntry:
        entry_id = f"{now_ms():013d}-{uuid.uuid4().hex[:8]}"
        record = {"payload": payload, "processed": False}
        self._write(f"{INTAKE_DIR}/{entry_id}.json", encode_json(record), sha=None)
        return IntakeEntry(entry_id=entry_id, payload=payload)

    async def mark_processed(self, entry: IntakeEntry, *, note: str = "") -> None:
        relative = f"{INTAKE_DIR}/{entry.entry_id}.json"
        current = self._read(relative)
        if current is None:
            raise NotFoundError(f"Intake entry {entry.entry_id} not found")
        record = _decode(current[0], source=relative)
        if not isinstance(record, dict):
            record = {}
        record.update({"processed": True, "processedAt": now_ms(), "note": note})
        self._write(relative, encode_json(record), sha=current[1])

    async def aclose(self) -> None:
        return None


class GitHubDataStore:
    """GitHub-hosted data repository accessed over the REST API."""

    def __init__(
        self,
        *,
        owner: str,
        repo: str,
        token: str,
        branch: str = "main",
        image_repo: str = "",
        intake_label: str = "rsvp",
        api_url: str = "https://api.github.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not owner or not repo:
            raise ValueError("GitHub owner and repo are required")
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.image_repo = image_repo
        self.intake_label = intake_label
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "EventCall",
        }
        if token:
            headers["Authorization"] = f"token {token}"
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def _contents_url(self, path: str, *, repo: str | None = None) -> str:
        return f"/repos/{self.owner}/{repo or self.repo}/contents/{path}"

    def _repo_url(self, suffix: str) -> str:
        return f"/repos/{self.owner}/{self.repo}/{suffix}"

    async def _request(self, method: str, url: str, *, context: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"{context} failed: network error ({exc})") from exc
        raise_for_status(response, context=context)
        return response

    async def _get_file(self, path: str) -> tuple[bytes, str] | None:
        try:
            response = await self._request(
                "GET",
                self._contents_url(path),
                params={"ref": self.branch},
                context=f"Read {path}",
            )
        except NotFoundError:
            return None
        data = response.json()
        if data.get("encoding") == "none":
            # Files over 1 MB come back without inline content.
            blob = await self._request(
                "GET", self._repo_url(f"git/blobs/{data['sha']}"), context=f"Read blob {path}"
            )
            data = {**blob.json(), "sha": data["sha"]}
        content = base64.b64decode(data.get("content") or "")
        return content, data["sha"]

    async def _put_file(self, path: str, content: bytes, *, sha: str | None, message: str) -> str:
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": self.branch,
        }
        if sha:
            body["sha"] = sha
        response = await self._request(
            "PUT", self._contents_url(path), json=body, context=f"Write {path}"
        )
        return response.json()["content"]["sha"]

    async def _delete_file(self, path: str, *, message: str, repo: str | None = None) -> bool:
        try:
            response = await self._request(
                "GET",
                self._contents_url(path, repo=repo),
                params={"ref": self.branch},
                context=f"Read {path}",
            )
        except NotFoundError:
            return False
        await self._request(
            "DELETE",
            self._contents_url(path, repo=repo),
            json={"message": message, "sha": response.json()["sha"], "branch": self.branch},
            context=f"Delete {path}",
        )
        return True

    async def _list_dir(self, path: str) -> list[dict[str, Any]]:
        try:
            response = await self._request(
                "GET",
                self._contents_url(path),
                params={"ref": self.branch},
                context=f"List {path}",
            )
        except NotFoundError:
            return []
        return [
            item
            for item in response.json()
            if item.get("type") == "file" and item.get("name", "").endswith(".json")
        ]

    async def load_events(self) -> dict[str, Event]:
        events: dict[str, Event] = {}
        for item in await self._list_dir(EVENTS_DIR):
            current = await self._get_file(item["path"])
            if current is None:
                continue
            raw = _decode(current[0], source=item["path"])
            event = _parse_events(raw, source=item["path"])
            if event is not None:
                events[event.id] = event
        return events

    async def load_responses(self) -> dict[str, list[RSVP]]:
        responses: dict[str, list[RSVP]] = {}
        for item in await self._list_dir(RSVPS_DIR):
            current = await self._get_file(item["path"])
            if current is None:
                continue
            event_id = item["name"].removesuffix(".json")
            responses[event_id] = _parse_responses(
                _decode(current[0], source=item["path"]),
                event_id=event_id,
                source=item["path"],
            )
        return responses

    async def get_event(self, event_id: str) -> Versioned[Event] | None:
        current = await self._get_file(f"{EVENTS_DIR}/{event_id}.json")
        if current is None:
            return None
        event = _parse_events(_decode(current[0], source=event_id), source=event_id)
        if event is None:
            return None
        return Versioned(event, current[1])

    async def save_event(self, event: Event, *, sha: str | None = None) -> str:
        return await self._put_file(
            f"{EVENTS_DIR}/{event.id}.json",
            encode_json(event.to_wire()),
            sha=sha,
            message=f"Update event: {event.title}",
        )

    async def delete_event(
        self, event_id: str, title: str, cover_image_ref: str | None = None
    ) -> None:
        await self._delete_file(
            f"{EVENTS_DIR}/{event_id}.json", message=f"Delete event: {title}"
        )
        await self._delete_file(
            f"{RSVPS_DIR}/{event_id}.json", message=f"Delete RSVPs for event: {title}"
        )
        if cover_image_ref and self.image_repo:
            name = Path(urlparse(cover_image_ref).path).name
            if name:
                await self._delete_file(
                    f"{IMAGES_DIR}/{name}",
                    message=f"Delete cover image for event: {title}",
                    repo=self.image_repo,
                )
        logger.info("Deleted event %s (%s) from GitHub", event_id, title)

    async def get_responses(self, event_id: str) -> Versioned[list[RSVP]]:
        current = await self._get_file(f"{RSVPS_DIR}/{event_id}.json")
        if current is None:
            return Versioned([], None)
        responses = _parse_responses(
            _decode(current[0], source=event_id), event_id=event_id, source=event_id
        )
        return Versioned(responses, current[1])

    async def save_responses(
        self, event_id: str, responses: list[RSVP], *, sha: str | None
    ) -> str:
        payload = [response.to_wire() for response in responses]
        return await self._put_file(
            f"{RSVPS_DIR}/{event_id}.json",
            encode_json(payload),
            sha=sha,
            message=f"Process RSVPs for event {event_id} ({len(responses)} total)",
        )

    async def list_pending(self) -> list[IntakeEntry]:
        response = await self._request(
            "GET",
            self._repo_url("issues"),
            params={"state": "open", "labels": self.intake_label, "per_page": 100},
            context="List RSVP issues",
        )
        entries: list[IntakeEntry] = []
        for issue in response.json():
            if "pull_request" in issue:
                continue
            match = _json_block.search(issue.get("body") or "")
            if not match:
                logger.warning("No JSON data found in issue #%s", issue.get("number"))
                continue
            try:
                payload = json.loads(match.group(1))
            except json.JSONDecodeError:
                logger.warning("Invalid JSON in issue #%s", issue.get("number"))
                continue
            if not isinstance(payload, dict):
                logger.warning("Issue #%s does not carry a JSON object", issue.get("number"))
                continue
            entries.append(
                IntakeEntry(
                    entry_id=str(issue["number"]),
                    payload=payload,
                    url=issue.get("html_url"),
                )
            )
        return entries

    async def create_intake(self, payload: dict[str, Any]) -> IntakeEntry:
        body = (
            f"RSVP submitted for event `{payload.get('eventId', '')}`.\n\n"
            f"```json\n{json.dumps(payload, indent=2)}\n```\n"
        )
        response = await self._request(
            "POST",
            self._repo_url("issues"),
            json={
                "title": f"RSVP: {payload.get('name', 'Unknown')} - {payload.get('eventId', '')}",
                "body": body,
                "labels": [self.intake_label],
            },
            context="Create RSVP issue",
        )
        issue = response.json()
        return IntakeEntry(
            entry_id=str(issue["number"]), payload=payload, url=issue.get("html_url")
        )

    async def mark_processed(self, entry: IntakeEntry, *, note: str = "") -> None:
        if note:
            await self._request(
                "POST",
                self._repo_url(f"issues/{entry.entry_id}/comments"),
                json={"body": note},
                context=f"Comment on issue #{entry.entry_id}",
            )
        await self._request(
            "PATCH",
            self._repo_url(f"issues/{entry.entry_id}"),
            json={
                "state": "closed",
                "state_reason": "completed",
                "labels": [self.intake_label, "processed"],
            },
            context=f"Close issue #{entry.entry_id}",
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def build_store(settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> DataStore:
    """Return the data store selected by ``settings.store_backend``."""
    if settings.store_backend == "github":
        return GitHubDataStore(
            owner=settings.github_owner,
            repo=settings.github_repo,
            token=settings.github_token,
            branch=settings.github_branch,
            image_repo=settings.github_image_repo,
            intake_label=settings.intake_label,
            api_url=settings.github_api_url,
            timeout=settings.request_timeout_seconds,
            transport=transport,
        )
    return FileDataStore(settings.store_dir)
