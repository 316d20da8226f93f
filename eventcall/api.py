"""FastAPI application for EventCall."""

from __future__ import annotations

import logging
import tomllib
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import Field
from sqlalchemy.exc import OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .errors import (
    AuthorizationError,
    ConflictError,
    EventCallError,
    NotFoundError,
    RemoteError,
    SubmissionInProgressError,
    SyncInProgressError,
    TransientRemoteError,
    ValidationError,
    guidance_for,
)
from .events import EventManager
from .fallback import SubmissionQueue
from .ownership import Identity
from .pipeline import RSVPPipeline, SubmissionState
from .presenters import DashboardPresenter, EventManagementPresenter
from .remote import DataStore, build_store
from .scheduler import start_scheduler, stop_scheduler
from .schemas import WireModel
from .storage import init_db
from .submitter import SUBMIT_EVENT_TYPE, RemoteSubmitter
from .sync import AppState, SyncOrchestrator
from .utils import slugify

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("eventcall")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@dataclass
class Services:
    store: DataStore
    state: AppState
    queue: SubmissionQueue
    submitter: RemoteSubmitter
    orchestrator: SyncOrchestrator
    events: EventManager
    pipelines: dict[tuple[str, str], RSVPPipeline] = field(default_factory=dict)

    async def submit_rsvp(self, event_id: str, form: dict[str, Any]):
        """Submit through the pipeline held for this guest while one is running."""
        key = (event_id, str(form.get("email") or "").strip().lower())
        pipeline = self.pipelines.get(key)
        if pipeline is None:
            pipeline = self.pipelines[key] = RSVPPipeline(
                submitter=self.submitter,
                queue=self.queue,
                checkin_enabled=settings.checkin_enabled,
                public_base_url=settings.public_base_url,
            )
        try:
            return await pipeline.submit(event_id, form)
        finally:
            if not pipeline.in_progress:
                self.pipelines.pop(key, None)


def build_services(
    store: DataStore | None = None, *, submitter: RemoteSubmitter | None = None
) -> Services:
    store = store or build_store(settings)
    state = AppState()
    queue = SubmissionQueue()
    submitter = submitter or RemoteSubmitter.from_settings(settings)
    return Services(
        store=store,
        state=state,
        queue=queue,
        submitter=submitter,
        orchestrator=SyncOrchestrator(
            store,
            state,
            queue=queue,
            submitter=submitter,
            conflict_retries=settings.conflict_retries,
        ),
        events=EventManager(store, state, conflict_retries=settings.conflict_retries),
    )


services: Services | None = None


def get_services() -> Services:
    global services
    if services is None:
        services = build_services()
    return services


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    current = get_services()
    start_scheduler(current.orchestrator.periodic_sync)
    try:
        yield
    finally:
        stop_scheduler()
        await current.store.aclose()


app = FastAPI(title="EventCall", version=APP_VERSION, lifespan=lifespan)


def current_user(
    x_eventcall_user: str | None = Header(None),
    x_eventcall_username: str | None = Header(None),
) -> Identity | None:
    """Identity asserted by the upstream session layer."""
    return Identity.from_values(
        x_eventcall_user, x_eventcall_username, admins=settings.admin_identities
    )


def _require_user(user: Identity | None) -> Identity:
    if user is None:
        raise AuthorizationError("You must be signed in", status_code=401)
    return user


def _status_for(exc: EventCallError) -> int:
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, AuthorizationError):
        return 401 if exc.status_code == 401 else 403
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (ConflictError, SyncInProgressError, SubmissionInProgressError)):
        return 409
    if isinstance(exc, TransientRemoteError):
        return 503
    if isinstance(exc, RemoteError):
        return 502
    return 400


@app.exception_handler(EventCallError)
async def eventcall_error_handler(request: Request, exc: EventCallError):
    status = _status_for(exc)
    body: dict[str, Any] = {"detail": exc.message, "category": exc.category}
    if isinstance(exc, ValidationError):
        body["errors"] = exc.errors
    if isinstance(exc, RemoteError):
        body["guidance"] = guidance_for(exc)
    if status >= 500:
        logger.error(
            "Remote failure while handling %s %s: %s",
            request.method,
            request.url.path,
            exc.message,
        )
    return JSONResponse(body, status_code=status)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


class DispatchPayload(WireModel):
    event_type: str
    client_payload: dict[str, Any] = Field(default_factory=dict)


class SeatingSetupPayload(WireModel):
    tables: int = Field(ge=1, le=200)
    seats_per_table: int = Field(ge=1, le=100)


class SeatAssignmentPayload(WireModel):
    rsvp_id: str
    table_number: int = Field(ge=1)


class SeatReleasePayload(WireModel):
    rsvp_id: str


class VipPayload(WireModel):
    vip: bool = True


class RosterEntryPayload(WireModel):
    email: str
    name: str | None = None


class RosterPayload(WireModel):
    entries: list[RosterEntryPayload]


class CheckInPayload(WireModel):
    token: str


async def _ensure_loaded(current: Services, event_id: str) -> None:
    if event_id not in current.state.events:
        await current.orchestrator.load_all()


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION, "store": settings.store_backend}


@app.post("/api/dispatch", status_code=202)
async def api_dispatch(payload: DispatchPayload, current: Services = Depends(get_services)):
    """Accept a dispatched RSVP and queue it for the next sync pass."""
    if payload.event_type != SUBMIT_EVENT_TYPE:
        raise HTTPException(status_code=400, detail=f"Unsupported event type {payload.event_type!r}")
    data = payload.client_payload
    missing = [key for key in ("eventId", "rsvpId", "email") if not data.get(key)]
    if missing:
        raise ValidationError([f"Missing field: {key}" for key in missing])
    if await current.store.get_event(str(data["eventId"])) is None:
        raise NotFoundError(f"Event {data['eventId']} not found")
    entry = await current.store.create_intake(data)
    logger.info("Queued RSVP %s for event %s", data.get("rsvpId"), data.get("eventId"))
    return {"accepted": True, "entryId": entry.entry_id, "url": entry.url}


@app.post("/api/v1/events/{event_id}/rsvps", status_code=201)
async def api_submit_rsvp(
    event_id: str,
    form: dict[str, Any],
    response: Response,
    current: Services = Depends(get_services),
):
    await _ensure_loaded(current, event_id)
    event = current.state.events.get(event_id)
    if event is None:
        raise NotFoundError(f"Event {event_id} not found")
    if not event.allow_guests:
        form = {**form, "guestCount": 0}
    outcome = await current.submit_rsvp(event_id, form)
    if outcome.state is SubmissionState.FAILED:
        # Validation failures carry no RSVP; a populated one means local storage broke.
        response.status_code = 500 if outcome.rsvp is not None else 422
    elif outcome.state is SubmissionState.FALLBACK_STORED:
        response.status_code = 202
    return outcome.as_dict()


@app.get("/api/v1/dashboard")
async def api_dashboard(
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    user = _require_user(user)
    await current.orchestrator.load_all(user)
    return DashboardPresenter(current.state).render(user)


@app.post("/api/v1/events", status_code=201)
async def api_create_event(
    data: dict[str, Any],
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    event = await current.events.create_event(user, data)
    return {"event": event.to_wire()}


@app.get("/api/v1/events/{event_id}/manage")
async def api_manage_event(
    event_id: str,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    _require_user(user)
    await _ensure_loaded(current, event_id)
    return EventManagementPresenter(current.state).render(event_id, user)


@app.patch("/api/v1/events/{event_id}")
async def api_edit_event(
    event_id: str,
    changes: dict[str, Any],
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    event = await current.events.edit_event(event_id, user, changes)
    return {"event": event.to_wire()}


@app.delete("/api/v1/events/{event_id}", status_code=204)
async def api_delete_event(
    event_id: str,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    await current.events.delete_event(event_id, user)
    return Response(status_code=204)


@app.delete("/api/v1/events/{event_id}/rsvps/{rsvp_id}", status_code=204)
async def api_delete_rsvp(
    event_id: str,
    rsvp_id: str,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    if not await current.events.delete_response(event_id, user, rsvp_id):
        raise NotFoundError("RSVP not found")
    return Response(status_code=204)


@app.get("/api/v1/events/{event_id}/seating")
async def api_seating_view(
    event_id: str,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    return await current.events.seating_view(event_id, user)


@app.post("/api/v1/events/{event_id}/seating")
async def api_enable_seating(
    event_id: str,
    payload: SeatingSetupPayload,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    event = await current.events.enable_seating(
        event_id, user, tables=payload.tables, seats_per_table=payload.seats_per_table
    )
    return {"seatingChart": event.seating_chart.to_wire()}


@app.delete("/api/v1/events/{event_id}/seating")
async def api_disable_seating(
    event_id: str,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    await current.events.disable_seating(event_id, user)
    return {"enabled": False}


def _seating_response(result) -> JSONResponse:
    return JSONResponse(result.as_dict(), status_code=200 if result.success else 409)


@app.post("/api/v1/events/{event_id}/seating/assign")
async def api_assign_seat(
    event_id: str,
    payload: SeatAssignmentPayload,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    result = await current.events.assign_seat(event_id, user, payload.rsvp_id, payload.table_number)
    return _seating_response(result)


@app.post("/api/v1/events/{event_id}/seating/reassign")
async def api_reassign_seat(
    event_id: str,
    payload: SeatAssignmentPayload,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    result = await current.events.reassign_seat(
        event_id, user, payload.rsvp_id, payload.table_number
    )
    return _seating_response(result)


@app.post("/api/v1/events/{event_id}/seating/unassign")
async def api_unassign_seat(
    event_id: str,
    payload: SeatReleasePayload,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    if not await current.events.unassign_seat(event_id, user, payload.rsvp_id):
        raise NotFoundError("Guest is not assigned to a table")
    return {"success": True, "message": "Guest unassigned from table"}


@app.post("/api/v1/events/{event_id}/seating/auto-assign")
async def api_auto_assign(
    event_id: str,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    return await current.events.auto_assign(event_id, user)


@app.post("/api/v1/events/{event_id}/seating/tables/{table_number}/vip")
async def api_set_vip(
    event_id: str,
    table_number: int,
    payload: VipPayload,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    result = await current.events.set_vip_table(event_id, user, table_number, payload.vip)
    return _seating_response(result)


@app.get("/api/v1/events/{event_id}/seating.csv")
async def api_seating_csv(
    event_id: str,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    csv_text = await current.events.seating_csv(event_id, user)
    title = current.state.events[event_id].title if event_id in current.state.events else event_id
    filename = f"seating-chart-{slugify(title) or event_id}.csv"
    return Response(
        content="\ufeff" + csv_text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/v1/sync")
async def api_sync(
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    await current.orchestrator.load_all(user)
    report = await current.orchestrator.process_pending_intake(user)
    return report.as_dict()


@app.get("/api/v1/sync/pending")
async def api_pending(
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    _require_user(user)
    return {
        "pendingCount": await current.orchestrator.pending_count(),
        "localFallbackCount": current.queue.count(),
        "syncInProgress": current.orchestrator.in_progress,
    }


@app.post("/api/v1/events/{event_id}/sync")
async def api_sync_event(
    event_id: str,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    report = await current.orchestrator.sync_event_rsvps(event_id, user)
    return report.as_dict()


@app.post("/api/v1/events/{event_id}/fallback/replay")
async def api_replay_fallback(
    event_id: str,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    return await current.orchestrator.replay_local_fallback(user, event_id=event_id)


@app.get("/api/v1/events/{event_id}/roster")
async def api_roster(
    event_id: str,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    entries = await current.events.roster(event_id, user)
    return {"entries": [{"email": email, "name": name} for email, name in entries]}


@app.post("/api/v1/events/{event_id}/roster", status_code=201)
async def api_add_roster(
    event_id: str,
    payload: RosterPayload,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    added = await current.events.add_roster(
        event_id, user, [(entry.email, entry.name) for entry in payload.entries]
    )
    return {"added": added}


@app.delete("/api/v1/events/{event_id}/roster")
async def api_clear_roster(
    event_id: str,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    return {"removed": await current.events.clear_roster(event_id, user)}


@app.post("/api/v1/events/{event_id}/check-in")
async def api_check_in(
    event_id: str,
    payload: CheckInPayload,
    user: Identity | None = Depends(current_user),
    current: Services = Depends(get_services),
):
    rsvp = await current.events.check_in(event_id, user, payload.token)
    return {"rsvp": rsvp.to_wire()}
