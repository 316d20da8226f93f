"""RSVP submission pipeline: validate, enrich, submit, fall back, confirm."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .errors import RemoteError, SubmissionInProgressError, guidance_for
from .fallback import SubmissionQueue
from .schemas import RSVP, Attendance
from .submitter import RemoteSubmitter
from .utils import (
    is_valid_email,
    is_valid_name,
    is_valid_phone,
    new_token,
    new_uuid,
    now_ms,
    sanitize_text,
    validation_hash,
)

logger = logging.getLogger("uvicorn.error")

SECURE_BACKEND_METHOD = "secure_backend"
MAX_GUESTS = 10

_TEXT_FIELDS = ("name", "email", "phone", "reason", "allergyDetails", "rank", "unit", "branch")


class SubmissionState(str, enum.Enum):
    COLLECTING = "collecting"
    VALIDATING = "validating"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    FALLBACK_STORED = "fallback_stored"
    FAILED = "failed"


@dataclass
class SubmissionOutcome:
    state: SubmissionState
    rsvp: RSVP | None = None
    errors: list[str] = field(default_factory=list)
    confirmation: dict[str, Any] | None = None
    guidance: dict[str, Any] | None = None
    attempts: int = 0
    notices: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state in (SubmissionState.CONFIRMED, SubmissionState.FALLBACK_STORED)

    def as_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "errors": list(self.errors),
            "rsvp": self.rsvp.to_wire() if self.rsvp else None,
            "confirmation": self.confirmation,
            "guidance": self.guidance,
            "attempts": self.attempts,
            "notices": list(self.notices),
        }


def clean_form(form: dict[str, Any]) -> dict[str, Any]:
    """Trim and strip markup from free-text fields of a raw form payload."""
    cleaned = dict(form)
    for key in _TEXT_FIELDS:
        if key in cleaned:
            cleaned[key] = sanitize_text(cleaned[key])
    if isinstance(cleaned.get("customAnswers"), dict):
        cleaned["customAnswers"] = {
            str(key): sanitize_text(value)
            for key, value in cleaned["customAnswers"].items()
        }
    return cleaned


def validate_form(form: dict[str, Any]) -> list[str]:
    """Return every rule violation in ``form``; an empty list means valid."""
    errors: list[str] = []
    name = form.get("name") or ""
    if len(name) < 2:
        errors.append("Please enter your full name (at least 2 characters)")
    elif not is_valid_name(name):
        errors.append("Please enter a valid name (letters, spaces, hyphens, and periods only)")

    if not is_valid_email(form.get("email")):
        errors.append("Please enter a valid email address")

    if Attendance.coerce(form.get("attending")) is Attendance.INVITED:
        errors.append("Please select if you are attending")

    phone = form.get("phone")
    if phone and not is_valid_phone(phone):
        errors.append("Please enter a valid phone number")

    raw_guests = form.get("guestCount", 0)
    try:
        guests = int(raw_guests or 0)
    except (TypeError, ValueError):
        guests = -1
    if isinstance(raw_guests, bool) or not 0 <= guests <= MAX_GUESTS:
        errors.append(f"Guest count must be between 0 and {MAX_GUESTS}")
    return errors


class RSVPPipeline:
    """Drives one guest's submission through the state machine.

    An instance accepts one submission at a time; a second ``submit`` while one
    is in flight raises ``SubmissionInProgressError``.
    """

    def __init__(
        self,
        *,
        submitter: RemoteSubmitter,
        queue: SubmissionQueue | None = None,
        checkin_enabled: bool = True,
        public_base_url: str = "http://localhost:8000",
    ):
        self.submitter = submitter
        self.queue = queue or SubmissionQueue()
        self.checkin_enabled = checkin_enabled
        self.public_base_url = public_base_url.rstrip("/")
        self.state = SubmissionState.COLLECTING
        self._in_progress = False

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "RSVPPipeline":
        submitter = kwargs.pop("submitter", None) or RemoteSubmitter.from_settings(settings)
        return cls(
            submitter=submitter,
            checkin_enabled=settings.checkin_enabled,
            public_base_url=settings.public_base_url,
            **kwargs,
        )

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def enrich(self, event_id: str, form: dict[str, Any], *, now: int | None = None) -> RSVP:
        timestamp = now if now is not None else now_ms()
        rsvp_id = form.get("rsvpId")
        edit_token = form.get("editToken")
        is_update = bool(rsvp_id and edit_token)
        attending = Attendance.coerce(form.get("attending"))
        data = {
            **form,
            "eventId": event_id,
            "attending": attending,
            "rsvpId": rsvp_id if is_update else new_uuid(),
            "editToken": edit_token if is_update else new_token(),
            "isUpdate": is_update,
            "timestamp": timestamp,
            "lastModified": timestamp,
            "validationHash": validation_hash(event_id, form.get("email", ""), timestamp),
        }
        if self.checkin_enabled and attending is Attendance.YES:
            data["checkInToken"] = form.get("checkInToken") or new_token()
        else:
            data.pop("checkInToken", None)
        return RSVP.model_validate(data)

    def edit_url(self, rsvp: RSVP) -> str:
        query = urlencode({"rsvpId": rsvp.rsvp_id, "editToken": rsvp.edit_token})
        return f"{self.public_base_url}/events/{rsvp.event_id}/rsvp?{query}"

    def checkin_payload(self, rsvp: RSVP) -> dict[str, str] | None:
        if not rsvp.check_in_token:
            return None
        query = urlencode({"token": rsvp.check_in_token})
        return {
            "eventId": rsvp.event_id,
            "rsvpId": rsvp.rsvp_id,
            "token": rsvp.check_in_token,
            "url": f"{self.public_base_url}/events/{rsvp.event_id}/check-in?{query}",
        }

    def confirmation(self, rsvp: RSVP, *, method: str, extra: dict[str, Any] | None = None) -> dict[str, Any]:
        view: dict[str, Any] = {
            "method": method,
            "requiresManualProcessing": method != SECURE_BACKEND_METHOD,
            "rsvpId": rsvp.rsvp_id,
            "validationHash": rsvp.validation_hash,
            "name": rsvp.name,
            "attending": rsvp.is_attending,
            "guestCount": rsvp.guest_count,
            "isUpdate": rsvp.is_update,
            "timestamp": rsvp.timestamp,
        }
        if rsvp.is_attending:
            view["editUrl"] = self.edit_url(rsvp)
            checkin = self.checkin_payload(rsvp)
            if checkin:
                view["checkIn"] = checkin
        if extra:
            view.update(extra)
        return view

    async def submit(self, event_id: str, form: dict[str, Any]) -> SubmissionOutcome:
        if self._in_progress:
            raise SubmissionInProgressError()
        self._in_progress = True
        try:
            return await self._run(event_id, form)
        finally:
            self._in_progress = False

    async def _run(self, event_id: str, form: dict[str, Any]) -> SubmissionOutcome:
        self.state = SubmissionState.VALIDATING
        cleaned = clean_form(form)
        errors = validate_form(cleaned)
        if errors:
            self.state = SubmissionState.FAILED
            return SubmissionOutcome(state=self.state, errors=errors)

        rsvp = self.enrich(event_id, cleaned)
        self.state = SubmissionState.SUBMITTING
        payload = rsvp.model_copy(update={"submission_method": SECURE_BACKEND_METHOD}).to_wire()
        notices: list[str] = []

        def on_retry(attempt: int, attempts: int, exc: BaseException) -> None:
            notices.append(
                f"Attempt {attempt} failed, retrying in {self.submitter.retry_delay:g} seconds..."
            )

        try:
            await self.submitter.submit(payload, on_retry=on_retry)
        except RemoteError as exc:
            logger.warning(
                "Remote submission of RSVP %s failed (%s); storing locally",
                rsvp.rsvp_id,
                exc,
            )
            outcome = self._store_fallback(rsvp, exc)
            outcome.attempts = len(notices) + 1
            if outcome.state is SubmissionState.FALLBACK_STORED:
                notices.append("Submission failed, saved locally for manual processing")
            outcome.notices = notices
            return outcome

        rsvp = rsvp.model_copy(update={"submission_method": SECURE_BACKEND_METHOD})
        self.state = SubmissionState.CONFIRMED
        return SubmissionOutcome(
            state=self.state,
            rsvp=rsvp,
            confirmation=self.confirmation(rsvp, method=SECURE_BACKEND_METHOD),
            attempts=len(notices) + 1,
            notices=notices,
        )

    def _store_fallback(self, rsvp: RSVP, error: RemoteError) -> SubmissionOutcome:
        guidance = guidance_for(error)
        try:
            receipt = self.queue.store(rsvp.event_id, rsvp.to_wire())
        except SQLAlchemyError as exc:
            logger.exception("Local fallback storage failed for RSVP %s", rsvp.rsvp_id)
            self.state = SubmissionState.FAILED
            return SubmissionOutcome(
                state=self.state,
                rsvp=rsvp,
                errors=[f"Failed to save locally: {exc}"],
                guidance=guidance,
            )
        rsvp = rsvp.model_copy(update={"submission_method": receipt.method})
        self.state = SubmissionState.FALLBACK_STORED
        return SubmissionOutcome(
            state=self.state,
            rsvp=rsvp,
            confirmation=self.confirmation(
                rsvp,
                method=receipt.method,
                extra={"pendingCount": receipt.pending_count, "guidance": guidance},
            ),
            guidance=guidance,
        )
