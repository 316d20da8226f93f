"""Pydantic models for events, RSVPs and seating charts.

Remote JSON uses camelCase keys; models accept either spelling and dump with
aliases so files written back keep the wire format. Unknown keys are kept so
that fields added by other writers survive a read/modify/write cycle.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from .utils import coerce_guest_count, normalize_email


class Attendance(str, enum.Enum):
    YES = "yes"
    NO = "no"
    INVITED = "invited"

    @classmethod
    def coerce(cls, raw: Any) -> "Attendance":
        """Map heterogeneous wire values onto the enum.

        Accepts booleans, ``"true"``/``"false"``/``"yes"``/``"no"`` strings and
        ``None`` (an invited guest who has not responded).
        """
        if isinstance(raw, Attendance):
            return raw
        if raw is True:
            return cls.YES
        if raw is False:
            return cls.NO
        if raw is None:
            return cls.INVITED
        lowered = str(raw).strip().lower()
        if lowered in {"true", "yes", "1", "attending"}:
            return cls.YES
        if lowered in {"false", "no", "0", "declined"}:
            return cls.NO
        return cls.INVITED

    def to_wire(self) -> bool | None:
        if self is Attendance.YES:
            return True
        if self is Attendance.NO:
            return False
        return None


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class CustomQuestion(WireModel):
    id: str
    question: str
    type: str = "text"
    options: list[str] | None = None


class EventDetail(WireModel):
    label: str
    value: str = ""


class AssignedGuest(WireModel):
    rsvp_id: str
    name: str = ""
    guest_count: int = 0

    @field_validator("guest_count", mode="before")
    @classmethod
    def _coerce_guest_count(cls, value: Any) -> int:
        return coerce_guest_count(value)

    @property
    def party_size(self) -> int:
        return 1 + self.guest_count


class SeatingTable(WireModel):
    table_number: int
    capacity: int
    vip_table: bool = False
    assigned_guests: list[AssignedGuest] = Field(default_factory=list)


class SeatingChart(WireModel):
    enabled: bool = True
    number_of_tables: int = 0
    seats_per_table: int = 0
    tables: list[SeatingTable] = Field(default_factory=list)
    unassigned_guests: list[str] = Field(default_factory=list)
    last_modified: int | None = None


class Event(WireModel):
    id: str
    title: str
    date: str = ""
    time: str = ""
    location: str = ""
    description: str = ""
    cover_image: str = ""
    ask_reason: bool = False
    allow_guests: bool = True
    requires_meal_choice: bool = False
    custom_questions: list[CustomQuestion] = Field(default_factory=list)
    event_details: dict[str, EventDetail] = Field(default_factory=dict)
    seating_chart: SeatingChart | None = None
    created: int | None = None
    created_by: str | None = None
    created_by_username: str | None = None
    status: str = "active"

    @property
    def seating_enabled(self) -> bool:
        return bool(self.seating_chart and self.seating_chart.enabled)


class RSVP(WireModel):
    rsvp_id: str
    event_id: str = ""
    name: str = ""
    email: str = ""
    phone: str = ""
    attending: Attendance = Attendance.INVITED
    guest_count: int = 0
    reason: str = ""
    custom_answers: dict[str, str] = Field(default_factory=dict)
    dietary_restrictions: list[str] = Field(default_factory=list)
    allergy_details: str = ""
    rank: str = ""
    unit: str = ""
    branch: str = ""
    timestamp: int | None = None
    last_modified: int | None = None
    validation_hash: str = ""
    check_in_token: str = ""
    edit_token: str = ""
    submission_method: str = ""
    is_update: bool = False
    checked_in: bool = False
    checked_in_at: int | None = None

    @field_validator("attending", mode="before")
    @classmethod
    def _coerce_attending(cls, value: Any) -> Attendance:
        return Attendance.coerce(value)

    @field_validator("guest_count", mode="before")
    @classmethod
    def _coerce_guest_count(cls, value: Any) -> int:
        return coerce_guest_count(value)

    @field_serializer("attending")
    def _serialize_attending(self, value: Attendance) -> bool | None:
        return value.to_wire()

    @property
    def is_attending(self) -> bool:
        return self.attending is Attendance.YES

    @property
    def party_size(self) -> int:
        return 1 + self.guest_count

    @property
    def email_key(self) -> str:
        return normalize_email(self.email)


class IntakeEntry(BaseModel):
    """A submitted RSVP payload waiting to be promoted to canonical storage."""

    entry_id: str
    payload: dict[str, Any]
    processed: bool = False
    url: str | None = None

    @property
    def event_id(self) -> str:
        return str(self.payload.get("eventId") or self.payload.get("event_id") or "")
