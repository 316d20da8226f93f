"""Attendance aggregates computed from a response collection."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass

from .schemas import RSVP, Attendance
from .utils import normalize_email, round_half_up


@dataclass(frozen=True)
class Stats:
    total: int = 0
    attending: int = 0
    not_attending: int = 0
    total_guests: int = 0
    attending_with_guests: int = 0
    total_headcount: int = 0
    response_rate: int = 0

    @property
    def awaiting(self) -> int:
        return self.total - self.attending - self.not_attending

    def as_dict(self) -> dict[str, int]:
        raw = asdict(self)
        return {
            "total": raw["total"],
            "attending": raw["attending"],
            "notAttending": raw["not_attending"],
            "totalGuests": raw["total_guests"],
            "attendingWithGuests": raw["attending_with_guests"],
            "totalHeadcount": raw["total_headcount"],
            "responseRate": raw["response_rate"],
        }


def compute_stats(responses: Iterable[RSVP]) -> Stats:
    """Return attendance aggregates for ``responses``.

    The result only depends on the multiset of responses, never on their order.
    ``total_guests`` counts guests on every response; ``attending_with_guests``
    only counts guests brought by attending responses.
    """
    total = attending = not_attending = total_guests = attending_guests = 0
    for response in responses:
        total += 1
        total_guests += response.guest_count
        if response.attending is Attendance.YES:
            attending += 1
            attending_guests += response.guest_count
        elif response.attending is Attendance.NO:
            not_attending += 1

    response_rate = (
        round_half_up(100 * (attending + not_attending) / total) if total else 0
    )
    return Stats(
        total=total,
        attending=attending,
        not_attending=not_attending,
        total_guests=total_guests,
        attending_with_guests=attending_guests,
        total_headcount=attending + attending_guests,
        response_rate=response_rate,
    )


def attending_guests(responses: Iterable[RSVP]) -> list[RSVP]:
    """Return attending responses, preserving input order."""
    return [response for response in responses if response.is_attending]


def roster_summary(responses: Iterable[RSVP], roster_emails: Iterable[str]) -> dict[str, int]:
    """Compare submitted responses against the organizer's invite roster."""
    roster = {normalize_email(email) for email in roster_emails if normalize_email(email)}
    responded = {
        response.email_key
        for response in responses
        if response.email_key and response.attending is not Attendance.INVITED
    }
    responded_from_roster = len(responded & roster)
    return {
        "invited": len(roster),
        "respondedFromRoster": responded_from_roster,
        "pendingFromRoster": max(len(roster) - responded_from_roster, 0),
        "unlistedResponses": len(responded - roster),
    }


def with_roster_placeholders(
    responses: list[RSVP], roster: Iterable[tuple[str, str]], *, event_id: str
) -> list[RSVP]:
    """Append an ``INVITED`` placeholder for each roster entry without a response.

    ``roster`` yields ``(email, name)`` pairs. The placeholders make the roster
    the baseline for ``response_rate``.
    """
    seen = {response.email_key for response in responses if response.email_key}
    merged = list(responses)
    for email, name in roster:
        key = normalize_email(email)
        if not key or key in seen:
            continue
        seen.add(key)
        merged.append(
            RSVP(
                rsvp_id=f"roster:{key}",
                event_id=event_id,
                name=name or "",
                email=key,
                attending=Attendance.INVITED,
            )
        )
    return merged
