"""Development helpers for populating a data store with fake events and RSVPs."""

from __future__ import annotations

import random
from datetime import date, timedelta

from faker import Faker

from .remote import DataStore
from .schemas import RSVP, Attendance, Event
from .seating import SeatingAllocator
from .utils import new_token, new_uuid, now_ms, validation_hash

_event_types = [
    "Dining Out",
    "Change of Command",
    "Retirement Ceremony",
    "Unit Picnic",
    "Holiday Party",
    "Promotion Ceremony",
    "Family Day",
    "Awards Banquet",
]
_branches = ["Army", "Navy", "Air Force", "Marine Corps", "Coast Guard", "Space Force", ""]
_dietary = ["vegetarian", "vegan", "gluten-free", "dairy-free", "halal", "kosher"]
_attendance = [Attendance.YES, Attendance.YES, Attendance.YES, Attendance.NO]


async def seed_fake_data(
    store: DataStore,
    *,
    owner_email: str,
    event_count: int = 3,
    max_rsvps_per_event: int = 8,
    seating_percentage: int = 50,
    fake: Faker | None = None,
) -> dict[str, int]:
    """Write synthetic events and RSVPs owned by ``owner_email`` into ``store``."""
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if max_rsvps_per_event < 0:
        raise ValueError("max_rsvps_per_event must be >= 0")
    if not 0 <= seating_percentage <= 100:
        raise ValueError("seating_percentage must be between 0 and 100")
    if not owner_email:
        raise ValueError("owner_email is required")

    fake = fake or Faker()
    stats = {"events": 0, "rsvps": 0}
    for _ in range(event_count):
        event = _make_event(fake, owner_email, seating_percentage)
        responses = _make_rsvps(fake, event, max_rsvps_per_event)
        if event.seating_chart is not None:
            allocator = SeatingAllocator(event.seating_chart)
            allocator.sync_unassigned_guests([r for r in responses if r.is_attending])
        await store.save_event(event, sha=None)
        current = await store.get_responses(event.id)
        await store.save_responses(event.id, responses, sha=current.sha)
        stats["events"] += 1
        stats["rsvps"] += len(responses)
    return stats


def _make_event(fake: Faker, owner_email: str, seating_percentage: int) -> Event:
    day = date.today() + timedelta(days=random.randint(3, 90))
    event = Event(
        id=new_uuid(),
        title=f"{fake.city()} {random.choice(_event_types)}",
        date=day.isoformat(),
        time=f"{random.randint(11, 20):02d}:{random.choice(['00', '30'])}",
        location=fake.address().replace("\n", ", "),
        description=fake.paragraph(nb_sentences=3),
        ask_reason=random.random() < 0.3,
        allow_guests=random.random() < 0.8,
        created=now_ms(),
        created_by=owner_email,
    )
    if random.randint(1, 100) <= seating_percentage:
        event.seating_chart = SeatingAllocator.initialize(
            random.randint(2, 6), random.choice([6, 8, 10])
        )
    return event


def _make_rsvps(fake: Faker, event: Event, max_rsvps: int) -> list[RSVP]:
    if max_rsvps <= 0:
        return []
    responses: list[RSVP] = []
    seen: set[str] = set()
    for _ in range(random.randint(0, max_rsvps)):
        email = fake.unique.email()
        if email in seen:
            continue
        seen.add(email)
        attending = random.choice(_attendance)
        timestamp = now_ms() - random.randint(0, 14) * 86_400_000
        responses.append(
            RSVP(
                rsvp_id=new_uuid(),
                event_id=event.id,
                name=fake.name(),
                email=email,
                phone=fake.numerify("+1##########") if random.random() < 0.5 else "",
                attending=attending,
                guest_count=random.randint(0, 3) if event.allow_guests else 0,
                reason=fake.sentence() if event.ask_reason and random.random() < 0.5 else "",
                dietary_restrictions=random.sample(_dietary, k=random.randint(0, 2)),
                branch=random.choice(_branches),
                timestamp=timestamp,
                last_modified=timestamp,
                validation_hash=validation_hash(event.id, email, timestamp),
                edit_token=new_token(),
                check_in_token=new_token() if attending is Attendance.YES else "",
                submission_method="seed",
            )
        )
    return responses
