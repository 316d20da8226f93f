"""Table seating for attending guests.

``SeatingAllocator`` mutates a ``SeatingChart`` in place. Every operation keeps
two invariants: a table's occupancy (the sum of ``1 + guestCount`` over its
guests) never exceeds its capacity, and an ``rsvpId`` sits in at most one place,
either one table or the unassigned list.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .schemas import RSVP, AssignedGuest, SeatingChart, SeatingTable
from .utils import now_ms, round_half_up

CSV_HEADER = ["Table Number", "VIP Table", "Guest Name", "Email", "Party Size", "Additional Guests"]
UNASSIGNED_LABEL = "Unassigned"


@dataclass(frozen=True)
class SeatingResult:
    success: bool
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message}


def _guest_from(rsvp_id: str, guest_info: RSVP | AssignedGuest | dict[str, Any]) -> AssignedGuest:
    if isinstance(guest_info, RSVP):
        return AssignedGuest(
            rsvp_id=rsvp_id, name=guest_info.name, guest_count=guest_info.guest_count
        )
    if isinstance(guest_info, AssignedGuest):
        return guest_info.model_copy(update={"rsvp_id": rsvp_id})
    return AssignedGuest(
        rsvp_id=rsvp_id,
        name=str(guest_info.get("name") or ""),
        guest_count=guest_info.get("guestCount", guest_info.get("guest_count", 0)),
    )


class SeatingAllocator:
    def __init__(self, chart: SeatingChart):
        self.chart = chart

    @staticmethod
    def initialize(table_count: int, seats_per_table: int) -> SeatingChart:
        if table_count < 1 or seats_per_table < 1:
            raise ValueError("Seating needs at least one table with at least one seat")
        return SeatingChart(
            enabled=True,
            number_of_tables=table_count,
            seats_per_table=seats_per_table,
            tables=[
                SeatingTable(table_number=number, capacity=seats_per_table)
                for number in range(1, table_count + 1)
            ],
            unassigned_guests=[],
            last_modified=now_ms(),
        )

    def _touch(self) -> None:
        self.chart.last_modified = now_ms()

    def table(self, table_number: int) -> SeatingTable | None:
        for table in self.chart.tables:
            if table.table_number == table_number:
                return table
        return None

    def occupancy(self, table_number: int) -> int:
        table = self.table(table_number)
        if table is None:
            return 0
        return sum(guest.party_size for guest in table.assigned_guests)

    def remaining(self, table_number: int) -> int:
        table = self.table(table_number)
        if table is None:
            return 0
        return table.capacity - self.occupancy(table_number)

    def find_assignment(self, rsvp_id: str) -> int | None:
        """Return the table number holding ``rsvp_id``, if any."""
        for table in self.chart.tables:
            if any(guest.rsvp_id == rsvp_id for guest in table.assigned_guests):
                return table.table_number
        return None

    def assign(
        self,
        rsvp_id: str,
        table_number: int,
        guest_info: RSVP | AssignedGuest | dict[str, Any],
    ) -> SeatingResult:
        table = self.table(table_number)
        if table is None:
            return SeatingResult(False, f"Table {table_number} not found")
        current = self.find_assignment(rsvp_id)
        if current is not None:
            return SeatingResult(False, f"Guest is already assigned to Table {current}")

        guest = _guest_from(rsvp_id, guest_info)
        available = table.capacity - self.occupancy(table_number)
        if guest.party_size > available:
            return SeatingResult(
                False,
                f"Insufficient capacity at Table {table_number}: "
                f"needs {guest.party_size}, {available} available",
            )

        if rsvp_id in self.chart.unassigned_guests:
            self.chart.unassigned_guests.remove(rsvp_id)
        table.assigned_guests.append(guest)
        self._touch()
        return SeatingResult(True, f"Assigned {guest.name or rsvp_id} to Table {table_number}")

    def unassign(self, rsvp_id: str) -> bool:
        """Move ``rsvp_id`` off its table and back to the unassigned list."""
        for table in self.chart.tables:
            for index, guest in enumerate(table.assigned_guests):
                if guest.rsvp_id == rsvp_id:
                    del table.assigned_guests[index]
                    if rsvp_id not in self.chart.unassigned_guests:
                        self.chart.unassigned_guests.append(rsvp_id)
                    self._touch()
                    return True
        return False

    def reassign(
        self,
        rsvp_id: str,
        table_number: int,
        guest_info: RSVP | AssignedGuest | dict[str, Any],
    ) -> SeatingResult:
        previous_table = self.find_assignment(rsvp_id)
        previous_guest = None
        if previous_table is not None:
            previous_guest = next(
                guest
                for guest in self.table(previous_table).assigned_guests
                if guest.rsvp_id == rsvp_id
            )
            if previous_table == table_number:
                return SeatingResult(True, f"Guest is already at Table {table_number}")
            self.unassign(rsvp_id)

        result = self.assign(rsvp_id, table_number, guest_info)
        if not result.success and previous_guest is not None:
            # Put the guest back where they were; the seat is still free.
            self.chart.unassigned_guests.remove(rsvp_id)
            self.table(previous_table).assigned_guests.append(previous_guest)
        return result

    def sync_unassigned_guests(self, attending: Iterable[RSVP]) -> None:
        """Reconcile chart membership with the current attending guests.

        New attendees join the unassigned list; anyone no longer attending is
        dropped from tables and from the unassigned list. Seated guests get
        their current name and party size, and a guest whose larger party no
        longer fits is moved back to unassigned.
        """
        before = self.chart.model_dump(exclude={"last_modified"})
        by_id = {rsvp.rsvp_id: rsvp for rsvp in attending}

        for table in self.chart.tables:
            kept: list[AssignedGuest] = []
            used = 0
            for guest in table.assigned_guests:
                rsvp = by_id.get(guest.rsvp_id)
                if rsvp is None:
                    continue
                refreshed = _guest_from(guest.rsvp_id, rsvp)
                if used + refreshed.party_size > table.capacity:
                    if guest.rsvp_id not in self.chart.unassigned_guests:
                        self.chart.unassigned_guests.append(guest.rsvp_id)
                    continue
                used += refreshed.party_size
                kept.append(refreshed)
            table.assigned_guests = kept

        seated = {
            guest.rsvp_id for table in self.chart.tables for guest in table.assigned_guests
        }
        unassigned: list[str] = []
        for rsvp_id in self.chart.unassigned_guests:
            if rsvp_id in by_id and rsvp_id not in seated and rsvp_id not in unassigned:
                unassigned.append(rsvp_id)
        for rsvp_id in by_id:
            if rsvp_id not in seated and rsvp_id not in unassigned:
                unassigned.append(rsvp_id)
        self.chart.unassigned_guests = unassigned
        if self.chart.model_dump(exclude={"last_modified"}) != before:
            self._touch()

    def unassigned_details(self, responses: Iterable[RSVP]) -> list[RSVP]:
        """Return the responses for unassigned guests, in response order."""
        waiting = set(self.chart.unassigned_guests)
        return [rsvp for rsvp in responses if rsvp.rsvp_id in waiting]

    def auto_assign(self, guests: Iterable[RSVP]) -> dict[str, int]:
        """First-fit: each guest, in input order, takes the first table with room."""
        assigned = failed = 0
        for rsvp in guests:
            if self.find_assignment(rsvp.rsvp_id) is not None:
                continue
            for table in self.chart.tables:
                if rsvp.party_size <= self.remaining(table.table_number):
                    self.assign(rsvp.rsvp_id, table.table_number, rsvp)
                    assigned += 1
                    break
            else:
                if rsvp.rsvp_id not in self.chart.unassigned_guests:
                    self.chart.unassigned_guests.append(rsvp.rsvp_id)
                failed += 1
        return {"assigned": assigned, "failed": failed}

    def set_vip(self, table_number: int, vip: bool = True) -> SeatingResult:
        table = self.table(table_number)
        if table is None:
            return SeatingResult(False, f"Table {table_number} not found")
        table.vip_table = vip
        self._touch()
        return SeatingResult(True, f"Table {table_number} {'marked' if vip else 'unmarked'} as VIP")

    def resize(self, table_count: int, seats_per_table: int) -> list[str]:
        """Rebuild the tables, keeping assignments that still fit.

        Returns the ids moved to the unassigned list.
        """
        if table_count < 1 or seats_per_table < 1:
            raise ValueError("Seating needs at least one table with at least one seat")
        old_tables = {table.table_number: table for table in self.chart.tables}
        new_tables: list[SeatingTable] = []
        displaced: list[str] = []
        for number in range(1, table_count + 1):
            old = old_tables.pop(number, None)
            table = SeatingTable(
                table_number=number,
                capacity=seats_per_table,
                vip_table=old.vip_table if old else False,
            )
            used = 0
            for guest in old.assigned_guests if old else []:
                if used + guest.party_size > seats_per_table:
                    displaced.append(guest.rsvp_id)
                    continue
                used += guest.party_size
                table.assigned_guests.append(guest)
            new_tables.append(table)
        for old in old_tables.values():
            displaced.extend(guest.rsvp_id for guest in old.assigned_guests)

        self.chart.tables = new_tables
        self.chart.number_of_tables = table_count
        self.chart.seats_per_table = seats_per_table
        for rsvp_id in displaced:
            if rsvp_id not in self.chart.unassigned_guests:
                self.chart.unassigned_guests.append(rsvp_id)
        self._touch()
        return displaced

    def stats(self) -> dict[str, int]:
        capacity = sum(table.capacity for table in self.chart.tables)
        assigned = sum(self.occupancy(table.table_number) for table in self.chart.tables)
        return {
            "assigned": assigned,
            "unassigned": len(self.chart.unassigned_guests),
            "available": capacity - assigned,
            "capacity": capacity,
            "percentFilled": round_half_up(100 * assigned / capacity) if capacity else 0,
        }

    def export_csv(self, responses: Iterable[RSVP]) -> str:
        by_id = {rsvp.rsvp_id: rsvp for rsvp in responses}
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_HEADER)
        for table in sorted(self.chart.tables, key=lambda t: t.table_number):
            for guest in table.assigned_guests:
                rsvp = by_id.get(guest.rsvp_id)
                writer.writerow(
                    [
                        table.table_number,
                        "Yes" if table.vip_table else "No",
                        guest.name or (rsvp.name if rsvp else ""),
                        rsvp.email if rsvp else "",
                        guest.party_size,
                        guest.guest_count,
                    ]
                )
        for rsvp_id in self.chart.unassigned_guests:
            rsvp = by_id.get(rsvp_id)
            if rsvp is None:
                continue
            writer.writerow(
                [UNASSIGNED_LABEL, "No", rsvp.name, rsvp.email, rsvp.party_size, rsvp.guest_count]
            )
        return buffer.getvalue()
