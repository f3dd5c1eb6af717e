from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from sqlmodel import Session

from courtbook.intervals import DateWindow, Interval
from courtbook.services.bookings import get_active_court
from courtbook.services.conflicts import Commitment, CommitmentKind, iter_commitments
from courtbook.settings import settings


@dataclass(frozen=True)
class Slot:
    date: str
    start_minute: int
    end_minute: int
    available: bool
    blocked_by: Optional[CommitmentKind] = None


def build_slots_for_court(
    session: Session,
    court_id: int,
    date: str,
    slot_minutes: int = settings.default_slot_minutes,
    opening_minute: int = settings.opening_minute,
    closing_minute: int = settings.closing_minute,
) -> List[Slot]:
    """Split a court's opening hours on ``date`` into fixed slots and mark the taken ones."""
    get_active_court(session, court_id)
    window = DateWindow.single(date)
    if slot_minutes <= 0 or closing_minute <= opening_minute:
        return []

    commitments: List[Commitment] = [
        c for c in iter_commitments(session, court_id, window) if c.collides_with(window, c.interval)
    ]

    slots: List[Slot] = []
    last_start = closing_minute - slot_minutes
    for s in range(opening_minute, last_start + 1, slot_minutes):
        interval = Interval(s, s + slot_minutes)
        blocker = next((c for c in commitments if c.interval.overlaps(interval)), None)
        slots.append(
            Slot(
                date=date,
                start_minute=s,
                end_minute=s + slot_minutes,
                available=blocker is None,
                blocked_by=blocker.kind if blocker else None,
            )
        )
    return slots
