"""
Slot calendar math for recurring lessons.

Problem:

Given a point in time and the weekday/time slots a student meets on, find the next lesson start.

Input: base datetime, list of Slot(weekday, time), repeat interval in weeks
Output: the earliest slot instant after base

Algorithm:
1. For each slot, take the day offset (slot weekday - base weekday) mod 7.
2. If the offset is 0 and the slot time is at or before base's time of day, the slot already passed today:
   use interval_weeks * 7 days instead. Every other slot uses its modular offset as is.
3. Candidate = base date + offset at the slot time. Return the smallest candidate.
"""
from datetime import datetime, timedelta, time
from typing import List
import logging
from .error_utils import InvalidConfiguration
from .models import Slot

logger = logging.getLogger(__name__)

# Returned when no slot could produce a candidate
FALLBACK_OFFSET = timedelta(days=7)


def _candidate(base: datetime, slot: Slot, interval_weeks: int) -> datetime:
    if not isinstance(slot.time, time) or not 0 <= slot.weekday <= 6:
        raise ValueError(f"Malformed slot: {slot!r}")
    offset = (slot.weekday - base.weekday()) % 7
    if offset == 0 and slot.time <= base.time():
        offset = interval_weeks * 7
    return datetime.combine(base.date() + timedelta(days=offset), slot.time)


def next_occurrence(base: datetime, slots: List[Slot], interval_weeks: int = 1) -> datetime:
    """
    Returns the earliest datetime after base that lands on one of slots.

    Only a slot on base's weekday whose time has already passed is pushed out by interval_weeks; every other slot
    lands within the next six days.
    Raises InvalidConfiguration if slots is empty. Malformed slots are skipped; if none are usable the result
    degrades to base + 7 days and a warning is logged since that means the profile is broken.
    """
    if not slots:
        raise InvalidConfiguration("Cannot compute the next lesson without any weekday/time slots.")
    if interval_weeks < 1:
        raise InvalidConfiguration(f"Repeat interval must be at least one week, got {interval_weeks}.")

    candidates = []
    for slot in slots:
        try:
            candidates.append(_candidate(base, slot, interval_weeks))
        except (TypeError, ValueError, AttributeError, OverflowError) as e:
            logger.warning("Skipping unusable slot %r: %s", slot, e.args)
    if not candidates:
        logger.warning("No usable slot found after %s. Falling back to one week later; check the recurrence profile.", base.isoformat())
        return base + FALLBACK_OFFSET
    return min(candidates)
