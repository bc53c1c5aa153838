# Plans the writes needed when a tutor cancels or moves one lesson of a bundle.
from dataclasses import replace
from datetime import datetime
from typing import Dict, List
import logging
from .error_utils import InvalidConfiguration, StaleReference
from .models import ChangeSet, LessonOccurrence, Student, active_bundle, bundle_members, pending_bundle
from .occurrence_generator import generate, renumber

logger = logging.getLogger(__name__)


def _latest_start(occurrences: List[LessonOccurrence], floor: datetime) -> datetime:
    return max([floor] + [o.start_time for o in occurrences])


def _fill(student: Student, bundle: List[LessonOccurrence], bundle_tag: int, is_pending: bool, is_paid: bool, anchor: datetime) -> List[LessonOccurrence]:
    """Generates occurrences one at a time until bundle holds bundle_size members. Appends to bundle and returns the new ones."""
    created = []
    while len(bundle) < student.recurrence_profile.bundle_size:
        occurrence = generate(student, bundle_tag, is_pending, 1, _latest_start(bundle, anchor))[0]
        occurrence.is_paid = is_paid
        bundle.append(occurrence)
        created.append(occurrence)
    return created


def rebalance_on_cancel(student: Student, cancelled_id: str, occurrences: List[LessonOccurrence]) -> ChangeSet:
    """
    Returns the ChangeSet that removes a cancelled lesson and restores the bundle sizes.

    Args: student and every occurrence currently stored for them (the transaction's read set), and the id of the
    lesson being cancelled. The inputs are not modified.

    Algorithm for a lesson of the active bundle:
        1. Delete the cancelled lesson.
        2. Take the remaining active lessons of the same bundle in chronological order.
        3. While the bundle is short and pending lessons exist, move the earliest pending lesson into it.
        4. While still short, generate a new lesson after the later of the cancelled start and the last active start.
        5. Renumber the active bundle 1..bundle_size.
        6. If lessons were pulled from the pending bundle, top it back up and renumber it.

    A cancelled pending lesson is replaced at the end of the pending bundle. Manual bookings, flexible enrollments and
    lessons of older (already consumed) bundles are simply deleted.

    Raises StaleReference if the lesson is not among the student's occurrences.
    """
    cancelled = next((o for o in occurrences if o.id == cancelled_id), None)
    if cancelled is None or cancelled.student_id != student.id:
        raise StaleReference(f"Lesson {cancelled_id} no longer exists for student {student.id}.")

    changes = ChangeSet(deletes=[cancelled.id])
    if cancelled.bundle_tag is None or not student.recurrence_profile.is_recurring:
        logger.info("Lesson %s is not part of a recurring bundle. Deleting only.", cancelled.id)
        return changes

    # Work on copies so the caller's read set stays untouched if planning fails halfway
    remaining = [replace(o) for o in occurrences if o.id != cancelled.id]
    touched: Dict[str, LessonOccurrence] = {}

    if cancelled.is_pending:
        pending = pending_bundle(remaining)
        changes.creates = _fill(student, pending, cancelled.bundle_tag, True, False, cancelled.start_time)
        created_ids = {o.id for o in changes.creates}
        for occurrence in renumber(pending, student.name):
            if occurrence.id not in created_ids:
                touched[occurrence.id] = occurrence
        _collect_updates(changes, touched)
        return changes

    current = active_bundle(occurrences)
    if not current or current[0].bundle_tag != cancelled.bundle_tag:
        logger.info("Lesson %s belongs to consumed bundle %s. Deleting only.", cancelled.id, cancelled.bundle_tag)
        return changes

    bundle_size = student.recurrence_profile.bundle_size
    active = bundle_members(remaining, cancelled.bundle_tag, False)
    pending = pending_bundle(remaining)
    pending_tag = pending[0].bundle_tag if pending else None

    pulled = 0
    while len(active) < bundle_size and pending:
        promoted = pending.pop(0)
        promoted.is_pending = False
        promoted.bundle_tag = cancelled.bundle_tag
        promoted.is_paid = cancelled.is_paid
        active.append(promoted)
        touched[promoted.id] = promoted
        pulled += 1

    changes.creates = _fill(student, active, cancelled.bundle_tag, False, cancelled.is_paid, cancelled.start_time)
    created_ids = {o.id for o in changes.creates}
    for occurrence in renumber(active, student.name):
        if occurrence.id not in created_ids:
            touched[occurrence.id] = occurrence

    if pulled:
        anchor = pending[-1].start_time if pending else _latest_start(active, cancelled.start_time)
        refill = _fill(student, pending, pending_tag, True, False, anchor)
        changes.creates.extend(refill)
        created_ids.update(o.id for o in refill)
        for occurrence in renumber(pending, student.name):
            if occurrence.id not in created_ids:
                touched[occurrence.id] = occurrence

    _collect_updates(changes, touched)
    logger.info("Rebalanced bundle %s for student %s: %s pulled from pending, %s generated", cancelled.bundle_tag, student.id, pulled, len(changes.creates))
    return changes


def reschedule_occurrence(student: Student, occurrence_id: str, start: datetime, end: datetime,
                          occurrences: List[LessonOccurrence]) -> ChangeSet:
    """
    Returns the ChangeSet that moves one lesson to a new start and end.

    The lesson keeps its bundle. Its bundle is re-sorted and renumbered so sequence numbers and titles follow the new
    chronological order. Manual and flexible lessons are only moved.

    Raises InvalidConfiguration if end is not after start, if another lesson of the bundle already starts at that
    time, or if the move would put an active lesson at or after the first pending lesson (or a pending lesson at or
    before the last active one). Raises StaleReference if the lesson is not among the student's occurrences.
    """
    if end <= start:
        raise InvalidConfiguration("Lesson end must be after its start.")
    current = next((o for o in occurrences if o.id == occurrence_id), None)
    if current is None or current.student_id != student.id:
        raise StaleReference(f"Lesson {occurrence_id} no longer exists for student {student.id}.")

    moved = replace(current, start_time=start, end_time=end)
    if current.bundle_tag is None or not student.recurrence_profile.is_recurring:
        return ChangeSet(updates=[moved])

    others = [o for o in occurrences if o.id != current.id]
    bundle = [replace(o) for o in bundle_members(others, current.bundle_tag, current.is_pending)]
    if any(o.start_time == start for o in bundle):
        raise InvalidConfiguration("Another lesson of this bundle already starts at that time.")

    if current.is_pending:
        active = active_bundle(others)
        if active and start <= active[-1].start_time:
            raise InvalidConfiguration("A pending lesson cannot move before the end of the active bundle.")
    elif current.bundle_tag == max([o.bundle_tag for o in occurrences if o.bundle_tag is not None and not o.is_pending]):
        pending = pending_bundle(others)
        if pending and start >= pending[0].start_time:
            raise InvalidConfiguration("An active lesson cannot move past the start of the pending bundle.")

    bundle.append(moved)
    touched = {moved.id: moved}
    for occurrence in renumber(bundle, student.name):
        touched[occurrence.id] = occurrence
    changes = ChangeSet()
    _collect_updates(changes, touched)
    logger.info("Rescheduled lesson %s for student %s to %s", occurrence_id, student.id, start.isoformat())
    return changes


def _collect_updates(changes: ChangeSet, touched: Dict[str, LessonOccurrence]) -> None:
    changes.updates = sorted(touched.values(), key=lambda o: o.start_time)
