# Plans the writes for a confirmed bundle payment.
from dataclasses import replace
from typing import List
import logging
from .error_utils import IncompleteBundle, StaleReference
from .models import ChangeSet, LessonOccurrence, Student, bundle_members
from .occurrence_generator import generate

logger = logging.getLogger(__name__)


def confirm_payment(student: Student, occurrence_id: str, occurrences: List[LessonOccurrence]) -> ChangeSet:
    """
    Returns the ChangeSet for a payment confirmed on the bundle that occurrence_id belongs to.

    Pending bundle: every member must be present (exactly bundle_size of them, else IncompleteBundle). All members become
    paid and active, which retires the previous active bundle to history, and a fresh pending bundle with a new tag is
    planned starting after the last promoted lesson.
    Any member of the pending bundle may be given, not only sequence number 1. Cancellations renumber the pending
    bundle while a checkout is open, so the lesson a checkout was started from may no longer be first by the time
    its payment arrives.

    Unpaid active bundle (e.g. the first bundle of a new enrollment): members are marked paid, nothing is generated.

    Already paid active bundle: nothing to do. An empty ChangeSet is returned so that a redelivered payment
    notification does not spawn a second pending bundle.
    """
    occurrence = next((o for o in occurrences if o.id == occurrence_id), None)
    if occurrence is None or occurrence.student_id != student.id:
        raise StaleReference(f"Lesson {occurrence_id} no longer exists for student {student.id}.")
    if occurrence.bundle_tag is None:
        raise IncompleteBundle("Manually booked lessons are not part of a bundle and cannot be paid as one.")

    profile = student.recurrence_profile
    members = bundle_members(occurrences, occurrence.bundle_tag, occurrence.is_pending)

    if not occurrence.is_pending:
        unpaid = [o for o in members if not o.is_paid]
        if not unpaid:
            logger.info("Bundle %s for student %s is already paid. Skipping.", occurrence.bundle_tag, student.id)
            return ChangeSet()
        return ChangeSet(updates=[replace(o, is_paid=True) for o in unpaid])

    if len(members) != profile.bundle_size:
        raise IncompleteBundle(f"Pending bundle {occurrence.bundle_tag} has {len(members)} of {profile.bundle_size} lessons.")

    promoted = [replace(o, is_paid=True, is_pending=False) for o in members]
    next_tag = max([student.last_bundle_tag] + [o.bundle_tag for o in occurrences if o.bundle_tag is not None]) + 1
    changes = ChangeSet(updates=promoted)
    if profile.has_pending_bundle:
        changes.creates = generate(student, next_tag, True, profile.bundle_size, promoted[-1].start_time)
        changes.student = replace(student, last_bundle_tag=next_tag)
    logger.info("Promoted bundle %s for student %s; next pending bundle is %s", occurrence.bundle_tag, student.id, next_tag if changes.creates else None)
    return changes
