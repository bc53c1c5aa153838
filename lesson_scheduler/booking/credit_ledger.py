# Lesson credit bookkeeping for manual (non-recurring) bookings
from dataclasses import replace
from datetime import datetime
import logging
from .error_utils import InvalidConfiguration, NoCreditsRemaining
from .models import ChangeSet, LessonOccurrence, Student

logger = logging.getLogger(__name__)


def book_with_credit(student: Student, start: datetime, end: datetime, notes: str = "") -> ChangeSet:
    """
    Plans one manual lesson and the matching credit decrement.

    Must run inside the student's transaction so two bookings cannot both spend the last credit.
    """
    if end <= start:
        raise InvalidConfiguration("Lesson end must be after its start.")
    if student.remaining_credits <= 0:
        raise NoCreditsRemaining(f"{student.name} has no lesson credits remaining.")
    occurrence = LessonOccurrence(
        student_id=student.id,
        title=f"{student.name} lesson",
        start_time=start,
        end_time=end,
        is_paid=True,
        notes=notes,
    )
    logger.info("Booking manual lesson for student %s. Credits %s -> %s", student.id, student.remaining_credits, student.remaining_credits - 1)
    return ChangeSet(creates=[occurrence], student=replace(student, remaining_credits=student.remaining_credits - 1))


def grant_credits(student: Student, amount: int) -> ChangeSet:
    if amount < 1:
        raise InvalidConfiguration("Credits granted must be a positive whole number.")
    return ChangeSet(student=replace(student, remaining_credits=student.remaining_credits + amount))
