# Builds planned lesson occurrences for a student. Nothing here touches the database.
from datetime import datetime
from typing import List
import logging
from .models import LessonOccurrence, Student
from .slot_calendar import next_occurrence

logger = logging.getLogger(__name__)


def lesson_title(student_name: str, sequence_number: int) -> str:
    return f"{student_name} {sequence_number}"


def generate(student: Student, bundle_tag: int, is_pending: bool, count: int, starting_after: datetime) -> List[LessonOccurrence]:
    """
    Plans count occurrences for student, the first one being the next slot after starting_after.

    Walks slot by slot (not week by week) so that students meeting on several weekdays get their lessons interleaved
    in chronological order. Sequence numbers run 1..count and titles follow "{name} {n}".
    The session duration is read from the profile now; editing the profile later leaves these occurrences alone.

    Flexible profiles have no recurrence, so they get one occurrence per slot instead and count is ignored.
    """
    profile = student.recurrence_profile
    if not profile.is_recurring:
        return _generate_flexible(student, bundle_tag, is_pending, starting_after)

    occurrences = []
    cursor = starting_after
    for sequence_number in range(1, count + 1):
        start = next_occurrence(cursor, profile.slots, profile.interval_weeks)
        occurrences.append(LessonOccurrence(
            student_id=student.id,
            title=lesson_title(student.name, sequence_number),
            start_time=start,
            end_time=start + profile.session_duration,
            sequence_number=sequence_number,
            bundle_tag=bundle_tag,
            is_pending=is_pending,
        ))
        cursor = start
    logger.info("Planned %s %s lesson(s) for student %s in bundle %s", len(occurrences), "pending" if is_pending else "active", student.id, bundle_tag)
    return occurrences


def _generate_flexible(student: Student, bundle_tag: int, is_pending: bool, starting_after: datetime) -> List[LessonOccurrence]:
    profile = student.recurrence_profile
    occurrences = []
    for slot in profile.slots:
        start = next_occurrence(starting_after, [slot], profile.interval_weeks)
        occurrences.append(LessonOccurrence(
            student_id=student.id,
            title=student.name,
            start_time=start,
            end_time=start + profile.session_duration,
            sequence_number=1,
            bundle_tag=bundle_tag,
            is_pending=is_pending,
        ))
    occurrences.sort(key=lambda o: o.start_time)
    return occurrences


def renumber(occurrences: List[LessonOccurrence], student_name: str) -> List[LessonOccurrence]:
    """
    Sorts occurrences by start time and rewrites sequence numbers and title suffixes to 1..n in place.

    Returns the occurrences whose number or title actually changed.
    """
    occurrences.sort(key=lambda o: o.start_time)
    changed = []
    for sequence_number, occurrence in enumerate(occurrences, start=1):
        title = lesson_title(student_name, sequence_number)
        if occurrence.sequence_number != sequence_number or occurrence.title != title:
            occurrence.sequence_number = sequence_number
            occurrence.title = title
            changed.append(occurrence)
    return changed
