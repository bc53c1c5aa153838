from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, Type
import logging
from .error_utils import (InvalidConfiguration, PersistenceError, PromotionFailed, RebalanceFailed,
                          SchedulingError, StaleReference, TransactionConflict)
from .models import LESSON_STATUSES, LESSON_TYPES, ChangeSet, LessonOccurrence, RecurrenceProfile, Student, bundle_members
from . import bundle_rebalancer, credit_ledger, occurrence_generator, payment_promoter

logger = logging.getLogger(__name__)

# A conflicting or stale transaction is retried once from a fresh read, then reported.
MAX_RETRIES = 1

# Students at or below this many credits show up in notifications
LOW_CREDIT_THRESHOLD = 2


class LessonBookingService:
    """
    Entry point for everything the tutor can do to a student's lessons.

    Each mutating operation reads the student's lessons, plans the change with one of the pure planners, and writes the
    result through db.run_transaction, so a change is either stored completely or not at all.
    """

    def __init__(self, db, clock: Callable[[], datetime] = datetime.now):
        self.db = db
        self._clock = clock

    def _run(self, student_id: str, plan, failure: Optional[Type[SchedulingError]] = None) -> ChangeSet:
        attempts = 0
        while True:
            try:
                return self.db.run_transaction(student_id, plan)
            except (TransactionConflict, StaleReference) as e:
                if attempts >= MAX_RETRIES:
                    logger.error("Transaction for student %s failed after %s attempt(s): %s", student_id, attempts + 1, e.message)
                    if failure is None or isinstance(e, StaleReference):
                        raise
                    raise failure(f"{e.message} Nothing was changed.") from e
                attempts += 1
                logger.warning("Retrying transaction for student %s from a fresh read: %s", student_id, e.message)
            except PersistenceError as e:
                if failure is None:
                    raise
                raise failure(f"{e.message} Nothing was changed.") from e

    def _read_occurrence(self, occurrence_id: str) -> LessonOccurrence:
        occurrence = self.db.read_occurrence(occurrence_id)
        if occurrence is None:
            raise StaleReference(f"Lesson {occurrence_id} does not exist.")
        return occurrence

    def _plan_bundles(self, student: Student, first_tag: int, starting_after: datetime, prepaid: bool) -> List[LessonOccurrence]:
        """Generates the active bundle and, when the profile allows one, the pending bundle behind it."""
        profile = student.recurrence_profile
        active = occurrence_generator.generate(student, first_tag, False, profile.bundle_size, starting_after)
        for occurrence in active:
            occurrence.is_paid = prepaid
        student.last_bundle_tag = first_tag
        if not profile.has_pending_bundle:
            return active
        pending = occurrence_generator.generate(student, first_tag + 1, True, profile.bundle_size, active[-1].start_time)
        student.last_bundle_tag = first_tag + 1
        return active + pending

    def enroll_student(self, name: str, profile: RecurrenceProfile, remaining_credits: int = 0,
                       lesson_type: str = "vocal", package_price: Optional[int] = None, memo: str = "",
                       prepaid: bool = False, starting_after: Optional[datetime] = None) -> Tuple[Student, List[LessonOccurrence]]:
        """
        Creates a student and their first lessons: a full active bundle plus, for recurring profiles with more than one
        lesson per bundle, a pending bundle right after it.

        Returns the stored student and the generated lessons.
        """
        name = (name or "").strip()
        if not name:
            raise InvalidConfiguration("A student name is required.")
        if lesson_type not in LESSON_TYPES:
            raise InvalidConfiguration(f"Unknown lesson type: {lesson_type}")
        if remaining_credits < 0:
            raise InvalidConfiguration("Remaining credits cannot be negative.")
        profile.validate()

        student = Student(name=name, recurrence_profile=profile, remaining_credits=remaining_credits,
                          lesson_type=lesson_type, package_price=package_price, memo=memo)
        occurrences = self._plan_bundles(student, 1, starting_after or self._clock(), prepaid)
        self.db.create_student(student, occurrences)
        logger.info("Enrolled %s (%s) with %s lessons", student.name, student.id, len(occurrences))
        return student, occurrences

    def reenroll_student(self, student_id: str, profile: RecurrenceProfile, prepaid: bool = False) -> ChangeSet:
        """
        Replaces a student's recurrence profile and regenerates their upcoming lessons wholesale.

        Scheduled bundle lessons that have not started yet are deleted; past lessons and manual bookings are kept.
        New active and pending bundles get fresh tags.
        """
        profile.validate()

        def plan(student: Student, occurrences: List[LessonOccurrence]) -> ChangeSet:
            now = self._clock()
            deletes = [o.id for o in occurrences
                       if o.bundle_tag is not None and o.status == "scheduled" and o.start_time > now]
            updated = replace(student, recurrence_profile=profile)
            first_tag = max([student.last_bundle_tag] + [o.bundle_tag for o in occurrences if o.bundle_tag is not None]) + 1
            creates = self._plan_bundles(updated, first_tag, now, prepaid)
            return ChangeSet(deletes=deletes, creates=creates, student=updated)

        return self._run(student_id, plan)

    def cancel_occurrence(self, occurrence_id: str) -> ChangeSet:
        occurrence = self._read_occurrence(occurrence_id)

        def plan(student: Student, occurrences: List[LessonOccurrence]) -> ChangeSet:
            return bundle_rebalancer.rebalance_on_cancel(student, occurrence_id, occurrences)

        changes = self._run(occurrence.student_id, plan, RebalanceFailed)
        logger.info("Cancelled lesson %s", occurrence_id)
        return changes

    def confirm_payment(self, occurrence_id: str) -> ChangeSet:
        occurrence = self._read_occurrence(occurrence_id)

        def plan(student: Student, occurrences: List[LessonOccurrence]) -> ChangeSet:
            return payment_promoter.confirm_payment(student, occurrence_id, occurrences)

        changes = self._run(occurrence.student_id, plan, PromotionFailed)
        logger.info("Payment confirmed for bundle of lesson %s", occurrence_id)
        return changes

    def payable_bundle(self, occurrence_id: str) -> Tuple[Student, LessonOccurrence]:
        """
        Returns the student and lesson a checkout can be opened for.

        Only a pending bundle or an active bundle with an unpaid lesson can be paid for. Anything else would charge the
        customer for a payment confirm_payment then ignores.
        """
        occurrence = self._read_occurrence(occurrence_id)
        student, occurrences = self.get_student(occurrence.student_id)
        if occurrence.bundle_tag is None:
            raise InvalidConfiguration("Manually booked lessons are paid with credits, not through checkout.")
        members = bundle_members(occurrences, occurrence.bundle_tag, occurrence.is_pending)
        if not occurrence.is_pending and all(o.is_paid for o in members):
            raise InvalidConfiguration(f"Bundle {occurrence.bundle_tag} for {student.name} is already paid.")
        return student, occurrence

    def book_ad_hoc(self, student_id: str, start: datetime, end: datetime, notes: str = "") -> LessonOccurrence:
        def plan(student: Student, occurrences: List[LessonOccurrence]) -> ChangeSet:
            return credit_ledger.book_with_credit(student, start, end, notes)

        changes = self._run(student_id, plan)
        return changes.creates[0]

    def grant_credits(self, student_id: str, amount: int) -> Student:
        def plan(student: Student, occurrences: List[LessonOccurrence]) -> ChangeSet:
            return credit_ledger.grant_credits(student, amount)

        changes = self._run(student_id, plan)
        return changes.student

    def update_lesson(self, occurrence_id: str, status: Optional[str] = None, notes: Optional[str] = None) -> ChangeSet:
        """
        Changes a lesson's status and/or notes.

        Setting the status to "cancelled" is a real cancellation: the lesson is deleted and its bundle rebalanced.
        A same-day cancellation keeps the lesson, since it still uses up its place in the bundle.
        """
        if status is not None and status not in LESSON_STATUSES:
            raise InvalidConfiguration(f"Unknown lesson status: {status}")
        if status == "cancelled":
            return self.cancel_occurrence(occurrence_id)
        occurrence = self._read_occurrence(occurrence_id)

        def plan(student: Student, occurrences: List[LessonOccurrence]) -> ChangeSet:
            current = next((o for o in occurrences if o.id == occurrence_id), None)
            if current is None:
                raise StaleReference(f"Lesson {occurrence_id} no longer exists.")
            return ChangeSet(updates=[replace(current,
                                              status=status if status is not None else current.status,
                                              notes=notes if notes is not None else current.notes)])

        return self._run(occurrence.student_id, plan)

    def reschedule_lesson(self, occurrence_id: str, start: datetime, end: datetime) -> ChangeSet:
        """
        Moves a lesson to a new time. Its bundle is renumbered so sequence numbers stay in chronological order.
        """
        occurrence = self._read_occurrence(occurrence_id)

        def plan(student: Student, occurrences: List[LessonOccurrence]) -> ChangeSet:
            return bundle_rebalancer.reschedule_occurrence(student, occurrence_id, start, end, occurrences)

        changes = self._run(occurrence.student_id, plan)
        logger.info("Moved lesson %s to %s", occurrence_id, start.isoformat())
        return changes

    def delete_student(self, student_id: str) -> None:
        if not self.db.delete_student(student_id):
            raise StaleReference(f"Student {student_id} does not exist.")
        logger.info("Deleted student %s and their lessons", student_id)

    def get_student(self, student_id: str) -> Tuple[Student, List[LessonOccurrence]]:
        student = self.db.read_student(student_id)
        if student is None:
            raise StaleReference(f"Student {student_id} does not exist.")
        return student, self.db.read_occurrences(student_id=student_id)

    def list_students(self) -> List[Student]:
        return self.db.list_students()

    def list_lessons(self, student_id: Optional[str] = None, start: Optional[datetime] = None,
                     end: Optional[datetime] = None) -> List[LessonOccurrence]:
        return self.db.read_occurrences(student_id=student_id, start=start, end=end)

    def credit_notifications(self) -> List[Dict[str, object]]:
        """
        One notification per student running low on lesson credits, fewest credits first.
        """
        notifications = []
        for student in self.db.list_students(max_credits=LOW_CREDIT_THRESHOLD):
            if student.remaining_credits > 0:
                notifications.append({
                    "id": f"student-expiring-{student.id}",
                    "type": "package-expiring",
                    "title": "Lesson credits running low",
                    "message": f"{student.name} has {student.remaining_credits} lesson(s) left.",
                    "student_id": student.id,
                    "remaining_credits": student.remaining_credits,
                })
            else:
                notifications.append({
                    "id": f"student-empty-{student.id}",
                    "type": "package-empty",
                    "title": "Lesson credits used up",
                    "message": f"{student.name} has used all lesson credits. A renewal is needed.",
                    "student_id": student.id,
                    "remaining_credits": student.remaining_credits,
                })
        notifications.sort(key=lambda n: n["remaining_credits"])
        return notifications
