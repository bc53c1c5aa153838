# In-memory stand-in for DatabasePersistence used by the service and route tests.
from copy import deepcopy
import threading
from dataclasses import replace
from lesson_scheduler.booking.error_utils import StaleReference
from lesson_scheduler.booking.models import active_bundle, pending_bundle


def bundle_problems(lessons, bundle_size):
    """
    Lists every way the active and pending bundles in lessons break the bundle rules. Empty list means all good.
    """
    problems = []
    for label, bundle in (("active", active_bundle(lessons)), ("pending", pending_bundle(lessons))):
        if not bundle:
            continue
        if len(bundle) != bundle_size:
            problems.append(f"{label} bundle has {len(bundle)} lessons")
        if len({l.bundle_tag for l in bundle}) != 1:
            problems.append(f"{label} bundle mixes tags")
        numbers = [l.sequence_number for l in bundle]
        if numbers != list(range(1, len(bundle) + 1)):
            problems.append(f"{label} bundle numbered {numbers}")
        starts = [l.start_time for l in bundle]
        if any(a >= b for a, b in zip(starts, starts[1:])):
            problems.append(f"{label} bundle not strictly chronological")
    return problems


class FakeDatabasePersistence:
    """
    Same read/write interface as the Postgres store. run_transaction plans against copies and only swaps them in once the
    whole ChangeSet applied cleanly, so a failure anywhere leaves the stored state untouched.
    """

    def __init__(self):
        self.students = {}
        self.lessons = {}
        self.transactions = 0
        # Exceptions to raise from the next run_transaction calls, oldest first
        self.failures = []
        # Stands in for the per-student row lock: one transaction at a time
        self._lock = threading.Lock()

    def read_student(self, student_id):
        student = self.students.get(student_id)
        return deepcopy(student) if student else None

    def list_students(self, max_credits=None):
        students = sorted(self.students.values(), key=lambda s: s.name)
        if max_credits is not None:
            students = [s for s in students if s.remaining_credits <= max_credits]
        return deepcopy(students)

    def read_occurrence(self, occurrence_id):
        lesson = self.lessons.get(occurrence_id)
        return deepcopy(lesson) if lesson else None

    def read_occurrences(self, student_id=None, start=None, end=None):
        lessons = [l for l in self.lessons.values()
                   if (student_id is None or l.student_id == student_id)
                   and (start is None or l.start_time >= start)
                   and (end is None or l.start_time < end)]
        return deepcopy(sorted(lessons, key=lambda l: l.start_time))

    def create_student(self, student, occurrences):
        self.students[student.id] = deepcopy(student)
        for occurrence in occurrences:
            self.lessons[occurrence.id] = deepcopy(occurrence)

    def delete_student(self, student_id):
        if student_id not in self.students:
            return False
        del self.students[student_id]
        self.lessons = {k: v for k, v in self.lessons.items() if v.student_id != student_id}
        return True

    def run_transaction(self, student_id, plan):
        with self._lock:
            return self._run_locked(student_id, plan)

    def _run_locked(self, student_id, plan):
        self.transactions += 1
        if self.failures:
            raise self.failures.pop(0)
        if student_id not in self.students:
            raise StaleReference(f"Student {student_id} no longer exists.")
        students = deepcopy(self.students)
        lessons = deepcopy(self.lessons)
        own = sorted((l for l in lessons.values() if l.student_id == student_id), key=lambda l: l.start_time)
        changes = plan(deepcopy(students[student_id]), deepcopy(own))

        for lesson_id in changes.deletes:
            if lesson_id not in lessons:
                raise StaleReference(f"Lesson {lesson_id} was deleted by someone else.")
            del lessons[lesson_id]
        for lesson in changes.updates:
            if lesson.id not in lessons:
                raise StaleReference(f"Lesson {lesson.id} was deleted by someone else.")
            lessons[lesson.id] = replace(lesson)
        for lesson in changes.creates:
            lessons[lesson.id] = replace(lesson)
        if changes.student is not None:
            students[student_id] = replace(changes.student)

        self.students, self.lessons = students, lessons
        return changes
