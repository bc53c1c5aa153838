from contextlib import contextmanager
from datetime import datetime
from typing import Callable, List, Optional
import logging
import os
import psycopg2
from psycopg2.extensions import TransactionRollbackError
from psycopg2.extras import DictCursor, Json
from .error_utils import PersistenceError, StaleReference, TransactionConflict
from .models import ChangeSet, LessonOccurrence, RecurrenceProfile, Slot, Student

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

STUDENT_COLUMNS = """id, name, slots, interval_weeks, session_duration_minutes, bundle_size, frequency,
                     remaining_credits, last_bundle_tag, lesson_type, package_price, memo, created_at, updated_at"""
LESSON_COLUMNS = """id, student_id, title, start_time, end_time, sequence_number, bundle_tag,
                    is_pending, is_paid, status, notes, created_at, updated_at"""


def _row_to_student(row) -> Student:
    profile = RecurrenceProfile(
        slots=[Slot.from_dict(slot) for slot in row['slots']],
        interval_weeks=row['interval_weeks'],
        session_duration_minutes=row['session_duration_minutes'],
        bundle_size=row['bundle_size'],
        frequency=row['frequency'],
    )
    return Student(
        id=str(row['id']),
        name=row['name'],
        recurrence_profile=profile,
        remaining_credits=row['remaining_credits'],
        last_bundle_tag=row['last_bundle_tag'],
        lesson_type=row['lesson_type'],
        package_price=row['package_price'],
        memo=row['memo'] or "",
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


def _row_to_occurrence(row) -> LessonOccurrence:
    return LessonOccurrence(
        id=str(row['id']),
        student_id=str(row['student_id']),
        title=row['title'],
        start_time=row['start_time'],
        end_time=row['end_time'],
        sequence_number=row['sequence_number'],
        bundle_tag=row['bundle_tag'],
        is_pending=row['is_pending'],
        is_paid=row['is_paid'],
        status=row['status'],
        notes=row['notes'] or "",
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


class DatabasePersistence:
    def __init__(self):
        self._setup_schema()

    @contextmanager
    def _database_connect(self):
        """
        Internal function to manage the Postgres database connections.
        Must include environment variable for database url path when deploying to production.

        Leaving the block normally commits, an exception rolls everything back. psycopg2 errors are translated into
        the engine's own exceptions so callers never need to import psycopg2.
        """
        try:
            if os.environ.get('FLASK_ENV') == 'production':
                connection = psycopg2.connect(os.environ['DATABASE_URL'])
            else:
                connection = psycopg2.connect(dbname='lesson_scheduler')
        except psycopg2.OperationalError as e:
            logger.error("Could not connect to the database: %s", e.args)
            raise PersistenceError("The database is unavailable.") from e
        try:
            with connection:
                yield connection
        except TransactionRollbackError as e:
            logger.error("Transaction rolled back by a concurrent writer: %s", e.args)
            raise TransactionConflict("Another change to this student was saved first. Please retry.") from e
        except psycopg2.DatabaseError as e:
            logger.error("Database error: %s", e.args)
            raise PersistenceError("The database rejected the change.") from e
        finally:
            connection.close()

    def read_student(self, student_id: str) -> Optional[Student]:
        query = f"SELECT {STUDENT_COLUMNS} FROM students WHERE id = %s"
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, (student_id,))
                row = cursor.fetchone()
        return _row_to_student(row) if row else None

    def list_students(self, max_credits: Optional[int] = None) -> List[Student]:
        """
        All students ordered by name. With max_credits, only those whose remaining credits are at or below it.
        """
        query = f"SELECT {STUDENT_COLUMNS} FROM students"
        params = ()
        if max_credits is not None:
            query += " WHERE remaining_credits <= %s"
            params = (max_credits,)
        query += " ORDER BY name"
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, params)
                rows = cursor.fetchall()
        return [_row_to_student(row) for row in rows]

    def read_occurrence(self, occurrence_id: str) -> Optional[LessonOccurrence]:
        query = f"SELECT {LESSON_COLUMNS} FROM lessons WHERE id = %s"
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, (occurrence_id,))
                row = cursor.fetchone()
        return _row_to_occurrence(row) if row else None

    def read_occurrences(self, student_id: Optional[str] = None, start: Optional[datetime] = None,
                         end: Optional[datetime] = None) -> List[LessonOccurrence]:
        """
        Lessons matching every filter given, in chronological order. start/end bound the lesson start time
        (start inclusive, end exclusive) the way the calendar view asks for a week or month.
        """
        conditions = []
        params = []
        if student_id is not None:
            conditions.append("student_id = %s")
            params.append(student_id)
        if start is not None:
            conditions.append("start_time >= %s")
            params.append(start)
        if end is not None:
            conditions.append("start_time < %s")
            params.append(end)
        query = f"SELECT {LESSON_COLUMNS} FROM lessons"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY start_time"
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, tuple(params))
                rows = cursor.fetchall()
        return [_row_to_occurrence(row) for row in rows]

    def create_student(self, student: Student, occurrences: List[LessonOccurrence]) -> None:
        """
        Inserts a newly enrolled student together with their generated lessons in one transaction.
        """
        with self._database_connect() as conn:
            with conn.cursor() as cursor:
                self._insert_student(cursor, student)
                for occurrence in occurrences:
                    self._insert_occurrence(cursor, occurrence)
        logger.info("Enrolled student %s with %s lessons", student.id, len(occurrences))

    def delete_student(self, student_id: str) -> bool:
        """
        Deletes a student. Their lessons go with them through ON DELETE CASCADE.

        Returns True if a student was deleted, False if there was none with that id.
        """
        query = "DELETE FROM students WHERE id = %s"
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor() as cursor:
                cursor.execute(query, (student_id,))
                deleted = cursor.rowcount
        return deleted == 1

    def run_transaction(self, student_id: str, plan: Callable[[Student, List[LessonOccurrence]], ChangeSet]) -> ChangeSet:
        """
        Runs one all-or-nothing read-then-write on a single student's lessons.

        The student row is locked FOR UPDATE, so writers for the same student queue up behind each other while other
        students are unaffected. plan receives the student and all of their lessons and returns the ChangeSet to apply.
        Anything raised by plan, or by a write that finds a row missing, rolls the whole transaction back.

        Raises StaleReference if the student no longer exists.
        """
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(f"SELECT {STUDENT_COLUMNS} FROM students WHERE id = %s FOR UPDATE", (student_id,))
                row = cursor.fetchone()
                if row is None:
                    raise StaleReference(f"Student {student_id} no longer exists.")
                student = _row_to_student(row)
                cursor.execute(f"SELECT {LESSON_COLUMNS} FROM lessons WHERE student_id = %s ORDER BY start_time", (student_id,))
                occurrences = [_row_to_occurrence(r) for r in cursor.fetchall()]

                changes = plan(student, occurrences)
                self._apply_changes(cursor, student_id, changes)
        return changes

    def _apply_changes(self, cursor, student_id: str, changes: ChangeSet) -> None:
        for occurrence_id in changes.deletes:
            cursor.execute("DELETE FROM lessons WHERE id = %s AND student_id = %s", (occurrence_id, student_id))
            if cursor.rowcount != 1:
                raise StaleReference(f"Lesson {occurrence_id} was deleted by someone else.")
        for occurrence in changes.updates:
            cursor.execute("""UPDATE lessons SET title = %s, start_time = %s, end_time = %s, sequence_number = %s,
                              bundle_tag = %s, is_pending = %s, is_paid = %s, status = %s, notes = %s,
                              updated_at = CURRENT_TIMESTAMP
                              WHERE id = %s AND student_id = %s""",
                           (occurrence.title, occurrence.start_time, occurrence.end_time, occurrence.sequence_number,
                            occurrence.bundle_tag, occurrence.is_pending, occurrence.is_paid, occurrence.status,
                            occurrence.notes, occurrence.id, student_id))
            if cursor.rowcount != 1:
                raise StaleReference(f"Lesson {occurrence.id} was deleted by someone else.")
        for occurrence in changes.creates:
            self._insert_occurrence(cursor, occurrence)
        if changes.student is not None:
            student = changes.student
            profile = student.recurrence_profile
            cursor.execute("""UPDATE students SET name = %s, slots = %s, interval_weeks = %s, session_duration_minutes = %s,
                              bundle_size = %s, frequency = %s, remaining_credits = %s, last_bundle_tag = %s,
                              lesson_type = %s, package_price = %s, memo = %s, updated_at = CURRENT_TIMESTAMP
                              WHERE id = %s""",
                           (student.name, Json([slot.to_dict() for slot in profile.slots]), profile.interval_weeks,
                            profile.session_duration_minutes, profile.bundle_size, profile.frequency,
                            student.remaining_credits, student.last_bundle_tag, student.lesson_type,
                            student.package_price, student.memo, student_id))
        logger.info("Applied %s deletes, %s updates, %s creates for student %s",
                    len(changes.deletes), len(changes.updates), len(changes.creates), student_id)

    @staticmethod
    def _insert_student(cursor, student: Student) -> None:
        profile = student.recurrence_profile
        cursor.execute(f"INSERT INTO students ({STUDENT_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                       (student.id, student.name, Json([slot.to_dict() for slot in profile.slots]),
                        profile.interval_weeks, profile.session_duration_minutes, profile.bundle_size,
                        profile.frequency, student.remaining_credits, student.last_bundle_tag,
                        student.lesson_type, student.package_price, student.memo,
                        student.created_at, student.updated_at))

    @staticmethod
    def _insert_occurrence(cursor, occurrence: LessonOccurrence) -> None:
        cursor.execute(f"INSERT INTO lessons ({LESSON_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                       (occurrence.id, occurrence.student_id, occurrence.title, occurrence.start_time,
                        occurrence.end_time, occurrence.sequence_number, occurrence.bundle_tag,
                        occurrence.is_pending, occurrence.is_paid, occurrence.status, occurrence.notes,
                        occurrence.created_at, occurrence.updated_at))

    @staticmethod
    def _table_exists(cursor, table_name: str) -> bool:
        cursor.execute("""
            SELECT COUNT(*)
            FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = %s;
        """, (table_name,))
        return cursor.fetchone()[0] > 0

    def _setup_schema(self):
        """
        Internal function to set-up the database schema if the tables do not exist. Primarily used when being deployed in production.
        """
        with self._database_connect() as conn:
            with conn.cursor() as cursor:
                if not self._table_exists(cursor, 'students'):
                    logger.info("Setting up the schema.")
                    cursor.execute("""
                        CREATE TABLE students (
                        id UUID PRIMARY KEY,
                        name text NOT NULL,
                        slots JSONB NOT NULL,
                        interval_weeks integer NOT NULL CHECK (interval_weeks > 0),
                        session_duration_minutes integer NOT NULL CHECK (session_duration_minutes > 0),
                        bundle_size integer NOT NULL CHECK (bundle_size > 0),
                        frequency text NOT NULL,
                        remaining_credits integer NOT NULL DEFAULT 0 CHECK (remaining_credits >= 0),
                        last_bundle_tag integer NOT NULL DEFAULT 0,
                        lesson_type text NOT NULL,
                        package_price integer,
                        memo text,
                        created_at timestamp NOT NULL DEFAULT CURRENT_TIMESTAMP,
                        updated_at timestamp NOT NULL DEFAULT CURRENT_TIMESTAMP);
                    """)
                if not self._table_exists(cursor, 'lessons'):
                    cursor.execute("""
                        CREATE TABLE lessons (
                        id UUID PRIMARY KEY,
                        student_id UUID NOT NULL REFERENCES students (id) ON DELETE CASCADE,
                        title text NOT NULL,
                        start_time timestamp NOT NULL,
                        end_time timestamp NOT NULL,
                        sequence_number integer NOT NULL,
                        bundle_tag integer,
                        is_pending boolean NOT NULL DEFAULT false,
                        is_paid boolean NOT NULL DEFAULT false,
                        status text NOT NULL DEFAULT 'scheduled',
                        notes text,
                        created_at timestamp NOT NULL DEFAULT CURRENT_TIMESTAMP,
                        updated_at timestamp NOT NULL DEFAULT CURRENT_TIMESTAMP);
                    """)
                    cursor.execute("CREATE INDEX lessons_student_start_idx ON lessons (student_id, start_time);")


if __name__ == "__main__":
    test = DatabasePersistence()
    print(test.list_students())
