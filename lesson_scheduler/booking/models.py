# Record shapes shared by the planners, the database layer and the Flask routes.
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Dict, List, Optional
from uuid import uuid4
from .error_utils import InvalidConfiguration

# Index in this list is the weekday number used everywhere (datetime.weekday(): Monday == 0)
DAYS_OF_WEEK = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']

FREQUENCY_INTERVALS = {"weekly": 1, "biweekly": 2}
FLEXIBLE = "flexible"
FREQUENCIES = ("weekly", "biweekly", FLEXIBLE)

LESSON_TYPES = ("vocal", "guitar", "guitar+vocal")
LESSON_STATUSES = ("scheduled", "completed", "cancelled", "same-day-cancelled")


def _new_id() -> str:
    return str(uuid4())


@dataclass(frozen=True)
class Slot:
    """A recurring meeting time: weekday number plus time of day."""
    weekday: int
    time: time

    def to_dict(self) -> Dict[str, object]:
        return {"weekday": self.weekday, "time": self.time.strftime("%H:%M")}

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Slot":
        return cls(int(data["weekday"]), time.fromisoformat(str(data["time"])))


@dataclass
class RecurrenceProfile:
    slots: List[Slot]
    interval_weeks: int = 1
    session_duration_minutes: int = 60
    bundle_size: int = 4
    frequency: str = "weekly"

    @property
    def is_recurring(self) -> bool:
        return self.frequency != FLEXIBLE

    @property
    def has_pending_bundle(self) -> bool:
        # Single-session and flexible enrollments never get a shadow bundle
        return self.is_recurring and self.bundle_size >= 2

    @property
    def session_duration(self) -> timedelta:
        return timedelta(minutes=self.session_duration_minutes)

    def validate(self) -> "RecurrenceProfile":
        """
        Checks the profile can drive the generator. Returns self so it can be chained after construction.

        Raises InvalidConfiguration with a tutor-facing message on the first problem found.
        """
        if not self.slots:
            raise InvalidConfiguration("At least one weekday and time is required.")
        for slot in self.slots:
            if not 0 <= slot.weekday <= 6:
                raise InvalidConfiguration(f"Weekday {slot.weekday} is out of range.")
        if len(set(self.slots)) != len(self.slots):
            raise InvalidConfiguration("The same weekday and time was given twice.")
        if self.frequency not in FREQUENCIES:
            raise InvalidConfiguration(f"Unknown frequency: {self.frequency}")
        for name in ("interval_weeks", "session_duration_minutes", "bundle_size"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise InvalidConfiguration(f"{name} must be a positive whole number.")
        return self

    def to_dict(self) -> Dict[str, object]:
        return {
            "slots": [slot.to_dict() for slot in self.slots],
            "interval_weeks": self.interval_weeks,
            "session_duration_minutes": self.session_duration_minutes,
            "bundle_size": self.bundle_size,
            "frequency": self.frequency,
        }


@dataclass
class Student:
    name: str
    recurrence_profile: RecurrenceProfile
    id: str = field(default_factory=_new_id)
    remaining_credits: int = 0
    # Highest bundle tag ever issued for this student. Tags are never reused.
    last_bundle_tag: int = 0
    lesson_type: str = "vocal"
    package_price: Optional[int] = None
    memo: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "recurrence_profile": self.recurrence_profile.to_dict(),
            "remaining_credits": self.remaining_credits,
            "last_bundle_tag": self.last_bundle_tag,
            "lesson_type": self.lesson_type,
            "package_price": self.package_price,
            "memo": self.memo,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class LessonOccurrence:
    student_id: str
    title: str
    start_time: datetime
    end_time: datetime
    sequence_number: int = 1
    # None for manual bookings, which never belong to a bundle
    bundle_tag: Optional[int] = None
    is_pending: bool = False
    is_paid: bool = False
    status: str = "scheduled"
    notes: str = ""
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "title": self.title,
            "start": self.start_time.isoformat(),
            "end": self.end_time.isoformat(),
            "sequence_number": self.sequence_number,
            "bundle_tag": self.bundle_tag,
            "is_pending": self.is_pending,
            "is_paid": self.is_paid,
            "status": self.status,
            "notes": self.notes,
        }


@dataclass
class ChangeSet:
    """Write set of one transaction. Applied all together or not at all."""
    deletes: List[str] = field(default_factory=list)
    updates: List[LessonOccurrence] = field(default_factory=list)
    creates: List[LessonOccurrence] = field(default_factory=list)
    student: Optional[Student] = None

    @property
    def is_empty(self) -> bool:
        return not (self.deletes or self.updates or self.creates or self.student)

    def to_dict(self) -> Dict[str, object]:
        return {
            "deleted": list(self.deletes),
            "updated": [occurrence.to_dict() for occurrence in self.updates],
            "created": [occurrence.to_dict() for occurrence in self.creates],
        }


def active_bundle(occurrences: List[LessonOccurrence]) -> List[LessonOccurrence]:
    """
    Occurrences of the newest non-pending bundle, in chronological order.
    Older non-pending bundles are history and are not returned.
    """
    tags = [o.bundle_tag for o in occurrences if o.bundle_tag is not None and not o.is_pending]
    if not tags:
        return []
    return bundle_members(occurrences, max(tags), False)


def pending_bundle(occurrences: List[LessonOccurrence]) -> List[LessonOccurrence]:
    return sorted((o for o in occurrences if o.bundle_tag is not None and o.is_pending),
                  key=lambda o: o.start_time)


def bundle_members(occurrences: List[LessonOccurrence], bundle_tag: int, is_pending: bool) -> List[LessonOccurrence]:
    return sorted((o for o in occurrences if o.bundle_tag == bundle_tag and o.is_pending == is_pending),
                  key=lambda o: o.start_time)
