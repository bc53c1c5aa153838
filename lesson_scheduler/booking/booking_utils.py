# Utility functions for turning submitted form data into engine inputs
# Import MultiDict for form input handling
from werkzeug.datastructures import MultiDict
import re
import uuid
from datetime import datetime, time
from typing import List, Optional
from .error_utils import InvalidConfiguration
from .models import DAYS_OF_WEEK, FLEXIBLE, FREQUENCIES, FREQUENCY_INTERVALS, RecurrenceProfile, Slot

# 24 hour clock, e.g. "09:00" or "16:30"
TIME_PATTERN = re.compile(r'^([01]?[0-9]|2[0-3]):([0-5][0-9])$')

DEFAULT_SESSION_DURATION = 60
DEFAULT_BUNDLE_SIZE = 4
MAX_BUNDLE_SIZE = 52


def parse_time(value: str) -> time:
    match = TIME_PATTERN.fullmatch((value or "").strip())
    if not match:
        raise InvalidConfiguration(f"'{value}' is not a valid time. Use HH:MM.")
    return time(int(match.group(1)), int(match.group(2)))


def validate_slot_input_format(form: MultiDict) -> bool:
    """
    Checks every weekday field in the submission holds HH:MM times. Empty fields are allowed (the weekday is just not used).

    Returns True if the format is valid, False otherwise.
    """
    for day in DAYS_OF_WEEK:
        for value in form.getlist(day):
            if value.strip() and not TIME_PATTERN.fullmatch(value.strip()):
                return False
    return True


def parse_slots(form: MultiDict) -> List[Slot]:
    """
    With MultiDict type, use getlist to collect each time submitted for each weekday. Ex: {"Monday": ['16:00', '18:00']}

    Returns slots ordered by weekday then time, duplicates removed.
    """
    slots = set()
    for weekday, day in enumerate(DAYS_OF_WEEK):
        for value in form.getlist(day):
            if value.strip():
                slots.add(Slot(weekday, parse_time(value)))
    return sorted(slots, key=lambda slot: (slot.weekday, slot.time))


def parse_positive_int(value: Optional[str], name: str, default: Optional[int] = None, minimum: int = 1) -> int:
    if value is None or str(value).strip() == "":
        if default is None:
            raise InvalidConfiguration(f"{name} is required.")
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        raise InvalidConfiguration(f"{name} must be a whole number.")
    if number < minimum:
        raise InvalidConfiguration(f"{name} must be at least {minimum}.")
    return number


def parse_optional_int(value: Optional[str], name: str) -> Optional[int]:
    if value is None or str(value).strip() == "":
        return None
    return parse_positive_int(value, name, minimum=0)


def parse_bool(value: Optional[str]) -> bool:
    # Checkboxes only submit a value when ticked
    return str(value).strip().lower() in ("1", "true", "on", "yes")


def parse_recurrence_profile(form: MultiDict) -> RecurrenceProfile:
    """
    Builds a validated RecurrenceProfile from an enrollment form.

    Weekday fields (Monday..Sunday) carry the lesson times, frequency is weekly, biweekly or flexible.
    Flexible (trial / ad-hoc) enrollments always have a bundle size of one.
    """
    if not validate_slot_input_format(form):
        raise InvalidConfiguration("Lesson times are not formatted correctly. Use HH:MM.")
    frequency = (form.get('frequency') or 'weekly').strip().lower()
    if frequency not in FREQUENCIES:
        raise InvalidConfiguration(f"Unknown frequency: {frequency}")
    slots = parse_slots(form)
    duration = parse_positive_int(form.get('session_duration'), 'Session duration', DEFAULT_SESSION_DURATION)
    if frequency == FLEXIBLE:
        return RecurrenceProfile(slots, 1, duration, 1, FLEXIBLE).validate()
    bundle_size = parse_positive_int(form.get('bundle_size'), 'Bundle size', DEFAULT_BUNDLE_SIZE)
    if bundle_size > MAX_BUNDLE_SIZE:
        raise InvalidConfiguration(f"Bundle size cannot exceed {MAX_BUNDLE_SIZE}.")
    return RecurrenceProfile(slots, FREQUENCY_INTERVALS[frequency], duration, bundle_size, frequency).validate()


def parse_datetime(value: Optional[str], name: str) -> datetime:
    """
    Parses an ISO-8601 datetime. Aware values are converted to local time and made naive, since lessons are stored in
    the single local zone the tutor works in.
    """
    if not value:
        raise InvalidConfiguration(f"{name} is required.")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise InvalidConfiguration(f"{name} is not a valid ISO date and time.")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def parse_optional_datetime(value: Optional[str], name: str) -> Optional[datetime]:
    return parse_datetime(value, name) if value else None


def parse_uuid(value: Optional[str], name: str) -> str:
    # Ids are Postgres UUID columns, so anything else would surface as a database error
    try:
        return str(uuid.UUID(str(value).strip()))
    except ValueError:
        raise InvalidConfiguration(f"{name} '{value}' is not a valid id.")


def parse_optional_uuid(value: Optional[str], name: str) -> Optional[str]:
    return parse_uuid(value, name) if value else None
