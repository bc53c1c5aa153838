# Custom exceptions to be used throughout the project.

class SchedulingError(Exception):
    """
    Base class for every error raised by the lesson engine. None of these are fatal to the process;
    callers either retry with a fresh read or surface the message to the tutor.
    """
    # By default Exception class takes a tuple of arguments
    def __init__(self, *args):
        super().__init__(*args)

    @property
    def message(self) -> str:
        return self.args[0] if self.args else self.__class__.__name__


class InvalidConfiguration(SchedulingError):
    """
    Raised when a recurrence profile cannot be used to generate lessons.
    May be raised under the following circumstances:
        1. No weekday/time slots were given
        2. A slot time is not in HH:MM format or the weekday is out of range
        3. Interval, duration or bundle size is not a positive integer
    """


class NoCreditsRemaining(SchedulingError):
    """Student has no lesson credits left for a manual booking."""


class IncompleteBundle(SchedulingError):
    """Payment was confirmed on a bundle that does not hold a full set of lessons."""


class StaleReference(SchedulingError):
    """A student or lesson vanished between the read and the write."""


class RebalanceFailed(SchedulingError):
    """Cancellation transaction aborted. Nothing was written."""


class PromotionFailed(SchedulingError):
    """Payment promotion transaction aborted. Nothing was written."""


class TransactionConflict(SchedulingError):
    """Concurrent writer touched the same student. Safe to retry from a fresh read."""


class PersistenceError(SchedulingError):
    """Database rejected the write for a reason other than a conflict."""
