import unittest
from datetime import datetime, time, timedelta
from lesson_scheduler.booking.credit_ledger import book_with_credit, grant_credits
from lesson_scheduler.booking.error_utils import InvalidConfiguration, NoCreditsRemaining
from lesson_scheduler.booking.models import RecurrenceProfile, Slot, Student

START = datetime(2025, 1, 3, 15, 0)
END = START + timedelta(minutes=50)


def make_student(credits):
    profile = RecurrenceProfile([Slot(0, time(16))], 1, 60, 1, "flexible")
    return Student(name="Jun", recurrence_profile=profile, remaining_credits=credits)


class CreditLedgerTest(unittest.TestCase):

    def test_booking_spends_one_credit(self):
        student = make_student(3)
        changes = book_with_credit(student, START, END, "make-up lesson")

        self.assertEqual(changes.student.remaining_credits, 2)
        self.assertEqual(student.remaining_credits, 3)
        [lesson] = changes.creates
        self.assertEqual((lesson.start_time, lesson.end_time), (START, END))
        self.assertIsNone(lesson.bundle_tag)
        self.assertTrue(lesson.is_paid)
        self.assertEqual(lesson.title, "Jun lesson")
        self.assertEqual(lesson.notes, "make-up lesson")

    def test_no_credits_left(self):
        with self.assertRaises(NoCreditsRemaining):
            book_with_credit(make_student(0), START, END)

    def test_end_before_start(self):
        with self.assertRaises(InvalidConfiguration):
            book_with_credit(make_student(1), END, START)

    def test_grant_credits(self):
        changes = grant_credits(make_student(1), 8)
        self.assertEqual(changes.student.remaining_credits, 9)
        with self.assertRaises(InvalidConfiguration):
            grant_credits(make_student(1), 0)


if __name__ == '__main__':
    unittest.main()
