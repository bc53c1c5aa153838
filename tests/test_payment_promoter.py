import unittest
from datetime import datetime, time, timedelta
from lesson_scheduler.booking.error_utils import IncompleteBundle, StaleReference
from lesson_scheduler.booking.models import LessonOccurrence, RecurrenceProfile, Slot, Student
from lesson_scheduler.booking.occurrence_generator import generate
from lesson_scheduler.booking.payment_promoter import confirm_payment

THURSDAY = datetime(2025, 1, 2, 10, 0)


def enrolled(active_paid=True):
    profile = RecurrenceProfile([Slot(0, time(16)), Slot(2, time(16))], 1, 60, 4, "weekly")
    student = Student(name="Mina", recurrence_profile=profile, last_bundle_tag=2)
    active = generate(student, 1, False, 4, THURSDAY)
    for lesson in active:
        lesson.is_paid = active_paid
    pending = generate(student, 2, True, 4, active[-1].start_time)
    return student, active, pending


class PaymentPromoterTest(unittest.TestCase):

    def test_confirming_pending_bundle_promotes_it_and_spawns_next(self):
        student, active, pending = enrolled()
        changes = confirm_payment(student, pending[0].id, active + pending)

        self.assertEqual([l.id for l in changes.updates], [l.id for l in pending])
        self.assertTrue(all(l.is_paid and not l.is_pending and l.bundle_tag == 2 for l in changes.updates))

        self.assertEqual(len(changes.creates), 4)
        self.assertTrue(all(l.is_pending and not l.is_paid and l.bundle_tag == 3 for l in changes.creates))
        self.assertEqual([l.sequence_number for l in changes.creates], [1, 2, 3, 4])
        self.assertEqual(changes.creates[0].start_time, pending[3].start_time + timedelta(days=5))
        self.assertEqual(changes.student.last_bundle_tag, 3)

    def test_any_pending_member_promotes_the_whole_bundle(self):
        student, active, pending = enrolled()
        changes = confirm_payment(student, pending[2].id, active + pending)

        self.assertEqual([l.id for l in changes.updates], [l.id for l in pending])
        self.assertEqual(len(changes.creates), 4)
        self.assertEqual(changes.student.last_bundle_tag, 3)

    def test_inputs_are_not_modified(self):
        student, active, pending = enrolled()
        confirm_payment(student, pending[0].id, active + pending)
        self.assertTrue(all(l.is_pending and not l.is_paid for l in pending))
        self.assertEqual(student.last_bundle_tag, 2)

    def test_new_tag_is_above_every_existing_tag(self):
        student, active, pending = enrolled()
        student.last_bundle_tag = 0
        changes = confirm_payment(student, pending[0].id, active + pending)
        self.assertEqual(changes.creates[0].bundle_tag, 3)

    def test_incomplete_pending_bundle_is_rejected(self):
        student, active, pending = enrolled()
        with self.assertRaises(IncompleteBundle):
            confirm_payment(student, pending[0].id, active + pending[:3])

    def test_unpaid_active_bundle_is_marked_paid_without_new_bundle(self):
        student, active, pending = enrolled(active_paid=False)
        changes = confirm_payment(student, active[0].id, active + pending)

        self.assertEqual([l.id for l in changes.updates], [l.id for l in active])
        self.assertTrue(all(l.is_paid and not l.is_pending for l in changes.updates))
        self.assertEqual(changes.creates, [])
        self.assertIsNone(changes.student)

    def test_paid_active_bundle_is_a_no_op(self):
        student, active, pending = enrolled()
        with self.assertLogs('lesson_scheduler.booking.payment_promoter', level='INFO'):
            changes = confirm_payment(student, active[0].id, active + pending)
        self.assertTrue(changes.is_empty)

    def test_manual_lesson_cannot_be_promoted(self):
        student, active, pending = enrolled()
        manual = LessonOccurrence(student_id=student.id, title="Mina lesson",
                                  start_time=THURSDAY, end_time=THURSDAY + timedelta(hours=1))
        with self.assertRaises(IncompleteBundle):
            confirm_payment(student, manual.id, active + pending + [manual])

    def test_unknown_lesson_is_stale(self):
        student, active, pending = enrolled()
        with self.assertRaises(StaleReference):
            confirm_payment(student, "missing", active + pending)


if __name__ == '__main__':
    unittest.main()
