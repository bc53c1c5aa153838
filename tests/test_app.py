import unittest
import uuid
from base64 import b64encode
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch
import stripe
from lesson_scheduler.app import app, MAX_CONTENT_LENGTH
from fake_database import FakeDatabasePersistence, bundle_problems

ENROLL_FORM = {
    'name': "Mina",
    'Monday': "16:00",
    'Wednesday': "16:00",
    'frequency': "weekly",
    'session_duration': "60",
    'bundle_size': "4",
    'lesson_type': "guitar",
    'package_price': "240000",
    'prepaid': "on",
}


class AppTest(unittest.TestCase):
    def setUp(self):
        app.config['TESTING'] = True
        self.db = FakeDatabasePersistence()
        self._factory = app.config['PERSISTENCE_FACTORY']
        app.config['PERSISTENCE_FACTORY'] = lambda: self.db
        self.client = app.test_client()
        credentials = b64encode(b"admin:secret").decode("utf-8")
        self.auth = {"Authorization": f"Basic {credentials}"}

    def tearDown(self):
        app.config['PERSISTENCE_FACTORY'] = self._factory

    def enroll(self, **overrides):
        form = dict(ENROLL_FORM, **overrides)
        response = self.client.post("/students", data=form, headers=self.auth)
        self.assertEqual(response.status_code, 201)
        return response.get_json()

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "ok")

    def test_require_login_routes(self):
        self.assertEqual(self.client.get("/students").status_code, 401)
        self.assertEqual(self.client.post("/students", data=ENROLL_FORM).status_code, 401)
        self.assertEqual(self.client.get("/notifications").status_code, 401)
        self.assertEqual(self.db.students, {})

    def test_enroll_student(self):
        student = self.enroll()
        self.assertEqual(student["name"], "Mina")
        self.assertEqual(len(student["lessons"]), 8)
        self.assertEqual(len(student["active_bundle"]), 4)
        self.assertEqual(len(student["pending_bundle"]), 4)
        self.assertEqual(student["recurrence_profile"]["slots"],
                         [{"weekday": 0, "time": "16:00"}, {"weekday": 2, "time": "16:00"}])

        response = self.client.get(f"/students/{student['id']}", headers=self.auth)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["active_bundle"], student["active_bundle"])

    def test_enroll_with_bad_time(self):
        response = self.client.post("/students", data=dict(ENROLL_FORM, Monday="25:00"), headers=self.auth)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "InvalidConfiguration")
        self.assertEqual(self.db.students, {})

    def test_enroll_without_any_slot(self):
        form = dict(ENROLL_FORM, Monday="", Wednesday="")
        response = self.client.post("/students", data=form, headers=self.auth)
        self.assertEqual(response.status_code, 400)

    def test_cancel_lesson_rebalances(self):
        student = self.enroll()
        lesson_id = student["active_bundle"][1]
        response = self.client.post(f"/lessons/{lesson_id}/cancel", headers=self.auth)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["deleted"], [lesson_id])
        lessons = self.db.read_occurrences(student_id=student["id"])
        self.assertEqual(len(lessons), 8)
        self.assertEqual(bundle_problems(lessons, 4), [])

    def test_confirm_payment(self):
        student = self.enroll()
        pending_id = student["pending_bundle"][0]
        response = self.client.post(f"/lessons/{pending_id}/confirm-payment", headers=self.auth)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.get_json()["created"]), 4)
        self.assertEqual(self.db.read_student(student["id"]).last_bundle_tag, 3)

    def test_update_lesson_status(self):
        student = self.enroll()
        lesson_id = student["active_bundle"][0]
        response = self.client.post(f"/lessons/{lesson_id}/status", data={'status': "completed", 'notes': "Scales"},
                                    headers=self.auth)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.db.read_occurrence(lesson_id).status, "completed")

        response = self.client.post(f"/lessons/{lesson_id}/status", data={'status': "no-show"}, headers=self.auth)
        self.assertEqual(response.status_code, 400)

    def test_reschedule_lesson(self):
        student = self.enroll()
        lesson_id = student["active_bundle"][0]
        lesson = self.db.read_occurrence(lesson_id)
        start = lesson.start_time + timedelta(hours=2)
        form = {'start': start.isoformat(), 'end': (start + timedelta(hours=1)).isoformat()}

        response = self.client.post(f"/lessons/{lesson_id}/reschedule", data=form, headers=self.auth)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.db.read_occurrence(lesson_id).start_time, start)
        self.assertEqual(bundle_problems(self.db.read_occurrences(student_id=student["id"]), 4), [])

        form['end'] = form['start']
        response = self.client.post(f"/lessons/{lesson_id}/reschedule", data=form, headers=self.auth)
        self.assertEqual(response.status_code, 400)

    def test_list_lessons_rejects_malformed_student_id(self):
        response = self.client.get("/lessons", query_string={'student_id': "not-a-uuid"}, headers=self.auth)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "InvalidConfiguration")

    def test_unknown_lesson(self):
        response = self.client.post(f"/lessons/{uuid.uuid4()}/cancel", headers=self.auth)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"], "StaleReference")

    def test_ad_hoc_booking_spends_credits(self):
        student = self.enroll(remaining_credits="1")
        start = datetime.now().replace(microsecond=0) + timedelta(days=1)
        form = {'start': start.isoformat(), 'end': (start + timedelta(hours=1)).isoformat(), 'notes': "Make-up"}

        response = self.client.post(f"/students/{student['id']}/lessons", data=form, headers=self.auth)
        self.assertEqual(response.status_code, 201)
        self.assertIsNone(response.get_json()["bundle_tag"])

        response = self.client.post(f"/students/{student['id']}/lessons", data=form, headers=self.auth)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["error"], "NoCreditsRemaining")
        self.assertEqual(self.db.read_student(student["id"]).remaining_credits, 0)

    def test_grant_credits(self):
        student = self.enroll()
        response = self.client.post(f"/students/{student['id']}/credits", data={'amount': "5"}, headers=self.auth)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["remaining_credits"], 5)

        response = self.client.post(f"/students/{student['id']}/credits", data={'amount': "0"}, headers=self.auth)
        self.assertEqual(response.status_code, 400)

    def test_notifications(self):
        self.enroll(name="Ara", remaining_credits="0")
        self.enroll(name="Bo", remaining_credits="9")
        response = self.client.get("/notifications", headers=self.auth)
        notifications = response.get_json()
        self.assertEqual(len(notifications), 1)
        self.assertEqual(notifications[0]["type"], "package-empty")

    def test_delete_student(self):
        student = self.enroll()
        response = self.client.delete(f"/students/{student['id']}", headers=self.auth)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.db.lessons, {})
        response = self.client.delete(f"/students/{student['id']}", headers=self.auth)
        self.assertEqual(response.status_code, 404)

    def test_list_lessons_by_window(self):
        student = self.enroll()
        first = self.db.read_occurrence(student["active_bundle"][0])
        window = {'start': first.start_time.isoformat(), 'end': (first.start_time + timedelta(days=1)).isoformat()}
        response = self.client.get("/lessons", query_string=window, headers=self.auth)
        self.assertEqual([l["id"] for l in response.get_json()], [first.id])

    @patch('stripe.Webhook.construct_event')
    def test_webhook_confirms_payment(self, construct_event):
        student = self.enroll()
        pending_id = student["pending_bundle"][0]
        construct_event.return_value = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_test", "payment_status": "paid", "metadata": {"occurrence_id": pending_id}}},
        }
        response = self.client.post("/webhook", data=b"{}", headers={"Stripe-Signature": "t=1,v1=abc"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "success")
        promoted = self.db.read_occurrence(pending_id)
        self.assertTrue(promoted.is_paid)
        self.assertFalse(promoted.is_pending)

        # Redelivery of the same event changes nothing
        response = self.client.post("/webhook", data=b"{}", headers={"Stripe-Signature": "t=1,v1=abc"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(self.db.lessons), 12)

    @patch('stripe.Webhook.construct_event')
    def test_webhook_for_deleted_lesson_is_ignored(self, construct_event):
        construct_event.return_value = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_test", "payment_status": "paid",
                                "metadata": {"occurrence_id": str(uuid.uuid4())}}},
        }
        response = self.client.post("/webhook", data=b"{}", headers={"Stripe-Signature": "t=1,v1=abc"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "ignored")

    @patch('stripe.Webhook.construct_event')
    def test_webhook_with_malformed_lesson_id_is_ignored(self, construct_event):
        construct_event.return_value = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_test", "payment_status": "paid", "metadata": {"occurrence_id": "lesson-1"}}},
        }
        response = self.client.post("/webhook", data=b"{}", headers={"Stripe-Signature": "t=1,v1=abc"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "ignored")

    @patch('stripe.Webhook.construct_event')
    def test_webhook_rejects_bad_signature(self, construct_event):
        construct_event.side_effect = stripe.SignatureVerificationError("bad signature", "t=1,v1=abc")
        response = self.client.post("/webhook", data=b"{}", headers={"Stripe-Signature": "t=1,v1=abc"})
        self.assertEqual(response.status_code, 400)

    @patch('stripe.Webhook.construct_event')
    def test_webhook_rejects_unknown_event(self, construct_event):
        construct_event.return_value = {"type": "invoice.paid", "data": {"object": {}}}
        response = self.client.post("/webhook", data=b"{}", headers={"Stripe-Signature": "t=1,v1=abc"})
        self.assertEqual(response.status_code, 400)

    @patch.dict('os.environ', {'STRIPE_API_KEY': 'sk_test_key'})
    @patch('stripe.checkout.Session.create')
    def test_checkout_session_for_pending_bundle(self, create_session):
        create_session.return_value = MagicMock(client_secret="cs_secret")
        student = self.enroll()
        pending_id = student["pending_bundle"][0]
        response = self.client.post(f"/payments/checkout/{pending_id}", headers=self.auth)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["clientSecret"], "cs_secret")
        kwargs = create_session.call_args.kwargs
        self.assertEqual(kwargs["metadata"]["occurrence_id"], pending_id)
        self.assertEqual(kwargs["metadata"]["bundle_tag"], "2")
        self.assertEqual(kwargs["line_items"][0]["price_data"]["unit_amount"], 240000)

    @patch.dict('os.environ', {'STRIPE_API_KEY': 'sk_test_key'})
    @patch('stripe.checkout.Session.create')
    def test_checkout_refused_for_paid_bundle(self, create_session):
        student = self.enroll()
        response = self.client.post(f"/payments/checkout/{student['active_bundle'][0]}", headers=self.auth)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "InvalidConfiguration")
        create_session.assert_not_called()

    @patch.dict('os.environ', {'STRIPE_API_KEY': 'sk_test_key'})
    @patch('stripe.checkout.Session.create')
    def test_checkout_needs_a_package_price(self, create_session):
        student = self.enroll(package_price="")
        response = self.client.post(f"/payments/checkout/{student['pending_bundle'][0]}", headers=self.auth)
        self.assertEqual(response.status_code, 400)
        create_session.assert_not_called()

    def test_webhook_rejects_oversized_payload(self):
        response = self.client.post("/webhook", data=b"x" * (MAX_CONTENT_LENGTH + 1))
        self.assertEqual(response.status_code, 413)


if __name__ == '__main__':
    unittest.main()
