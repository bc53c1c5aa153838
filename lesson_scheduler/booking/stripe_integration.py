from typing import Dict
import logging
import os
from pathlib import Path
import json
from flask import Flask, jsonify
import stripe
from .error_utils import InvalidConfiguration
from .models import LessonOccurrence, Student

logger = logging.getLogger(__name__)

# KRW is a zero-decimal currency, so package prices are passed to Stripe as stored
DEFAULT_CURRENCY = "krw"


class StripeProcessor:
    """
    Creates an embedded Stripe checkout session for one lesson bundle.

    The lesson id travels in the session metadata; the webhook hands it back to confirm_payment once Stripe reports
    the session as paid.
    """

    def __init__(self, app: Flask, student: Student, occurrence: LessonOccurrence):
        # Set domain for either prod or local dev
        self._domain = app.config['DOMAIN']
        stripe.api_key = self._find_api_key()
        self._checkout_session = self._create_checkout_session(student, occurrence)

    @property
    def get_checkout_session(self):
        return self._checkout_session

    def _find_api_key(self) -> str:
        api_key = os.getenv('STRIPE_API_KEY')
        # If none, then get local development key
        if not api_key:
            try:
                api_key_path = Path("./lesson_scheduler/booking/stripe_test_api_key.json")
                with open(api_key_path, 'r') as file:
                    data = json.load(file)
                api_key = data.get("STRIPE_API_KEY")
                if not api_key:
                    raise ValueError(f"ERROR: STRIPE_API_KEY not found in {api_key_path}")
            except FileNotFoundError:
                raise FileNotFoundError("ERROR: API key path not found!")
            except json.JSONDecodeError:
                raise ValueError("ERROR: Invalid JSON format in API key file!")
        return api_key

    @staticmethod
    def _metadata(student: Student, occurrence: LessonOccurrence) -> Dict[str, str]:
        return {
            "occurrence_id": occurrence.id,
            "student_id": student.id,
            "bundle_tag": str(occurrence.bundle_tag),
        }

    def _create_checkout_session(self, student: Student, occurrence: LessonOccurrence):
        if not student.package_price:
            raise InvalidConfiguration(f"No package price is set for {student.name}.")
        if occurrence.bundle_tag is None:
            raise InvalidConfiguration("Manually booked lessons are paid with credits, not through checkout.")
        try:
            session = stripe.checkout.Session.create(
                ui_mode='embedded',
                line_items=[
                    {
                        'price_data': {
                            'currency': os.getenv('STRIPE_CURRENCY', DEFAULT_CURRENCY),
                            'unit_amount': student.package_price,
                            'product_data': {'name': f"{student.name} - {student.recurrence_profile.bundle_size} lesson bundle"},
                        },
                        'quantity': 1
                    },
                ],
                mode='payment',
                return_url=self._domain + '/return?session_id={CHECKOUT_SESSION_ID}',
                metadata=self._metadata(student, occurrence),
                client_reference_id=occurrence.id
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout session creation failed for lesson {occurrence.id}: {e.user_message}")
            raise
        return jsonify(clientSecret=session.client_secret)
