import logging
import os
from functools import wraps
import secrets
from flask import Flask, request, g, current_app, jsonify
from flask_debugtoolbar import DebugToolbarExtension
from flask_httpauth import HTTPBasicAuth
from werkzeug.security import generate_password_hash, check_password_hash
import stripe
from stripe import SignatureVerificationError
from lesson_scheduler.booking import database, error_utils, booking_service, stripe_integration
from lesson_scheduler.booking import booking_utils as util
from lesson_scheduler.booking.models import active_bundle, pending_bundle
logger = logging.getLogger(__name__)

# Stripe webhook shouldn't be over 8-10kb
MAX_CONTENT_LENGTH = 100 * 1024 # 100KB


def create_app(persistence_factory=None):
    app = Flask(__name__)
    app.secret_key = secrets.token_hex(32) #256 bit
    app.config['SECRET_KEY'] = app.secret_key
    # Tests swap in an in-memory store here
    app.config['PERSISTENCE_FACTORY'] = persistence_factory or database.DatabasePersistence
    if os.environ.get('FLASK_ENV') == 'production':
        app.config['DOMAIN'] = 'https://www.lessonscheduler.app'
    else:
        app.config['DOMAIN'] = 'http://localhost:5003'
        app.config["DEBUG_TB_INTERCEPT_REDIRECTS"] = False  # Prevents redirect issues
    return app

app = create_app()
# Set to make Flask debug toolbar work
if not os.environ.get('FLASK_ENV') == 'production':
    app.debug=True
auth = HTTPBasicAuth()


# Must set this in prod
prod_hash = os.getenv('HASH_ADMIN')

if prod_hash:
    users = {
        "admin": generate_password_hash(prod_hash)
    }
else: # For dev
    users = {
        "admin": generate_password_hash('secret')
    }

@auth.verify_password
def verify_password(username, password):
    if username in users and check_password_hash(users.get(username), password):
        return username

# Use decorator to create g.db and g.booking within request context window for functions that require it to conserve resources and prevent N +1 instances
def instantiate_database(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.db = current_app.config['PERSISTENCE_FACTORY']()
        g.booking = booking_service.LessonBookingService(g.db)
        return f(*args, **kwargs)
    return decorated_function


def _student_payload(student, lessons):
    payload = student.to_dict()
    payload["lessons"] = [lesson.to_dict() for lesson in lessons]
    payload["active_bundle"] = [lesson.id for lesson in active_bundle(lessons)]
    payload["pending_bundle"] = [lesson.id for lesson in pending_bundle(lessons)]
    return payload


@app.route("/health")
def health():
    return jsonify({"status": "ok"}), 200

@app.route("/students", methods=["GET"])
@auth.login_required
@instantiate_database
def list_students():
    return jsonify([student.to_dict() for student in g.booking.list_students()])

# Enrollment form: one HH:MM field per weekday (Monday..Sunday, repeatable), frequency, session_duration, bundle_size
@app.route("/students", methods=["POST"])
@auth.login_required
@instantiate_database
def enroll_student():
    form = request.form
    profile = util.parse_recurrence_profile(form)
    student, lessons = g.booking.enroll_student(
        form.get('name', ''),
        profile,
        remaining_credits=util.parse_positive_int(form.get('remaining_credits'), 'Remaining credits', 0, minimum=0),
        lesson_type=form.get('lesson_type', 'vocal').strip(),
        package_price=util.parse_optional_int(form.get('package_price'), 'Package price'),
        memo=form.get('memo', '').strip(),
        prepaid=util.parse_bool(form.get('prepaid')),
    )
    return jsonify(_student_payload(student, lessons)), 201

@app.route("/students/<uuid:student_id>", methods=["GET"])
@auth.login_required
@instantiate_database
def get_student(student_id):
    student, lessons = g.booking.get_student(str(student_id))
    return jsonify(_student_payload(student, lessons))

@app.route("/students/<uuid:student_id>/reenroll", methods=["POST"])
@auth.login_required
@instantiate_database
def reenroll_student(student_id):
    profile = util.parse_recurrence_profile(request.form)
    changes = g.booking.reenroll_student(str(student_id), profile, prepaid=util.parse_bool(request.form.get('prepaid')))
    return jsonify(changes.to_dict())

@app.route("/students/<uuid:student_id>", methods=["DELETE"])
@auth.login_required
@instantiate_database
def delete_student(student_id):
    g.booking.delete_student(str(student_id))
    return jsonify({"status": "deleted"})

@app.route("/students/<uuid:student_id>/credits", methods=["POST"])
@auth.login_required
@instantiate_database
def grant_credits(student_id):
    amount = util.parse_positive_int(request.form.get('amount'), 'Credit amount')
    student = g.booking.grant_credits(str(student_id), amount)
    return jsonify(student.to_dict())

# Manual booking outside the recurrence schedule, paid with one lesson credit
@app.route("/students/<uuid:student_id>/lessons", methods=["POST"])
@auth.login_required
@instantiate_database
def book_ad_hoc(student_id):
    start = util.parse_datetime(request.form.get('start'), 'Start')
    end = util.parse_datetime(request.form.get('end'), 'End')
    lesson = g.booking.book_ad_hoc(str(student_id), start, end, request.form.get('notes', '').strip())
    return jsonify(lesson.to_dict()), 201

@app.route("/lessons", methods=["GET"])
@auth.login_required
@instantiate_database
def list_lessons():
    student_id = util.parse_optional_uuid(request.args.get('student_id'), 'Student id')
    start = util.parse_optional_datetime(request.args.get('start'), 'Start')
    end = util.parse_optional_datetime(request.args.get('end'), 'End')
    lessons = g.booking.list_lessons(student_id=student_id, start=start, end=end)
    return jsonify([lesson.to_dict() for lesson in lessons])

@app.route("/lessons/<uuid:lesson_id>/cancel", methods=["POST"])
@auth.login_required
@instantiate_database
def cancel_lesson(lesson_id):
    changes = g.booking.cancel_occurrence(str(lesson_id))
    return jsonify(changes.to_dict())

@app.route("/lessons/<uuid:lesson_id>/status", methods=["POST"])
@auth.login_required
@instantiate_database
def update_lesson(lesson_id):
    status = request.form.get('status') or None
    notes = request.form.get('notes')
    changes = g.booking.update_lesson(str(lesson_id), status=status, notes=notes)
    return jsonify(changes.to_dict())

@app.route("/lessons/<uuid:lesson_id>/reschedule", methods=["POST"])
@auth.login_required
@instantiate_database
def reschedule_lesson(lesson_id):
    start = util.parse_datetime(request.form.get('start'), 'Start')
    end = util.parse_datetime(request.form.get('end'), 'End')
    changes = g.booking.reschedule_lesson(str(lesson_id), start, end)
    return jsonify(changes.to_dict())

@app.route("/lessons/<uuid:lesson_id>/confirm-payment", methods=["POST"])
@auth.login_required
@instantiate_database
def confirm_payment(lesson_id):
    changes = g.booking.confirm_payment(str(lesson_id))
    return jsonify(changes.to_dict())

@app.route("/notifications", methods=["GET"])
@auth.login_required
@instantiate_database
def notifications():
    return jsonify(g.booking.credit_notifications())


# Map engine errors to JSON responses. Every one of them means nothing was written.
ERROR_STATUS_CODES = {
    error_utils.InvalidConfiguration: 400,
    error_utils.StaleReference: 404,
    error_utils.NoCreditsRemaining: 409,
    error_utils.IncompleteBundle: 409,
    error_utils.TransactionConflict: 409,
    error_utils.RebalanceFailed: 503,
    error_utils.PromotionFailed: 503,
    error_utils.PersistenceError: 503,
}

@app.errorhandler(error_utils.SchedulingError)
def handle_scheduling_error(error):
    status = next((code for cls, code in ERROR_STATUS_CODES.items() if isinstance(error, cls)), 500)
    if status >= 500:
        logger.error(f"{error.__class__.__name__}: {error.message}")
    return jsonify({"error": error.__class__.__name__, "message": error.message}), status

# Handle an invalid Stripe API response
@app.errorhandler(stripe.StripeError)
def handle_bad_api_call(error):
    logger.error(f"Stripe API error: {error.user_message}")
    return jsonify({"error": "PaymentProviderError", "message": "The payment provider could not be reached. Please re-try."}), 502


# Note: checkout is started from the first lesson of the bundle being paid for
@app.route('/payments/checkout/<uuid:lesson_id>', methods=['POST'])
@auth.login_required
@instantiate_database
def create_checkout_session(lesson_id):
    # Refuses manual lessons and bundles that are already paid
    student, lesson = g.booking.payable_bundle(str(lesson_id))
    # Create and return checkout session with attached meta-data
    payment_processor = stripe_integration.StripeProcessor(current_app, student, lesson)
    return payment_processor.get_checkout_session

@app.route('/webhook', methods=['POST'])
@instantiate_database
def stripe_webhook():
    content_length = request.headers.get('Content-Length', None)
    if content_length: # If not None
        content_length = int(content_length)
        if content_length > MAX_CONTENT_LENGTH:
            logger.error(f"Rejecting webhook request. Payload too large: {content_length}")
            return jsonify({"error": "Max content length exceeded"}), 413
    # If it is None, manually verify length
    total_size = 0
    payload_chunks = []
    for chunk in request.stream:
        total_size += len(chunk)
        if total_size > MAX_CONTENT_LENGTH:
            logger.error(f"Rejecting webhook request. Payload too large: {total_size}")
            return jsonify({"error": "Max content length exceeded"}), 413
        payload_chunks.append(chunk)

    # Join into payload since stream can only be read once
    payload = b"".join(payload_chunks).decode("utf-8", errors='replace')
    sig_header = request.headers.get('Stripe-Signature')

    try:
        # Verify the Stripe webhook signature
        # Event will be a Checkout Session object
        logger.info("Constructing event via webhook")
        event = stripe.Webhook.construct_event(
            payload, sig_header, os.getenv('STRIPE_WEBHOOK_SECRET', ''))
    except ValueError:
        # Invalid payload
        logger.error("Invalid webhook payload")
        return jsonify({"error": "Invalid payload"}), 400
    except SignatureVerificationError:
        # Invalid signature
        logger.error("Invalid webhook signature")
        return jsonify({"error": "Invalid signature"}), 400

    if event["type"] in ["checkout.session.completed", "checkout.session.async_payment_succeeded"]:
        logger.info("Fulfilling checkout via webhook")
        if fulfill_checkout(event["data"]["object"], g.booking):
            return jsonify({"status": "success"}), 200
        return jsonify({"status": "ignored"}), 200
    logger.error("Invalid webhook event type")
    return jsonify({"error": "Invalid event type"}), 400

# Fulfillment function
def fulfill_checkout(checkout_session, booking) -> bool:
    """
    Confirms payment for the bundle a checkout session was opened for.

    Args: checkout_session is the checkout.Session object (or its dict form from the webhook payload).

    Returns: True if the payment was applied. Unpaid sessions, malformed lesson ids and lessons that no longer exist
    or no longer form a full bundle return False so Stripe stops redelivering; they are logged for manual follow-up.
    Transaction failures propagate so Stripe retries the delivery later.
    """
    if checkout_session.get('payment_status') == 'unpaid':
        logger.info(f"Checkout session {checkout_session.get('id')} not paid yet. Skipping fulfillment")
        return False
    metadata = checkout_session.get('metadata') or {}
    occurrence_id = metadata.get('occurrence_id')
    if not occurrence_id:
        logger.error(f"Checkout session {checkout_session.get('id')} carries no lesson reference")
        return False
    try:
        booking.confirm_payment(util.parse_uuid(occurrence_id, 'Lesson id'))
    except (error_utils.InvalidConfiguration, error_utils.StaleReference, error_utils.IncompleteBundle) as e:
        logger.error(f"Could not apply payment for lesson {occurrence_id}: {e.message}. Inspect manually.")
        return False
    return True

# Used after the embedded checkout redirects back. The webhook normally gets there first; confirming twice is harmless.
@app.route('/return', methods=['GET'])
@instantiate_database
def checkout_return():
    session = stripe.checkout.Session.retrieve(request.args.get("session_id"))
    if session.status == 'complete' and session.payment_status == 'paid':
        fulfillment_status = fulfill_checkout(session, g.booking)
        logger.info(f"Stripe processor success: payment_status: {session.payment_status}, fulfillment status: {fulfillment_status}")
        return jsonify({"status": "paid", "fulfilled": fulfillment_status})
    logger.error(f"Stripe processor error: status: {session.status}, payment_status: {session.payment_status}")
    return jsonify({"status": session.status, "payment_status": session.payment_status}), 402


if __name__ == '__main__':
    # production
    if os.environ.get('FLASK_ENV') == 'production':
       app.run(debug=False)
    else:
       toolbar = DebugToolbarExtension(app)
       app.run(debug=True, port=5003)
