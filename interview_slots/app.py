import logging
import os
import secrets
from functools import wraps

import stripe
from flask import Flask, request, g, jsonify, current_app
from flask_httpauth import HTTPBasicAuth
from stripe import SignatureVerificationError
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash

from interview_slots import config
from interview_slots.booking import database, stripe_integration
from interview_slots.booking.booking_service import BookingService
from interview_slots.booking.error_utils import (BookingError, BookingNotFound, InvalidTransition,
                                                 PaymentNotVerified, ValidationError)
from interview_slots.booking.models import BookingStatus, PaymentMethod

logger = logging.getLogger(__name__)

# Stripe webhooks shouldn't be over 8-10kb
MAX_WEBHOOK_CONTENT_LENGTH = 100 * 1024  # 100KB


def create_app():
    app = Flask(__name__)
    app.secret_key = secrets.token_hex(32)  # 256 bit
    app.config['SECRET_KEY'] = app.secret_key
    # Swapped out in tests for an in-memory store, a fake gateway and a fixed clock
    app.config['DATABASE_FACTORY'] = lambda: database.DatabasePersistence(setup_schema=False)
    app.config['PAYMENT_PROCESSOR_FACTORY'] = stripe_integration.StripeProcessor
    app.config['CLOCK'] = None
    if not config.PRODUCTION:
        app.config["DEBUG_TB_INTERCEPT_REDIRECTS"] = False  # Prevents redirect issues
    return app


app = create_app()
auth = HTTPBasicAuth()

# Must set this in prod
prod_hash = os.getenv('HASH_ADMIN')

if prod_hash:
    users = {
        "admin": generate_password_hash(prod_hash)
    }
else:  # For dev
    users = {
        "admin": generate_password_hash('secret')
    }


@auth.verify_password
def verify_password(username, password):
    if username in users and check_password_hash(users.get(username), password):
        return username


@auth.error_handler
def auth_error(status):
    return jsonify({"error": "unauthorized", "message": "Admin credentials required"}), status


# Use decorator to create g.db and g.service within the request context only for routes that need the store
def instantiate_database(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.db = current_app.config['DATABASE_FACTORY']()
        g.service = BookingService(g.db, clock=current_app.config['CLOCK'])
        return f(*args, **kwargs)
    return decorated_function


def json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def guard_platform_account(account_id: str):
    # The platform's own ledger is only exposed through the admin routes
    if account_id == config.PLATFORM_ACCOUNT_ID:
        raise ValidationError("Use the admin wallet routes for the platform account")


# Rule management

@app.route("/providers/<provider_id>/rules", methods=["GET"])
@instantiate_database
def get_rules(provider_id):
    return jsonify(g.service.get_rules(provider_id))


@app.route("/providers/<provider_id>/rules", methods=["PUT"])
@instantiate_database
def save_rules(provider_id):
    payload = json_body()
    rules = g.service.save_rules(provider_id,
                                 payload.get('slotRules'),
                                 payload.get('blockedDates', []),
                                 payload.get('excludedSlotsByDate'))
    return jsonify(rules.to_dict())


# Availability query

@app.route("/providers/<provider_id>/slots", methods=["GET"])
@instantiate_database
def get_available_slots(provider_id):
    selected_date = request.args.get('date') or request.args.get('selectedDate')
    if not selected_date:
        raise ValidationError("date query parameter is required")
    return jsonify(g.service.get_available_slots(provider_id, selected_date))


# Booking operations

@app.route("/bookings", methods=["POST"])
@instantiate_database
def create_booking():
    payload = json_body()
    booking = g.service.create_booking(
        payload.get('requesterId'),
        payload.get('providerId'),
        payload.get('date'),
        payload.get('startTime'),
        payload.get('endTime'),
        payload.get('amount'),
        payload.get('paymentMethod'),
        payload.get('externalPaymentRef'),
    )
    return jsonify(booking.to_dict()), 201


@app.route("/bookings", methods=["GET"])
@instantiate_database
def list_bookings():
    bookings = g.service.list_bookings(requester_id=request.args.get('requesterId'),
                                       provider_id=request.args.get('providerId'),
                                       status=request.args.get('status'))
    return jsonify([booking.to_dict() for booking in bookings])


@app.route("/bookings/<booking_id>", methods=["GET"])
@instantiate_database
def get_booking(booking_id):
    return jsonify(g.service.get_booking(booking_id).to_dict())


@app.route("/bookings/<booking_id>/confirm", methods=["POST"])
@instantiate_database
def confirm_booking(booking_id):
    payload = json_body()
    reference = payload.get('externalPaymentRef')
    booking = g.service.get_booking(booking_id)
    if booking.payment_method != PaymentMethod.EXTERNAL:
        raise InvalidTransition("Wallet bookings are confirmed when they are created")
    # Verify with the gateway first, an unverified payment leaves the booking pending.
    # Cancelled bookings are verified too since a settled payment on them is refunded.
    if booking.status in (BookingStatus.PENDING, BookingStatus.CANCELLED):
        if not isinstance(reference, str) or not reference.strip():
            raise ValidationError("externalPaymentRef is required")
        processor = current_app.config['PAYMENT_PROCESSOR_FACTORY']()
        if not processor.verify_payment(reference.strip(), booking.gross_amount):
            logger.error(f"Payment {reference} for booking {booking_id} could not be verified")
            raise PaymentNotVerified(f"Payment {reference} has not succeeded")
    return jsonify(g.service.confirm_booking(booking_id, reference).to_dict())


@app.route("/bookings/<booking_id>/cancel", methods=["POST"])
@instantiate_database
def cancel_booking(booking_id):
    payload = json_body()
    booking = g.service.cancel_booking(booking_id, payload.get('reason'))
    return jsonify(booking.to_dict())


@app.route("/bookings/<booking_id>/complete", methods=["POST"])
@instantiate_database
def complete_booking(booking_id):
    return jsonify(g.service.complete_booking(booking_id).to_dict())


@app.route("/requesters/<requester_id>/payments", methods=["GET"])
@instantiate_database
def payment_history(requester_id):
    return jsonify(g.service.payment_history(requester_id))


# Ledger read

@app.route("/accounts/<account_id>/balance", methods=["GET"])
@instantiate_database
def get_balance(account_id):
    guard_platform_account(account_id)
    return jsonify({"accountId": account_id, "balance": str(g.service.ledger.balance(account_id))})


@app.route("/accounts/<account_id>/transactions", methods=["GET"])
@instantiate_database
def list_transactions(account_id):
    guard_platform_account(account_id)
    return jsonify([entry.to_dict() for entry in g.service.ledger.list_transactions(account_id)])


@app.route("/accounts/<account_id>/summary", methods=["GET"])
@instantiate_database
def wallet_summary(account_id):
    guard_platform_account(account_id)
    summary = g.service.ledger.summary(account_id)
    return jsonify({key: str(value) for key, value in summary.items()})


# Admin credit, no payment is collected through this route
@app.route("/accounts/<account_id>/top-up", methods=["POST"])
@auth.login_required
@instantiate_database
def top_up(account_id):
    guard_platform_account(account_id)
    entry = g.service.ledger.top_up(account_id, json_body().get('amount'))
    return jsonify(entry.to_dict()), 201


@app.route("/admin/wallet/summary", methods=["GET"])
@auth.login_required
@instantiate_database
def admin_wallet_summary():
    summary = g.service.ledger.summary(config.PLATFORM_ACCOUNT_ID)
    return jsonify({key: str(value) for key, value in summary.items()})


@app.route("/admin/wallet/transactions", methods=["GET"])
@auth.login_required
@instantiate_database
def admin_wallet_transactions():
    entries = g.service.ledger.list_transactions(config.PLATFORM_ACCOUNT_ID)
    return jsonify([entry.to_dict() for entry in entries])


# External gateway

@app.route('/payments/intent', methods=['POST'])
@instantiate_database
def create_payment_intent():
    booking = g.service.get_booking(json_body().get('bookingId'))
    if booking.payment_method != PaymentMethod.EXTERNAL or booking.status != BookingStatus.PENDING:
        raise InvalidTransition("Only pending externally paid bookings can be paid through the gateway")
    processor = current_app.config['PAYMENT_PROCESSOR_FACTORY']()
    intent = processor.create_payment_intent(booking.gross_amount, {"booking_id": booking.id})
    return jsonify(intent), 201


@app.route('/webhook', methods=['POST'])
@instantiate_database
def stripe_webhook():
    content_length = request.headers.get('Content-Length', None)
    if content_length:  # If not None
        content_length = int(content_length)
        if content_length > MAX_WEBHOOK_CONTENT_LENGTH:
            logger.error(f"Rejecting webhook request. Payload too large: {content_length}")
            return jsonify({"error": "Max content length exceeded"}), 413
    # If it is None, manually verify length
    total_size = 0
    payload_chunks = []
    for chunk in request.stream:
        total_size += len(chunk)
        if total_size > MAX_WEBHOOK_CONTENT_LENGTH:
            logger.error(f"Rejecting webhook request. Payload too large: {total_size}")
            return jsonify({"error": "Max content length exceeded"}), 413
        payload_chunks.append(chunk)

    # Join into payload since stream can only be read once
    payload = b"".join(payload_chunks).decode("utf-8", errors='replace')
    sig_header = request.headers.get('Stripe-Signature')

    try:
        processor = current_app.config['PAYMENT_PROCESSOR_FACTORY']()
        event = processor.construct_event(payload, sig_header)
    except ValueError:
        logger.error("Invalid webhook payload")
        return jsonify({"error": "Invalid payload"}), 400
    except SignatureVerificationError:
        logger.error("Invalid webhook signature")
        return jsonify({"error": "Invalid signature"}), 400

    if event["type"] != "payment_intent.succeeded":
        logger.info(f"Ignoring webhook event type {event['type']}")
        return jsonify({"status": "ignored"}), 200

    intent = event["data"]["object"]
    booking_id = (intent.get("metadata") or {}).get("booking_id")
    if not booking_id:
        logger.error(f"Payment intent {intent.get('id')} carries no booking id")
        return jsonify({"status": "ignored"}), 200
    try:
        booking = g.service.get_booking(booking_id)
        expected = stripe_integration.StripeProcessor.to_minor_units(booking.gross_amount)
        if intent.get("amount_received") != expected:
            logger.error(f"Payment {intent['id']} received {intent.get('amount_received')}, "
                         f"booking {booking_id} expects {expected}")
            return jsonify({"status": "unfulfilled", "error": "amount_mismatch"}), 200
        booking = g.service.confirm_booking(booking_id, intent["id"])
    except (BookingNotFound, InvalidTransition, ValidationError) as e:
        # Answer 200 so Stripe stops retrying, the payment needs manual follow up
        logger.error(f"Payment {intent['id']} could not confirm booking {booking_id}: {e.message}")
        return jsonify({"status": "unfulfilled", "error": e.code}), 200
    if booking.status == BookingStatus.CANCELLED:
        return jsonify({"status": "refunded"}), 200
    return jsonify({"status": "success"}), 200


# Error handling

@app.errorhandler(BookingError)
def handle_booking_error(error):
    logger.info(f"{request.method} {request.path} rejected: {error.code} - {error.message}")
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(stripe.StripeError)
def handle_gateway_error(error):
    logger.error(f"Payment gateway error on {request.path}: {error.user_message}")
    return jsonify({"error": "payment_gateway_error", "message": "The payment gateway is unavailable."}), 502


@app.errorhandler(HTTPException)
def handle_http_error(error):
    return jsonify({"error": error.name.lower().replace(' ', '_'), "message": error.description}), error.code


@app.errorhandler(Exception)
def handle_unexpected_error(error):
    logger.exception(f"Unhandled exception during request: {request.method} {request.path}")
    return jsonify({"error": "internal_error", "message": "Internal server error"}), 500


@app.cli.command('init-db')
def init_db():
    """Create the tables, indexes and triggers if they do not exist."""
    database.DatabasePersistence()
    logger.info("Database schema ready.")


if __name__ == '__main__':
    # production
    if config.PRODUCTION:
        app.run(debug=False)
    else:
        from flask_debugtoolbar import DebugToolbarExtension
        app.debug = True
        toolbar = DebugToolbarExtension(app)
        app.run(debug=True, port=5003)
