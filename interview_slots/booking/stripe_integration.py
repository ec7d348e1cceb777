from decimal import Decimal
from typing import Dict
import os
from pathlib import Path
import json
import logging
import stripe

from interview_slots import config

logger = logging.getLogger(__name__)


class StripeProcessor:
    """
    External payment gateway for bookings paid outside the wallet.
    A booking's externalPaymentReference is the id of the Stripe PaymentIntent that paid for it.
    """

    def __init__(self, api_key: str = None):
        stripe.api_key = api_key or self._find_api_key()

    def _find_api_key(self) -> str:
        api_key = config.STRIPE_API_KEY
        # If none, then get local development key
        if not api_key:
            try:
                api_key_path = Path(os.getenv('STRIPE_KEY_FILE', "./interview_slots/booking/stripe_test_api_key.json"))
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
    def to_minor_units(amount: Decimal) -> int:
        # Stripe takes integer cents
        return int((amount * 100).to_integral_value())

    def create_payment_intent(self, amount: Decimal, metadata: Dict[str, str]) -> Dict[str, str]:
        intent = stripe.PaymentIntent.create(
            amount=self.to_minor_units(amount),
            currency=config.STRIPE_CURRENCY,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
        )
        logger.info(f"Created payment intent {intent.id} for booking {metadata.get('booking_id')}")
        return {"clientSecret": intent.client_secret, "paymentIntentId": intent.id}

    def verify_payment(self, reference: str, expected_amount: Decimal = None) -> bool:
        """
        True only if Stripe reports the PaymentIntent as succeeded (and for the expected amount, when given).
        An unknown reference is reported as not verified rather than raised.
        """
        try:
            intent = stripe.PaymentIntent.retrieve(reference)
        except stripe.InvalidRequestError as e:
            logger.error(f"Payment intent {reference} could not be retrieved: {e.user_message}")
            return False
        if intent.status != 'succeeded':
            logger.info(f"Payment intent {reference} not settled, status: {intent.status}")
            return False
        if expected_amount is not None and intent.amount_received != self.to_minor_units(expected_amount):
            logger.error(f"Payment intent {reference} received {intent.amount_received}, expected {expected_amount}")
            return False
        return True

    @staticmethod
    def construct_event(payload: str, sig_header: str):
        return stripe.Webhook.construct_event(payload, sig_header, config.STRIPE_WEBHOOK_SECRET)
