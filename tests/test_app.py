import base64
import json
import unittest
import os
import sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
import stripe
from interview_slots.app import app
from memory_store import FakeClock, MemoryPersistence, utc

PROVIDER = "interviewer-1"
REQUESTER = "candidate-1"

WEEK_RULES = [
    {"day": "Mon", "enabled": True, "startTime": "09:00", "endTime": "17:00", "bufferTime": 15},
    {"day": "Tue", "enabled": True, "startTime": "09:00", "endTime": "11:00", "bufferTime": 15},
]


class FakeProcessor:
    """Stands in for StripeProcessor. Payments listed in `succeeded` verify, everything else does not."""
    succeeded = set()

    def verify_payment(self, reference, expected_amount=None):
        return reference in self.succeeded

    def create_payment_intent(self, amount, metadata):
        return {"clientSecret": f"secret_{metadata['booking_id']}", "paymentIntentId": "pi_created",
                "amount": str(amount)}

    @staticmethod
    def construct_event(payload, sig_header):
        if sig_header != "valid-signature":
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature",
                                                    sig_header)
        return json.loads(payload)


class AppTest(unittest.TestCase):
    def setUp(self):
        self.store = MemoryPersistence()
        app.config['TESTING'] = True
        app.config['DATABASE_FACTORY'] = lambda: self.store
        app.config['PAYMENT_PROCESSOR_FACTORY'] = FakeProcessor
        # Monday 2030-01-07 10:30 UTC
        app.config['CLOCK'] = FakeClock(utc(2030, 1, 7, 10, 30))
        FakeProcessor.succeeded = set()
        self.client = app.test_client()
        with self.client.put(f"/providers/{PROVIDER}/rules", json={"slotRules": WEEK_RULES, "blockedDates": []}) \
                as response:
            self.assertEqual(response.status_code, 200)

    def top_up(self, amount="500.00", account=REQUESTER):
        return self.client.post(f"/accounts/{account}/top-up", json={"amount": amount},
                                headers=self.admin_headers())

    def book(self, **overrides):
        body = {"requesterId": REQUESTER, "providerId": PROVIDER, "date": "2030-01-14", "startTime": "09:00",
                "endTime": "10:00", "amount": "100.00", "paymentMethod": "wallet"}
        body.update(overrides)
        return self.client.post("/bookings", json=body)

    @staticmethod
    def admin_headers(password="secret"):
        token = base64.b64encode(f"admin:{password}".encode()).decode()
        return {"Authorization": f"Basic {token}"}

    def webhook(self, event, signature="valid-signature"):
        return self.client.post("/webhook", data=json.dumps(event), content_type="application/json",
                                headers={"Stripe-Signature": signature})

    def test_rules_round_trip(self):
        with self.client.get(f"/providers/{PROVIDER}/rules") as response:
            self.assertEqual(response.status_code, 200)
            rules = response.get_json()
        self.assertEqual(len(rules["slotRules"]), 7)
        self.assertEqual(rules["slotRules"][2]["startTime"], "09:00")

    def test_invalid_rules_rejected(self):
        bad = [{"day": "Mon", "enabled": True, "startTime": "25:00", "endTime": "17:00", "bufferTime": 15}]
        with self.client.put(f"/providers/{PROVIDER}/rules", json={"slotRules": bad}) as response:
            self.assertEqual(response.status_code, 422)
            self.assertEqual(response.get_json()["error"], "validation_error")

    def test_non_json_body_rejected(self):
        with self.client.put(f"/providers/{PROVIDER}/rules", data="not json") as response:
            self.assertEqual(response.status_code, 422)

    def test_slots(self):
        with self.client.get(f"/providers/{PROVIDER}/slots?date=2030-01-08") as response:
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.get_json(), {"date": "2030-01-08", "weekday": "Tue", "slots": [
                {"startTime": "09:00", "endTime": "10:00", "available": True}]})
        with self.client.get(f"/providers/{PROVIDER}/slots") as response:
            self.assertEqual(response.status_code, 422)

    def test_wallet_booking_flow(self):
        self.assertEqual(self.top_up().status_code, 201)
        with self.book() as response:
            self.assertEqual(response.status_code, 201)
            booking = response.get_json()
        self.assertEqual(booking["status"], "confirmed")
        self.assertEqual((booking["platformFee"], booking["providerPayout"]), ("10.00", "90.00"))

        with self.client.get(f"/accounts/{REQUESTER}/balance") as response:
            self.assertEqual(response.get_json(), {"accountId": REQUESTER, "balance": "400.00"})
        with self.client.get(f"/accounts/{PROVIDER}/summary") as response:
            self.assertEqual(response.get_json(), {"balance": "90.00", "totalCredits": "90.00", "totalDebits": "0.00"})

        with self.book(requesterId="candidate-2") as response:
            self.assertEqual(response.status_code, 409)
            self.assertEqual(response.get_json()["error"], "slot_unavailable")

        with self.client.post(f"/bookings/{booking['id']}/cancel", json={"reason": "Interview was rescheduled"}) \
                as response:
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.get_json()["status"], "cancelled")
        with self.client.get(f"/accounts/{REQUESTER}/transactions") as response:
            self.assertEqual([e["type"] for e in response.get_json()], ["credit", "debit", "credit"])

    def test_insufficient_funds(self):
        with self.book() as response:
            self.assertEqual(response.status_code, 402)
            self.assertEqual(response.get_json()["error"], "insufficient_funds")
        with self.client.get(f"/bookings?requesterId={REQUESTER}") as response:
            self.assertEqual(response.get_json(), [])

    def test_external_booking_confirmation(self):
        with self.book(paymentMethod="external") as response:
            booking_id = response.get_json()["id"]
            self.assertEqual(response.get_json()["status"], "pending")

        with self.client.post(f"/bookings/{booking_id}/confirm", json={"externalPaymentRef": "pi_unpaid"}) \
                as response:
            self.assertEqual(response.status_code, 402)
            self.assertEqual(response.get_json()["error"], "payment_not_verified")

        FakeProcessor.succeeded = {"pi_paid"}
        with self.client.post(f"/bookings/{booking_id}/confirm", json={"externalPaymentRef": "pi_paid"}) as response:
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.get_json()["status"], "confirmed")
            self.assertEqual(response.get_json()["externalPaymentReference"], "pi_paid")

        with self.client.post(f"/bookings/{booking_id}/complete") as response:
            self.assertEqual(response.get_json()["status"], "completed")
        with self.client.post(f"/bookings/{booking_id}/cancel", json={"reason": "Too late for this one"}) \
                as response:
            self.assertEqual(response.status_code, 409)
            self.assertEqual(response.get_json()["error"], "invalid_transition")

    def test_cancellation_window(self):
        self.top_up()
        with self.book(date="2030-01-08") as response:
            booking_id = response.get_json()["id"]
        with self.client.post(f"/bookings/{booking_id}/cancel", json={"reason": "Something came up today"}) \
                as response:
            self.assertEqual(response.status_code, 409)
            self.assertEqual(response.get_json()["error"], "cancellation_window_closed")

    def test_unknown_booking(self):
        with self.client.get("/bookings/does-not-exist") as response:
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.get_json()["error"], "booking_not_found")

    def test_listing_and_payment_history(self):
        self.top_up()
        self.book()
        self.book(startTime="10:15", endTime="11:15", paymentMethod="external")
        with self.client.get(f"/bookings?providerId={PROVIDER}&status=pending") as response:
            self.assertEqual(len(response.get_json()), 1)
        with self.client.get("/bookings") as response:
            self.assertEqual(response.status_code, 422)
        with self.client.get(f"/requesters/{REQUESTER}/payments") as response:
            history = response.get_json()
        self.assertEqual(history["stats"], {"totalBooked": 2, "completed": 0, "cancelled": 0})

    def test_platform_wallet_requires_admin(self):
        self.top_up()
        self.book()
        with self.client.get("/admin/wallet/summary") as response:
            self.assertEqual(response.status_code, 401)
        with self.client.get("/admin/wallet/summary", headers=self.admin_headers("wrong")) as response:
            self.assertEqual(response.status_code, 401)
        with self.client.get("/admin/wallet/summary", headers=self.admin_headers()) as response:
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.get_json(), {"balance": "10.00", "totalCredits": "10.00", "totalDebits": "0.00"})
        with self.client.get("/admin/wallet/transactions", headers=self.admin_headers()) as response:
            self.assertEqual([e["reason"] for e in response.get_json()], ["Platform commission"])
        with self.client.get("/accounts/platform/balance") as response:
            self.assertEqual(response.status_code, 422)

    def test_payment_intent(self):
        with self.book(paymentMethod="external") as response:
            booking_id = response.get_json()["id"]
        with self.client.post("/payments/intent", json={"bookingId": booking_id}) as response:
            self.assertEqual(response.status_code, 201)
            self.assertEqual(response.get_json()["clientSecret"], f"secret_{booking_id}")

    def test_webhook_confirms_booking(self):
        with self.book(paymentMethod="external") as response:
            booking_id = response.get_json()["id"]
        event = {"type": "payment_intent.succeeded",
                 "data": {"object": {"id": "pi_hook", "amount_received": 10000,
                                     "metadata": {"booking_id": booking_id}}}}
        with self.webhook(event) as response:
            self.assertEqual(response.get_json(), {"status": "success"})
        # Stripe retries are harmless
        with self.webhook(event) as response:
            self.assertEqual(response.get_json(), {"status": "success"})
        with self.client.get(f"/bookings/{booking_id}") as response:
            self.assertEqual(response.get_json()["status"], "confirmed")
        with self.client.get(f"/accounts/{PROVIDER}/balance") as response:
            self.assertEqual(response.get_json()["balance"], "90.00")

    def test_webhook_rejections(self):
        event = {"type": "payment_intent.succeeded",
                 "data": {"object": {"id": "pi_hook", "amount_received": 10000,
                                     "metadata": {"booking_id": "missing"}}}}
        with self.webhook(event, signature="forged") as response:
            self.assertEqual(response.status_code, 400)
        with self.webhook(event) as response:
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.get_json(), {"status": "unfulfilled", "error": "booking_not_found"})
        with self.webhook({"type": "charge.refunded", "data": {"object": {}}}) as response:
            self.assertEqual(response.get_json(), {"status": "ignored"})

    def test_webhook_refunds_payment_for_cancelled_booking(self):
        with self.book(paymentMethod="external") as response:
            booking_id = response.get_json()["id"]
        self.client.post(f"/bookings/{booking_id}/cancel", json={"reason": "Found another interviewer"})
        event = {"type": "payment_intent.succeeded",
                 "data": {"object": {"id": "pi_late", "amount_received": 10000,
                                     "metadata": {"booking_id": booking_id}}}}
        with self.webhook(event) as response:
            self.assertEqual(response.get_json(), {"status": "refunded"})
        with self.webhook(event) as response:
            self.assertEqual(response.get_json(), {"status": "refunded"})
        with self.client.get(f"/accounts/{REQUESTER}/transactions") as response:
            entries = response.get_json()
        self.assertEqual([(e["type"], e["amount"], e["relatedBookingId"]) for e in entries],
                         [("credit", "100.00", booking_id)])
        with self.client.get(f"/bookings/{booking_id}") as response:
            self.assertEqual(response.get_json()["status"], "cancelled")

    def test_confirm_route_refunds_verified_payment_for_cancelled_booking(self):
        with self.book(paymentMethod="external") as response:
            booking_id = response.get_json()["id"]
        self.client.post(f"/bookings/{booking_id}/cancel", json={"reason": "Found another interviewer"})
        with self.client.post(f"/bookings/{booking_id}/confirm", json={"externalPaymentRef": "pi_late"}) as response:
            self.assertEqual(response.status_code, 402)
        FakeProcessor.succeeded = {"pi_late"}
        with self.client.post(f"/bookings/{booking_id}/confirm", json={"externalPaymentRef": "pi_late"}) as response:
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.get_json()["status"], "cancelled")
        with self.client.get(f"/accounts/{REQUESTER}/balance") as response:
            self.assertEqual(response.get_json()["balance"], "100.00")

    def test_webhook_amount_must_match_booking(self):
        with self.book(paymentMethod="external") as response:
            booking_id = response.get_json()["id"]
        event = {"type": "payment_intent.succeeded",
                 "data": {"object": {"id": "pi_short", "amount_received": 5000,
                                     "metadata": {"booking_id": booking_id}}}}
        with self.webhook(event) as response:
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.get_json(), {"status": "unfulfilled", "error": "amount_mismatch"})
        with self.client.get(f"/bookings/{booking_id}") as response:
            self.assertEqual(response.get_json()["status"], "pending")
        with self.client.get(f"/accounts/{PROVIDER}/balance") as response:
            self.assertEqual(response.get_json()["balance"], "0.00")

    def test_top_up_requires_admin(self):
        with self.client.post(f"/accounts/{REQUESTER}/top-up", json={"amount": "999999.99"}) as response:
            self.assertEqual(response.status_code, 401)
        with self.client.post(f"/accounts/{REQUESTER}/top-up", json={"amount": "50.00"},
                              headers=self.admin_headers("wrong")) as response:
            self.assertEqual(response.status_code, 401)
        with self.client.get(f"/accounts/{REQUESTER}/balance") as response:
            self.assertEqual(response.get_json()["balance"], "0.00")
        with self.top_up("50.00") as response:
            self.assertEqual(response.status_code, 201)
            self.assertEqual(response.get_json()["reason"], "Wallet top-up")

    def test_platform_account_cannot_book(self):
        self.top_up()
        with self.book(providerId="platform") as response:
            self.assertEqual(response.status_code, 422)

    def test_store_outage(self):
        self.store.unavailable = True
        with self.client.get(f"/providers/{PROVIDER}/slots?date=2030-01-08") as response:
            self.assertEqual(response.status_code, 503)
            self.assertEqual(response.get_json()["error"], "persistence_error")

    def test_unknown_route(self):
        with self.client.get("/nowhere") as response:
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.get_json()["error"], "not_found")


if __name__ == '__main__':
    unittest.main()
