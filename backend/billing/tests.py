import json
from unittest.mock import patch

from django.test import Client, TestCase, override_settings

from billing.gateway import PaymentGatewayError, PaymentVerification, verify_payment
from billing.models import AccessPlan, PaymentReceipt
from tokens.models import AccessToken


def paid(amount=150000, currency="ngn", reference="cs_test_1"):
    return PaymentVerification(reference=reference, paid=True, amount=amount, currency=currency, gateway_id="pi_1")


class VerifyPaymentApiTest(TestCase):
    url = "/api/payments/verify/"

    def setUp(self):
        self.client = Client()
        self.body = {
            "reference": "cs_test_1",
            "email": "ada@example.com",
            "fullName": "Ada Obi",
            "phoneNumber": "0800",
            "examType": "JAMB",
        }

    def post(self, payload):
        return self.client.post(self.url, data=json.dumps(payload), content_type="application/json")

    @patch("billing.views.verify_payment")
    def test_paid_reference_issues_token(self, mock_verify):
        mock_verify.return_value = paid()
        resp = self.post(self.body)
        self.assertEqual(resp.status_code, 200)
        code = resp.json()["token"]

        token = AccessToken.objects.get(code=code)
        self.assertIsNone(token.device_fingerprint)
        self.assertEqual(token.metadata["payment_ref"], "cs_test_1")
        self.assertEqual(token.metadata["amount_paid"], 1500)
        self.assertEqual(token.metadata["generated_by"], "STUDENT")
        self.assertEqual(token.metadata["email"], "ada@example.com")

    @patch("billing.views.verify_payment")
    def test_reference_is_idempotent(self, mock_verify):
        mock_verify.return_value = paid()
        first = self.post(self.body).json()["token"]
        resp = self.post(self.body)
        self.assertEqual(resp.json()["token"], first)
        self.assertEqual(resp.json()["message"], "Payment already verified.")
        self.assertEqual(mock_verify.call_count, 1)
        self.assertEqual(AccessToken.objects.count(), 1)

    @patch("billing.views.verify_payment")
    def test_amount_below_minimum_is_refused(self, mock_verify):
        mock_verify.return_value = paid(amount=149999)
        resp = self.post(self.body)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["code"], "invalid_amount")
        self.assertFalse(AccessToken.objects.exists())
        self.assertFalse(PaymentReceipt.objects.exists())

    @patch("billing.views.verify_payment")
    def test_unpaid_is_refused(self, mock_verify):
        mock_verify.return_value = PaymentVerification("cs_test_1", False, 150000, "ngn", "pi_1")
        resp = self.post(self.body)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["code"], "payment_not_verified")
        self.assertFalse(AccessToken.objects.exists())

    @patch("billing.views.verify_payment", side_effect=PaymentGatewayError("boom"))
    def test_gateway_failure(self, mock_verify):
        resp = self.post(self.body)
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["code"], "gateway_error")

    def test_missing_reference(self):
        resp = self.post({"email": "x"})
        self.assertEqual(resp.status_code, 400)

    @patch("billing.views.verify_payment")
    def test_plan_minimum_is_configurable(self, mock_verify):
        plan = AccessPlan.get_solo()
        plan.min_amount = 500
        plan.save()
        mock_verify.return_value = paid(amount=500)
        self.assertEqual(self.post(self.body).status_code, 200)


class GatewayTest(TestCase):
    @patch("billing.gateway.stripe.checkout.Session.retrieve")
    def test_checkout_session(self, mock_retrieve):
        mock_retrieve.return_value = {
            "id": "cs_test_1",
            "payment_status": "paid",
            "amount_total": 200000,
            "currency": "NGN",
            "payment_intent": "pi_9",
        }
        result = verify_payment("cs_test_1")
        self.assertTrue(result.paid)
        self.assertEqual(result.amount, 200000)
        self.assertEqual(result.currency, "ngn")
        self.assertEqual(result.gateway_id, "pi_9")

    @patch("billing.gateway.stripe.PaymentIntent.retrieve")
    def test_payment_intent(self, mock_retrieve):
        mock_retrieve.return_value = {"id": "pi_1", "status": "requires_payment_method", "amount_received": 0}
        result = verify_payment("pi_1")
        self.assertFalse(result.paid)

    @override_settings(STRIPE_SECRET_KEY="")
    def test_unconfigured(self):
        with self.assertRaises(PaymentGatewayError):
            verify_payment("cs_test_1")
