from decimal import Decimal
from io import StringIO
from unittest.mock import Mock, patch
import json

from django.core import mail
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from payments.integrations.lenco import (
    GatewayError, PaymentLinkResult, PaymentStatus, VerificationResult,
)
from payments.utils import generate_reference
from .models import Donation
from .services import (
    DonationIntent, ValidationError, apply_verification, initiate, mark_failed, mark_paid,
    verify_donation,
)
from .emails import send_receipt_once


def _intent(**overrides):
    payload = {"amount": 50, "firstName": "A", "lastName": "B", "email": "a@b.com"}
    payload.update(overrides)
    return DonationIntent.from_payload(payload)


def _fake_gateway(payment_url="https://pay.lenco.test/checkout/1"):
    client = Mock()

    def create(request):
        return PaymentLinkResult(payment_url=payment_url, reference=request.reference, payment_reference="LNC-1")

    client.create_payment_link.side_effect = create
    return client


def _verification(reference, status=PaymentStatus.SUCCESS, raw="success", minor=5000):
    return VerificationResult(reference=reference, minor_amount=minor, status=status, raw_status=raw)


def _donation(**overrides):
    fields = dict(
        reference=generate_reference(),
        amount=Decimal("50.00"),
        minor_amount=5000,
        currency="NGN",
        first_name="A",
        last_name="B",
        email="a@b.com",
    )
    fields.update(overrides)
    return Donation.objects.create(**fields)


class InitiateTests(SimpleTestCase):
    def test_converts_amount_and_returns_gateway_url(self):
        client = _fake_gateway()
        result = initiate(_intent(), client)

        request = client.create_payment_link.call_args.args[0]
        self.assertEqual(request.amount, 5000)
        self.assertEqual(request.currency, "NGN")
        self.assertEqual(request.email, "a@b.com")
        self.assertTrue(request.reference.startswith("donation_"))
        self.assertEqual(request.callback_url, "https://rsdf.test/donate/success")
        self.assertEqual(request.webhook_url, "https://rsdf.test/api/webhooks/lenco")
        self.assertEqual(result.payment_url, "https://pay.lenco.test/checkout/1")
        self.assertEqual(result.reference, request.reference)
        self.assertEqual(result.amount, Decimal("50.00"))
        self.assertEqual(result.formatted_amount, "$50.00")

    def test_metadata_is_merged(self):
        client = _fake_gateway()
        initiate(_intent(donationFrequency="monthly", metadata={"campaign": "school-fees"}), client)
        metadata = client.create_payment_link.call_args.args[0].metadata
        self.assertEqual(metadata, {
            "donationFrequency": "monthly",
            "originalAmount": "50.00",
            "formattedAmount": "$50.00",
            "campaign": "school-fees",
        })

    def test_rounds_half_cents_up(self):
        client = _fake_gateway()
        initiate(_intent(amount="10.005"), client)
        self.assertEqual(client.create_payment_link.call_args.args[0].amount, 1001)

    def test_invalid_amounts_short_circuit(self):
        client = _fake_gateway()
        with patch("donations.services.generate_reference") as gen:
            for amount in (0, -5, "abc", None, "", "0.001", "nan", True, "1e10", "1e18", "1e25", "1e30", 1e300):
                with self.assertRaises(ValidationError) as cm:
                    initiate(_intent(amount=amount), client)
                self.assertEqual(cm.exception.field, "amount")
        gen.assert_not_called()
        client.create_payment_link.assert_not_called()

    def test_required_donor_fields(self):
        client = _fake_gateway()
        for key, field in (("firstName", "firstName"), ("lastName", "lastName"), ("email", "email")):
            with self.assertRaises(ValidationError) as cm:
                initiate(_intent(**{key: "  "}), client)
            self.assertEqual(cm.exception.field, field)
        with self.assertRaises(ValidationError) as cm:
            initiate(_intent(email="not-an-email"), client)
        self.assertEqual(cm.exception.field, "email")
        with self.assertRaises(ValidationError) as cm:
            initiate(_intent(metadata=["x"]), client)
        self.assertEqual(cm.exception.field, "metadata")
        client.create_payment_link.assert_not_called()

    def test_supplied_reference_is_reused(self):
        client = _fake_gateway()
        ref = generate_reference()
        result = initiate(_intent(reference=ref), client)
        self.assertEqual(result.reference, ref)
        with self.assertRaises(ValidationError):
            initiate(_intent(reference="order_123"), client)

    def test_gateway_error_is_reraised_unchanged(self):
        client = Mock()
        error = GatewayError("Invalid currency", status_code=400)
        client.create_payment_link.side_effect = error
        with self.assertRaises(GatewayError) as cm:
            initiate(_intent(), client)
        self.assertIs(cm.exception, error)

    def test_verify_requires_reference(self):
        client = Mock()
        with self.assertRaises(ValidationError):
            verify_donation("  ", client)
        client.verify_payment.assert_not_called()


class InitializeViewTests(TestCase):
    url = "/api/donations/initialize"

    def _post(self, payload):
        return self.client.post(self.url, data=json.dumps(payload), content_type="application/json")

    def test_success_records_pending_donation(self):
        with patch("donations.views.get_gateway", return_value=_fake_gateway()):
            resp = self._post({"amount": 50, "firstName": "A", "lastName": "B", "email": "a@b.com",
                               "phone": "0970000000", "donationFrequency": "one-time"})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["paymentUrl"], "https://pay.lenco.test/checkout/1")
        self.assertEqual(body["paymentReference"], "LNC-1")
        self.assertEqual(body["amount"], 50.0)
        self.assertEqual(body["formattedAmount"], "$50.00")

        donation = Donation.objects.get(reference=body["reference"])
        self.assertEqual(donation.status, "pending")
        self.assertEqual(donation.minor_amount, 5000)
        self.assertEqual(donation.phone, "0970000000")
        self.assertEqual(donation.frequency, "one-time")

    def test_validation_error_is_400_without_gateway_call(self):
        gateway = _fake_gateway()
        with patch("donations.views.get_gateway", return_value=gateway):
            resp = self._post({"amount": 0, "firstName": "A", "lastName": "B", "email": "a@b.com"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["field"], "amount")
        gateway.create_payment_link.assert_not_called()
        self.assertFalse(Donation.objects.exists())

    def test_gateway_error_is_502_with_reference(self):
        gateway = Mock()
        gateway.create_payment_link.side_effect = GatewayError("upstream down", status_code=503, reference="donation_x")
        with patch("donations.views.get_gateway", return_value=gateway):
            resp = self._post({"amount": 50, "firstName": "A", "lastName": "B", "email": "a@b.com"})
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json(), {"error": "Payment error: upstream down", "reference": "donation_x"})
        self.assertFalse(Donation.objects.exists())

    def test_unexpected_error_is_500_without_details(self):
        gateway = Mock()
        gateway.create_payment_link.side_effect = RuntimeError("secret stack detail")
        with patch("donations.views.get_gateway", return_value=gateway):
            with self.assertLogs("donations.views", level="ERROR"):
                resp = self._post({"amount": 50, "firstName": "A", "lastName": "B", "email": "a@b.com"})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json(), {"error": "Failed to initialize payment"})

    @override_settings(LENCO_MOCK_MODE=True)
    def test_amount_too_large_to_store_is_400(self):
        for amount in ("1e18", "1e30", 1e300):
            resp = self._post({"amount": amount, "firstName": "A", "lastName": "B", "email": "a@b.com"})
            self.assertEqual(resp.status_code, 400, amount)
            self.assertEqual(resp.json()["field"], "amount")
        self.assertFalse(Donation.objects.exists())

    def test_invalid_json_and_wrong_method(self):
        resp = self.client.post(self.url, data="{nope", content_type="application/json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.client.get(self.url).status_code, 405)

    def test_retry_with_same_reference_updates_record(self):
        ref = generate_reference()
        payload = {"amount": 50, "firstName": "A", "lastName": "B", "email": "a@b.com", "reference": ref}
        with patch("donations.views.get_gateway", return_value=_fake_gateway()):
            self._post(payload)
            payload["amount"] = 60
            resp = self._post(payload)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(Donation.objects.count(), 1)
        self.assertEqual(Donation.objects.get().minor_amount, 6000)

    def test_completed_reference_cannot_be_reused(self):
        donation = _donation(status="success")
        gateway = _fake_gateway()
        with patch("donations.views.get_gateway", return_value=gateway):
            resp = self._post({"amount": 50, "firstName": "A", "lastName": "B", "email": "a@b.com",
                               "reference": donation.reference})
        self.assertEqual(resp.status_code, 400)
        gateway.create_payment_link.assert_not_called()


class VerifyViewTests(TestCase):
    url = "/api/donations/verify"

    def setUp(self):
        self.donation = _donation()
        self.gateway = Mock()

    def _get(self, reference):
        with patch("donations.views.get_gateway", return_value=self.gateway):
            return self.client.get(self.url, {"reference": reference})

    def test_success_marks_donation_paid_and_sends_receipt(self):
        self.gateway.verify_payment.return_value = _verification(self.donation.reference)
        with self.captureOnCommitCallbacks(execute=True):
            resp = self._get(self.donation.reference)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["amount"], 50.0)
        self.assertEqual(body["formattedAmount"], "$50.00")
        self.assertEqual(body["status"], "success")
        self.assertTrue(body["paidAt"])

        self.donation.refresh_from_db()
        self.assertEqual(self.donation.status, "success")
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn(self.donation.reference, mail.outbox[0].subject)

    def test_repeated_polls_are_idempotent(self):
        self.gateway.verify_payment.return_value = _verification(self.donation.reference)
        with self.captureOnCommitCallbacks(execute=True):
            first = self._get(self.donation.reference).json()
        with self.captureOnCommitCallbacks(execute=True):
            second = self._get(self.donation.reference).json()
        first.pop("paidAt")
        second.pop("paidAt")
        self.assertEqual(first, second)
        self.assertEqual(len(mail.outbox), 1)

    def test_non_success_is_reported_as_failure(self):
        self.gateway.verify_payment.return_value = _verification(
            self.donation.reference, status=PaymentStatus.FAILED, raw="abandoned"
        )
        resp = self._get(self.donation.reference)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {
            "error": "Payment verification failed: abandoned",
            "status": "abandoned",
            "reference": self.donation.reference,
        })
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.status, "failed")
        self.assertEqual(self.donation.provider_status, "abandoned")

    def test_missing_reference(self):
        resp = self._get("")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"error": "Missing payment reference"})
        self.gateway.verify_payment.assert_not_called()

    def test_gateway_error_is_502(self):
        self.gateway.verify_payment.side_effect = GatewayError("invalid response from payment provider")
        resp = self._get(self.donation.reference)
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json(), {"error": "Verification error: invalid response from payment provider"})

    def test_post_notification(self):
        self.gateway.verify_payment.return_value = _verification(self.donation.reference)
        with patch("donations.views.get_gateway", return_value=self.gateway):
            resp = self.client.post(self.url, data=json.dumps({"reference": self.donation.reference}),
                                    content_type="application/json")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["reference"], self.donation.reference)
        self.assertEqual(body["data"]["amount"], 50.0)

    def test_post_notification_failure_and_missing_reference(self):
        self.gateway.verify_payment.return_value = _verification(
            self.donation.reference, status=PaymentStatus.FAILED, raw="failed"
        )
        with patch("donations.views.get_gateway", return_value=self.gateway):
            resp = self.client.post(self.url, data=json.dumps({"reference": self.donation.reference}),
                                    content_type="application/json")
            missing = self.client.post(self.url, data="{}", content_type="application/json")
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["success"])
        self.assertEqual(missing.status_code, 400)


class MockPaymentTests(TestCase):
    def test_disabled_outside_mock_mode(self):
        resp = self.client.get("/mock-payment", {"ref": generate_reference()})
        self.assertEqual(resp.status_code, 404)

    @override_settings(LENCO_MOCK_MODE=True)
    def test_mock_flow_end_to_end(self):
        resp = self.client.post(
            "/api/donations/initialize",
            data=json.dumps({"amount": 25, "firstName": "A", "lastName": "B", "email": "a@b.com"}),
            content_type="application/json",
        )
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["paymentUrl"].startswith("https://rsdf.test/mock-payment?ref="))

        checkout = self.client.get("/mock-payment", {"ref": body["reference"]})
        self.assertEqual(checkout.status_code, 302)
        self.assertEqual(checkout["Location"], f"https://rsdf.test/donate/success?reference={body['reference']}")

        verified = self.client.get("/api/donations/verify", {"reference": body["reference"]})
        self.assertEqual(verified.status_code, 200)
        self.assertEqual(verified.json()["amount"], 25.0)

    @override_settings(LENCO_MOCK_MODE=True)
    def test_rejects_bad_reference(self):
        self.assertEqual(self.client.get("/mock-payment", {"ref": "x"}).status_code, 400)


class PersistenceTests(TestCase):
    def test_mark_paid_is_idempotent(self):
        donation = _donation()
        first = mark_paid(donation.reference, minor_amount=5000)
        paid_at = first.paid_at
        second = mark_paid(donation.reference, minor_amount=5000)
        self.assertEqual(second.status, "success")
        self.assertEqual(second.paid_at, paid_at)

    def test_amount_mismatch_is_logged(self):
        donation = _donation()
        with self.assertLogs("donations.services", level="WARNING"):
            mark_paid(donation.reference, minor_amount=100)

    def test_failure_never_downgrades_success(self):
        donation = _donation(status="success")
        with self.assertLogs("donations.services", level="WARNING"):
            mark_failed(donation.reference, failure_reason="card declined")
        donation.refresh_from_db()
        self.assertEqual(donation.status, "success")

    def test_unknown_reference_is_ignored(self):
        with self.assertLogs("donations.services", level="WARNING"):
            self.assertIsNone(mark_paid("donation_missing"))

    def test_unknown_status_flags_pending_record(self):
        donation = _donation()
        with self.assertLogs("donations.services", level="WARNING"):
            apply_verification(_verification(donation.reference, status=PaymentStatus.UNKNOWN, raw=None))
        donation.refresh_from_db()
        self.assertEqual(donation.status, "unknown")

    def test_receipt_sent_once(self):
        donation = _donation(status="success")
        self.assertTrue(send_receipt_once(donation.pk))
        self.assertFalse(send_receipt_once(donation.pk))
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["a@b.com"])
        self.assertIn("₦50.00", mail.outbox[0].body)

    @override_settings(EMAIL_FAIL_SILENTLY=False)
    def test_failed_receipt_is_retried(self):
        donation = _donation(status="success")
        with patch("donations.emails.EmailMultiAlternatives.send", side_effect=OSError("smtp down")):
            with self.assertLogs("donations.emails", level="ERROR"):
                self.assertFalse(send_receipt_once(donation.pk))
        donation.refresh_from_db()
        self.assertNotIn("receipt_email_sent", donation.gateway_meta)

        self.assertTrue(send_receipt_once(donation.pk))
        self.assertEqual(len(mail.outbox), 1)

    def test_silently_dropped_receipt_is_retried(self):
        donation = _donation(status="success")
        with patch("donations.emails.EmailMultiAlternatives.send", return_value=0):
            self.assertFalse(send_receipt_once(donation.pk))
        self.assertTrue(send_receipt_once(donation.pk))
        self.assertEqual(len(mail.outbox), 1)

    def test_repeat_paid_notification_resends_missing_receipt(self):
        donation = _donation(status="success")
        with self.captureOnCommitCallbacks(execute=True):
            mark_paid(donation.reference, minor_amount=5000)
        self.assertEqual(len(mail.outbox), 1)
        with self.captureOnCommitCallbacks(execute=True):
            mark_paid(donation.reference, minor_amount=5000)
        self.assertEqual(len(mail.outbox), 1)

    def test_no_receipt_for_pending(self):
        donation = _donation()
        self.assertFalse(send_receipt_once(donation.pk))
        self.assertEqual(len(mail.outbox), 0)


class ReconcileCommandTests(TestCase):
    def test_applies_provider_status(self):
        paid = _donation()
        abandoned = _donation()
        errored = _donation()
        done = _donation(status="success")

        def verify(reference):
            if reference == paid.reference:
                return _verification(reference)
            if reference == abandoned.reference:
                return _verification(reference, status=PaymentStatus.FAILED, raw="abandoned")
            raise GatewayError("timeout")

        gateway = Mock()
        gateway.verify_payment.side_effect = verify
        out = StringIO()
        with patch("donations.management.commands.reconcile_pending_donations.get_gateway", return_value=gateway):
            call_command("reconcile_pending_donations", stdout=out)

        checked = {c.args[0] for c in gateway.verify_payment.call_args_list}
        self.assertEqual(checked, {paid.reference, abandoned.reference, errored.reference})
        self.assertNotIn(done.reference, checked)

        paid.refresh_from_db()
        abandoned.refresh_from_db()
        errored.refresh_from_db()
        self.assertEqual(paid.status, "success")
        self.assertEqual(abandoned.status, "failed")
        self.assertEqual(errored.status, "pending")
        self.assertIn("Checked 3, updated 1 donations.", out.getvalue())
