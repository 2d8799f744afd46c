import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import patch

from django.core import mail
from django.test import TestCase

from payments.utils import generate_reference
from .models import Donation

URL = "/api/webhooks/lenco"
SECRET = "whsec-test"


def _sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class LencoWebhookTests(TestCase):
    def setUp(self):
        self.donation = Donation.objects.create(
            reference=generate_reference(),
            amount=Decimal("50.00"),
            minor_amount=5000,
            first_name="A",
            last_name="B",
            email="a@b.com",
        )

    def _payload(self, event="payment.successful", **data):
        body = {"reference": self.donation.reference, "amount": 5000, "status": "success"}
        body.update(data)
        return {"event": event, "data": body}

    def _post(self, payload, signature=None, raw=None):
        body = raw if raw is not None else json.dumps(payload).encode()
        headers = {}
        if signature is not False:
            headers["HTTP_X_LENCO_SIGNATURE"] = signature or _sign(body)
        return self.client.post(URL, data=body, content_type="application/json", **headers)

    def test_valid_success_event_is_dispatched(self):
        payload = self._payload()
        with patch("donations.webhook.handle_successful_payment") as handler:
            resp = self._post(payload)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"received": True})
        handler.assert_called_once_with(payload)

    def test_wrong_signature_is_rejected(self):
        with patch("donations.webhook.handle_successful_payment") as handler:
            with self.assertLogs("payments.signatures", level="WARNING"):
                resp = self._post(self._payload(), signature=_sign(b"other body"))
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json(), {"error": "Unauthorized"})
        handler.assert_not_called()

    def test_missing_signature_is_rejected(self):
        with patch("donations.webhook.handle_successful_payment") as handler:
            with self.assertLogs("payments.signatures", level="WARNING"):
                resp = self._post(self._payload(), signature=False)
        self.assertEqual(resp.status_code, 401)
        handler.assert_not_called()

    def test_tampered_body_is_rejected(self):
        body = json.dumps(self._payload()).encode()
        tampered = body.replace(b"5000", b"9000")
        with self.assertLogs("payments.signatures", level="WARNING"):
            resp = self._post(None, signature=_sign(body), raw=tampered)
        self.assertEqual(resp.status_code, 401)
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.status, "pending")

    def test_unknown_event_is_acknowledged(self):
        with patch("donations.webhook.handle_successful_payment") as ok, \
                patch("donations.webhook.handle_failed_payment") as failed:
            resp = self._post(self._payload(event="payment.refunded"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"received": True})
        ok.assert_not_called()
        failed.assert_not_called()

    def test_handler_error_still_acknowledged(self):
        with patch("donations.webhook.handle_successful_payment", side_effect=RuntimeError("boom")):
            with self.assertLogs("donations.webhook", level="ERROR"):
                resp = self._post(self._payload())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"received": True})

    def test_invalid_json_after_auth(self):
        raw = b"{not json"
        resp = self._post(None, raw=raw)
        self.assertEqual(resp.status_code, 400)
        resp = self._post(None, raw=b"[1, 2]")
        self.assertEqual(resp.status_code, 400)

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get(URL).status_code, 405)

    def test_trailing_slash_alias(self):
        body = json.dumps(self._payload(event="payment.refunded")).encode()
        resp = self.client.post(URL + "/", data=body, content_type="application/json",
                                HTTP_X_LENCO_SIGNATURE=_sign(body))
        self.assertEqual(resp.status_code, 200)

    def test_success_event_marks_donation_paid(self):
        with self.captureOnCommitCallbacks(execute=True):
            resp = self._post(self._payload(paidAt="2024-05-01T10:00:00Z"))
        self.assertEqual(resp.status_code, 200)
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.status, "success")
        self.assertEqual(self.donation.paid_at.year, 2024)
        self.assertEqual(self.donation.gateway_meta["last_payload"]["event"], "payment.successful")
        self.assertEqual(len(mail.outbox), 1)

    def test_redelivered_success_is_idempotent(self):
        payload = self._payload()
        with self.captureOnCommitCallbacks(execute=True):
            self._post(payload)
        with self.captureOnCommitCallbacks(execute=True):
            self._post(payload)
        self.assertEqual(Donation.objects.get().status, "success")
        self.assertEqual(len(mail.outbox), 1)

    def test_failed_event_marks_donation_failed(self):
        resp = self._post(self._payload(event="payment.failed", status="failed", failureReason="Insufficient funds"))
        self.assertEqual(resp.status_code, 200)
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.status, "failed")
        self.assertEqual(self.donation.failure_reason, "Insufficient funds")

    def test_failed_event_after_success_is_ignored(self):
        self._post(self._payload())
        with self.assertLogs("donations.services", level="WARNING"):
            self._post(self._payload(event="payment.failed", status="failed"))
        self.donation.refresh_from_db()
        self.assertEqual(self.donation.status, "success")
