import hashlib
import hmac
import json
import uuid
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest.mock import Mock, patch

import requests
from django.test import SimpleTestCase

from . import utils
from .integrations.lenco import (
    INVALID_RESPONSE, GatewayError, LencoClient, MockLencoClient, PaymentLinkRequest,
    PaymentStatus,
)
from .signatures import AuthError, require_valid_signature, verify_signature


def _response(status=200, body=None, content_type="application/json", text=None, reason="OK"):
    resp = requests.Response()
    resp.status_code = status
    resp.reason = reason
    resp.headers["Content-Type"] = content_type
    resp._content = (json.dumps(body) if text is None else text).encode("utf-8")
    resp.encoding = "utf-8"
    return resp


def _link_request(**overrides):
    fields = dict(
        amount=5000,
        currency="NGN",
        email="a@b.com",
        first_name="A",
        last_name="B",
        reference="donation_ref",
        callback_url="https://rsdf.test/donate/success",
        webhook_url="https://rsdf.test/api/webhooks/lenco",
        metadata={"donationFrequency": "monthly"},
    )
    fields.update(overrides)
    return PaymentLinkRequest(**fields)


class SignatureTests(SimpleTestCase):
    secret = "whsec-test"
    body = b'{"event":"payment.successful","data":{"reference":"donation_1"}}'

    def _sign(self, body):
        return hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()

    def test_valid_signature(self):
        self.assertTrue(verify_signature(self.body, self._sign(self.body), self.secret))

    def test_uppercase_hex_is_accepted(self):
        self.assertTrue(verify_signature(self.body, self._sign(self.body).upper(), self.secret))

    def test_single_bit_change_in_body_fails(self):
        sig = self._sign(self.body)
        tampered = bytearray(self.body)
        tampered[10] ^= 0x01
        self.assertFalse(verify_signature(bytes(tampered), sig, self.secret))

    def test_single_bit_change_in_signature_fails(self):
        sig = bytearray(bytes.fromhex(self._sign(self.body)))
        sig[0] ^= 0x01
        self.assertFalse(verify_signature(self.body, sig.hex(), self.secret))

    def test_malformed_headers_are_not_verified(self):
        for header in ("", None, "not-hex", "abc", "zz" * 32, "é" * 64):
            self.assertFalse(verify_signature(self.body, header, self.secret), header)

    def test_wrong_secret_fails(self):
        self.assertFalse(verify_signature(self.body, self._sign(self.body), "other"))

    def test_missing_secret_fails(self):
        self.assertFalse(verify_signature(self.body, self._sign(self.body), ""))

    def test_require_valid_signature_raises(self):
        with self.assertRaises(AuthError):
            require_valid_signature(self.body, "", self.secret)
        with self.assertRaises(AuthError):
            require_valid_signature(self.body, "00" * 32, self.secret)
        require_valid_signature(self.body, self._sign(self.body), self.secret)


class ReferenceTests(SimpleTestCase):
    def test_reference_is_prefixed_uuid4(self):
        ref = utils.generate_reference()
        self.assertTrue(ref.startswith("donation_"))
        self.assertEqual(uuid.UUID(ref[len("donation_"):]).version, 4)
        self.assertTrue(utils.is_reference(ref))

    def test_references_do_not_repeat(self):
        refs = {utils.generate_reference() for _ in range(1000)}
        self.assertEqual(len(refs), 1000)

    def test_is_reference_rejects_other_shapes(self):
        for value in (None, "", "donation_", "order_123", "donation_" + uuid.uuid1().hex, 42):
            self.assertFalse(utils.is_reference(value), value)


class AmountTests(SimpleTestCase):
    def test_to_minor_units(self):
        self.assertEqual(utils.to_minor_units(50), 5000)
        self.assertEqual(utils.to_minor_units("12.34"), 1234)
        self.assertEqual(utils.to_minor_units(0.1), 10)
        self.assertEqual(utils.to_minor_units(19.99), 1999)

    def test_rounds_half_away_from_zero(self):
        self.assertEqual(utils.to_minor_units("10.005"), 1001)
        self.assertEqual(utils.to_minor_units("10.004"), 1000)
        self.assertEqual(utils.to_minor_units("0.005"), 1)

    def test_rejects_non_positive_and_non_finite(self):
        for value in (0, -1, "-0.5", "0.004", "nan", "inf", "abc", None, True, ""):
            with self.assertRaises(ValueError, msg=repr(value)):
                utils.to_minor_units(value)

    def test_round_trip_within_one_cent(self):
        for value in ("0.01", "1", "7.5", "19.999", "1234.56", "0.015"):
            minor = utils.to_minor_units(value)
            self.assertLessEqual(abs(utils.from_minor_units(minor) - Decimal(value)), Decimal("0.01"))

    def test_format_amount(self):
        self.assertEqual(utils.format_amount(Decimal("1234.5"), "USD"), "$1,234.50")
        self.assertEqual(utils.format_amount(50, "NGN"), "₦50.00")
        self.assertEqual(utils.format_amount(3, "XOF"), "XOF 3.00")

    def test_rejects_amounts_too_large_to_store(self):
        self.assertEqual(utils.to_minor_units("9999999999.99"), 999999999999)
        for value in ("1e10", "10000000000", "1e18", "1e25", "1e30", 1e300, "1e999999"):
            with self.assertRaises(ValueError, msg=repr(value)):
                utils.to_minor_units(value)

    def test_unquantizable_amounts_raise_value_error(self):
        with self.assertRaises(ValueError):
            utils.format_amount("1e30")
        with self.assertRaises(ValueError):
            utils.from_minor_units(10 ** 40)


class CreatePaymentLinkTests(SimpleTestCase):
    def setUp(self):
        self.session = Mock()
        self.client = LencoClient("sk", "pk", base_url="https://lenco.test/", timeout=5, session=self.session)

    def test_success(self):
        self.session.post.return_value = _response(200, {
            "status": True,
            "data": {"reference": "donation_ref", "paymentUrl": "https://pay.lenco.test/x", "paymentReference": "LNC-1"},
        })

        result = self.client.create_payment_link(_link_request())

        self.assertEqual(result.payment_url, "https://pay.lenco.test/x")
        self.assertEqual(result.reference, "donation_ref")
        self.assertEqual(result.payment_reference, "LNC-1")

        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://lenco.test/access/v2/payments/initialize")
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk")
        self.assertEqual(kwargs["headers"]["x-api-key"], "pk")
        self.assertEqual(kwargs["json"], {
            "amount": 5000,
            "currency": "NGN",
            "email": "a@b.com",
            "first_name": "A",
            "last_name": "B",
            "phone": "",
            "reference": "donation_ref",
            "callback_url": "https://rsdf.test/donate/success",
            "webhook_url": "https://rsdf.test/api/webhooks/lenco",
            "metadata": {"donationFrequency": "monthly"},
        })

    def test_json_error_uses_provider_message(self):
        self.session.post.return_value = _response(400, {"status": False, "message": "Invalid currency"}, reason="Bad Request")
        with self.assertLogs("payments.integrations.lenco", level="ERROR"):
            with self.assertRaises(GatewayError) as cm:
                self.client.create_payment_link(_link_request())
        self.assertEqual(str(cm.exception), "Invalid currency")
        self.assertEqual(cm.exception.status_code, 400)
        self.assertEqual(cm.exception.reference, "donation_ref")

    def test_html_error_reports_status_only(self):
        self.session.post.return_value = _response(
            502, content_type="text/html", text="<html>upstream</html>", reason="Bad Gateway"
        )
        with self.assertLogs("payments.integrations.lenco", level="ERROR"):
            with self.assertRaises(GatewayError) as cm:
                self.client.create_payment_link(_link_request())
        self.assertEqual(str(cm.exception), "Failed to create payment link: 502 Bad Gateway")
        self.assertEqual(cm.exception.status_code, 502)

    def test_missing_data_is_invalid_response(self):
        for body in ({"status": True}, {"status": True, "data": "oops"}, {"data": {"reference": "x"}}, [1, 2]):
            self.session.post.return_value = _response(200, body)
            with self.assertRaises(GatewayError) as cm:
                self.client.create_payment_link(_link_request())
            self.assertEqual(str(cm.exception), INVALID_RESPONSE)

    def test_non_json_success_body_is_invalid_response(self):
        self.session.post.return_value = _response(200, content_type="text/html", text="<html></html>")
        with self.assertRaises(GatewayError) as cm:
            self.client.create_payment_link(_link_request())
        self.assertEqual(str(cm.exception), INVALID_RESPONSE)

    def test_timeout_becomes_gateway_error(self):
        self.session.post.side_effect = requests.Timeout("read timed out")
        with self.assertLogs("payments.integrations.lenco", level="ERROR"):
            with self.assertRaises(GatewayError) as cm:
                self.client.create_payment_link(_link_request())
        self.assertIn("read timed out", str(cm.exception))

    def test_invalid_request_never_hits_network(self):
        for overrides in ({"amount": 0}, {"amount": -5}, {"amount": 50.0}, {"email": ""}, {"first_name": " "}):
            with self.assertRaises(ValueError):
                self.client.create_payment_link(_link_request(**overrides))
        self.session.post.assert_not_called()

    def test_timeout_must_be_bounded(self):
        with self.assertRaises(ValueError):
            LencoClient("sk", "pk", timeout=0)


class VerifyPaymentTests(SimpleTestCase):
    def setUp(self):
        self.session = Mock()
        self.client = LencoClient("sk", "pk", base_url="https://lenco.test", timeout=5, session=self.session)

    def _verify_with(self, data):
        self.session.get.return_value = _response(200, {"status": True, "data": data})
        return self.client.verify_payment("donation_ref")

    def test_success_status_and_amount_conversion(self):
        result = self._verify_with({
            "reference": "donation_ref", "amount": 5000, "status": "success",
            "paidAt": "2024-05-01T10:00:00Z",
        })
        self.assertIs(result.status, PaymentStatus.SUCCESS)
        self.assertEqual(result.minor_amount, 5000)
        self.assertEqual(result.amount, Decimal("50.00"))
        self.assertEqual(result.paid_at.year, 2024)

        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "https://lenco.test/access/v2/payments/verify/donation_ref")
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk")

    def test_other_statuses_map_to_failed(self):
        for raw in ("abandoned", "failed", "pending", "SUCCESS", "successful"):
            result = self._verify_with({"reference": "donation_ref", "amount": 100, "status": raw})
            self.assertIs(result.status, PaymentStatus.FAILED, raw)
            self.assertEqual(result.raw_status, raw)

    def test_missing_status_is_unknown(self):
        result = self._verify_with({"reference": "donation_ref", "amount": 100})
        self.assertIs(result.status, PaymentStatus.UNKNOWN)

    def test_malformed_data_raises(self):
        for body in ({"status": True}, {"status": True, "data": None}, {"status": True, "data": []}):
            self.session.get.return_value = _response(200, body)
            with self.assertRaises(GatewayError):
                self.client.verify_payment("donation_ref")

    def test_malformed_amount_raises(self):
        for amount in (None, "abc", 10.5):
            with self.assertRaises(GatewayError):
                self._verify_with({"reference": "donation_ref", "amount": amount, "status": "success"})

    def test_not_found_json_error(self):
        self.session.get.return_value = _response(404, {"message": "Payment not found"}, reason="Not Found")
        with self.assertLogs("payments.integrations.lenco", level="ERROR"):
            with self.assertRaises(GatewayError) as cm:
                self.client.verify_payment("donation_ref")
        self.assertEqual(str(cm.exception), "Payment not found")
        self.assertEqual(cm.exception.status_code, 404)

    def test_connection_error_becomes_gateway_error(self):
        self.session.get.side_effect = requests.ConnectionError("boom")
        with self.assertLogs("payments.integrations.lenco", level="ERROR"):
            with self.assertRaises(GatewayError):
                self.client.verify_payment("donation_ref")

    def test_empty_reference_is_rejected(self):
        with self.assertRaises(ValueError):
            self.client.verify_payment("  ")
        self.session.get.assert_not_called()

    def test_keeps_queried_reference_when_provider_echoes_another(self):
        with self.assertLogs("payments.integrations.lenco", level="WARNING"):
            result = self._verify_with({"reference": "donation_other", "amount": 100, "status": "success"})
        self.assertEqual(result.reference, "donation_ref")

    def test_out_of_range_amount_raises(self):
        for amount in (-100, 10 ** 12, "1e30"):
            with self.assertRaises(GatewayError):
                self._verify_with({"reference": "donation_ref", "amount": amount, "status": "success"})

    def test_defaults_to_module_level_requests(self):
        client = LencoClient("sk", "pk", base_url="https://lenco.test", timeout=5)
        body = {"status": True, "data": {"reference": "donation_ref", "amount": 100, "status": "success"}}
        with patch("payments.integrations.lenco.requests.get", return_value=_response(200, body)) as get:
            result = client.verify_payment("donation_ref")
        get.assert_called_once()
        self.assertIs(result.status, PaymentStatus.SUCCESS)

    def test_concurrent_verifications_agree(self):
        body = {"status": True, "data": {"reference": "donation_ref", "amount": 2500, "status": "success"}}
        self.session.get.side_effect = lambda *a, **kw: _response(200, body)
        with ThreadPoolExecutor(max_workers=2) as pool:
            first, second = pool.map(lambda _: self.client.verify_payment("donation_ref"), range(2))
        self.assertEqual(first, second)
        self.assertIs(first.status, PaymentStatus.SUCCESS)


class MockClientTests(SimpleTestCase):
    def test_link_points_at_mock_checkout(self):
        client = MockLencoClient("https://rsdf.test/")
        result = client.create_payment_link(_link_request())
        self.assertEqual(result.payment_url, "https://rsdf.test/mock-payment?ref=donation_ref&amount=5000")
        self.assertEqual(result.payment_reference, "mock_donation_ref")

    def test_verify_uses_recorded_amount(self):
        client = MockLencoClient(amount_lookup={"donation_ref": 700}.get)
        result = client.verify_payment("donation_ref")
        self.assertIs(result.status, PaymentStatus.SUCCESS)
        self.assertEqual(result.minor_amount, 700)
        self.assertEqual(client.verify_payment("donation_other").minor_amount, 10000)
