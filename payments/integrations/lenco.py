import enum, logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.parse import quote, urlencode

import requests
from requests import RequestException
from django.conf import settings
from django.utils.dateparse import parse_datetime

from payments.utils import MAX_AMOUNT, from_minor_units

logger = logging.getLogger(__name__)

LENCO_BASE_URL = "https://api.lenco.co"
INITIALIZE_PATH = "/access/v2/payments/initialize"
VERIFY_PATH = "/access/v2/payments/verify/{reference}"
DEFAULT_TIMEOUT = 30
INVALID_RESPONSE = "invalid response from payment provider"


class GatewayError(Exception):
    def __init__(self, message, status_code=None, reference=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.reference = reference


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class PaymentLinkRequest:
    amount: int  # minor units
    currency: str
    email: str
    first_name: str
    last_name: str
    reference: str
    callback_url: str
    phone: Optional[str] = None
    webhook_url: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def validate(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int) or self.amount <= 0:
            raise ValueError("amount must be a positive integer in minor units")
        for name in ("email", "first_name", "last_name", "reference", "currency"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"{name} is required")

    def to_payload(self) -> dict:
        return {
            "amount": self.amount,
            "currency": self.currency,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone or "",
            "reference": self.reference,
            "callback_url": self.callback_url,
            "webhook_url": self.webhook_url or "",
            "metadata": dict(self.metadata or {}),
        }


@dataclass(frozen=True)
class PaymentLinkResult:
    payment_url: str
    reference: str
    payment_reference: Optional[str] = None


@dataclass(frozen=True)
class VerificationResult:
    reference: str
    minor_amount: int
    status: PaymentStatus
    raw_status: Optional[str] = None
    paid_at: Optional[datetime] = None

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.minor_amount)

    @property
    def is_successful(self) -> bool:
        return self.status is PaymentStatus.SUCCESS


def map_status(raw) -> PaymentStatus:
    if not isinstance(raw, str) or not raw:
        return PaymentStatus.UNKNOWN
    if raw == "success":
        return PaymentStatus.SUCCESS
    return PaymentStatus.FAILED


def _is_json(resp) -> bool:
    return "application/json" in (resp.headers.get("content-type") or "").lower()


def _error_from_response(resp, action: str, reference: str) -> GatewayError:
    fallback = f"{resp.status_code} {resp.reason or ''}".strip()
    message = None
    if _is_json(resp):
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("message"):
            message = str(body["message"])
        logger.error("Lenco %s failed: status=%s body=%s", action, resp.status_code, body)
    else:
        # HTML error pages and the like are never parsed
        logger.error(
            "Lenco %s failed: status=%s content-type=%s",
            action, resp.status_code, resp.headers.get("content-type"),
        )
    return GatewayError(
        message or f"Failed to {action}: {fallback}",
        status_code=resp.status_code,
        reference=reference,
    )


def _data_section(resp, reference: str) -> dict:
    try:
        body = resp.json()
    except ValueError:
        raise GatewayError(INVALID_RESPONSE, status_code=resp.status_code, reference=reference)
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict):
        logger.error("Lenco response without a data object for reference=%s", reference)
        raise GatewayError(INVALID_RESPONSE, status_code=resp.status_code, reference=reference)
    return data


class LencoClient:
    """Thin client for the Lenco collections API.

    Holds no per-payment state; build one per request (see ``get_gateway``)
    or hand one to a flow in tests with a fake ``session``.
    """

    def __init__(self, secret_key, api_key, base_url=LENCO_BASE_URL,
                 timeout=DEFAULT_TIMEOUT, session=None):
        if not timeout or timeout <= 0:
            raise ValueError("timeout must be a positive number of seconds")
        self.secret_key = secret_key or ""
        self.api_key = api_key or ""
        self.base_url = (base_url or LENCO_BASE_URL).rstrip("/")
        self.timeout = timeout
        # module-level requests calls unless a session is handed in
        self.session = session or requests

    def _headers(self) -> dict:
        if not self.secret_key:
            raise GatewayError("Missing LENCO_API_SECRET")
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "x-api-key": self.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def create_payment_link(self, request: PaymentLinkRequest) -> PaymentLinkResult:
        request.validate()
        url = self.base_url + INITIALIZE_PATH
        logger.info(
            "Creating Lenco payment link: reference=%s amount=%s currency=%s",
            request.reference, request.amount, request.currency,
        )
        try:
            resp = self.session.post(
                url, json=request.to_payload(), headers=self._headers(), timeout=self.timeout,
            )
        except RequestException as e:
            logger.error("Lenco initialize request failed for reference=%s: %s", request.reference, e)
            raise GatewayError(f"Gateway request failed: {e}", reference=request.reference)

        if not 200 <= resp.status_code < 300:
            raise _error_from_response(resp, "create payment link", request.reference)

        data = _data_section(resp, request.reference)
        payment_url = data.get("paymentUrl")
        if not isinstance(payment_url, str) or not payment_url:
            logger.error("Lenco response missing paymentUrl for reference=%s", request.reference)
            raise GatewayError(INVALID_RESPONSE, status_code=resp.status_code, reference=request.reference)

        echoed = data.get("reference")
        if echoed and echoed != request.reference:
            logger.warning("Lenco echoed reference %s for %s", echoed, request.reference)
        payment_reference = data.get("paymentReference")
        return PaymentLinkResult(
            payment_url=payment_url,
            reference=request.reference,
            payment_reference=str(payment_reference) if payment_reference else None,
        )

    def verify_payment(self, reference: str) -> VerificationResult:
        if not isinstance(reference, str) or not reference.strip():
            raise ValueError("reference is required")
        reference = reference.strip()
        url = self.base_url + VERIFY_PATH.format(reference=quote(reference, safe=""))
        logger.info("Verifying Lenco payment: reference=%s", reference)
        try:
            resp = self.session.get(url, headers=self._headers(), timeout=self.timeout)
        except RequestException as e:
            logger.error("Lenco verify request failed for reference=%s: %s", reference, e)
            raise GatewayError(f"Gateway request failed: {e}", reference=reference)

        if not 200 <= resp.status_code < 300:
            raise _error_from_response(resp, "verify payment", reference)

        data = _data_section(resp, reference)
        try:
            minor = Decimal(str(data.get("amount")))
        except (InvalidOperation, ValueError):
            minor = None
        if (minor is None or not minor.is_finite() or minor != minor.to_integral_value()
                or minor < 0 or minor >= MAX_AMOUNT * 100):
            logger.error("Lenco verify returned a malformed amount for reference=%s", reference)
            raise GatewayError(INVALID_RESPONSE, status_code=resp.status_code, reference=reference)

        echoed = data.get("reference")
        if echoed and echoed != reference:
            logger.warning("Lenco echoed reference %s for %s", echoed, reference)
        raw_status = data.get("status")
        paid_at = data.get("paidAt")
        return VerificationResult(
            reference=reference,
            minor_amount=int(minor),
            status=map_status(raw_status),
            raw_status=raw_status if isinstance(raw_status, str) else None,
            paid_at=parse_datetime(paid_at) if isinstance(paid_at, str) else None,
        )


class MockLencoClient:
    """Offline stand-in used when LENCO_MOCK_MODE is on.

    Payment links point at this site's mock checkout page and every
    reference verifies as successful.
    """

    def __init__(self, public_base_url="http://localhost:8000", amount_lookup=None):
        self.public_base_url = public_base_url.rstrip("/")
        self.amount_lookup = amount_lookup

    def create_payment_link(self, request: PaymentLinkRequest) -> PaymentLinkResult:
        request.validate()
        query = urlencode({"ref": request.reference, "amount": request.amount})
        logger.info("MOCK MODE: payment link for reference=%s", request.reference)
        return PaymentLinkResult(
            payment_url=f"{self.public_base_url}/mock-payment?{query}",
            reference=request.reference,
            payment_reference=f"mock_{request.reference}",
        )

    def verify_payment(self, reference: str) -> VerificationResult:
        if not isinstance(reference, str) or not reference.strip():
            raise ValueError("reference is required")
        minor = self.amount_lookup(reference) if self.amount_lookup else None
        return VerificationResult(
            reference=reference,
            minor_amount=int(minor or 10000),
            status=PaymentStatus.SUCCESS,
            raw_status="success",
            paid_at=None,
        )


def get_gateway():
    """Build a gateway client from settings. A fresh instance on every call."""
    public_base_url = getattr(settings, "PUBLIC_BASE_URL", "http://localhost:8000")
    if getattr(settings, "LENCO_MOCK_MODE", False):
        return MockLencoClient(public_base_url, amount_lookup=_recorded_minor_amount)
    return LencoClient(
        secret_key=getattr(settings, "LENCO_API_SECRET", ""),
        api_key=getattr(settings, "LENCO_API_KEY", ""),
        base_url=getattr(settings, "LENCO_BASE_URL", LENCO_BASE_URL),
        timeout=getattr(settings, "LENCO_TIMEOUT", DEFAULT_TIMEOUT),
    )


def _recorded_minor_amount(reference):
    from donations.models import Donation

    return (
        Donation.objects.filter(reference=reference)
        .values_list("minor_amount", flat=True)
        .first()
    )
