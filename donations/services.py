import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import validate_email
from django.db import transaction
from django.urls import reverse
from django.utils import timezone

from payments.integrations.lenco import PaymentLinkRequest, PaymentStatus, VerificationResult
from payments.utils import (
    format_amount, from_minor_units, generate_reference, is_reference, to_minor_units,
)
from .models import Donation

logger = logging.getLogger(__name__)

SUCCESS_PATH = "/donate/success"


class ValidationError(Exception):
    def __init__(self, field, message):
        super().__init__(message)
        self.field = field
        self.message = message


def display_currency() -> str:
    return getattr(settings, "LENCO_DISPLAY_CURRENCY", "USD")


def public_url(path: str) -> str:
    base = getattr(settings, "PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
    return base + path


def callback_url() -> str:
    return public_url(SUCCESS_PATH)


@dataclass(frozen=True)
class DonationIntent:
    amount: object
    first_name: object
    last_name: object
    email: object
    phone: object = None
    frequency: object = None
    metadata: object = None
    reference: object = None

    @classmethod
    def from_payload(cls, body):
        if not isinstance(body, dict):
            raise ValidationError("body", "Invalid JSON body")

        def text(key):
            value = body.get(key)
            return value.strip() if isinstance(value, str) else value

        return cls(
            amount=body.get("amount"),
            first_name=text("firstName"),
            last_name=text("lastName"),
            email=text("email"),
            phone=text("phone") or None,
            frequency=text("donationFrequency") or None,
            metadata=body.get("metadata"),
            reference=text("reference") or None,
        )


@dataclass(frozen=True)
class InitiationResult:
    payment_url: str
    reference: str
    payment_reference: Optional[str]
    amount: Decimal
    minor_amount: int
    currency: str
    metadata: dict

    @property
    def formatted_amount(self) -> str:
        return format_amount(self.amount, display_currency())


def validate_intent(intent: DonationIntent) -> int:
    """Check donor input and return the amount in minor units."""
    if intent.amount is None or intent.amount == "":
        raise ValidationError("amount", "amount is required")
    try:
        minor = to_minor_units(intent.amount)
    except ValueError:
        raise ValidationError("amount", "Invalid donation amount")

    for field, value in (
        ("firstName", intent.first_name),
        ("lastName", intent.last_name),
        ("email", intent.email),
    ):
        if not isinstance(value, str) or not value:
            raise ValidationError(field, f"{field} is required")
    try:
        validate_email(intent.email)
    except DjangoValidationError:
        raise ValidationError("email", "Enter a valid email address")

    if intent.phone is not None and not isinstance(intent.phone, str):
        raise ValidationError("phone", "phone must be a string")
    if intent.frequency is not None and not isinstance(intent.frequency, str):
        raise ValidationError("donationFrequency", "donationFrequency must be a string")
    if intent.metadata is not None and not isinstance(intent.metadata, dict):
        raise ValidationError("metadata", "metadata must be an object")
    if intent.reference is not None and not is_reference(intent.reference):
        raise ValidationError("reference", "Invalid payment reference")
    return minor


def initiate(intent: DonationIntent, client) -> InitiationResult:
    """Validate the intent, then ask the gateway for a hosted payment link.

    A caller retrying after a gateway failure should send back the reference
    it was given so the provider sees one payment intent, not two.
    GatewayError from the client propagates as is.
    """
    minor = validate_intent(intent)
    amount = from_minor_units(minor)
    reference = intent.reference or generate_reference()
    currency = getattr(settings, "LENCO_CURRENCY", "NGN")

    metadata = {
        "donationFrequency": intent.frequency,
        "originalAmount": str(amount),
        "formattedAmount": format_amount(amount, display_currency()),
        **(intent.metadata or {}),
    }
    link = client.create_payment_link(
        PaymentLinkRequest(
            amount=minor,
            currency=currency,
            email=intent.email,
            first_name=intent.first_name,
            last_name=intent.last_name,
            phone=intent.phone,
            reference=reference,
            callback_url=callback_url(),
            webhook_url=public_url(reverse("donations:lenco_webhook")),
            metadata=metadata,
        )
    )
    logger.info(
        "Payment initialized: reference=%s amount=%s minor=%s", link.reference, amount, minor
    )
    return InitiationResult(
        payment_url=link.payment_url,
        reference=link.reference,
        payment_reference=link.payment_reference,
        amount=amount,
        minor_amount=minor,
        currency=currency,
        metadata=metadata,
    )


def verify_donation(reference, client) -> VerificationResult:
    reference = (reference or "").strip() if isinstance(reference, str) else ""
    if not reference:
        raise ValidationError("reference", "Missing payment reference")
    return client.verify_payment(reference)


# ----- persistence -----

def ensure_reference_reusable(reference) -> None:
    if reference and Donation.objects.filter(
        reference=reference, status=PaymentStatus.SUCCESS.value
    ).exists():
        raise ValidationError("reference", "This donation has already been completed")


@transaction.atomic
def record_link_issued(intent: DonationIntent, result: InitiationResult) -> Donation:
    fields = {
        "payment_reference": result.payment_reference or "",
        "amount": result.amount,
        "minor_amount": result.minor_amount,
        "currency": result.currency,
        "first_name": intent.first_name,
        "last_name": intent.last_name,
        "email": intent.email,
        "phone": intent.phone or "",
        "frequency": intent.frequency or "",
        "metadata": result.metadata,
    }
    donation = Donation.objects.select_for_update().filter(reference=result.reference).first()
    if donation is None:
        return Donation.objects.create(reference=result.reference, **fields)
    for name, value in fields.items():
        setattr(donation, name, value)
    if not donation.is_paid:
        donation.status = PaymentStatus.PENDING.value
    donation.save()
    return donation


@transaction.atomic
def mark_paid(reference, *, minor_amount=None, provider_status="success", paid_at=None, payload=None):
    donation = Donation.objects.select_for_update().filter(reference=reference).first()
    if donation is None:
        logger.warning("Paid notification for unknown reference=%s", reference)
        return None
    if donation.is_paid:
        if not (donation.gateway_meta or {}).get("receipt_email_sent"):
            from .emails import send_receipt_once
            transaction.on_commit(lambda: send_receipt_once(donation.pk))
        return donation  # idempotent
    if minor_amount is not None and minor_amount != donation.minor_amount:
        logger.warning(
            "Amount mismatch for reference=%s: expected=%s got=%s",
            reference, donation.minor_amount, minor_amount,
        )
    donation.status = PaymentStatus.SUCCESS.value
    donation.provider_status = (provider_status or "")[:32]
    donation.failure_reason = ""
    donation.paid_at = paid_at or timezone.now()
    meta = donation.gateway_meta or {}
    if payload:
        meta["last_payload"] = payload
    donation.gateway_meta = meta
    donation.save()

    from .emails import send_receipt_once
    transaction.on_commit(lambda: send_receipt_once(donation.pk))
    return donation


@transaction.atomic
def mark_failed(reference, *, provider_status="failed", failure_reason="", payload=None):
    donation = Donation.objects.select_for_update().filter(reference=reference).first()
    if donation is None:
        logger.warning("Failed notification for unknown reference=%s", reference)
        return None
    if donation.is_paid:
        logger.warning("Ignoring failure for already paid reference=%s", reference)
        return donation
    donation.status = PaymentStatus.FAILED.value
    donation.provider_status = (provider_status or "")[:32]
    donation.failure_reason = (failure_reason or "")[:255]
    meta = donation.gateway_meta or {}
    if payload:
        meta["last_payload"] = payload
    donation.gateway_meta = meta
    donation.save()
    return donation


def apply_verification(result: VerificationResult):
    """Copy an authoritative provider status onto the local record, if there is one."""
    if result.status is PaymentStatus.SUCCESS:
        return mark_paid(
            result.reference,
            minor_amount=result.minor_amount,
            provider_status=result.raw_status,
            paid_at=result.paid_at,
        )
    if result.status is PaymentStatus.FAILED:
        return mark_failed(result.reference, provider_status=result.raw_status)

    updated = Donation.objects.filter(
        reference=result.reference, status=PaymentStatus.PENDING.value
    ).update(status=PaymentStatus.UNKNOWN.value, updated_at=timezone.now())
    if updated:
        logger.warning("Provider returned no usable status for reference=%s", result.reference)
    return Donation.objects.filter(reference=result.reference).first()
