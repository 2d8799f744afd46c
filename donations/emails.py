from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string
from django.template import engines
from django.conf import settings
from django.db import transaction
import logging

from payments.utils import format_amount
from .models import Donation

logger = logging.getLogger(__name__)

FROM = getattr(settings, "DONATIONS_FROM_EMAIL", None) or getattr(settings, "DEFAULT_FROM_EMAIL", "noreply@rsdfoundation.org")


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _template_exists(path: str) -> bool:
    try:
        engines["django"].get_template(path)
        return True
    except Exception:
        return False


def send_receipt_email(donation) -> int:
    ctx = {
        "donation": donation,
        "donor_name": donation.donor_name,
        "formatted_amount": format_amount(donation.amount, donation.currency),
    }
    subject = f"Thank you for your donation ({donation.reference})"
    text = render_to_string("emails/donation_receipt.txt", ctx)
    msg = EmailMultiAlternatives(subject, text, FROM, [donation.email])
    if _template_exists("emails/donation_receipt.html"):
        try:
            html = render_to_string("emails/donation_receipt.html", ctx)
            msg.attach_alternative(html, "text/html")
        except Exception:
            logger.exception("Failed to render HTML receipt template; sending text-only")
    return msg.send(fail_silently=_fail_silently())


def send_receipt_once(donation_id) -> bool:
    """Send the receipt for a paid donation unless it has already gone out."""
    with transaction.atomic():
        donation = Donation.objects.select_for_update().filter(pk=donation_id).first()
        if donation is None or not donation.is_paid or not donation.email:
            return False
        meta = donation.gateway_meta or {}
        if meta.get("receipt_email_sent"):
            return False
        meta["receipt_email_sent"] = True
        donation.gateway_meta = meta
        donation.save(update_fields=["gateway_meta", "updated_at"])
    try:
        sent = send_receipt_email(donation)
    except Exception:
        logger.exception("Failed to send donation receipt to %s", donation.email)
        sent = 0
    if not sent:
        _release_receipt_flag(donation_id)
        return False
    return True


def _release_receipt_flag(donation_id) -> None:
    # a later paid notification or verify poll sends it again
    with transaction.atomic():
        donation = Donation.objects.select_for_update().filter(pk=donation_id).first()
        if donation is None:
            return
        meta = donation.gateway_meta or {}
        meta.pop("receipt_email_sent", None)
        donation.gateway_meta = meta
        donation.save(update_fields=["gateway_meta", "updated_at"])
