import json, logging
from django.conf import settings
from django.http import JsonResponse
from django.utils.dateparse import parse_datetime
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from payments.signatures import SIGNATURE_HEADER, AuthError, require_valid_signature
from .services import mark_paid, mark_failed

logger = logging.getLogger(__name__)


def _event_fields(payload: dict) -> dict:
    data = payload.get("data")
    if not isinstance(data, dict):
        return {}
    amount = data.get("amount")
    paid_at = data.get("paidAt")
    return {
        "reference": data.get("reference") if isinstance(data.get("reference"), str) else "",
        "amount": amount if isinstance(amount, int) and not isinstance(amount, bool) else None,
        "status": data.get("status") if isinstance(data.get("status"), str) else "",
        "paid_at": parse_datetime(paid_at) if isinstance(paid_at, str) else None,
        "failure_reason": str(data.get("failureReason") or ""),
    }


def handle_successful_payment(payload: dict):
    fields = _event_fields(payload)
    logger.info(
        "Payment successful: %s - %s - %s",
        fields.get("reference"), fields.get("amount"), fields.get("status"),
    )
    if not fields.get("reference"):
        logger.warning("payment.successful event without a reference")
        return None
    return mark_paid(
        fields["reference"],
        minor_amount=fields["amount"],
        provider_status=fields["status"] or "success",
        paid_at=fields["paid_at"],
        payload=payload,
    )


def handle_failed_payment(payload: dict):
    fields = _event_fields(payload)
    logger.info(
        "Payment failed: %s - %s - %s - Reason: %s",
        fields.get("reference"), fields.get("amount"), fields.get("status"), fields.get("failure_reason"),
    )
    if not fields.get("reference"):
        logger.warning("payment.failed event without a reference")
        return None
    return mark_failed(
        fields["reference"],
        provider_status=fields["status"] or "failed",
        failure_reason=fields["failure_reason"],
        payload=payload,
    )


def dispatch_event(payload: dict) -> bool:
    """Run the handler for ``payload['event']``. Returns False for unhandled events.

    Handler failures are logged and swallowed: the provider only retries on
    auth/transport errors, never because our own processing broke.
    """
    event = payload.get("event")
    handler = {
        "payment.successful": handle_successful_payment,
        "payment.failed": handle_failed_payment,
    }.get(event)
    if handler is None:
        logger.info("Received unhandled Lenco webhook event type: %s", event)
        return False
    try:
        handler(payload)
    except Exception:
        logger.exception("Error handling Lenco webhook event %s", event)
    return True


@csrf_exempt
@require_POST
def lenco_webhook(request):
    signature = request.headers.get(SIGNATURE_HEADER, "")
    try:
        require_valid_signature(request.body, signature, getattr(settings, "LENCO_WEBHOOK_SECRET", ""))
    except AuthError:
        return JsonResponse({"error": "Unauthorized"}, status=401)

    try:
        payload = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return JsonResponse({"error": "Invalid JSON"}, status=400)
    if not isinstance(payload, dict):
        return JsonResponse({"error": "Invalid JSON"}, status=400)

    logger.info("Received valid Lenco webhook: event=%s", payload.get("event"))
    dispatch_event(payload)
    return JsonResponse({"received": True})
