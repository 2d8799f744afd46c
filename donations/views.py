import json, logging
from urllib.parse import urlencode

from django.conf import settings
from django.http import Http404, HttpResponseBadRequest, JsonResponse
from django.shortcuts import redirect
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from payments.integrations.lenco import GatewayError, get_gateway
from payments.utils import format_amount, is_reference
from .services import (
    DonationIntent, ValidationError, apply_verification, callback_url, display_currency,
    ensure_reference_reusable, initiate, record_link_issued, verify_donation,
)

logger = logging.getLogger(__name__)


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8"))
    except Exception: return None


def _result_data(result) -> dict:
    return {
        "reference": result.reference,
        "amount": float(result.amount),
        "status": result.raw_status or result.status.value,
        "paidAt": result.paid_at.isoformat() if result.paid_at else None,
    }


@csrf_exempt
@require_POST
def initialize_donation(request):
    body = _json_body(request)
    if body is None:
        return JsonResponse({"error": "Invalid JSON body"}, status=400)
    try:
        intent = DonationIntent.from_payload(body)
        ensure_reference_reusable(intent.reference)
        result = initiate(intent, get_gateway())
        record_link_issued(intent, result)
    except ValidationError as e:
        return JsonResponse({"error": e.message, "field": e.field}, status=400)
    except GatewayError as e:
        return JsonResponse(
            {"error": f"Payment error: {e.message}", "reference": e.reference}, status=502
        )
    except Exception:
        logger.exception("Payment initialization error")
        return JsonResponse({"error": "Failed to initialize payment"}, status=500)

    return JsonResponse({
        "success": True,
        "paymentUrl": result.payment_url,
        "reference": result.reference,
        "paymentReference": result.payment_reference,
        "amount": float(result.amount),
        "formattedAmount": result.formatted_amount,
    })


@csrf_exempt
@require_http_methods(["GET", "POST"])
def verify_donation_view(request):
    if request.method == "POST":
        return _verify_from_notification(request)

    try:
        result = verify_donation(request.GET.get("reference"), get_gateway())
        apply_verification(result)
    except ValidationError as e:
        return JsonResponse({"error": e.message}, status=400)
    except GatewayError as e:
        return JsonResponse({"error": f"Verification error: {e.message}"}, status=502)
    except Exception:
        logger.exception("Payment verification request error")
        return JsonResponse({"error": "Failed to verify payment"}, status=500)

    if not result.is_successful:
        raw = result.raw_status or result.status.value
        logger.info("Payment verification failed from client: reference=%s status=%s", result.reference, raw)
        return JsonResponse(
            {
                "error": f"Payment verification failed: {raw}",
                "status": raw,
                "reference": result.reference,
            },
            status=400,
        )

    return JsonResponse({
        "success": True,
        "reference": result.reference,
        "amount": float(result.amount),
        "formattedAmount": format_amount(result.amount, display_currency()),
        "status": result.status.value,
        "paidAt": (result.paid_at or timezone.now()).isoformat(),
    })


def _verify_from_notification(request):
    """POST {reference}: re-check a payment with the provider and report the outcome."""
    body = _json_body(request)
    reference = body.get("reference") if isinstance(body, dict) else None
    try:
        result = verify_donation(reference, get_gateway())
        apply_verification(result)
    except ValidationError:
        return JsonResponse({"error": "Payment reference is required"}, status=400)
    except GatewayError as e:
        return JsonResponse({"error": f"Verification error: {e.message}"}, status=502)
    except Exception:
        logger.exception("Payment verification error")
        return JsonResponse({"error": "Failed to verify payment"}, status=500)

    if result.is_successful:
        return JsonResponse({
            "success": True,
            "message": "Payment verified successfully",
            "data": _result_data(result),
        })
    return JsonResponse({
        "success": False,
        "message": "Payment verification failed",
        "data": _result_data(result),
    })


@require_GET
def mock_payment(request):
    """Stand-in checkout page for LENCO_MOCK_MODE: sends the donor straight back."""
    if not getattr(settings, "LENCO_MOCK_MODE", False):
        raise Http404("Mock payments are disabled")
    reference = request.GET.get("ref", "")
    if not is_reference(reference):
        return HttpResponseBadRequest("Invalid reference")
    return redirect(f"{callback_url()}?{urlencode({'reference': reference})}")
