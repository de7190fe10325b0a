import json
import logging
from urllib.parse import urlencode

from django.conf import settings
from django.http import JsonResponse
from django.shortcuts import redirect
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from .forms import InitiatePaymentForm, VerifyPaymentForm
from .integrations.khalti import COMPLETED
from .services import PaymentOrchestrator

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "validation_error": 400,
    "payment_declined": 400,
    "not_found": 404,
    "invalid_state": 409,
    "conflict": 409,
    "gateway_error": 502,
}
# Callback statuses that mean "not decided yet"; ask the gateway instead of failing
UNDECIDED_STATUSES = {"pending", "initiated"}


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8"))
    except Exception: return None


def _orchestrator() -> PaymentOrchestrator:
    return PaymentOrchestrator()


def _failure(message, *, errors=None, status=400, data=None):
    body = {"success": False, "message": message, "errors": errors or {}}
    if data:
        body["data"] = data
    return JsonResponse(body, status=status)


def _error_response(error, *, data=None):
    errors = dict(error.errors)
    if getattr(error, "raw", None) is not None:
        errors.setdefault("gateway", error.raw)
    return _failure(error.message, errors=errors, status=STATUS_BY_CODE.get(error.code, 400), data=data)


@csrf_exempt
@require_POST
def initiate_payment_view(request):
    body = _json_body(request)
    if not isinstance(body, dict):
        return _failure("Invalid JSON body")
    form = InitiatePaymentForm(body)
    if not form.is_valid():
        return _failure("Invalid payment request", errors=form.errors.get_json_data())

    cd = form.cleaned_data
    result = _orchestrator().initiate(cd["purchaser_id"], cd["purchasable_id"], cd["amount"], cd["method"])
    if not result.success:
        data = {"transaction_id": result.transaction_id} if result.transaction_id else None
        return _error_response(result.error, data=data)

    return JsonResponse({
        "success": True,
        "message": "Payment initiated",
        "data": {
            "handle": result.handle,
            "transaction_id": result.transaction_id,
            "redirect_url": result.redirect_url,
        },
    })


@csrf_exempt
@require_POST
def verify_payment_view(request):
    body = _json_body(request)
    if not isinstance(body, dict):
        return _failure("Invalid JSON body")
    form = VerifyPaymentForm(body)
    if not form.is_valid():
        return _failure("Invalid verification request", errors=form.errors.get_json_data())

    result = _orchestrator().reconcile(form.cleaned_data["transaction_id"], form.cleaned_data["status"])
    data = {"order_id": result.purchase_id, "transaction_id": result.transaction_id}
    if not result.success:
        return _error_response(result.error, data=data)
    message = "Payment already verified" if result.already_processed else "Payment verified"
    return JsonResponse({"success": True, "message": message, "data": data})


@require_GET
def payment_callback_view(request, transaction_id=None):
    """Browser return from the gateway.

    The query ``status`` is optional; without it the redirect itself counts as
    the completion signal unless ``KHALTI["LOOKUP_ON_CALLBACK"]`` asks for a
    gateway lookup.
    """
    txn_id = transaction_id or request.GET.get("purchase_order_id") or request.GET.get("transaction_id") or ""
    status = (request.GET.get("status") or "").strip()
    orchestrator = _orchestrator()

    if orchestrator.config.lookup_on_callback or status.lower() in UNDECIDED_STATUSES:
        result = orchestrator.verify_with_gateway(txn_id)
    else:
        result = orchestrator.reconcile(txn_id, status or COMPLETED)

    if not result.success:
        logger.info("Callback for txn=%s status=%r not settled: %s", txn_id, status, result.error)
    target = settings.PAYMENTS_SUCCESS_URL if result.success else settings.PAYMENTS_FAILURE_URL
    query = {"transaction_id": txn_id}
    if result.status:
        query["status"] = result.status
    return redirect(f"{target}?{urlencode(query)}")
