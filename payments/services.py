# payments/services.py
import logging
from decimal import Decimal, InvalidOperation

from django.contrib.auth import get_user_model
from django.db import transaction
from django.urls import reverse
from django.utils import timezone

from purchases.models import Plan, PurchaseRecord

from .emails import send_payment_confirmation
from .exceptions import (
    ConflictError, GatewayError, InvalidState, NotFound, PaymentDeclined, PaymentError, ValidationError,
)
from .integrations.khalti import COMPLETED, KhaltiClient, KhaltiConfig
from .models import Transaction
from .results import InitiateResult, ReconcileResult
from .utils import gen_transaction_id, to_decimal, to_minor_units

logger = logging.getLogger(__name__)


def is_completed(status) -> bool:
    return str(status or "").strip().lower() == COMPLETED.lower()


def _amount_matches(reported, expected: int) -> bool:
    if reported is None:
        return True
    try:
        return Decimal(str(reported)) == expected
    except InvalidOperation:
        return False


def _as_id(value, field):
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", errors={field: ["Enter a whole number."]})


class PaymentOrchestrator:
    """Creates payment attempts and applies gateway outcomes to the ledger.

    ``initiate`` and ``reconcile`` never raise for business failures; they
    return result objects whose ``error`` is one of ``payments.exceptions``.
    Database faults propagate.
    """

    def __init__(self, config: KhaltiConfig = None, client: KhaltiClient = None):
        self.config = config or KhaltiConfig.from_settings()
        self.client = client or KhaltiClient(self.config)

    def callback_url(self, transaction_id: str) -> str:
        return f"{self.config.callback_base_url}{reverse('payments:callback', args=[transaction_id])}"

    # ---------- initiate ----------
    def initiate(self, purchaser_id, purchasable_id, amount, method=Transaction.METHOD_KHALTI) -> InitiateResult:
        try:
            purchase, txn = self._open_attempt(purchaser_id, purchasable_id, amount, method)
        except PaymentError as e:
            logger.warning("Initiate rejected purchaser=%s purchasable=%s: %s", purchaser_id, purchasable_id, e)
            return InitiateResult.failure(e)

        outcome = self.client.create_payment_handle(
            amount_minor_units=txn.amount,
            callback_url=self.callback_url(txn.id),
            site_url=self.config.website_url,
            order_reference=txn.id,
            order_label=purchase.plan.name,
        )

        if isinstance(outcome, GatewayError):
            Transaction.objects.transition(
                txn.pk, to_status=Transaction.FAILED,
                raw_response=outcome.as_payload(), failure_reason=outcome.message[:255],
            )
            logger.error(
                "Gateway initiate failed txn=%s purchasable=%s purchase=%s: %s",
                txn.id, purchasable_id, purchase.pk, outcome.message,
            )
            return InitiateResult.failure(outcome, transaction_id=txn.id, purchase_id=purchase.pk)

        if not Transaction.objects.attach_handle(
            txn.pk, external_handle=outcome.handle, redirect_url=outcome.redirect_url, raw_response=outcome.raw,
        ):
            logger.error("Transaction %s already carries a gateway handle; refusing to overwrite", txn.id)
            return InitiateResult.failure(
                ConflictError("Transaction already has a payment handle"), transaction_id=txn.id, purchase_id=purchase.pk,
            )

        logger.info("Initiated txn=%s pidx=%s purchase=%s amount=%s", txn.id, outcome.handle, purchase.pk, txn.amount)
        return InitiateResult(
            success=True, transaction_id=txn.id, handle=outcome.handle,
            redirect_url=outcome.redirect_url, purchase_id=purchase.pk,
        )

    @transaction.atomic
    def _open_attempt(self, purchaser_id, purchasable_id, amount, method):
        if method not in Transaction.HONORED_METHODS:
            raise ValidationError(f"Unsupported payment method: {method}", errors={"method": ["Not supported."]})
        purchaser_id = _as_id(purchaser_id, "purchaser_id")
        purchasable_id = _as_id(purchasable_id, "purchasable_id")
        try:
            requested = to_decimal(amount)
        except ValueError as e:
            raise ValidationError(str(e), errors={"amount": ["Enter a number."]})
        if requested <= 0 or requested.as_tuple().exponent < -2:
            raise ValidationError("Amount must be positive with at most 2 decimal places",
                                  errors={"amount": ["Invalid amount."]})

        # Per-purchaser lock keeps concurrent initiates from opening duplicate records
        owner = get_user_model().objects.select_for_update().filter(pk=purchaser_id).first()
        if owner is None:
            raise NotFound(f"Purchaser {purchaser_id} not found")
        plan = Plan.objects.filter(pk=purchasable_id).first()
        if plan is None:
            raise NotFound(f"Purchasable {purchasable_id} not found")
        if not plan.is_active:
            raise InvalidState(f"Purchasable {purchasable_id} is not available for purchase")
        if requested != plan.amount:
            raise ValidationError(
                f"Amount {requested} does not match price {plan.amount}", errors={"amount": ["Price mismatch."]},
            )

        if plan.is_membership:
            current = next(
                (p for p in PurchaseRecord.objects.filter(owner=owner, plan=plan, status=PurchaseRecord.ACTIVE)
                 if p.is_current),
                None,
            )
            if current is not None:
                raise InvalidState(f"Membership already active until {current.ends_at:%Y-%m-%d}")

        purchase = (
            PurchaseRecord.objects
            .filter(owner=owner, plan=plan, status=PurchaseRecord.PENDING, amount=plan.amount)
            .order_by("-created_at")
            .first()
        )
        if purchase is None:
            purchase = PurchaseRecord.objects.create(owner=owner, plan=plan, amount=plan.amount)

        txn = Transaction.objects.create(
            id=gen_transaction_id(owner.pk),
            purchase=purchase,
            amount=to_minor_units(plan.amount),
            method=method,
        )
        return purchase, txn

    # ---------- reconcile ----------
    def reconcile(self, transaction_id, reported_status) -> ReconcileResult:
        transaction_id = str(transaction_id or "").strip()
        try:
            if not transaction_id:
                raise ValidationError("transaction_id is required", errors={"transaction_id": ["Required."]})
            with transaction.atomic():
                result = self._apply(transaction_id, reported_status)
        except PaymentError as e:
            logger.warning("Reconcile txn=%s status=%r failed: %s", transaction_id, reported_status, e)
            return ReconcileResult(success=False, transaction_id=transaction_id, error=e)
        if result.error is not None:
            logger.info("Reconcile txn=%s status=%r -> %s", transaction_id, reported_status, result.error)
        return result

    def _lock_transaction(self, transaction_id):
        return Transaction.objects.select_for_update().filter(pk=transaction_id).first()

    def _apply(self, transaction_id, reported_status) -> ReconcileResult:
        txn = self._lock_transaction(transaction_id)
        if txn is None:
            raise NotFound(f"Transaction {transaction_id} not found")

        if txn.status == Transaction.SETTLED:
            return ReconcileResult(success=True, transaction_id=txn.pk, status=txn.status,
                                   purchase_id=txn.purchase_id, already_processed=True)
        if txn.status == Transaction.FAILED:
            return ReconcileResult(success=False, transaction_id=txn.pk, status=txn.status,
                                   purchase_id=txn.purchase_id,
                                   error=InvalidState(f"Transaction {txn.pk} already failed"))

        if not is_completed(reported_status):
            reason = f"Gateway reported: {reported_status or 'no status'}"[:255]
            if not Transaction.objects.transition(txn.pk, to_status=Transaction.FAILED, failure_reason=reason):
                raise ConflictError(f"Transaction {txn.pk} changed while failing it")
            logger.info("Transaction %s failed (%s), purchase %s left as is", txn.pk, reason, txn.purchase_id)
            return ReconcileResult(success=False, transaction_id=txn.pk, status=Transaction.FAILED,
                                   purchase_id=txn.purchase_id,
                                   error=PaymentDeclined(f"Payment not completed: {reported_status or 'unknown'}"))

        now = timezone.now()
        purchase = PurchaseRecord.objects.select_for_update().get(pk=txn.purchase_id)
        if not Transaction.objects.transition(txn.pk, to_status=Transaction.SETTLED, settled_at=now):
            raise ConflictError(f"Transaction {txn.pk} changed while settling it")

        activated = False
        if purchase.status == PurchaseRecord.PENDING:
            starts_at, ends_at = purchase.validity_window(now)
            activated = PurchaseRecord.objects.filter(pk=purchase.pk, status=PurchaseRecord.PENDING).update(
                status=PurchaseRecord.ACTIVE, starts_at=starts_at, ends_at=ends_at, updated_at=now,
            ) == 1
            if not activated:
                raise ConflictError(f"Purchase {purchase.pk} changed while activating it")
        else:
            # Money moved but the record is no longer waiting for it; leave it for manual review
            logger.warning("Transaction %s settled against purchase %s in status %s",
                           txn.pk, purchase.pk, purchase.status)

        txn_pk = txn.pk
        transaction.on_commit(lambda: send_payment_confirmation(transaction_id=txn_pk))
        logger.info("Transaction %s settled; purchase %s activated=%s", txn.pk, purchase.pk, activated)
        return ReconcileResult(success=True, transaction_id=txn.pk, status=Transaction.SETTLED,
                               purchase_id=purchase.pk, purchase_activated=activated)

    # ---------- gateway-driven verification ----------
    def verify_with_gateway(self, transaction_id) -> ReconcileResult:
        """Ask the gateway for the outcome instead of trusting the caller."""
        transaction_id = str(transaction_id or "").strip()
        txn = Transaction.objects.filter(pk=transaction_id).first() if transaction_id else None
        if txn is None:
            return ReconcileResult(success=False, transaction_id=transaction_id,
                                   error=NotFound(f"Transaction {transaction_id} not found"))
        if txn.is_terminal:
            # reconcile answers terminal transactions without touching them
            return self.reconcile(txn.pk, COMPLETED)
        if not txn.external_handle:
            return ReconcileResult(success=False, transaction_id=txn.pk, status=txn.status,
                                   purchase_id=txn.purchase_id,
                                   error=InvalidState(f"Transaction {txn.pk} has no gateway handle yet"))

        lookup = self.client.lookup(txn.external_handle)
        if isinstance(lookup, GatewayError):
            logger.error("Gateway lookup failed txn=%s pidx=%s: %s", txn.pk, txn.external_handle, lookup.message)
            return ReconcileResult(success=False, transaction_id=txn.pk, status=txn.status,
                                   purchase_id=txn.purchase_id, error=lookup)
        if not lookup.is_terminal:
            return ReconcileResult(success=False, transaction_id=txn.pk, status=txn.status,
                                   purchase_id=txn.purchase_id,
                                   error=InvalidState(f"Gateway still reports {lookup.status}"))

        reported_amount = lookup.raw.get("total_amount")
        if lookup.is_completed and not _amount_matches(reported_amount, txn.amount):
            logger.error("Amount mismatch txn=%s ledger=%s gateway=%s", txn.pk, txn.amount, reported_amount)
            return ReconcileResult(success=False, transaction_id=txn.pk, status=txn.status,
                                   purchase_id=txn.purchase_id,
                                   error=ConflictError(f"Gateway amount {reported_amount} != ledger amount {txn.amount}"))

        return self.reconcile(txn.pk, lookup.status)
