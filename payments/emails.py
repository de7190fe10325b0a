import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

from .utils import from_minor_units

logger = logging.getLogger(__name__)


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _admin_recipients() -> List[str]:
    raw = getattr(settings, "PAYMENTS_ADMIN_EMAILS", None) or ""
    emails = [e.strip() for e in raw.split(",") if e and e.strip()]
    # Deduplicate while preserving order
    seen = set()
    uniq: List[str] = []
    for e in emails:
        if e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


def send_payment_confirmation(*, transaction_id: str) -> None:
    """Send a receipt to the purchaser and a notification to admins for a settled transaction.

    Runs after commit; a mail failure is logged and never undoes the settlement.
    """
    from .models import Transaction

    try:
        txn = Transaction.objects.select_related("purchase__owner", "purchase__plan").get(pk=transaction_id)
        purchase = txn.purchase
        context = {
            "transaction_id": txn.pk,
            "handle": txn.external_handle,
            "amount": from_minor_units(txn.amount),
            "plan_name": purchase.plan.name,
            "purchase_id": purchase.pk,
            "purchase_status": purchase.status,
            "starts_at": purchase.starts_at,
            "ends_at": purchase.ends_at,
            "settled_at": txn.settled_at,
        }
        from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None)
        owner_email = getattr(purchase.owner, "email", "")

        try:
            if owner_email:
                subject = f"Payment received: {purchase.plan.name} – NPR {context['amount']}"
                text = render_to_string("emails/payment_receipt.txt", context)
                html = render_to_string("emails/payment_receipt.html", context)
                msg = EmailMultiAlternatives(subject, text, from_email, [owner_email])
                msg.attach_alternative(html, "text/html")
                msg.send(fail_silently=_fail_silently())
        except Exception:
            logger.exception("Failed to send payment receipt to %s for %s", owner_email, txn.pk)

        try:
            admins = _admin_recipients()
            if admins:
                subject = f"New payment: {txn.pk} – NPR {context['amount']}"
                text = render_to_string("emails/payment_notification_admin.txt", context)
                msg = EmailMultiAlternatives(subject, text, from_email, admins)
                msg.send(fail_silently=_fail_silently())
        except Exception:
            logger.exception("Failed to send payment admin notification for %s", txn.pk)

    except Exception:
        logger.exception("send_payment_confirmation crashed for transaction=%s", transaction_id)
