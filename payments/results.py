from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .exceptions import PaymentError


@dataclass(frozen=True, slots=True)
class InitiateResult:
    """
    Outcome of starting a payment.

    On success ``handle``/``redirect_url`` come from the gateway. ``transaction_id``
    is also set on gateway failures, since the failed attempt stays in the ledger.
    """
    success: bool
    transaction_id: Optional[str] = None
    handle: Optional[str] = None
    redirect_url: Optional[str] = None
    purchase_id: Optional[int] = None
    error: Optional[PaymentError] = None

    @classmethod
    def failure(cls, error: PaymentError, *, transaction_id=None, purchase_id=None) -> "InitiateResult":
        return cls(success=False, transaction_id=transaction_id, purchase_id=purchase_id, error=error)


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """
    Outcome of applying a gateway-reported status.

    already_processed: True when the transaction was settled before this call
    purchase_activated: True when this call moved the purchase record to active
    """
    success: bool
    transaction_id: str
    status: Optional[str] = None
    purchase_id: Optional[int] = None
    already_processed: bool = False
    purchase_activated: bool = False
    error: Optional[PaymentError] = None
