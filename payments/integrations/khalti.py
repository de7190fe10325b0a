import json
import logging
from dataclasses import dataclass
from typing import Optional, Union

import requests
from django.conf import settings
from requests import RequestException

from ..exceptions import GatewayError

logger = logging.getLogger(__name__)

COMPLETED = "Completed"
# Lookup statuses after which the gateway will not change its mind
TERMINAL_FAILURE_STATUSES = {"Expired", "User canceled", "Refunded", "Partially Refunded"}


@dataclass(frozen=True)
class KhaltiConfig:
    base_url: str
    secret_key: str
    website_url: str
    callback_base_url: str
    timeout: float = 15.0
    lookup_on_callback: bool = False

    @classmethod
    def from_settings(cls) -> "KhaltiConfig":
        conf = getattr(settings, "KHALTI", {}) or {}
        return cls(
            base_url=str(conf.get("BASE_URL", "")).rstrip("/"),
            secret_key=conf.get("SECRET_KEY", ""),
            website_url=conf.get("WEBSITE_URL", ""),
            callback_base_url=str(conf.get("CALLBACK_BASE_URL", "")).rstrip("/"),
            timeout=float(conf.get("TIMEOUT", 15)),
            lookup_on_callback=bool(conf.get("LOOKUP_ON_CALLBACK", False)),
        )


@dataclass(frozen=True)
class PaymentHandle:
    handle: str
    redirect_url: str
    raw: dict


@dataclass(frozen=True)
class PaymentLookup:
    handle: str
    status: str
    raw: dict

    @property
    def is_completed(self) -> bool:
        return self.status == COMPLETED

    @property
    def is_terminal(self) -> bool:
        return self.is_completed or self.status in TERMINAL_FAILURE_STATUSES


def _hint(status_code: int) -> str:
    if status_code == 401: return "Check Authorization (Key <secret>)."
    if status_code == 400: return "Bad request: amount/return_url/purchase_order_id."
    if status_code == 404: return "Unknown endpoint or payment handle."
    if status_code >= 500: return f"Gateway error {status_code}."
    return f"HTTP {status_code}"


class KhaltiClient:
    """Thin wrapper over Khalti ePayment v2.

    Methods return a result or a ``GatewayError``; nothing raised here escapes
    to the caller.
    """

    def __init__(self, config: KhaltiConfig):
        self.config = config

    def _headers(self) -> dict:
        return {
            "Authorization": f"Key {self.config.secret_key}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, payload: dict):
        """POST and decode. Returns ``(status_code, data)`` or a ``GatewayError``."""
        if not self.config.secret_key:
            return GatewayError("Missing Khalti secret key")
        url = f"{self.config.base_url}{path}"
        try:
            resp = requests.post(url, headers=self._headers(), json=payload, timeout=self.config.timeout)
        except requests.Timeout as e:
            logger.warning("Khalti request to %s timed out after %ss", path, self.config.timeout)
            return GatewayError(f"Gateway timed out: {e}", raw={"error": str(e)})
        except RequestException as e:
            logger.warning("Khalti request to %s failed: %s", path, e)
            return GatewayError(f"Gateway request failed: {e}", raw={"error": str(e)})
        try:
            data, decoded = resp.json(), True
        except ValueError:
            data, decoded = {"raw": resp.text}, False
        if not 200 <= resp.status_code < 300:
            logger.error("Khalti %s failed: status=%s body=%s", path, resp.status_code, json.dumps(data)[:800])
            return GatewayError(
                f"{_hint(resp.status_code)} Response: {json.dumps(data)[:800]}",
                raw=data, status_code=resp.status_code,
            )
        if not decoded or not isinstance(data, dict):
            return GatewayError("Gateway returned a non-JSON body", raw=data, status_code=resp.status_code)
        return resp.status_code, data

    def create_payment_handle(self, amount_minor_units: int, callback_url: str, site_url: str,
                              order_reference: str, order_label: str) -> Union[PaymentHandle, GatewayError]:
        if isinstance(amount_minor_units, bool) or not isinstance(amount_minor_units, int) or amount_minor_units <= 0:
            return GatewayError(f"Amount must be a positive integer in paisa, got {amount_minor_units!r}")
        payload = {
            "return_url": callback_url,
            "website_url": site_url,
            "amount": amount_minor_units,
            "purchase_order_id": order_reference,
            "purchase_order_name": order_label,
        }
        result = self._post("/epayment/initiate/", payload)
        if isinstance(result, GatewayError):
            return result
        status_code, data = result
        handle = data.get("pidx")
        redirect_url = data.get("payment_url")
        if not handle or not redirect_url:
            logger.error("Khalti initiate for %s returned no pidx/payment_url: %s", order_reference, data)
            return GatewayError("Gateway response missing pidx or payment_url", raw=data, status_code=status_code)
        return PaymentHandle(handle=handle, redirect_url=redirect_url, raw=data)

    def lookup(self, handle: Optional[str]) -> Union[PaymentLookup, GatewayError]:
        if not handle:
            return GatewayError("Cannot look up a payment without a handle")
        result = self._post("/epayment/lookup/", {"pidx": handle})
        if isinstance(result, GatewayError):
            return result
        status_code, data = result
        status = data.get("status")
        if not status:
            return GatewayError("Gateway lookup response missing status", raw=data, status_code=status_code)
        return PaymentLookup(handle=handle, status=str(status), raw=data)
