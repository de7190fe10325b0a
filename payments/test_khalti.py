from unittest.mock import patch

import requests
from django.test import SimpleTestCase, override_settings

from .exceptions import GatewayError
from .integrations.khalti import KhaltiClient, KhaltiConfig, PaymentHandle, PaymentLookup
from .tests import FakeResponse, khalti_lookup, khalti_ok

CONFIG = KhaltiConfig(
    base_url="https://gateway.test/api/v2",
    secret_key="live_secret_key_x",
    website_url="https://shop.test",
    callback_base_url="https://shop.test",
    timeout=3,
)


class CreatePaymentHandleTests(SimpleTestCase):
    def setUp(self):
        self.client_ = KhaltiClient(CONFIG)

    def _create(self, amount=100000):
        return self.client_.create_payment_handle(
            amount_minor_units=amount,
            callback_url="https://shop.test/payments/callback/TXN-1/",
            site_url="https://shop.test",
            order_reference="TXN-1",
            order_label="Gold order",
        )

    def test_wire_format(self):
        with patch("payments.integrations.khalti.requests.post", return_value=khalti_ok("pidx-1")) as post:
            result = self._create()

        self.assertIsInstance(result, PaymentHandle)
        self.assertEqual(result.handle, "pidx-1")
        post.assert_called_once_with(
            "https://gateway.test/api/v2/epayment/initiate/",
            headers={"Authorization": "Key live_secret_key_x", "Content-Type": "application/json"},
            json={
                "return_url": "https://shop.test/payments/callback/TXN-1/",
                "website_url": "https://shop.test",
                "amount": 100000,
                "purchase_order_id": "TXN-1",
                "purchase_order_name": "Gold order",
            },
            timeout=3,
        )

    def test_rejects_non_positive_or_non_integer_amount_without_calling_gateway(self):
        with patch("payments.integrations.khalti.requests.post") as post:
            for amount in (0, -100, 1000.5, "100000", True):
                with self.subTest(amount=amount):
                    self.assertIsInstance(self._create(amount), GatewayError)
        post.assert_not_called()

    def test_http_error_carries_raw_body(self):
        body = {"amount": ["Amount should be greater than Rs. 10, that is 1000 paisa."], "error_key": "validation_error"}
        with patch("payments.integrations.khalti.requests.post", return_value=FakeResponse(400, body)):
            with self.assertLogs("payments.integrations.khalti", level="ERROR"):
                result = self._create()

        self.assertIsInstance(result, GatewayError)
        self.assertEqual(result.status_code, 400)
        self.assertEqual(result.raw, body)

    def test_non_json_body(self):
        with patch("payments.integrations.khalti.requests.post", return_value=FakeResponse(502, None, "<html>bad gateway</html>")):
            with self.assertLogs("payments.integrations.khalti", level="ERROR"):
                result = self._create()
        self.assertEqual(result.raw, {"raw": "<html>bad gateway</html>"})

        with patch("payments.integrations.khalti.requests.post", return_value=FakeResponse(200, None, "ok")):
            self.assertIsInstance(self._create(), GatewayError)

    def test_network_errors_do_not_escape(self):
        for exc in (requests.ConnectionError("refused"), requests.Timeout("slow")):
            with self.subTest(exc=type(exc).__name__):
                with patch("payments.integrations.khalti.requests.post", side_effect=exc):
                    result = self._create()
                self.assertIsInstance(result, GatewayError)
                self.assertIsNone(result.status_code)

    def test_missing_secret_key(self):
        client = KhaltiClient(KhaltiConfig(base_url="https://gateway.test", secret_key="",
                                           website_url="", callback_base_url=""))
        with patch("payments.integrations.khalti.requests.post") as post:
            result = client.create_payment_handle(1000, "https://x/", "https://x", "TXN-1", "x")
        self.assertIsInstance(result, GatewayError)
        post.assert_not_called()


class LookupTests(SimpleTestCase):
    def test_lookup_parses_status(self):
        with patch("payments.integrations.khalti.requests.post", return_value=khalti_lookup("Completed")) as post:
            result = KhaltiClient(CONFIG).lookup("abc123")

        self.assertIsInstance(result, PaymentLookup)
        self.assertTrue(result.is_completed)
        self.assertTrue(result.is_terminal)
        self.assertEqual(post.call_args.kwargs["json"], {"pidx": "abc123"})

    def test_non_terminal_statuses(self):
        for status in ("Pending", "Initiated"):
            lookup = PaymentLookup(handle="p", status=status, raw={})
            self.assertFalse(lookup.is_terminal)
        self.assertTrue(PaymentLookup(handle="p", status="User canceled", raw={}).is_terminal)

    def test_lookup_without_handle(self):
        self.assertIsInstance(KhaltiClient(CONFIG).lookup(None), GatewayError)


class KhaltiConfigTests(SimpleTestCase):
    @override_settings(KHALTI={
        "BASE_URL": "https://khalti.com/api/v2/", "SECRET_KEY": "k", "WEBSITE_URL": "https://shop.np",
        "CALLBACK_BASE_URL": "https://shop.np/", "TIMEOUT": "7",
    })
    def test_from_settings(self):
        config = KhaltiConfig.from_settings()

        self.assertEqual(config.base_url, "https://khalti.com/api/v2")
        self.assertEqual(config.callback_base_url, "https://shop.np")
        self.assertEqual(config.timeout, 7.0)
        self.assertFalse(config.lookup_on_callback)
