import json
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth.models import User
from django.test import TestCase, override_settings
from django.urls import reverse

from purchases.models import Plan, PurchaseRecord

from .models import Transaction
from .tests import FakeResponse, khalti_lookup, khalti_ok


class PaymentEndpointTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="sita", email="sita@example.com")
        self.plan = Plan.objects.create(name="Ebook", amount=Decimal("1000.00"))

    def _post(self, name, payload):
        return self.client.post(reverse(name), data=json.dumps(payload), content_type="application/json")

    def _initiate(self, pidx="abc123"):
        payload = {"purchaser_id": self.user.pk, "purchasable_id": self.plan.pk, "amount": 1000.00, "method": "khalti"}
        with patch("payments.integrations.khalti.requests.post", return_value=khalti_ok(pidx)):
            return self._post("payments:initiate", payload)

    def test_initiate_returns_handle_and_redirect(self):
        resp = self._initiate()

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["handle"], "abc123")
        self.assertEqual(body["data"]["redirect_url"], "https://pay.khalti.test/?pidx=abc123")
        self.assertEqual(body["data"]["transaction_id"], Transaction.objects.get().pk)

    def test_initiate_rejects_malformed_body_before_touching_ledger(self):
        resp = self.client.post(reverse("payments:initiate"), data="not json", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

        resp = self._post("payments:initiate", {"purchaser_id": self.user.pk, "amount": "abc"})
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertIn("purchasable_id", body["errors"])
        self.assertIn("amount", body["errors"])
        self.assertFalse(Transaction.objects.exists())

    def test_initiate_unknown_purchasable_is_404(self):
        resp = self._post("payments:initiate", {"purchaser_id": self.user.pk, "purchasable_id": 999, "amount": "10"})

        self.assertEqual(resp.status_code, 404)
        self.assertFalse(resp.json()["success"])

    def test_initiate_gateway_failure_is_502_with_failed_transaction(self):
        payload = {"purchaser_id": self.user.pk, "purchasable_id": self.plan.pk, "amount": "1000.00"}
        with patch("payments.integrations.khalti.requests.post",
                   return_value=FakeResponse(500, {"detail": "boom"})):
            resp = self._post("payments:initiate", payload)

        self.assertEqual(resp.status_code, 502)
        body = resp.json()
        self.assertEqual(body["errors"]["gateway"], {"detail": "boom"})
        txn = Transaction.objects.get()
        self.assertEqual(body["data"]["transaction_id"], txn.pk)
        self.assertEqual(txn.status, Transaction.FAILED)

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get(reverse("payments:initiate")).status_code, 405)

    def test_verify_completed(self):
        txn_id = self._initiate().json()["data"]["transaction_id"]

        resp = self._post("payments:verify", {"transaction_id": txn_id, "status": "Completed"})

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        purchase = PurchaseRecord.objects.get()
        self.assertEqual(body["data"], {"order_id": purchase.pk, "transaction_id": txn_id})
        self.assertEqual(purchase.status, PurchaseRecord.ACTIVE)

        again = self._post("payments:verify", {"transaction_id": txn_id, "status": "Completed"})
        self.assertEqual(again.status_code, 200)
        self.assertEqual(again.json()["message"], "Payment already verified")

    def test_verify_cancelled(self):
        txn_id = self._initiate().json()["data"]["transaction_id"]

        resp = self._post("payments:verify", {"transaction_id": txn_id, "status": "User canceled"})

        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])
        self.assertEqual(Transaction.objects.get().status, Transaction.FAILED)
        self.assertEqual(PurchaseRecord.objects.get().status, PurchaseRecord.PENDING)

    def test_verify_unknown_transaction_is_404(self):
        resp = self._post("payments:verify", {"transaction_id": "TXN-0-0-0", "status": "Completed"})

        self.assertEqual(resp.status_code, 404)

    def test_verify_missing_fields(self):
        resp = self._post("payments:verify", {"status": "Completed"})

        self.assertEqual(resp.status_code, 400)
        self.assertIn("transaction_id", resp.json()["errors"])


class PaymentCallbackTests(TestCase):
    def setUp(self):
        user = User.objects.create_user(username="hari")
        plan = Plan.objects.create(name="Ticket", amount=Decimal("500.00"))
        purchase = PurchaseRecord.objects.create(owner=user, plan=plan, amount=plan.amount)
        self.txn = Transaction.objects.create(
            id="TXN-1-20261018120000-ABCDEF0123456789", purchase=purchase, amount=50000,
            external_handle="pidx-cb",
        )

    def test_callback_without_status_settles_and_redirects_to_success(self):
        resp = self.client.get(reverse("payments:callback", args=[self.txn.pk]))

        self.assertEqual(resp.status_code, 302)
        self.assertTrue(resp.url.startswith("/payment/success/?"))
        self.assertIn(f"transaction_id={self.txn.pk}", resp.url)
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, Transaction.SETTLED)

    def test_callback_path_id_wins_over_gateway_transaction_id(self):
        url = reverse("payments:callback", args=[self.txn.pk])
        resp = self.client.get(url, {"pidx": "pidx-cb", "transaction_id": "GW-TXN-9", "status": "Completed"})

        self.assertTrue(resp.url.startswith("/payment/success/"))
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, Transaction.SETTLED)

    def test_callback_user_canceled_redirects_to_failure(self):
        resp = self.client.get(reverse("payments:callback", args=[self.txn.pk]), {"status": "User canceled"})

        self.assertTrue(resp.url.startswith("/payment/failure/"))
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, Transaction.FAILED)
        self.assertEqual(self.txn.purchase.status, PurchaseRecord.PENDING)

    def test_callback_by_query_parameter(self):
        resp = self.client.get(reverse("payments:callback_query"), {"purchase_order_id": self.txn.pk})

        self.assertTrue(resp.url.startswith("/payment/success/"))

    def test_callback_unknown_transaction_goes_to_failure(self):
        resp = self.client.get(reverse("payments:callback", args=["TXN-9-1-X"]))

        self.assertTrue(resp.url.startswith("/payment/failure/"))
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, Transaction.PENDING)

    def test_pending_status_asks_gateway_instead_of_failing(self):
        with patch("payments.integrations.khalti.requests.post",
                   return_value=khalti_lookup("Pending", pidx="pidx-cb", total_amount=50000)) as post:
            resp = self.client.get(reverse("payments:callback", args=[self.txn.pk]), {"status": "Pending"})

        post.assert_called_once()
        self.assertTrue(resp.url.startswith("/payment/failure/"))
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, Transaction.PENDING)

    @override_settings(KHALTI={
        "BASE_URL": "https://gateway.test/api/v2", "SECRET_KEY": "test-secret",
        "WEBSITE_URL": "https://shop.test", "CALLBACK_BASE_URL": "https://shop.test",
        "TIMEOUT": 5, "LOOKUP_ON_CALLBACK": True,
    })
    def test_lookup_on_callback_ignores_query_status(self):
        with patch("payments.integrations.khalti.requests.post",
                   return_value=khalti_lookup("User canceled", pidx="pidx-cb", total_amount=50000)):
            resp = self.client.get(reverse("payments:callback", args=[self.txn.pk]), {"status": "Completed"})

        self.assertTrue(resp.url.startswith("/payment/failure/"))
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, Transaction.FAILED)
