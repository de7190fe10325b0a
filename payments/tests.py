import json
import re
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import requests
from django.contrib.auth.models import User
from django.core import mail
from django.test import TestCase, override_settings
from django.utils import timezone

from purchases.models import Plan, PurchaseRecord

from .exceptions import ConflictError, GatewayError, InvalidState, NotFound, PaymentDeclined, ValidationError
from .models import Transaction
from .services import PaymentOrchestrator

TXN_ID_RE = re.compile(r"^TXN-\d+-\d{14}-[0-9A-F]{16}$")


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=None):
        self.status_code = status_code
        self._data = data
        self.text = text if text is not None else json.dumps(data)

    def json(self):
        if self._data is None:
            raise ValueError("No JSON object could be decoded")
        return self._data


def khalti_ok(pidx="abc123"):
    return FakeResponse(200, {
        "pidx": pidx,
        "payment_url": f"https://pay.khalti.test/?pidx={pidx}",
        "expires_at": "2026-10-18T16:00:00+05:45",
        "expires_in": 1800,
    })


def khalti_lookup(status, pidx="abc123", total_amount=100000):
    return FakeResponse(200, {"pidx": pidx, "total_amount": total_amount, "status": status, "fee": 0})


class OrchestratorTestMixin:
    def setUp(self):
        self.user = User.objects.create_user(username="ram", email="ram@example.com")
        self.plan = Plan.objects.create(name="Gold order", amount=Decimal("1000.00"))
        self.orchestrator = PaymentOrchestrator()

    def _initiate(self, pidx="abc123", plan=None, amount="1000.00"):
        plan = plan or self.plan
        with patch("payments.integrations.khalti.requests.post", return_value=khalti_ok(pidx)) as post:
            result = self.orchestrator.initiate(self.user.pk, plan.pk, amount)
        self.assertTrue(result.success, result.error)
        return result, post


class InitiateTests(OrchestratorTestMixin, TestCase):
    def test_success_persists_pending_transaction_with_handle(self):
        result, _ = self._initiate()

        self.assertRegex(result.transaction_id, TXN_ID_RE)
        self.assertEqual(result.handle, "abc123")
        self.assertEqual(result.redirect_url, "https://pay.khalti.test/?pidx=abc123")

        txn = Transaction.objects.get()
        self.assertEqual(txn.pk, result.transaction_id)
        self.assertEqual(txn.status, Transaction.PENDING)
        self.assertEqual(txn.external_handle, "abc123")
        self.assertEqual(txn.raw_response["pidx"], "abc123")
        self.assertEqual(txn.purchase.status, PurchaseRecord.PENDING)
        self.assertIsNone(txn.settled_at)

    def test_gateway_receives_amount_in_paisa(self):
        result, post = self._initiate()

        post.assert_called_once()
        self.assertEqual(post.call_args.args[0], "https://gateway.test/api/v2/epayment/initiate/")
        body = post.call_args.kwargs["json"]
        self.assertEqual(body["amount"], 100000)
        self.assertEqual(body["purchase_order_id"], result.transaction_id)
        self.assertEqual(body["purchase_order_name"], "Gold order")
        self.assertEqual(body["website_url"], "https://shop.test")
        self.assertEqual(body["return_url"], f"https://shop.test/payments/callback/{result.transaction_id}/")
        self.assertEqual(post.call_args.kwargs["headers"]["Authorization"], "Key test-secret")
        self.assertEqual(post.call_args.kwargs["timeout"], 5)
        self.assertEqual(Transaction.objects.get().amount, 100000)

    def test_amount_fixed_at_initiate_time(self):
        result, _ = self._initiate()
        Plan.objects.filter(pk=self.plan.pk).update(amount=Decimal("1500.00"))

        self.assertEqual(Transaction.objects.get(pk=result.transaction_id).amount, 100000)

    def test_gateway_500_marks_transaction_failed_and_keeps_raw_error(self):
        with patch("payments.integrations.khalti.requests.post",
                   return_value=FakeResponse(500, {"detail": "Internal error"})):
            with self.assertLogs("payments.services", level="ERROR") as cm:
                result = self.orchestrator.initiate(self.user.pk, self.plan.pk, "1000.00")

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, GatewayError)
        txn = Transaction.objects.get()
        self.assertEqual(txn.pk, result.transaction_id)
        self.assertEqual(txn.status, Transaction.FAILED)
        self.assertEqual(txn.raw_response["status_code"], 500)
        self.assertEqual(txn.raw_response["body"], {"detail": "Internal error"})
        self.assertIsNone(txn.external_handle)
        self.assertEqual(txn.purchase.status, PurchaseRecord.PENDING)
        self.assertIn(txn.pk, cm.output[0])

    def test_timeout_is_a_gateway_error(self):
        with patch("payments.integrations.khalti.requests.post", side_effect=requests.Timeout("read timed out")):
            result = self.orchestrator.initiate(self.user.pk, self.plan.pk, "1000.00")

        self.assertIsInstance(result.error, GatewayError)
        self.assertEqual(Transaction.objects.get().status, Transaction.FAILED)

    def test_missing_pidx_is_a_gateway_error(self):
        with patch("payments.integrations.khalti.requests.post",
                   return_value=FakeResponse(200, {"payment_url": "https://pay.khalti.test/"})):
            result = self.orchestrator.initiate(self.user.pk, self.plan.pk, "1000.00")

        self.assertIsInstance(result.error, GatewayError)
        txn = Transaction.objects.get()
        self.assertEqual(txn.status, Transaction.FAILED)
        self.assertEqual(txn.raw_response["body"], {"payment_url": "https://pay.khalti.test/"})

    def test_retry_after_failure_creates_new_transaction_for_same_purchase(self):
        with patch("payments.integrations.khalti.requests.post", return_value=FakeResponse(503, {})):
            failed = self.orchestrator.initiate(self.user.pk, self.plan.pk, "1000.00")
        retried, _ = self._initiate()

        self.assertNotEqual(failed.transaction_id, retried.transaction_id)
        self.assertEqual(failed.purchase_id, retried.purchase_id)
        self.assertEqual(Transaction.objects.get(pk=failed.transaction_id).status, Transaction.FAILED)
        self.assertEqual(PurchaseRecord.objects.count(), 1)

    def test_unknown_purchaser_and_purchasable(self):
        with patch("payments.integrations.khalti.requests.post") as post:
            no_user = self.orchestrator.initiate(9999, self.plan.pk, "1000.00")
            no_plan = self.orchestrator.initiate(self.user.pk, 9999, "1000.00")

        self.assertIsInstance(no_user.error, NotFound)
        self.assertIsInstance(no_plan.error, NotFound)
        post.assert_not_called()
        self.assertFalse(Transaction.objects.exists())
        self.assertFalse(PurchaseRecord.objects.exists())

    def test_inactive_plan_is_not_payable(self):
        self.plan.is_active = False
        self.plan.save()

        result = self.orchestrator.initiate(self.user.pk, self.plan.pk, "1000.00")

        self.assertIsInstance(result.error, InvalidState)
        self.assertFalse(Transaction.objects.exists())

    def test_validation_errors_touch_nothing(self):
        cases = [
            (self.user.pk, self.plan.pk, "999.99", "khalti"),
            (self.user.pk, self.plan.pk, "-5", "khalti"),
            (self.user.pk, self.plan.pk, "abc", "khalti"),
            (self.user.pk, self.plan.pk, "1000.00", "esewa"),
            ("x", self.plan.pk, "1000.00", "khalti"),
        ]
        for purchaser, purchasable, amount, method in cases:
            with self.subTest(amount=amount, method=method):
                result = self.orchestrator.initiate(purchaser, purchasable, amount, method)
                self.assertIsInstance(result.error, ValidationError)
        self.assertFalse(Transaction.objects.exists())
        self.assertFalse(PurchaseRecord.objects.exists())

    def test_pending_purchase_is_reused(self):
        first, _ = self._initiate("pidx-1")
        second, _ = self._initiate("pidx-2")

        self.assertEqual(first.purchase_id, second.purchase_id)
        self.assertEqual(Transaction.objects.filter(purchase_id=first.purchase_id).count(), 2)

    def test_pending_purchase_at_old_price_is_not_reused(self):
        first, _ = self._initiate("pidx-1")
        Plan.objects.filter(pk=self.plan.pk).update(amount=Decimal("1200.00"))
        second, _ = self._initiate("pidx-2", amount="1200.00")

        self.assertNotEqual(first.purchase_id, second.purchase_id)
        self.assertEqual(Transaction.objects.get(pk=second.transaction_id).amount, 120000)

    def test_active_membership_blocks_new_initiate(self):
        membership = Plan.objects.create(name="Monthly", amount=Decimal("299.00"), duration_days=30)
        result, _ = self._initiate("pidx-m", plan=membership, amount="299.00")
        self.orchestrator.reconcile(result.transaction_id, "Completed")

        again = self.orchestrator.initiate(self.user.pk, membership.pk, "299.00")

        self.assertIsInstance(again.error, InvalidState)

    def test_expired_membership_can_be_renewed(self):
        membership = Plan.objects.create(name="Monthly", amount=Decimal("299.00"), duration_days=30)
        past = timezone.now() - timedelta(days=40)
        PurchaseRecord.objects.create(owner=self.user, plan=membership, amount=membership.amount,
                                      status=PurchaseRecord.ACTIVE, starts_at=past, ends_at=past + timedelta(days=30))

        result, _ = self._initiate("pidx-r", plan=membership, amount="299.00")

        self.assertTrue(result.success)


class ReconcileTests(OrchestratorTestMixin, TestCase):
    def test_completed_settles_and_activates(self):
        result, _ = self._initiate()

        outcome = self.orchestrator.reconcile(result.transaction_id, "Completed")

        self.assertTrue(outcome.success)
        self.assertTrue(outcome.purchase_activated)
        txn = Transaction.objects.get(pk=result.transaction_id)
        self.assertEqual(txn.status, Transaction.SETTLED)
        self.assertIsNotNone(txn.settled_at)
        purchase = PurchaseRecord.objects.get(pk=result.purchase_id)
        self.assertEqual(purchase.status, PurchaseRecord.ACTIVE)
        self.assertIsNone(purchase.ends_at)

    def test_completed_token_is_case_insensitive(self):
        result, _ = self._initiate()

        self.assertTrue(self.orchestrator.reconcile(result.transaction_id, "completed").success)

    def test_membership_gets_validity_window(self):
        membership = Plan.objects.create(name="Yearly", amount=Decimal("2999.00"), duration_days=365)
        result, _ = self._initiate(plan=membership, amount="2999.00")

        self.orchestrator.reconcile(result.transaction_id, "Completed")

        purchase = PurchaseRecord.objects.get(pk=result.purchase_id)
        self.assertEqual(purchase.status, PurchaseRecord.ACTIVE)
        self.assertEqual(purchase.ends_at - purchase.starts_at, timedelta(days=365))
        self.assertEqual(purchase.starts_at, Transaction.objects.get().settled_at)

    def test_second_call_is_idempotent(self):
        result, _ = self._initiate()
        self.orchestrator.reconcile(result.transaction_id, "Completed")
        txn = Transaction.objects.get()
        purchase = PurchaseRecord.objects.get()

        again = self.orchestrator.reconcile(result.transaction_id, "Completed")

        self.assertTrue(again.success)
        self.assertTrue(again.already_processed)
        self.assertFalse(again.purchase_activated)
        txn_after = Transaction.objects.get()
        purchase_after = PurchaseRecord.objects.get()
        self.assertEqual(txn_after.settled_at, txn.settled_at)
        self.assertEqual(txn_after.updated_at, txn.updated_at)
        self.assertEqual(purchase_after.updated_at, purchase.updated_at)

    def test_user_canceled_fails_transaction_and_leaves_purchase_pending(self):
        result, _ = self._initiate()

        outcome = self.orchestrator.reconcile(result.transaction_id, "User canceled")

        self.assertFalse(outcome.success)
        self.assertIsInstance(outcome.error, PaymentDeclined)
        txn = Transaction.objects.get()
        self.assertEqual(txn.status, Transaction.FAILED)
        self.assertEqual(txn.failure_reason, "Gateway reported: User canceled")
        self.assertEqual(PurchaseRecord.objects.get().status, PurchaseRecord.PENDING)

    def test_unknown_transaction_is_not_found_and_mutates_nothing(self):
        result, _ = self._initiate()

        outcome = self.orchestrator.reconcile("TXN-1-20260101000000-0000000000000000", "Completed")

        self.assertIsInstance(outcome.error, NotFound)
        self.assertEqual(Transaction.objects.get().status, Transaction.PENDING)
        self.assertEqual(PurchaseRecord.objects.get().status, PurchaseRecord.PENDING)

    def test_blank_transaction_id_is_a_validation_error(self):
        self.assertIsInstance(self.orchestrator.reconcile("", "Completed").error, ValidationError)

    def test_terminal_states_never_flip(self):
        failed, _ = self._initiate("pidx-f")
        self.orchestrator.reconcile(failed.transaction_id, "Expired")
        settled, _ = self._initiate("pidx-s")
        self.orchestrator.reconcile(settled.transaction_id, "Completed")

        revive = self.orchestrator.reconcile(failed.transaction_id, "Completed")
        undo = self.orchestrator.reconcile(settled.transaction_id, "User canceled")

        self.assertFalse(revive.success)
        self.assertIsInstance(revive.error, InvalidState)
        self.assertTrue(undo.success)
        self.assertTrue(undo.already_processed)
        self.assertEqual(Transaction.objects.get(pk=failed.transaction_id).status, Transaction.FAILED)
        self.assertEqual(Transaction.objects.get(pk=settled.transaction_id).status, Transaction.SETTLED)

    def test_stale_concurrent_writer_loses_with_conflict(self):
        result, _ = self._initiate()
        stale = Transaction.objects.get(pk=result.transaction_id)
        self.orchestrator.reconcile(result.transaction_id, "Completed")

        for status in ("User canceled", "Completed"):
            with self.subTest(status=status), \
                    patch.object(PaymentOrchestrator, "_lock_transaction", return_value=stale):
                outcome = self.orchestrator.reconcile(result.transaction_id, status)
            self.assertIsInstance(outcome.error, ConflictError)

        txn = Transaction.objects.get()
        self.assertEqual(txn.status, Transaction.SETTLED)
        self.assertEqual(PurchaseRecord.objects.get().status, PurchaseRecord.ACTIVE)

    def test_conflict_rolls_back_settlement(self):
        result, _ = self._initiate()

        with patch("payments.services.PurchaseRecord.objects.filter") as flt:
            flt.return_value.update.return_value = 0
            outcome = self.orchestrator.reconcile(result.transaction_id, "Completed")

        self.assertIsInstance(outcome.error, ConflictError)
        txn = Transaction.objects.get()
        self.assertEqual(txn.status, Transaction.PENDING)
        self.assertIsNone(txn.settled_at)

    def test_second_attempt_settling_active_purchase_is_recorded(self):
        first, _ = self._initiate("pidx-1")
        second, _ = self._initiate("pidx-2")
        self.orchestrator.reconcile(first.transaction_id, "Completed")

        with self.assertLogs("payments.services", level="WARNING"):
            outcome = self.orchestrator.reconcile(second.transaction_id, "Completed")

        self.assertTrue(outcome.success)
        self.assertFalse(outcome.purchase_activated)
        self.assertEqual(Transaction.objects.get(pk=second.transaction_id).status, Transaction.SETTLED)

    @override_settings(PAYMENTS_ADMIN_EMAILS="ops@example.com, OPS@example.com")
    def test_settlement_sends_confirmation_after_commit(self):
        result, _ = self._initiate()

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            self.orchestrator.reconcile(result.transaction_id, "Completed")

        self.assertEqual(len(callbacks), 1)
        self.assertEqual(len(mail.outbox), 2)
        self.assertEqual(mail.outbox[0].to, ["ram@example.com"])
        self.assertIn("1000.00", mail.outbox[0].body)
        self.assertEqual(mail.outbox[1].to, ["ops@example.com"])

    def test_failure_sends_no_mail(self):
        result, _ = self._initiate()

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            self.orchestrator.reconcile(result.transaction_id, "User canceled")

        self.assertEqual(callbacks, [])
        self.assertEqual(mail.outbox, [])


class VerifyWithGatewayTests(OrchestratorTestMixin, TestCase):
    def _verify(self, transaction_id, response):
        with patch("payments.integrations.khalti.requests.post", return_value=response) as post:
            outcome = self.orchestrator.verify_with_gateway(transaction_id)
        return outcome, post

    def test_completed_lookup_settles(self):
        result, _ = self._initiate()

        outcome, post = self._verify(result.transaction_id, khalti_lookup("Completed"))

        self.assertTrue(outcome.success)
        self.assertEqual(post.call_args.args[0], "https://gateway.test/api/v2/epayment/lookup/")
        self.assertEqual(post.call_args.kwargs["json"], {"pidx": "abc123"})
        self.assertEqual(Transaction.objects.get().status, Transaction.SETTLED)

    def test_pending_lookup_changes_nothing(self):
        result, _ = self._initiate()

        outcome, _ = self._verify(result.transaction_id, khalti_lookup("Pending"))

        self.assertIsInstance(outcome.error, InvalidState)
        self.assertEqual(Transaction.objects.get().status, Transaction.PENDING)

    def test_expired_lookup_fails(self):
        result, _ = self._initiate()

        outcome, _ = self._verify(result.transaction_id, khalti_lookup("Expired"))

        self.assertFalse(outcome.success)
        self.assertEqual(Transaction.objects.get().status, Transaction.FAILED)

    def test_amount_mismatch_is_not_settled(self):
        result, _ = self._initiate()

        with self.assertLogs("payments.services", level="ERROR"):
            outcome, _ = self._verify(result.transaction_id, khalti_lookup("Completed", total_amount=1000))

        self.assertIsInstance(outcome.error, ConflictError)
        self.assertEqual(Transaction.objects.get().status, Transaction.PENDING)

    def test_lookup_error_leaves_transaction_pending(self):
        result, _ = self._initiate()

        outcome, _ = self._verify(result.transaction_id, FakeResponse(404, {"detail": "Not found."}))

        self.assertIsInstance(outcome.error, GatewayError)
        self.assertEqual(Transaction.objects.get().status, Transaction.PENDING)

    def test_settled_transaction_skips_gateway(self):
        result, _ = self._initiate()
        self.orchestrator.reconcile(result.transaction_id, "Completed")

        outcome, post = self._verify(result.transaction_id, khalti_lookup("Expired"))

        self.assertTrue(outcome.already_processed)
        post.assert_not_called()

    def test_unknown_transaction(self):
        outcome, post = self._verify("nope", khalti_lookup("Completed"))

        self.assertIsInstance(outcome.error, NotFound)
        post.assert_not_called()
