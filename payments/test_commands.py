from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth.models import User
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from purchases.models import Plan, PurchaseRecord

from .models import Transaction
from .tests import FakeResponse, khalti_lookup


class ReconcilePendingTransactionsCommandTests(TestCase):
    def setUp(self):
        user = User.objects.create_user(username="gita")
        plan = Plan.objects.create(name="Course", amount=Decimal("1000.00"))
        self.purchase = PurchaseRecord.objects.create(owner=user, plan=plan, amount=plan.amount)
        old = timezone.now() - timedelta(minutes=30)
        self.with_handle = self._txn("TXN-1-20261018100000-000000000000000A", "pidx-a", old)
        self.without_handle = self._txn("TXN-1-20261018100000-000000000000000B", None, old)
        self.fresh = self._txn("TXN-1-20261018100000-000000000000000C", "pidx-c", timezone.now())

    def _txn(self, pk, handle, created_at):
        txn = Transaction.objects.create(id=pk, purchase=self.purchase, amount=100000, external_handle=handle)
        Transaction.objects.filter(pk=pk).update(created_at=created_at)
        return txn

    def _run(self, response):
        out = StringIO()
        with patch("payments.integrations.khalti.requests.post", return_value=response) as post:
            call_command("reconcile_pending_transactions", "--sleep", "0", stdout=out)
        return out.getvalue(), post

    def test_settles_completed_and_fails_abandoned(self):
        output, post = self._run(khalti_lookup("Completed", pidx="pidx-a"))

        post.assert_called_once()
        self.assertEqual(Transaction.objects.get(pk=self.with_handle.pk).status, Transaction.SETTLED)
        self.assertEqual(Transaction.objects.get(pk=self.without_handle.pk).status, Transaction.FAILED)
        self.assertEqual(Transaction.objects.get(pk=self.fresh.pk).status, Transaction.PENDING)
        self.assertEqual(PurchaseRecord.objects.get().status, PurchaseRecord.ACTIVE)
        self.assertIn("Checked 2, settled 1, failed 1.", output)

    def test_gateway_outage_leaves_transactions_pending(self):
        output, _ = self._run(FakeResponse(503, {"detail": "down"}))

        self.assertEqual(Transaction.objects.get(pk=self.with_handle.pk).status, Transaction.PENDING)
        self.assertIn("settled 0", output)

    def test_nothing_to_do(self):
        Transaction.objects.all().delete()

        output, post = self._run(khalti_lookup("Completed"))

        post.assert_not_called()
        self.assertIn("No pending transactions", output)
