from datetime import timedelta
from decimal import Decimal

from django.contrib.auth.models import User
from django.test import TestCase
from django.utils import timezone

from .models import Plan, PurchaseRecord


class PurchaseRecordTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="bob")

    def test_new_record_is_pending(self):
        plan = Plan.objects.create(name="Order", amount=Decimal("10.00"))
        record = PurchaseRecord.objects.create(owner=self.user, plan=plan, amount=plan.amount)

        self.assertEqual(record.status, PurchaseRecord.PENDING)
        self.assertFalse(record.is_current)

    def test_one_off_order_has_no_validity_window(self):
        plan = Plan.objects.create(name="Order", amount=Decimal("10.00"))
        record = PurchaseRecord(owner=self.user, plan=plan, amount=plan.amount)

        self.assertFalse(plan.is_membership)
        self.assertEqual(record.validity_window(), (None, None))

    def test_membership_window_spans_plan_duration(self):
        plan = Plan.objects.create(name="Monthly", amount=Decimal("299.00"), duration_days=30)
        record = PurchaseRecord(owner=self.user, plan=plan, amount=plan.amount)
        now = timezone.now()

        self.assertEqual(record.validity_window(now), (now, now + timedelta(days=30)))

    def test_is_current_respects_end_of_window(self):
        plan = Plan.objects.create(name="Monthly", amount=Decimal("299.00"), duration_days=30)
        now = timezone.now()
        live = PurchaseRecord(owner=self.user, plan=plan, amount=plan.amount, status=PurchaseRecord.ACTIVE,
                              starts_at=now, ends_at=now + timedelta(days=1))
        ended = PurchaseRecord(owner=self.user, plan=plan, amount=plan.amount, status=PurchaseRecord.ACTIVE,
                               starts_at=now - timedelta(days=31), ends_at=now - timedelta(days=1))

        self.assertTrue(live.is_current)
        self.assertFalse(ended.is_current)
