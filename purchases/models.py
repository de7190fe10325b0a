from datetime import timedelta

from django.conf import settings
from django.db import models
from django.utils import timezone


class Plan(models.Model):
    """Something a user can pay for: a one-off order or a membership.

    ``duration_days`` set means membership; empty means one-off order.
    """
    name = models.CharField(max_length=128)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    duration_days = models.PositiveIntegerField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def is_membership(self) -> bool:
        return self.duration_days is not None

    def __str__(self):
        return f"{self.name} ({self.amount})"


class PurchaseRecord(models.Model):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    STATUS_CHOICES = [
        (PENDING, "Pending"),
        (ACTIVE, "Active"),
        (EXPIRED, "Expired"),
        (CANCELLED, "Cancelled"),
    ]

    owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="purchases")
    plan = models.ForeignKey(Plan, on_delete=models.PROTECT, related_name="purchases")
    amount = models.DecimalField(max_digits=12, decimal_places=2)  # price when the record was opened
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=PENDING, db_index=True)
    starts_at = models.DateTimeField(null=True, blank=True)
    ends_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)

    def validity_window(self, now=None):
        """Return ``(starts_at, ends_at)`` for an activation at ``now``."""
        now = now or timezone.now()
        if self.plan.duration_days is None:
            return None, None
        return now, now + timedelta(days=self.plan.duration_days)

    @property
    def is_current(self) -> bool:
        if self.status != self.ACTIVE:
            return False
        return self.ends_at is None or self.ends_at > timezone.now()

    def __str__(self):
        return f"Purchase#{self.pk} {self.plan_id} ({self.status})"
