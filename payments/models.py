from django.db import models
from django.utils import timezone


class TransactionQuerySet(models.QuerySet):
    def transition(self, pk, *, to_status, **fields) -> bool:
        """Move a pending transaction to a terminal status.

        Conditional on the row still being pending, so of two racing writers
        exactly one gets ``True``.
        """
        updated = self.filter(pk=pk, status=Transaction.PENDING).update(
            status=to_status, updated_at=timezone.now(), **fields
        )
        return updated == 1

    def attach_handle(self, pk, *, external_handle, **fields) -> bool:
        """Store the gateway handle once; a handle already set is never replaced."""
        updated = self.filter(pk=pk, external_handle__isnull=True).update(
            external_handle=external_handle, updated_at=timezone.now(), **fields
        )
        return updated == 1


class Transaction(models.Model):
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"
    STATUS_CHOICES = [
        (PENDING, "Pending"),
        (SETTLED, "Settled"),
        (FAILED, "Failed"),
    ]
    TERMINAL = (SETTLED, FAILED)

    METHOD_KHALTI = "khalti"
    METHOD_ESEWA = "esewa"
    METHOD_CHOICES = [
        (METHOD_KHALTI, "Khalti"),
        (METHOD_ESEWA, "eSewa"),
    ]
    HONORED_METHODS = (METHOD_KHALTI,)

    id = models.CharField(max_length=64, primary_key=True, editable=False)  # TXN-<user>-<ts>-<rand>
    purchase = models.ForeignKey("purchases.PurchaseRecord", on_delete=models.PROTECT, related_name="transactions")
    external_handle = models.CharField(max_length=64, null=True, blank=True, unique=True)  # gateway pidx
    amount = models.PositiveBigIntegerField()  # minor units (paisa)
    method = models.CharField(max_length=16, choices=METHOD_CHOICES, default=METHOD_KHALTI)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=PENDING, db_index=True)
    redirect_url = models.URLField(max_length=512, blank=True, default="")
    raw_response = models.JSONField(blank=True, null=True)
    failure_reason = models.CharField(max_length=255, blank=True, default="")
    settled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = TransactionQuerySet.as_manager()

    class Meta:
        ordering = ("-created_at",)

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL

    def __str__(self):
        return f"{self.id} ({self.status})"
