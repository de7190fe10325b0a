import time
from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from payments.models import Transaction
from payments.services import PaymentOrchestrator


class Command(BaseCommand):
    help = "Poll Khalti for stale pending transactions and reconcile terminal outcomes"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=5)

    def handle(self, *args, **opts):
        cutoff = timezone.now() - timedelta(minutes=opts["older_than_minutes"])
        qs = (
            Transaction.objects.filter(status=Transaction.PENDING, created_at__lt=cutoff)
            .order_by("created_at")[:opts["max"]]
        )
        pending = list(qs)
        if not pending:
            self.stdout.write(self.style.SUCCESS("No pending transactions to reconcile."))
            return

        orchestrator = PaymentOrchestrator()
        settled = failed = 0
        for txn in pending:
            if not txn.external_handle:
                # initiate never got a handle back (crash mid-call); the attempt is dead
                result = orchestrator.reconcile(txn.pk, "Abandoned")
                if result.status == Transaction.FAILED:
                    failed += 1
                    self.stdout.write(self.style.WARNING(f"{txn.pk}: no gateway handle, marked failed"))
                else:
                    self.stdout.write(f"{txn.pk}: {result.error}")
                continue

            result = orchestrator.verify_with_gateway(txn.pk)
            if result.success:
                settled += 1
                self.stdout.write(self.style.SUCCESS(f"{txn.pk} -> settled"))
            elif result.status == Transaction.FAILED:
                failed += 1
                self.stdout.write(self.style.WARNING(f"{txn.pk} -> failed ({result.error})"))
            else:
                self.stdout.write(f"{txn.pk}: {result.error}")
            time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Checked {len(pending)}, settled {settled}, failed {failed}."))
