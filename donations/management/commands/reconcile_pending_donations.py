from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from donations.models import Donation
from donations.services import apply_verification
from payments.integrations.lenco import GatewayError, PaymentStatus, get_gateway


class Command(BaseCommand):
    help = "Reconcile PENDING donations against Lenco by verifying each reference"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=100, help="Max donations to process")
        parser.add_argument("--minutes", type=int, default=120, help="Only donations created within last N minutes (0=all)")

    def handle(self, *args, **opts):
        qs = Donation.objects.filter(
            status__in=[PaymentStatus.PENDING.value, PaymentStatus.UNKNOWN.value]
        ).order_by("created_at")
        if opts["minutes"] > 0:
            cutoff = timezone.now() - timedelta(minutes=opts["minutes"])
            qs = qs.filter(created_at__gte=cutoff)

        client = get_gateway()
        cnt = 0
        ok = 0
        for d in qs[: opts["max"]]:
            cnt += 1
            try:
                result = client.verify_payment(d.reference)
            except GatewayError as e:
                self.stdout.write(self.style.WARNING(f"{d.reference}: {e}"))
                continue
            apply_verification(result)
            if result.is_successful:
                ok += 1
                self.stdout.write(self.style.SUCCESS(f"Donation {d.reference} -> SUCCESS"))
            else:
                self.stdout.write(f"Donation {d.reference}: status={result.raw_status or result.status.value}")

        self.stdout.write(self.style.SUCCESS(f"Checked {cnt}, updated {ok} donations."))
