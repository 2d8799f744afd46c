from django.db import models

from payments.integrations.lenco import PaymentStatus


class Donation(models.Model):
    STATUS_CHOICES = [(s.value, s.value.upper()) for s in PaymentStatus]

    reference = models.CharField(max_length=64, unique=True)
    payment_reference = models.CharField(max_length=128, blank=True, default="")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    minor_amount = models.PositiveBigIntegerField(help_text="Amount in the smallest currency unit")
    currency = models.CharField(max_length=8, default="NGN")

    first_name = models.CharField(max_length=150)
    last_name = models.CharField(max_length=150)
    email = models.EmailField()
    phone = models.CharField(max_length=32, blank=True, default="")
    frequency = models.CharField(max_length=32, blank=True, default="")
    metadata = models.JSONField(default=dict, blank=True)

    status = models.CharField(
        max_length=16, choices=STATUS_CHOICES, db_index=True, default=PaymentStatus.PENDING.value
    )
    provider_status = models.CharField(max_length=32, blank=True, default="")
    failure_reason = models.CharField(max_length=255, blank=True, default="")
    gateway_meta = models.JSONField(default=dict, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)

    @property
    def donor_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.SUCCESS.value

    def __str__(self):
        return f"{self.reference} {self.status} {self.amount} {self.currency}"
