from django.contrib import admin
from .models import Donation


@admin.register(Donation)
class DonationAdmin(admin.ModelAdmin):
    list_display = ("reference", "donor_name", "email", "amount", "currency", "status", "paid_at", "created_at")
    search_fields = ("reference", "payment_reference", "email", "first_name", "last_name")
    list_filter = ("status", "currency", "frequency", "created_at")
    readonly_fields = ("reference", "payment_reference", "minor_amount", "gateway_meta", "created_at", "updated_at")
    ordering = ("-created_at",)
