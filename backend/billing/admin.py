from django.contrib import admin

from .models import AccessPlan, PaymentReceipt


@admin.register(AccessPlan)
class AccessPlanAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "currency", "min_amount", "active", "updated_at")
    list_filter = ("active", "currency")


@admin.register(PaymentReceipt)
class PaymentReceiptAdmin(admin.ModelAdmin):
    list_display = ("id", "reference", "token", "amount", "currency", "gateway_id", "created_at")
    search_fields = ("reference", "gateway_id", "token__code")
