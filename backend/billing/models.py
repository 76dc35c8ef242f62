from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models


class AccessPlan(models.Model):
    name = models.CharField(max_length=64, default="Exam access")
    currency = models.CharField(max_length=8, default="ngn")

    # Minor currency units (kobo / cents).
    min_amount = models.PositiveIntegerField(default=0)
    active = models.BooleanField(default=True)

    updated_at = models.DateTimeField(auto_now=True)

    @classmethod
    def get_solo(cls) -> "AccessPlan":
        obj, _ = cls.objects.get_or_create(
            id=1,
            defaults={
                "name": "Exam access",
                "currency": settings.ACCESS_CODE_CURRENCY,
                "min_amount": settings.ACCESS_CODE_MIN_AMOUNT,
                "active": True,
            },
        )
        return obj

    def accepts(self, amount: int, currency: str = "") -> bool:
        if currency and currency.lower() != self.currency.lower():
            return False
        return amount >= self.min_amount

    def clean(self) -> None:
        super().clean()
        if not (self.currency or "").strip():
            raise ValidationError({"currency": "Currency cannot be empty."})


class PaymentReceipt(models.Model):
    reference = models.CharField(max_length=255, unique=True)
    token = models.ForeignKey(
        "tokens.AccessToken",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_receipts",
    )
    gateway_id = models.CharField(max_length=255, blank=True, default="")
    amount = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=8, blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return self.reference
