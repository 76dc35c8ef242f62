import math
import secrets

from django.conf import settings
from django.db import models
from django.utils import timezone

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_GROUPS = 3
CODE_GROUP_LENGTH = 4


def normalize_code(raw: str) -> str:
    return (raw or "").strip().upper()


class AccessToken(models.Model):
    class GeneratedBy(models.TextChoices):
        ADMIN = "ADMIN", "Admin"
        STUDENT = "STUDENT", "Student purchase"
        ONLINE_CACHE = "ONLINE_CACHE", "Online cache"
        MANUAL = "manual", "Manual"

    code = models.CharField(max_length=32, unique=True)
    is_active = models.BooleanField(default=True)
    device_fingerprint = models.CharField(max_length=255, null=True, blank=True)

    bound_at = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["code"], name="access_token_code_idx"),
        ]

    @classmethod
    def generate_code(cls, prefix: str | None = None) -> str:
        prefix = normalize_code(prefix or settings.ACCESS_CODE_PREFIX)
        length = CODE_GROUPS * CODE_GROUP_LENGTH
        raw = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
        groups = [raw[i:i + CODE_GROUP_LENGTH] for i in range(0, length, CODE_GROUP_LENGTH)]
        return "-".join([prefix, *groups])

    @property
    def is_bound(self) -> bool:
        return bool(self.device_fingerprint)

    def is_expired(self, now=None) -> bool:
        if self.expires_at is None:
            return False
        return (now or timezone.now()) > self.expires_at

    @property
    def remaining_days(self) -> int | None:
        if self.expires_at is None:
            return None
        seconds = (self.expires_at - timezone.now()).total_seconds()
        return math.ceil(seconds / 86400)

    @property
    def status_message(self) -> str:
        if not self.is_active:
            return "Deactivated"
        if self.is_expired():
            return "Expired"
        if self.is_bound:
            return "Bound to a device"
        return "Unused"

    def summary(self) -> dict:
        return {
            "id": str(self.id),
            "token_code": self.code,
            "is_active": self.is_active,
            "is_bound": self.is_bound,
            "device_fingerprint": self.device_fingerprint,
            "bound_at": self.bound_at.isoformat() if self.bound_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "remaining_days": self.remaining_days,
            "status": self.status_message,
            "metadata": self.metadata or {},
        }

    def __str__(self) -> str:
        return f"{self.code} ({self.status_message.lower()})"
