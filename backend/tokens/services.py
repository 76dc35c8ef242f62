"""
Authoritative access-token state machine.

Every mutation is a single-row UPDATE. First binding is a conditional
write that only lands while the row is still unbound, so two devices
racing for the same fresh code cannot both win.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.db import DatabaseError, IntegrityError, models, transaction
from django.db.models import F, Q, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from .exceptions import Deactivated, DeviceMismatch, Expired, InvalidCode, NotFound, StorageError, TokenError
from .models import AccessToken, normalize_code

logger = logging.getLogger(__name__)

EXAM_TYPES = ("JAMB", "WAEC", "BOTH")
_MAX_CODE_ATTEMPTS = 5


class BindingRequired(Exception):
    """The code is unbound and the caller has not confirmed binding yet."""


def _short(code: str) -> str:
    return f"{code[:8]}..."


def normalize_exam_type(value: str | None) -> str:
    value = (value or "").strip().upper()
    return value if value in EXAM_TYPES else "BOTH"


def identity_for_token(token: AccessToken, message: str = "") -> dict:
    metadata = token.metadata or {}
    identity = {
        "username": token.code,
        "role": "student",
        "fullName": metadata.get("full_name") or "Student",
        "regNumber": token.code,
        "isTokenLogin": True,
        "allowedExamType": normalize_exam_type(metadata.get("exam_type")),
        "expiresAt": token.expires_at.isoformat() if token.expires_at else None,
        "boundAt": token.bound_at.isoformat() if token.bound_at else None,
        "remainingDays": token.remaining_days,
    }
    if message:
        identity["message"] = message
    return identity


def find_token(code: str) -> AccessToken:
    token = AccessToken.objects.filter(code=normalize_code(code)).first()
    if token is None:
        raise NotFound("Access token not found.")
    return token


def issue_token(
    *,
    generated_by: str,
    payment_ref: str = "",
    amount_paid: float = 0,
    exam_type: str = "BOTH",
    full_name: str = "",
    phone_number: str = "",
    email: str = "",
    extra: dict | None = None,
) -> AccessToken:
    """Create a fresh, unbound, active token. No device binding happens here."""
    metadata = {
        "payment_ref": payment_ref or f"MANUAL-{int(timezone.now().timestamp() * 1000)}",
        "amount_paid": amount_paid,
        "exam_type": normalize_exam_type(exam_type),
        "full_name": full_name,
        "phone_number": phone_number,
        "email": email,
        "generated_by": generated_by,
    }
    metadata.update(extra or {})

    for _ in range(_MAX_CODE_ATTEMPTS):
        try:
            with transaction.atomic():
                token = AccessToken.objects.create(
                    code=AccessToken.generate_code(),
                    is_active=True,
                    device_fingerprint=None,
                    expires_at=None,
                    metadata=metadata,
                )
        except IntegrityError:
            # Code collision; draw again.
            continue
        except DatabaseError as exc:
            logger.error("Could not store access token: %s", exc)
            raise StorageError() from exc
        logger.info("Issued access token %s (generated_by=%s)", _short(token.code), generated_by)
        return token

    raise StorageError("Could not allocate a unique access code.")


def verify_and_bind(code: str, fingerprint: str, confirm_binding: bool = False) -> tuple[AccessToken, bool]:
    """
    Judge a login attempt and bind the code on first confirmed use.

    Returns `(token, bound_now)`. Raises `BindingRequired` when the code is
    unbound and `confirm_binding` is false; raises a `TokenError` subclass
    for every denial.
    """
    code = normalize_code(code)
    fingerprint = (fingerprint or "").strip()
    if not code:
        raise InvalidCode()

    token = AccessToken.objects.filter(code=code).first()
    if token is None:
        logger.warning("Token login failed - unknown code %s", _short(code))
        raise InvalidCode()

    now = timezone.now()
    if not token.is_active:
        logger.warning("Token login failed - deactivated %s", _short(code))
        raise Deactivated()
    if token.is_expired(now):
        logger.warning("Token login failed - expired %s", _short(code))
        raise Expired()

    bound_now = False
    if not token.is_bound:
        if not fingerprint:
            raise TokenError("Missing device fingerprint.")
        if not confirm_binding:
            raise BindingRequired()

        expiry = now + timedelta(days=settings.ACCESS_CODE_VALIDITY_DAYS)
        updated = (
            AccessToken.objects.filter(pk=token.pk)
            .filter(Q(device_fingerprint__isnull=True) | Q(device_fingerprint=""))
            .update(
                device_fingerprint=fingerprint,
                bound_at=now,
                expires_at=Coalesce(F("expires_at"), Value(expiry, output_field=models.DateTimeField())),
            )
        )
        token.refresh_from_db()
        bound_now = updated == 1
        if bound_now:
            logger.info("Bound access token %s to a device", _short(code))
        else:
            logger.warning("Binding race lost for %s; re-evaluating stored binding", _short(code))

    if token.device_fingerprint != fingerprint:
        logger.warning("Token login failed - device mismatch %s", _short(code))
        raise DeviceMismatch()

    return token, bound_now


def set_token_status(code: str, is_active: bool) -> AccessToken:
    token = find_token(code)
    AccessToken.objects.filter(pk=token.pk).update(is_active=bool(is_active))
    token.refresh_from_db()
    logger.info("Access token %s is_active=%s", _short(token.code), token.is_active)
    return token


def reset_token_device(code: str) -> AccessToken:
    """Clear the binding so a new device can claim the code. Expiry is kept."""
    token = find_token(code)
    AccessToken.objects.filter(pk=token.pk).update(device_fingerprint=None, bound_at=None)
    token.refresh_from_db()
    logger.info("Reset device binding for %s", _short(token.code))
    return token


def delete_token(code: str) -> None:
    token = find_token(code)
    token.delete()
    logger.info("Deleted access token %s", _short(token.code))


def list_tokens() -> list[dict]:
    return [token.summary() for token in AccessToken.objects.order_by("-created_at")]
