"""
Online-first, offline-fallback reconciliation between the token authority
and the local token cache.

Each remote attempt yields an `Outcome`:

    SUCCESS    the authority answered; the engine mirrors the result locally
    FALLBACK   transient failure; the engine repeats the operation locally
    PERMANENT  the authority refused for good; the engine re-raises

Only `RemoteError` is caught here. `BindingRequired` and every other
exception pass through untouched.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from .errors import (
    AccessError,
    AdminRequired,
    Deactivated,
    DeviceMismatch,
    Expired,
    InvalidAmount,
    InvalidCredentials,
    NetworkUnavailable,
    PaymentGatewayError,
    PaymentNotVerified,
    RegistrationConflict,
    RemoteError,
    RemoteTimeout,
    StorageError,
)
from .models import Identity, TokenRecord, parse_timestamp, utcnow
from .token_cache import LocalTokenCache

logger = logging.getLogger(__name__)

ONLINE_CACHE = "ONLINE_CACHE"

# Backend error codes that no local retry can overturn. `invalid_code` and
# `not_found` are absent: the authority may not know a code created offline.
PERMANENT_ERRORS: dict[str, type[AccessError]] = {
    "deactivated": Deactivated,
    "expired": Expired,
    "device_mismatch": DeviceMismatch,
    "invalid_credentials": InvalidCredentials,
    "conflict": RegistrationConflict,
    "payment_not_verified": PaymentNotVerified,
    "invalid_amount": InvalidAmount,
    "gateway_error": PaymentGatewayError,
    "forbidden": AdminRequired,
}

# Answers meaning the authority has no record of the code.
WITHDRAWN = {"invalid_code", "not_found"}


class Deadline:
    """End-to-end budget for one logical operation."""

    def __init__(self, seconds: float):
        self.expires = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires - time.monotonic())

    def bound(self, timeout: float) -> float:
        return min(timeout, self.remaining())


class OutcomeKind(Enum):
    SUCCESS = "success"
    FALLBACK = "fallback"
    PERMANENT = "permanent"


@dataclass
class Outcome:
    kind: OutcomeKind
    value: Any = None
    error: AccessError | None = None

    def raise_error(self):
        raise self.error or RemoteError()


def classify(exc: RemoteError) -> AccessError | None:
    """Translate a remote refusal into its permanent client error, if it is one."""
    error_cls = PERMANENT_ERRORS.get(getattr(exc, "code", ""))
    if error_cls is None:
        return None
    return error_cls(str(exc) or None)


class Reconciler:
    def __init__(self, cache: LocalTokenCache, offline: bool = False,
                 connectivity: Callable[[], bool] | None = None):
        self.cache = cache
        self.offline = offline
        self.connectivity = connectivity

    def is_online(self) -> bool:
        if self.offline:
            return False
        if self.connectivity is None:
            return True
        return bool(self.connectivity())

    def attempt(self, call: Callable[[float], Any], deadline: Deadline, timeout: float,
                validate: Callable[[Any], bool] | None = None) -> Outcome:
        """
        Run `call(timeout)` against the authority within `deadline`.

        `validate` rejects well-formed JSON that does not carry the expected
        fields; such answers are treated like any other transient failure.
        """
        if not self.is_online():
            return Outcome(OutcomeKind.FALLBACK, error=NetworkUnavailable())

        budget = deadline.bound(timeout)
        if budget <= 0:
            return Outcome(OutcomeKind.FALLBACK, error=RemoteTimeout())

        try:
            value = call(budget)
        except RemoteError as exc:
            permanent = classify(exc)
            if permanent is not None:
                return Outcome(OutcomeKind.PERMANENT, error=permanent)
            logger.info("Remote call failed (%s: %s); using local data", type(exc).__name__, exc)
            return Outcome(OutcomeKind.FALLBACK, error=exc)

        if validate is not None and not validate(value):
            logger.warning("Malformed response from token authority; using local data")
            return Outcome(OutcomeKind.FALLBACK, error=RemoteError("Malformed response."))
        return Outcome(OutcomeKind.SUCCESS, value=value)

    # -------------------------------------------------------------- mirroring

    def _mirror(self, record: TokenRecord) -> TokenRecord:
        try:
            return self.cache.upsert(record)
        except StorageError:
            # The remote result stands even when the shadow copy cannot be written.
            logger.warning("Could not mirror %s... into local cache", record.code[:8])
            return record

    def mirror_binding(self, code: str, fingerprint: str, identity: Identity) -> TokenRecord:
        """Record an online binding so the same device can verify offline later."""
        existing = self.cache.get(code)
        metadata = dict(existing.metadata) if existing else {}
        metadata.update({
            "full_name": identity.full_name,
            "exam_type": identity.allowed_exam_type,
            "generated_by": ONLINE_CACHE,
        })
        record = TokenRecord(
            code=code,
            is_active=True,
            device_fingerprint=fingerprint,
            bound_at=parse_timestamp(identity.bound_at) or (
                existing.bound_at if existing and existing.device_fingerprint == fingerprint else None
            ) or utcnow(),
            expires_at=parse_timestamp(identity.expires_at),
            created_at=existing.created_at if existing else utcnow(),
            metadata=metadata,
            id=existing.id if existing else "",
        )
        return self._mirror(record)

    def mirror_record(self, data: dict) -> TokenRecord | None:
        """Mirror an authoritative token summary returned by an admin action."""
        if not isinstance(data, dict):
            return None
        record = TokenRecord.from_dict(data)
        if not record.code:
            return None
        return self._mirror(record)

    def forget_withdrawn(self, code: str, error: AccessError | None) -> bool:
        """
        Drop the cached copy of a code the authority no longer knows.

        Only codes issued on this device while offline survive such an answer;
        anything that came from the authority was withdrawn there.
        """
        if getattr(error, "code", "") not in WITHDRAWN:
            return False
        record = self.cache.get(code)
        if record is None or record.metadata.get("offline"):
            return False
        self.cache.delete(code)
        logger.warning("Dropped %s... from local cache: unknown to the token authority", code[:8])
        return True

    def mirror_denial(self, code: str, error: AccessError) -> None:
        """Make the cache agree with a permanent remote refusal for a cached code."""
        changes = {}
        if isinstance(error, Deactivated):
            changes["is_active"] = False
        elif isinstance(error, Expired):
            changes["expires_at"] = utcnow()
        if not changes or self.cache.get(code) is None:
            return
        try:
            self.cache.update(code, **changes)
        except StorageError:
            logger.warning("Could not record remote denial for %s...", code[:8])

    # -------------------------------------------------------------- listing

    @staticmethod
    def merge(remote: list[TokenRecord], local: list[TokenRecord]) -> list[TokenRecord]:
        """Remote records first and authoritative; local-only codes appended; newest first."""
        merged: dict[str, TokenRecord] = {}
        for record in remote:
            merged.setdefault(record.code, record)
        for record in local:
            merged.setdefault(record.code, record)
        return sorted(merged.values(), key=lambda r: r.created_at, reverse=True)
