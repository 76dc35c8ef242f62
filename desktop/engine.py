"""
Token lifecycle engine for the ACE CBT desktop client.

Every operation tries the token authority first and, when it cannot be
reached, repeats the same operation against the local token cache. The
online/offline branching lives here once; `Reconciler` decides which branch
applies.

Typical use:

    engine = TokenEngine(ClientSettings.from_config())
    try:
        identity = engine.verify_and_bind(code)
    except BindingRequired:
        if user_confirms():
            identity = engine.verify_and_bind(code, confirm_binding=True)
"""

import logging
import math
import threading
from enum import Enum
from functools import partial

from .api_client import TokenAuthorityClient
from .codes import generate_code
from .config import ClientSettings
from .device import DeviceIdentityProvider, MachineFingerprint, resolve_fingerprint
from .errors import (
    AdminRequired,
    BindingRequired,
    Deactivated,
    DeviceMismatch,
    Expired,
    InvalidAmount,
    InvalidCode,
    InvalidCredentials,
)
from .models import Contact, Identity, TokenRecord, normalize_code, utcnow
from .reconcile import Deadline, OutcomeKind, Reconciler
from .session import LocalAdminCredentials, LocalStudents, SessionStore
from .storage import LocalStore
from .token_cache import LocalTokenCache

logger = logging.getLogger(__name__)

OFFLINE_PREFIX = "OFFLINE"
OFFLINE_NAME = "Candidate (Offline)"
EXAM_TYPES = {"JAMB", "WAEC", "BOTH"}


class Origin(str, Enum):
    ADMIN = "ADMIN"
    STUDENT = "STUDENT"


def _exam_type(value) -> str:
    value = str(value or "").strip().upper()
    return value if value in EXAM_TYPES else "BOTH"


def _remaining_days(record: TokenRecord) -> int | None:
    if record.expires_at is None:
        return None
    seconds = (record.expires_at - utcnow()).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def _identity_for_record(record: TokenRecord, message: str = "") -> Identity:
    return Identity(
        username=record.code,
        role="student",
        full_name=record.metadata.get("full_name") or OFFLINE_NAME,
        reg_number=record.code,
        is_token_login=True,
        allowed_exam_type=_exam_type(record.metadata.get("exam_type")),
        expires_at=record.expires_at.isoformat() if record.expires_at else None,
        bound_at=record.bound_at.isoformat() if record.bound_at else None,
        remaining_days=_remaining_days(record),
        message=message,
    )


def _is_identity(payload) -> bool:
    return isinstance(payload, dict) and (bool(payload.get("requires_binding")) or bool(payload.get("username")))


def _has_token(payload) -> bool:
    return isinstance(payload, dict) and bool(payload.get("token"))


def _is_list(payload) -> bool:
    return isinstance(payload, list)


class TokenEngine:
    def __init__(
        self,
        settings: ClientSettings,
        remote: TokenAuthorityClient | None = None,
        store: LocalStore | None = None,
        device: DeviceIdentityProvider | None = None,
        connectivity=None,
    ):
        self.settings = settings
        self.store = store or LocalStore(settings.data_dir)
        self.remote = remote or TokenAuthorityClient(settings.backend_url, timeout=settings.http_timeout)
        self.device = device or MachineFingerprint(self.store)
        self.cache = LocalTokenCache(self.store)
        self.sessions = SessionStore(self.store)
        self.students = LocalStudents(self.store)
        self.admin_credentials = LocalAdminCredentials(self.store)
        if connectivity is None and settings.check_connectivity:
            connectivity = partial(self.remote.check_connection, timeout=settings.http_timeout)
        self.reconciler = Reconciler(self.cache, offline=settings.force_offline, connectivity=connectivity)
        # Serialises overlapping login attempts (e.g. a double-clicked button).
        self._login_lock = threading.Lock()

    def _deadline(self) -> Deadline:
        return Deadline(self.settings.operation_timeout)

    def _attempt(self, call, validate=None, deadline: Deadline | None = None):
        return self.reconciler.attempt(
            call, deadline or self._deadline(), self.settings.http_timeout, validate=validate
        )

    def _require_admin(self) -> Identity:
        identity = self.sessions.get_current()
        if identity is None or not identity.is_admin:
            raise AdminRequired()
        return identity

    def _store_new_code(self, prefix: str, generated_by: str, amount: float, exam_type: str,
                        contact: Contact, reference: str = "") -> TokenRecord:
        code = generate_code(prefix)
        while self.cache.get(code) is not None:
            code = generate_code(prefix)
        record = TokenRecord(
            code=code,
            id=str(int(utcnow().timestamp() * 1000)),
            metadata={
                "generated_by": generated_by,
                "payment_ref": reference,
                "amount_paid": amount,
                "exam_type": _exam_type(exam_type),
                "full_name": contact.full_name,
                "phone_number": contact.phone_number,
                "email": contact.email,
                "offline": True,
            },
        )
        self.cache.upsert(record)
        logger.info("Issued %s... locally (%s)", code[:8], generated_by)
        return record

    # ---------------------------------------------------------------------
    # Verification and binding
    # ---------------------------------------------------------------------

    def verify_and_bind(self, code: str, confirm_binding: bool = False) -> Identity:
        """
        Verify an access code for this device, binding it on first use.

        Raises BindingRequired when the code is unbound and `confirm_binding`
        is false; call again with `confirm_binding=True` once the user agrees.
        """
        code = normalize_code(code)
        if not code:
            raise InvalidCode()

        with self._login_lock:
            deadline = self._deadline()
            fingerprint = resolve_fingerprint(self.device, deadline.bound(self.settings.device_timeout))

            outcome = self._attempt(
                lambda timeout: self.remote.login_with_token(code, fingerprint, confirm_binding, timeout=timeout),
                validate=_is_identity,
                deadline=deadline,
            )
            if outcome.kind is OutcomeKind.SUCCESS:
                if outcome.value.get("requires_binding"):
                    raise BindingRequired(code)
                identity = Identity.from_dict(outcome.value)
                self.reconciler.mirror_binding(code, fingerprint, identity)
            elif outcome.kind is OutcomeKind.PERMANENT:
                self.reconciler.mirror_denial(code, outcome.error)
                logger.info("Token authority refused %s...: %s", code[:8], type(outcome.error).__name__)
                outcome.raise_error()
            else:
                if self.reconciler.forget_withdrawn(code, outcome.error):
                    raise InvalidCode()
                identity = self._verify_local(code, fingerprint, confirm_binding)

            self.sessions.set_current(identity)
        return identity

    def _verify_local(self, code: str, fingerprint: str, confirm_binding: bool) -> Identity:
        record = self.cache.get(code)
        if record is None:
            raise InvalidCode()
        if not record.is_active:
            raise Deactivated()
        if record.is_expired():
            raise Expired()

        message = ""
        if not record.is_bound:
            if not confirm_binding:
                raise BindingRequired(code)
            record = self.cache.bind_if_unbound(code, fingerprint, utcnow())
            if record is None:
                raise InvalidCode()
            message = "Access code bound to this device."
            logger.info("Bound %s... offline", code[:8])

        if record.device_fingerprint != fingerprint:
            raise DeviceMismatch()
        return _identity_for_record(record, message=message)

    # ---------------------------------------------------------------------
    # Creation
    # ---------------------------------------------------------------------

    def create(self, origin: Origin, amount: float, exam_type: str, contact: Contact,
               reference: str = "") -> str:
        """Issue a fresh, unbound access code and return it."""
        if Origin(origin) is Origin.STUDENT:
            return self.purchase(reference, amount, exam_type, contact)

        admin = self._require_admin()
        outcome = self._attempt(
            lambda timeout: self.remote.generate_token(
                reference, amount, _exam_type(exam_type), contact.full_name, contact.phone_number,
                contact.email, auth_token=admin.auth_token, timeout=timeout,
            ),
            validate=_has_token,
        )
        if outcome.kind is OutcomeKind.PERMANENT:
            outcome.raise_error()
        if outcome.kind is OutcomeKind.FALLBACK:
            return self._store_new_code(
                self.settings.code_prefix, Origin.ADMIN.value, amount, exam_type, contact, reference
            ).code

        code = normalize_code(outcome.value["token"])
        self.reconciler.mirror_record({
            "token_code": code,
            "metadata": {
                "generated_by": Origin.ADMIN.value,
                "payment_ref": reference,
                "amount_paid": amount,
                "exam_type": _exam_type(exam_type),
                "full_name": contact.full_name,
                "phone_number": contact.phone_number,
                "email": contact.email,
            },
        })
        return code

    def purchase(self, reference: str, amount: float, exam_type: str, contact: Contact) -> str:
        """
        Exchange a payment reference for an access code.

        Payments can only be verified online. With `force_offline` set the
        purchase is simulated locally, still subject to the minimum amount.
        """
        outcome = self._attempt(
            lambda timeout: self.remote.verify_payment(
                reference, contact.email, contact.full_name, contact.phone_number,
                _exam_type(exam_type), timeout=timeout,
            ),
            validate=_has_token,
        )
        if outcome.kind is OutcomeKind.SUCCESS:
            code = normalize_code(outcome.value["token"])
            self.reconciler.mirror_record({
                "token_code": code,
                "metadata": {
                    "generated_by": Origin.STUDENT.value,
                    "payment_ref": reference,
                    "exam_type": _exam_type(exam_type),
                    "full_name": contact.full_name,
                },
            })
            return code
        if outcome.kind is OutcomeKind.PERMANENT or not self.settings.force_offline:
            outcome.raise_error()

        if amount < self.settings.min_amount:
            raise InvalidAmount()
        return self._store_new_code(
            OFFLINE_PREFIX, Origin.STUDENT.value, amount, exam_type, contact, reference
        ).code

    # ---------------------------------------------------------------------
    # Admin token management
    # ---------------------------------------------------------------------

    def set_active(self, code: str, active: bool) -> TokenRecord:
        admin = self._require_admin()
        code = normalize_code(code)
        outcome = self._attempt(
            lambda timeout: self.remote.set_token_status(code, active, auth_token=admin.auth_token, timeout=timeout)
        )
        if outcome.kind is OutcomeKind.PERMANENT:
            outcome.raise_error()
        if outcome.kind is OutcomeKind.SUCCESS:
            record = self.reconciler.mirror_record((outcome.value or {}).get("token"))
            if record is not None:
                return record

        if outcome.kind is OutcomeKind.FALLBACK and self.reconciler.forget_withdrawn(code, outcome.error):
            raise InvalidCode()
        record = self.cache.update(code, is_active=bool(active))
        if record is None:
            raise InvalidCode()
        return record

    def reset_device(self, code: str) -> TokenRecord:
        """Clear the binding so another device can claim the code. Expiry is left alone."""
        admin = self._require_admin()
        code = normalize_code(code)
        outcome = self._attempt(
            lambda timeout: self.remote.reset_token_device(code, auth_token=admin.auth_token, timeout=timeout)
        )
        if outcome.kind is OutcomeKind.PERMANENT:
            outcome.raise_error()
        if outcome.kind is OutcomeKind.SUCCESS:
            record = self.reconciler.mirror_record((outcome.value or {}).get("token"))
            if record is not None:
                return record

        if outcome.kind is OutcomeKind.FALLBACK and self.reconciler.forget_withdrawn(code, outcome.error):
            raise InvalidCode()
        record = self.cache.update(code, device_fingerprint=None, bound_at=None)
        if record is None:
            raise InvalidCode()
        logger.info("Reset device binding for %s...", code[:8])
        return record

    def delete(self, code: str) -> None:
        admin = self._require_admin()
        code = normalize_code(code)
        outcome = self._attempt(
            lambda timeout: self.remote.delete_token(code, auth_token=admin.auth_token, timeout=timeout)
        )
        if outcome.kind is OutcomeKind.PERMANENT:
            outcome.raise_error()

        if outcome.kind is OutcomeKind.FALLBACK and self.reconciler.forget_withdrawn(code, outcome.error):
            return
        removed = self.cache.delete(code)
        if outcome.kind is OutcomeKind.FALLBACK and not removed:
            raise InvalidCode()

    def list_tokens(self) -> list[TokenRecord]:
        admin = self._require_admin()
        outcome = self._attempt(
            lambda timeout: self.remote.list_tokens(auth_token=admin.auth_token, timeout=timeout),
            validate=_is_list,
        )
        if outcome.kind is OutcomeKind.PERMANENT:
            outcome.raise_error()

        local = self.cache.all()
        if outcome.kind is OutcomeKind.FALLBACK:
            return Reconciler.merge([], local)
        remote = [TokenRecord.from_dict(item) for item in outcome.value if isinstance(item, dict)]
        # Only codes issued offline may be missing from the authority's answer.
        offline_only = [r for r in local if r.metadata.get("offline")]
        return Reconciler.merge([r for r in remote if r.code], offline_only)

    # ---------------------------------------------------------------------
    # Accounts and session
    # ---------------------------------------------------------------------

    def _remote_only(self, call, validate=None):
        outcome = self._attempt(call, validate=validate)
        if outcome.kind is not OutcomeKind.SUCCESS:
            outcome.raise_error()
        return outcome.value

    def login(self, username: str, password: str, role: str = "student") -> Identity:
        role = (role or "student").strip().lower()
        if self.settings.force_offline:
            identity = self._login_local(username, password, role)
        else:
            payload = self._remote_only(
                lambda timeout: self.remote.login(username, password, role, timeout=timeout),
                validate=_is_identity,
            )
            identity = Identity.from_dict(payload)
        self.sessions.set_current(identity)
        logger.info("Signed in %s (%s)", identity.username, identity.role)
        return identity

    def _login_local(self, username: str, password: str, role: str) -> Identity:
        if role == "admin":
            stored = self.admin_credentials.check(username, password)
            if stored is None:
                raise InvalidCredentials("Invalid Admin credentials (Offline)")
            return Identity(username=stored, role="admin", full_name="System Administrator",
                            reg_number="ADMIN-001")

        student = self.students.find(username)
        # Offline students sign in with their registration number as password.
        if student is None or password.strip().upper() != student.reg_number.upper():
            raise InvalidCredentials("Student not found in local database.")
        return student

    def update_admin_credentials(self, current_username: str, current_password: str,
                                 new_username: str, new_password: str) -> None:
        if not new_username.strip() or not new_password:
            raise InvalidCredentials("New username and password are required.")
        if self.settings.force_offline:
            if self.admin_credentials.check(current_username, current_password) is None:
                raise InvalidCredentials("Current admin credentials are incorrect.")
            self.admin_credentials.update(new_username, new_password)
            return

        admin = self._require_admin()
        self._remote_only(
            lambda timeout: self.remote.update_credentials(
                current_username, current_password, new_username, new_password,
                auth_token=admin.auth_token, timeout=timeout,
            )
        )

    def register_student(self, full_name: str, reg_number: str, exam_type: str = "BOTH") -> Identity:
        reg_number = reg_number.strip().upper()
        if self.settings.force_offline:
            return self.students.add(Identity(
                username=reg_number,
                role="student",
                full_name=full_name.strip(),
                reg_number=reg_number,
                allowed_exam_type=_exam_type(exam_type),
            ))
        payload = self._remote_only(
            lambda timeout: self.remote.register_student(full_name, reg_number, _exam_type(exam_type),
                                                         timeout=timeout),
            validate=_is_identity,
        )
        return Identity.from_dict(payload)

    def list_students(self) -> list[Identity]:
        admin = self._require_admin()
        if self.settings.force_offline:
            return self.students.all()
        payload = self._remote_only(
            lambda timeout: self.remote.list_students(auth_token=admin.auth_token, timeout=timeout),
            validate=_is_list,
        )
        return [Identity.from_dict(item) for item in payload if isinstance(item, dict)]

    def delete_student(self, username: str) -> None:
        admin = self._require_admin()
        if self.settings.force_offline:
            self.students.remove(username)
            return
        self._remote_only(
            lambda timeout: self.remote.delete_student(username, auth_token=admin.auth_token, timeout=timeout)
        )

    def current_identity(self) -> Identity | None:
        return self.sessions.get_current()

    def logout(self) -> None:
        self.sessions.clear()
