from dataclasses import replace
from datetime import timedelta

import pytest

from desktop.engine import Origin, TokenEngine
from desktop.errors import (
    AdminRequired,
    BindingRequired,
    Deactivated,
    DeviceIdentityError,
    DeviceMismatch,
    Expired,
    InvalidAmount,
    InvalidCode,
    InvalidCredentials,
    NetworkUnavailable,
    RegistrationConflict,
)
from desktop.models import Contact, Identity, TokenRecord, utcnow

CODE = "ACE-AAAA-BBBB-CCCC"
ADA = Contact(full_name="Ada Obi", phone_number="08030000000", email="ada@example.com")


def sign_in_admin(engine):
    engine.sessions.set_current(Identity(username="admin", role="admin", auth_token="signed-token"))


def offline_engine(client_settings, store, device, authority):
    return TokenEngine(replace(client_settings, force_offline=True), remote=authority, store=store, device=device)


# ---------------------------------------------------------------------------
# Binding state machine
# ---------------------------------------------------------------------------


def test_online_bind_verify_mismatch_reset_rebind(engine, authority, device):
    authority.add(CODE)

    with pytest.raises(BindingRequired):
        engine.verify_and_bind(CODE)
    assert authority.tokens[CODE]["device_fingerprint"] is None

    identity = engine.verify_and_bind(" ace-aaaa-bbbb-cccc ", confirm_binding=True)
    assert identity.reg_number == CODE
    assert identity.is_token_login
    assert engine.current_identity().username == CODE
    first_expiry = authority.tokens[CODE]["expires_at"]
    bound_at = authority.tokens[CODE]["bound_at"]

    # Same device again: no mutation.
    engine.verify_and_bind(CODE)
    assert authority.tokens[CODE]["bound_at"] == bound_at

    device.fingerprint = "F2"
    with pytest.raises(DeviceMismatch):
        engine.verify_and_bind(CODE, confirm_binding=True)

    sign_in_admin(engine)
    engine.reset_device(CODE)
    assert authority.tokens[CODE]["device_fingerprint"] is None

    identity = engine.verify_and_bind(CODE, confirm_binding=True)
    assert identity.reg_number == CODE
    assert authority.tokens[CODE]["device_fingerprint"] == "F2"
    assert authority.tokens[CODE]["expires_at"] == first_expiry


def test_offline_path_has_the_same_shape(engine, authority, device):
    authority.online = False
    sign_in_admin(engine)
    code = engine.create(Origin.ADMIN, 150000, "JAMB", ADA)
    assert code.startswith("ACE-")
    assert engine.cache.get(code).metadata["generated_by"] == "ADMIN"

    with pytest.raises(BindingRequired):
        engine.verify_and_bind(code)
    assert not engine.cache.get(code).is_bound

    identity = engine.verify_and_bind(code, confirm_binding=True)
    assert identity.reg_number == code
    assert identity.full_name == "Ada Obi"
    assert identity.expires_at is None
    assert engine.cache.get(code).device_fingerprint == "F1"

    engine.verify_and_bind(code)

    device.fingerprint = "F2"
    with pytest.raises(DeviceMismatch):
        engine.verify_and_bind(code, confirm_binding=True)

    sign_in_admin(engine)
    engine.reset_device(code)
    identity = engine.verify_and_bind(code, confirm_binding=True)
    assert identity.reg_number == code
    assert engine.cache.get(code).device_fingerprint == "F2"


def test_remote_binding_request_is_not_swallowed(engine, authority):
    authority.add(CODE)
    with pytest.raises(BindingRequired) as excinfo:
        engine.verify_and_bind(CODE)
    assert excinfo.value.code == CODE
    assert engine.current_identity() is None
    assert engine.cache.get(CODE) is None


def test_online_binding_is_mirrored_for_offline_use(engine, authority):
    authority.add(CODE)
    engine.verify_and_bind(CODE, confirm_binding=True)

    record = engine.cache.get(CODE)
    assert record.device_fingerprint == "F1"
    assert record.metadata["generated_by"] == "ONLINE_CACHE"
    assert record.expires_at is not None

    authority.online = False
    identity = engine.verify_and_bind(CODE)
    assert identity.reg_number == CODE
    assert identity.remaining_days in (364, 365)


def test_mirrored_binding_keeps_the_authority_bind_time(engine, authority):
    bound_at = utcnow() - timedelta(days=30)
    authority.add(CODE, device_fingerprint="F1", bound_at=bound_at.isoformat(),
                  expires_at=(bound_at + timedelta(days=365)).isoformat())

    identity = engine.verify_and_bind(CODE)
    assert identity.bound_at == bound_at.isoformat()
    assert engine.cache.get(CODE).bound_at == bound_at


def test_remote_device_mismatch_does_not_fall_back(engine, authority):
    authority.add(CODE, device_fingerprint="OTHER")
    engine.cache.upsert(TokenRecord(code=CODE, device_fingerprint="F1", bound_at=utcnow()))

    with pytest.raises(DeviceMismatch):
        engine.verify_and_bind(CODE)
    assert engine.current_identity() is None


def test_remote_deactivation_is_mirrored(engine, authority):
    authority.add(CODE, is_active=False)
    engine.cache.upsert(TokenRecord(code=CODE))

    with pytest.raises(Deactivated):
        engine.verify_and_bind(CODE, confirm_binding=True)
    assert engine.cache.get(CODE).is_active is False

    authority.online = False
    with pytest.raises(Deactivated):
        engine.verify_and_bind(CODE, confirm_binding=True)


def test_code_unknown_to_authority_is_checked_locally(engine, authority):
    engine.cache.upsert(TokenRecord(
        code="OFFLINE-AAAA-BBBB-CCCC", metadata={"full_name": "Ada Obi", "offline": True}
    ))

    identity = engine.verify_and_bind("OFFLINE-AAAA-BBBB-CCCC", confirm_binding=True)
    assert identity.reg_number == "OFFLINE-AAAA-BBBB-CCCC"
    assert authority.calls == ["login_with_token"]


def test_code_deleted_by_authority_is_not_granted_from_cache(engine, authority):
    authority.add(CODE)
    engine.verify_and_bind(CODE, confirm_binding=True)
    assert engine.cache.get(CODE).metadata["generated_by"] == "ONLINE_CACHE"

    del authority.tokens[CODE]
    engine.logout()

    with pytest.raises(InvalidCode):
        engine.verify_and_bind(CODE)
    assert engine.cache.get(CODE) is None
    assert engine.current_identity() is None

    # Still refused once the authority is out of reach.
    authority.online = False
    with pytest.raises(InvalidCode):
        engine.verify_and_bind(CODE)


def test_admin_actions_do_not_revive_withdrawn_codes(admin_engine, authority):
    admin_engine.cache.upsert(TokenRecord(code=CODE, metadata={"generated_by": "ONLINE_CACHE"}))
    with pytest.raises(InvalidCode):
        admin_engine.reset_device(CODE)
    assert admin_engine.cache.get(CODE) is None

    admin_engine.cache.upsert(TokenRecord(code=CODE, metadata={"generated_by": "ADMIN"}))
    admin_engine.delete(CODE)
    assert admin_engine.cache.get(CODE) is None


def test_list_drops_mirrors_the_authority_no_longer_has(admin_engine, authority):
    authority.add("ACE-ZZZZ-ZZZZ-ZZZZ")
    admin_engine.cache.upsert(TokenRecord(code=CODE, metadata={"generated_by": "ONLINE_CACHE"}))
    assert [t.code for t in admin_engine.list_tokens()] == ["ACE-ZZZZ-ZZZZ-ZZZZ"]


def test_unknown_code_everywhere_is_invalid(engine):
    with pytest.raises(InvalidCode):
        engine.verify_and_bind("ACE-NOPE-NOPE-NOPE", confirm_binding=True)
    with pytest.raises(InvalidCode):
        engine.verify_and_bind("   ")


def test_expired_local_code(engine, authority):
    authority.online = False
    engine.cache.upsert(TokenRecord(
        code=CODE, device_fingerprint="F1", bound_at=utcnow() - timedelta(days=400),
        expires_at=utcnow() - timedelta(days=35),
    ))
    with pytest.raises(Expired):
        engine.verify_and_bind(CODE)


def test_local_binding_never_overwrites_another_device(engine, authority, device):
    authority.online = False
    engine.cache.upsert(TokenRecord(code=CODE, device_fingerprint="F2", bound_at=utcnow()))
    with pytest.raises(DeviceMismatch):
        engine.verify_and_bind(CODE, confirm_binding=True)
    assert engine.cache.get(CODE).device_fingerprint == "F2"


def test_malformed_remote_answer_falls_back(engine, authority, monkeypatch):
    monkeypatch.setattr(authority, "login_with_token", lambda *a, **kw: {"unexpected": True})
    engine.cache.upsert(TokenRecord(code=CODE))

    identity = engine.verify_and_bind(CODE, confirm_binding=True)
    assert identity.full_name == "Candidate (Offline)"


def test_device_identity_failure_stops_before_remote(engine, authority, device):
    def broken():
        raise RuntimeError("no hardware info")

    device.get_fingerprint = broken
    authority.add(CODE)
    with pytest.raises(DeviceIdentityError):
        engine.verify_and_bind(CODE, confirm_binding=True)
    assert authority.calls == []


def test_failed_connectivity_check_skips_the_authority(client_settings, store, device, authority):
    engine = TokenEngine(replace(client_settings, check_connectivity=True), remote=authority,
                         store=store, device=device)
    engine.cache.upsert(TokenRecord(code=CODE, metadata={"offline": True}))
    authority.add(CODE)
    authority.online = False

    engine.verify_and_bind(CODE, confirm_binding=True)
    assert authority.calls == ["check_connection"]
    assert engine.cache.get(CODE).device_fingerprint == "F1"

    authority.online = True
    engine.logout()
    engine.verify_and_bind(CODE, confirm_binding=True)
    assert authority.calls[-2:] == ["check_connection", "login_with_token"]


# ---------------------------------------------------------------------------
# Creation and purchase
# ---------------------------------------------------------------------------


def test_admin_create_online_mirrors_unbound_code(admin_engine, authority):
    code = admin_engine.create(Origin.ADMIN, 150000, "waec", ADA, reference="cash-1")
    assert code in authority.tokens
    record = admin_engine.cache.get(code)
    assert not record.is_bound
    assert record.is_active
    assert record.metadata["exam_type"] == "WAEC"


def test_create_requires_admin(engine):
    with pytest.raises(AdminRequired):
        engine.create(Origin.ADMIN, 150000, "JAMB", ADA)


def test_student_purchase_online(engine, authority):
    code = engine.create(Origin.STUDENT, 150000, "JAMB", ADA, reference="pi_123")
    assert code == "ACE-PAID-PAID-PAID"
    assert engine.cache.get(code).metadata["payment_ref"] == "pi_123"


def test_underpaid_purchase_creates_nothing(engine, authority):
    with pytest.raises(InvalidAmount):
        engine.purchase("underpaid", 1000, "JAMB", ADA)
    assert "ACE-PAID-PAID-PAID" not in authority.tokens
    assert engine.cache.all() == []


def test_purchase_needs_network_unless_forced_offline(engine, authority):
    authority.online = False
    with pytest.raises(NetworkUnavailable):
        engine.purchase("pi_123", 150000, "JAMB", ADA)
    assert engine.cache.all() == []


def test_forced_offline_purchase_enforces_minimum(client_settings, store, device, authority):
    engine = offline_engine(client_settings, store, device, authority)

    with pytest.raises(InvalidAmount):
        engine.purchase("sim-1", 149999, "JAMB", ADA)
    assert engine.cache.all() == []

    code = engine.purchase("sim-2", 150000, "JAMB", ADA)
    assert code.startswith("OFFLINE-")
    assert engine.cache.get(code).metadata["generated_by"] == "STUDENT"
    assert authority.calls == []


# ---------------------------------------------------------------------------
# Admin token management
# ---------------------------------------------------------------------------


def test_list_merges_remote_and_local(admin_engine, authority):
    now = utcnow()
    authority.add("ACE-XXXX-XXXX-XXXX", created_at=now - timedelta(days=2), is_active=False)
    authority.add("ACE-ZZZZ-ZZZZ-ZZZZ", created_at=now)
    admin_engine.cache.upsert(TokenRecord(code="ACE-XXXX-XXXX-XXXX", created_at=now - timedelta(days=2)))
    admin_engine.cache.upsert(TokenRecord(
        code="OFFLINE-YYYY-YYYY-YYYY", created_at=now - timedelta(days=1), metadata={"offline": True}
    ))

    tokens = admin_engine.list_tokens()

    assert [t.code for t in tokens] == ["ACE-ZZZZ-ZZZZ-ZZZZ", "OFFLINE-YYYY-YYYY-YYYY", "ACE-XXXX-XXXX-XXXX"]
    assert tokens[2].is_active is False


def test_list_offline_uses_cache(admin_engine, authority):
    authority.online = False
    admin_engine.cache.upsert(TokenRecord(code=CODE))
    assert [t.code for t in admin_engine.list_tokens()] == [CODE]


def test_set_active_is_idempotent(admin_engine, authority):
    authority.add(CODE)
    admin_engine.set_active(CODE, False)
    record = admin_engine.set_active(CODE, False)
    assert record.is_active is False
    assert authority.tokens[CODE]["is_active"] is False


def test_admin_actions_fall_back_for_offline_codes(admin_engine, authority):
    admin_engine.cache.upsert(TokenRecord(code="OFFLINE-AAAA-BBBB-CCCC", device_fingerprint="F9",
                                             metadata={"offline": True}))

    record = admin_engine.reset_device("OFFLINE-AAAA-BBBB-CCCC")
    assert record.device_fingerprint is None
    assert admin_engine.set_active("OFFLINE-AAAA-BBBB-CCCC", False).is_active is False

    admin_engine.delete("OFFLINE-AAAA-BBBB-CCCC")
    assert admin_engine.cache.get("OFFLINE-AAAA-BBBB-CCCC") is None
    with pytest.raises(InvalidCode):
        admin_engine.delete("OFFLINE-AAAA-BBBB-CCCC")


def test_reset_keeps_expiry(admin_engine, authority):
    authority.online = False
    expires = utcnow() + timedelta(days=100)
    admin_engine.cache.upsert(TokenRecord(code=CODE, device_fingerprint="F9", bound_at=utcnow(), expires_at=expires))
    record = admin_engine.reset_device(CODE)
    assert record.expires_at == expires
    assert record.bound_at is None


def test_delete_removes_remote_and_local(admin_engine, authority):
    authority.add(CODE)
    admin_engine.cache.upsert(TokenRecord(code=CODE))
    admin_engine.delete(CODE)
    assert CODE not in authority.tokens
    assert admin_engine.cache.get(CODE) is None


def test_management_requires_admin(engine):
    for action in (lambda: engine.set_active(CODE, True), lambda: engine.reset_device(CODE),
                   lambda: engine.delete(CODE), engine.list_tokens):
        with pytest.raises(AdminRequired):
            action()


# ---------------------------------------------------------------------------
# Accounts and session
# ---------------------------------------------------------------------------


def test_online_admin_login(engine):
    identity = engine.login("admin", "s3cret", "admin")
    assert identity.is_admin
    assert identity.auth_token == "signed-token"
    assert engine.current_identity().auth_token == "signed-token"

    with pytest.raises(InvalidCredentials):
        engine.login("admin", "wrong", "admin")


def test_online_login_does_not_fall_back(engine, authority):
    authority.online = False
    with pytest.raises(NetworkUnavailable):
        engine.login("admin", "admin", "admin")


def test_offline_admin_credentials(client_settings, store, device, authority):
    engine = offline_engine(client_settings, store, device, authority)

    identity = engine.login("ADMIN", "admin", "admin")
    assert identity.reg_number == "ADMIN-001"

    engine.update_admin_credentials("admin", "admin", "root", "n3w-pass")
    with pytest.raises(InvalidCredentials):
        engine.login("admin", "admin", "admin")
    assert engine.login("root", "n3w-pass", "admin").username == "root"

    with pytest.raises(InvalidCredentials):
        engine.update_admin_credentials("root", "wrong", "x", "y")


def test_offline_students(client_settings, store, device, authority):
    engine = offline_engine(client_settings, store, device, authority)

    student = engine.register_student("Ada Obi", "reg-001", "jamb")
    assert student.username == "REG-001"
    assert student.allowed_exam_type == "JAMB"
    with pytest.raises(RegistrationConflict):
        engine.register_student("Someone Else", "REG-001")

    assert engine.login("reg-001", "REG-001", "student").full_name == "Ada Obi"
    with pytest.raises(InvalidCredentials):
        engine.login("REG-001", "guess", "student")

    sign_in_admin(engine)
    assert [s.username for s in engine.list_students()] == ["REG-001"]
    engine.delete_student("REG-001")
    assert engine.list_students() == []


def test_logout_clears_session(engine, authority):
    authority.add(CODE)
    engine.verify_and_bind(CODE, confirm_binding=True)
    engine.logout()
    assert engine.current_identity() is None
