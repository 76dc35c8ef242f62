from datetime import timedelta

import pytest

from desktop.api_client import BackendAPIError
from desktop.errors import BindingRequired, DeviceMismatch, PaymentGatewayError, RemoteTimeout
from desktop.models import Identity, TokenRecord, utcnow
from desktop.reconcile import Deadline, OutcomeKind, Reconciler
from desktop.token_cache import LocalTokenCache


@pytest.fixture
def reconciler(store):
    return Reconciler(LocalTokenCache(store))


def fail_with(code):
    def call(timeout):
        raise BackendAPIError("refused", status_code=403, code=code)
    return call


def test_success_passes_budget(reconciler):
    seen = []
    outcome = reconciler.attempt(lambda t: seen.append(t) or {"ok": True}, Deadline(15), 5)
    assert outcome.kind is OutcomeKind.SUCCESS
    assert outcome.value == {"ok": True}
    assert seen[0] <= 5


def test_offline_skips_remote(store):
    calls = []
    for reconciler in (Reconciler(LocalTokenCache(store), offline=True),
                       Reconciler(LocalTokenCache(store), connectivity=lambda: False)):
        outcome = reconciler.attempt(calls.append, Deadline(15), 5)
        assert outcome.kind is OutcomeKind.FALLBACK
    assert calls == []


def test_exhausted_deadline_skips_remote(reconciler):
    calls = []
    outcome = reconciler.attempt(calls.append, Deadline(0), 5)
    assert outcome.kind is OutcomeKind.FALLBACK
    assert isinstance(outcome.error, RemoteTimeout)
    assert calls == []


@pytest.mark.parametrize("code", ["invalid_code", "not_found", "storage_error", ""])
def test_transient_or_unknown_codes_fall_back(reconciler, code):
    assert reconciler.attempt(fail_with(code), Deadline(15), 5).kind is OutcomeKind.FALLBACK


def test_permanent_codes_are_typed(reconciler):
    outcome = reconciler.attempt(fail_with("device_mismatch"), Deadline(15), 5)
    assert outcome.kind is OutcomeKind.PERMANENT
    assert isinstance(outcome.error, DeviceMismatch)

    outcome = reconciler.attempt(fail_with("gateway_error"), Deadline(15), 5)
    assert isinstance(outcome.error, PaymentGatewayError)


def test_binding_request_propagates(reconciler):
    def call(timeout):
        raise BindingRequired("ACE-AAAA-BBBB-CCCC")

    with pytest.raises(BindingRequired):
        reconciler.attempt(call, Deadline(15), 5)


def test_validation_failure_falls_back(reconciler):
    outcome = reconciler.attempt(lambda t: "<html>", Deadline(15), 5, validate=lambda v: isinstance(v, dict))
    assert outcome.kind is OutcomeKind.FALLBACK


def test_mirror_binding_marks_provenance(reconciler):
    expires = (utcnow() + timedelta(days=365)).isoformat()
    identity = Identity(username="ACE-AAAA-BBBB-CCCC", full_name="Ada Obi", allowed_exam_type="WAEC",
                        expires_at=expires)

    record = reconciler.mirror_binding("ACE-AAAA-BBBB-CCCC", "F1", identity)

    stored = reconciler.cache.get("ACE-AAAA-BBBB-CCCC")
    assert stored == record
    assert stored.metadata["generated_by"] == "ONLINE_CACHE"
    assert stored.metadata["exam_type"] == "WAEC"
    assert stored.device_fingerprint == "F1"
    assert stored.expires_at.isoformat() == expires


def test_merge_prefers_remote_and_orders_newest_first():
    now = utcnow()
    remote = [TokenRecord(code="A", is_active=False, created_at=now - timedelta(days=3)),
              TokenRecord(code="B", created_at=now)]
    local = [TokenRecord(code="A", is_active=True, created_at=now - timedelta(days=3)),
             TokenRecord(code="C", created_at=now - timedelta(days=1))]

    merged = Reconciler.merge(remote, local)

    assert [r.code for r in merged] == ["B", "C", "A"]
    assert merged[2].is_active is False
