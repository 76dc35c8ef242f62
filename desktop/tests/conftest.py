from datetime import timedelta

import pytest

from desktop.api_client import BackendAPIError
from desktop.config import ClientSettings
from desktop.engine import TokenEngine
from desktop.errors import NetworkUnavailable
from desktop.models import Identity, utcnow
from desktop.storage import LocalStore


class FakeDevice:
    def __init__(self, fingerprint="F1"):
        self.fingerprint = fingerprint

    def get_fingerprint(self):
        return self.fingerprint


class FakeAuthority:
    """In-memory token authority with the backend's binding rules."""

    def __init__(self):
        self.online = True
        self.tokens = {}
        self.calls = []

    def _check(self, name):
        self.calls.append(name)
        if not self.online:
            raise NetworkUnavailable()

    def add(self, code, created_at=None, **fields):
        self.tokens[code] = {
            "token_code": code,
            "is_active": True,
            "device_fingerprint": None,
            "bound_at": None,
            "expires_at": None,
            "created_at": (created_at or utcnow()).isoformat(),
            "metadata": {"full_name": "Ada Obi", "exam_type": "JAMB"},
            **fields,
        }
        return self.tokens[code]

    def check_connection(self, timeout=None):
        self.calls.append("check_connection")
        return self.online

    def _get(self, code):
        token = self.tokens.get(code)
        if token is None:
            raise BackendAPIError("Invalid Access Code.", status_code=401, code="invalid_code")
        return token

    def login_with_token(self, code, fingerprint, confirm_binding=False, *, timeout=None):
        self._check("login_with_token")
        token = self._get(code)
        if not token["is_active"]:
            raise BackendAPIError("Deactivated", status_code=403, code="deactivated")
        if not token["device_fingerprint"]:
            if not confirm_binding:
                return {"requires_binding": True}
            token["device_fingerprint"] = fingerprint
            token["bound_at"] = utcnow().isoformat()
            if token["expires_at"] is None:
                token["expires_at"] = (utcnow() + timedelta(days=365)).isoformat()
        elif token["device_fingerprint"] != fingerprint:
            raise BackendAPIError("Locked", status_code=403, code="device_mismatch")
        return {
            "username": code,
            "role": "student",
            "fullName": token["metadata"]["full_name"],
            "regNumber": code,
            "isTokenLogin": True,
            "allowedExamType": token["metadata"]["exam_type"],
            "expiresAt": token["expires_at"],
            "remainingDays": 365,
            "boundAt": token["bound_at"],
        }

    def generate_token(self, reference, amount, exam_type, full_name, phone_number, email="", *,
                       auth_token, timeout=None):
        self._check("generate_token")
        code = f"ACE-REMO-TE{len(self.tokens):02d}-AAAA"
        self.add(code)
        return {"success": True, "token": code, "expiresAt": None}

    def verify_payment(self, reference, email, full_name, phone_number, exam_type, *, timeout=None):
        self._check("verify_payment")
        if reference == "underpaid":
            raise BackendAPIError("Invalid amount paid.", status_code=400, code="invalid_amount")
        code = "ACE-PAID-PAID-PAID"
        self.add(code)
        return {"success": True, "token": code, "expiresAt": None}

    def list_tokens(self, *, auth_token, timeout=None):
        self._check("list_tokens")
        return list(self.tokens.values())

    def set_token_status(self, code, is_active, *, auth_token, timeout=None):
        self._check("set_token_status")
        token = self._get(code)
        token["is_active"] = is_active
        return {"success": True, "token": token}

    def reset_token_device(self, code, *, auth_token, timeout=None):
        self._check("reset_token_device")
        token = self._get(code)
        token["device_fingerprint"] = None
        token["bound_at"] = None
        return {"success": True, "token": token}

    def delete_token(self, code, *, auth_token, timeout=None):
        self._check("delete_token")
        if self.tokens.pop(code, None) is None:
            raise BackendAPIError("Not found", status_code=404, code="not_found")
        return {"success": True}

    def login(self, username, password, role, *, timeout=None):
        self._check("login")
        if role == "admin" and (username, password) == ("admin", "s3cret"):
            return {"username": "admin", "role": "admin", "fullName": "System Administrator",
                    "regNumber": "ADMIN-001", "authToken": "signed-token"}
        raise BackendAPIError("Invalid credentials.", status_code=401, code="invalid_credentials")


@pytest.fixture
def store(tmp_path):
    return LocalStore(tmp_path / "data")


@pytest.fixture
def device():
    return FakeDevice("F1")


@pytest.fixture
def authority():
    return FakeAuthority()


@pytest.fixture
def client_settings(tmp_path):
    return ClientSettings(backend_url="http://authority.test", data_dir=tmp_path / "data")


@pytest.fixture
def engine(client_settings, authority, store, device):
    return TokenEngine(client_settings, remote=authority, store=store, device=device)


@pytest.fixture
def admin_engine(engine):
    engine.sessions.set_current(Identity(username="admin", role="admin", auth_token="signed-token"))
    return engine
