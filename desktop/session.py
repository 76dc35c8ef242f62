import hashlib
import hmac
import logging

from .errors import RegistrationConflict
from .models import Identity
from .storage import LocalStore

logger = logging.getLogger(__name__)

CURRENT_USER = "current_user"
STUDENTS = "students"
ADMIN = "admin"

DEFAULT_ADMIN_USERNAME = "admin"
DEFAULT_ADMIN_PASSWORD = "admin"


def sha256(message: str) -> str:
    return hashlib.sha256(message.encode()).hexdigest()


class SessionStore:
    """
    The identity signed in on this client, if any.

    The admin bearer lives in memory only; a restarted client must sign in
    again before calling the authority as admin.
    """

    def __init__(self, store: LocalStore):
        self.store = store
        self._auth_token = ""

    def set_current(self, identity: Identity) -> None:
        data = identity.to_dict()
        self._auth_token = data.pop("authToken", "")
        self.store.write(CURRENT_USER, data)

    def get_current(self) -> Identity | None:
        data = self.store.read(CURRENT_USER, {})
        if not data or not data.get("username"):
            return None
        identity = Identity.from_dict(data)
        identity.auth_token = self._auth_token
        return identity

    def clear(self) -> None:
        self._auth_token = ""
        self.store.remove(CURRENT_USER)


class LocalStudents:
    """Students registered on this device while offline."""

    def __init__(self, store: LocalStore):
        self.store = store

    def all(self) -> list[Identity]:
        return [Identity.from_dict(d) for d in self.store.read(STUDENTS, []) if isinstance(d, dict)]

    def find(self, username: str) -> Identity | None:
        username = username.strip().upper()
        return next((s for s in self.all() if s.username.upper() == username), None)

    def add(self, identity: Identity) -> Identity:
        with self.store.lock:
            if self.find(identity.username) is not None:
                raise RegistrationConflict()
            students = self.store.read(STUDENTS, [])
            students.append(identity.to_dict())
            self.store.write(STUDENTS, students)
        return identity

    def remove(self, username: str) -> None:
        username = username.strip().upper()
        with self.store.lock:
            kept = [s.to_dict() for s in self.all() if s.username.upper() != username]
            self.store.write(STUDENTS, kept)


class LocalAdminCredentials:
    """Offline admin login, checked against an unsalted SHA-256 of the password."""

    def __init__(self, store: LocalStore):
        self.store = store

    def _load(self) -> dict:
        creds = self.store.read(ADMIN, {})
        if not creds.get("username") or not creds.get("password"):
            creds = {"username": DEFAULT_ADMIN_USERNAME, "password": sha256(DEFAULT_ADMIN_PASSWORD)}
            self.store.write(ADMIN, creds)
        return creds

    def check(self, username: str, password: str) -> str | None:
        """Return the stored admin username when the credentials match."""
        creds = self._load()
        if username.strip().lower() != creds["username"].lower():
            return None
        if not hmac.compare_digest(sha256(password), creds["password"]):
            return None
        return creds["username"]

    def update(self, username: str, password: str) -> None:
        self.store.write(ADMIN, {"username": username.strip(), "password": sha256(password)})
