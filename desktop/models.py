from dataclasses import dataclass, field, replace
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_code(raw: str) -> str:
    return (raw or "").strip().upper()


def parse_timestamp(value) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class TokenRecord:
    """Last known state of one access code."""

    code: str
    is_active: bool = True
    device_fingerprint: str | None = None
    bound_at: datetime | None = None
    expires_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    metadata: dict = field(default_factory=dict)
    id: str = ""

    @property
    def is_bound(self) -> bool:
        return bool(self.device_fingerprint)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    def with_changes(self, **changes) -> "TokenRecord":
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: dict) -> "TokenRecord":
        return cls(
            code=normalize_code(data.get("token_code") or data.get("code") or ""),
            is_active=bool(data.get("is_active", True)),
            device_fingerprint=data.get("device_fingerprint") or None,
            bound_at=parse_timestamp(data.get("bound_at")),
            expires_at=parse_timestamp(data.get("expires_at")),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            metadata=dict(data.get("metadata") or {}),
            id=str(data.get("id") or ""),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "token_code": self.code,
            "is_active": self.is_active,
            "device_fingerprint": self.device_fingerprint,
            "bound_at": _iso(self.bound_at),
            "expires_at": _iso(self.expires_at),
            "created_at": _iso(self.created_at),
            "metadata": dict(self.metadata),
        }


@dataclass
class Identity:
    """An authenticated student or admin."""

    username: str
    role: str = "student"
    full_name: str = ""
    reg_number: str = ""
    is_token_login: bool = False
    allowed_exam_type: str = "BOTH"
    expires_at: str | None = None
    bound_at: str | None = None
    remaining_days: int | None = None
    message: str = ""
    auth_token: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_dict(cls, data: dict) -> "Identity":
        return cls(
            username=str(data.get("username") or ""),
            role=str(data.get("role") or "student"),
            full_name=str(data.get("fullName") or ""),
            reg_number=str(data.get("regNumber") or ""),
            is_token_login=bool(data.get("isTokenLogin", False)),
            allowed_exam_type=str(data.get("allowedExamType") or "BOTH"),
            expires_at=data.get("expiresAt"),
            bound_at=data.get("boundAt"),
            remaining_days=data.get("remainingDays"),
            message=str(data.get("message") or ""),
            auth_token=str(data.get("authToken") or ""),
        )

    def to_dict(self) -> dict:
        data = {
            "username": self.username,
            "role": self.role,
            "fullName": self.full_name,
            "regNumber": self.reg_number,
            "isTokenLogin": self.is_token_login,
            "allowedExamType": self.allowed_exam_type,
            "expiresAt": self.expires_at,
            "boundAt": self.bound_at,
            "remainingDays": self.remaining_days,
        }
        if self.message:
            data["message"] = self.message
        if self.auth_token:
            data["authToken"] = self.auth_token
        return data


@dataclass(frozen=True)
class Contact:
    full_name: str = ""
    phone_number: str = ""
    email: str = ""
