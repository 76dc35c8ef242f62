"""
Persistent configuration for the ACE CBT desktop client.

Stores the backend URL, offline switch, timeouts and access-code rules in
a JSON file located in the user's home directory. `ClientSettings` is the
immutable snapshot handed to the token engine.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load desktop/.env if it exists (for local dev and kiosk installs).
_env_path = Path(__file__).resolve().parent / ".env"
load_dotenv(_env_path)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes"}


# Backend URL priority (all env-driven):
#   1. ACE_CBT_URL (active target URL)
#   2. ACE_CBT_PRODUCTION_URL
#   3. ACE_CBT_LOCAL_URL
BACKEND_URL = (
    os.environ.get("ACE_CBT_URL", "").strip()
    or os.environ.get("ACE_CBT_PRODUCTION_URL", "").strip()
    or os.environ.get("ACE_CBT_LOCAL_URL", "").strip()
    or "http://localhost:8000"
)

CONFIG_DIR = Path(os.environ.get("ACE_CBT_HOME", "").strip() or Path.home() / ".ace_cbt")
CONFIG_FILE = CONFIG_DIR / "config.json"

DEFAULTS = {
    "backend_url": BACKEND_URL,
    "force_offline": _env_flag("ACE_CBT_FORCE_OFFLINE"),
    "check_connectivity": _env_flag("ACE_CBT_CHECK_CONNECTIVITY"),
    "http_timeout": float(os.environ.get("ACE_CBT_HTTP_TIMEOUT", "5")),
    "device_timeout": float(os.environ.get("ACE_CBT_DEVICE_TIMEOUT", "10")),
    "operation_timeout": float(os.environ.get("ACE_CBT_OPERATION_TIMEOUT", "15")),
    "code_prefix": "ACE",
    "min_amount": 150000,
}


def _ensure_dir():
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)


def load() -> dict:
    """Load config from disk, merging with defaults."""
    _ensure_dir()
    data = dict(DEFAULTS)
    if CONFIG_FILE.exists():
        try:
            with open(CONFIG_FILE, "r") as f:
                data.update(json.load(f))
        except (json.JSONDecodeError, OSError):
            pass
    return data


def save(data: dict):
    """Persist config to disk."""
    _ensure_dir()
    with open(CONFIG_FILE, "w") as f:
        json.dump(data, f, indent=2)


@dataclass(frozen=True)
class ClientSettings:
    backend_url: str = BACKEND_URL
    force_offline: bool = False
    # Ping `/health` before each remote call and go straight to local data when it fails.
    check_connectivity: bool = False
    http_timeout: float = 5.0
    device_timeout: float = 10.0
    operation_timeout: float = 15.0
    code_prefix: str = "ACE"
    # Minor currency units, checked for purchases simulated while offline.
    min_amount: int = 150000
    data_dir: Path = CONFIG_DIR / "data"

    @classmethod
    def from_config(cls, data: dict | None = None) -> "ClientSettings":
        data = data if data is not None else load()
        return cls(
            backend_url=str(data.get("backend_url") or BACKEND_URL).rstrip("/"),
            force_offline=bool(data.get("force_offline", False)),
            check_connectivity=bool(data.get("check_connectivity", False)),
            http_timeout=float(data.get("http_timeout", 5.0)),
            device_timeout=float(data.get("device_timeout", 10.0)),
            operation_timeout=float(data.get("operation_timeout", 15.0)),
            code_prefix=str(data.get("code_prefix") or "ACE").upper(),
            min_amount=int(data.get("min_amount", 150000)),
            data_dir=Path(data.get("data_dir") or CONFIG_DIR / "data"),
        )
