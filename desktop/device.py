"""
Device identity for access-code binding.

`resolve_fingerprint` treats the provider as slow and fallible: it runs it
under a timeout and turns any failure into DeviceIdentityError.
"""

import asyncio
import hashlib
import inspect
import logging
import platform
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Protocol

from .errors import DeviceIdentityError
from .storage import LocalStore

logger = logging.getLogger(__name__)

INSTALL = "install"


class DeviceIdentityProvider(Protocol):
    def get_fingerprint(self) -> str:
        ...


class MachineFingerprint:
    """SHA-256 over host facts plus a random install id persisted on first use."""

    def __init__(self, store: LocalStore):
        self.store = store

    def _install_id(self) -> str:
        with self.store.lock:
            data = self.store.read(INSTALL, {})
            install_id = data.get("id")
            if not install_id:
                install_id = uuid.uuid4().hex
                self.store.write(INSTALL, {"id": install_id})
        return install_id

    def get_fingerprint(self) -> str:
        facts = [
            platform.system(),
            platform.machine(),
            platform.node(),
            f"{uuid.getnode():012x}",
            self._install_id(),
        ]
        return hashlib.sha256("|".join(facts).encode()).hexdigest()


def _call(getter, timeout: float) -> str:
    if inspect.iscoroutinefunction(getter):
        return asyncio.run(asyncio.wait_for(getter(), timeout))
    return getter()


def resolve_fingerprint(provider: DeviceIdentityProvider, timeout: float) -> str:
    if timeout <= 0:
        raise DeviceIdentityError("Device Identity Timeout")

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="device-identity")
    future = executor.submit(_call, provider.get_fingerprint, timeout)
    try:
        fingerprint = future.result(timeout=timeout)
    except (FuturesTimeout, asyncio.TimeoutError) as exc:
        logger.warning("Device identity lookup timed out after %.1fs", timeout)
        raise DeviceIdentityError() from exc
    except Exception as exc:
        # Providers are third-party code; any failure means "unverifiable".
        logger.warning("Device identity lookup failed: %s", exc)
        raise DeviceIdentityError() from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    if not fingerprint or not isinstance(fingerprint, str):
        raise DeviceIdentityError()
    return fingerprint
