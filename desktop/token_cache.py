import logging
from datetime import datetime

from .models import TokenRecord, normalize_code
from .storage import LocalStore

logger = logging.getLogger(__name__)

TOKENS = "tokens"


class LocalTokenCache:
    """Shadow copy of the access codes this device has seen, newest first."""

    def __init__(self, store: LocalStore):
        self.store = store

    def _load(self) -> list[TokenRecord]:
        records = []
        for item in self.store.read(TOKENS, []):
            if not isinstance(item, dict):
                continue
            record = TokenRecord.from_dict(item)
            if record.code:
                records.append(record)
        return records

    def _save(self, records: list[TokenRecord]) -> None:
        self.store.write(TOKENS, [r.to_dict() for r in records])

    def all(self) -> list[TokenRecord]:
        return self._load()

    def get(self, code: str) -> TokenRecord | None:
        code = normalize_code(code)
        return next((r for r in self._load() if r.code == code), None)

    def upsert(self, record: TokenRecord) -> TokenRecord:
        with self.store.lock:
            records = [r for r in self._load() if r.code != record.code]
            records.insert(0, record)
            self._save(records)
        return record

    def update(self, code: str, **changes) -> TokenRecord | None:
        code = normalize_code(code)
        updated = None
        with self.store.lock:
            records = self._load()
            for i, record in enumerate(records):
                if record.code == code:
                    updated = records[i] = record.with_changes(**changes)
            if updated is not None:
                self._save(records)
        return updated

    def bind_if_unbound(self, code: str, fingerprint: str, bound_at: datetime) -> TokenRecord | None:
        """Set the fingerprint only if the cached code is still unbound. Returns the stored record."""
        code = normalize_code(code)
        with self.store.lock:
            current = self.get(code)
            if current is None or current.is_bound:
                return current
            return self.update(code, device_fingerprint=fingerprint, bound_at=bound_at)

    def delete(self, code: str) -> bool:
        code = normalize_code(code)
        with self.store.lock:
            records = self._load()
            kept = [r for r in records if r.code != code]
            if len(kept) == len(records):
                return False
            self._save(kept)
        logger.info("Removed %s... from local cache", code[:8])
        return True
