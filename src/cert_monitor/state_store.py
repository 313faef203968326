"""
State Store module for durable keyed entities.

Entities (domain records, the notification settings singleton) are kept as
JSON-compatible dictionaries grouped into named collections. When a file
path is configured the whole state is written to disk with an HMAC so that
tampering is detected on load; without a path the store is memory-only,
which lets tests inject isolated instances.
"""

import copy
import hashlib
import hmac
import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from .exceptions import PersistenceError, TamperingError
from .models import NotificationSettings


DOMAINS = "domains"
SETTINGS = "settings"


class StateStore:
    """
    Keyed entity storage with optional HMAC-protected persistence.

    Every mutation saves immediately unless it happens inside
    ``deferred_save()``, in which case a single save is issued on exit.
    """

    VERSION = 2

    def __init__(
        self,
        file_path: Optional[Path] = None,
        hmac_secret: str = "",
    ) -> None:
        """
        Initialize the state store.

        Args:
            file_path: Path to the state file (JSON format); None keeps state in memory
            hmac_secret: Secret key for HMAC computation
        """
        self._file_path = file_path
        self._hmac_secret = hmac_secret.encode("utf-8")
        self._collections: dict[str, dict[str, dict]] = {}
        self._last_updated = ""
        self._defer_depth = 0
        self._dirty = False

    def load(self) -> bool:
        """
        Load state from file and validate HMAC.

        Returns:
            True if a state file was loaded, False if none exists (or memory-only)

        Raises:
            TamperingError: If HMAC validation fails
            PersistenceError: If file cannot be read or parsed
        """
        if self._file_path is None or not self._file_path.exists():
            return False

        try:
            with open(self._file_path, "r", encoding="utf-8") as f:
                raw_data = json.load(f)
        except json.JSONDecodeError as e:
            raise PersistenceError(
                code="parse_error",
                message=f"Failed to parse state file: {e}",
                details={"file_path": str(self._file_path)},
            )
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to read state file: {e}",
                details={"file_path": str(self._file_path)},
            )

        stored_hmac = raw_data.get("hmac", "")
        computed_hmac = self.compute_hmac({
            "version": raw_data.get("version"),
            "collections": raw_data.get("collections", {}),
            "last_updated": raw_data.get("last_updated"),
        })

        if not self.validate_hmac(stored_hmac, computed_hmac):
            raise TamperingError(
                code="hmac_mismatch",
                message="HMAC validation failed - data may have been tampered with",
                details={"file_path": str(self._file_path)},
            )

        self._collections = raw_data.get("collections", {})
        self._last_updated = raw_data.get("last_updated", "")
        return True

    def save(self) -> None:
        """
        Write the full state to disk with HMAC protection (no-op when memory-only).

        Raises:
            PersistenceError: If file cannot be written
        """
        if self._file_path is None:
            self._dirty = False
            return

        now = datetime.now(timezone.utc).isoformat()
        data_for_hmac = {
            "version": self.VERSION,
            "collections": self._collections,
            "last_updated": now,
        }
        output_data = dict(data_for_hmac, hmac=self.compute_hmac(data_for_hmac))

        self._file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._file_path.with_suffix(self._file_path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(output_data, f, indent=2, sort_keys=True)
            tmp_path.replace(self._file_path)
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to write state file: {e}",
                details={"file_path": str(self._file_path)},
            )

        self._last_updated = now
        self._dirty = False

    @contextmanager
    def deferred_save(self) -> Iterator[None]:
        """Group several mutations into one save."""
        self._defer_depth += 1
        try:
            yield
        finally:
            self._defer_depth -= 1
            if self._defer_depth == 0 and self._dirty:
                self.save()

    def get(self, collection: str, key: str) -> Optional[dict]:
        entity = self._collections.get(collection, {}).get(key)
        return copy.deepcopy(entity) if entity is not None else None

    def put(self, collection: str, key: str, value: dict) -> None:
        self._collections.setdefault(collection, {})[key] = copy.deepcopy(value)
        self._mark_dirty()

    def delete(self, collection: str, key: str) -> bool:
        entities = self._collections.get(collection, {})
        if key not in entities:
            return False
        del entities[key]
        self._mark_dirty()
        return True

    def keys(self, collection: str) -> list[str]:
        return list(self._collections.get(collection, {}).keys())

    def values(self, collection: str) -> list[dict]:
        return [copy.deepcopy(v) for v in self._collections.get(collection, {}).values()]

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._defer_depth == 0:
            self.save()

    def compute_hmac(self, data: dict) -> str:
        """Compute HMAC-SHA256 over the canonical JSON serialization of data."""
        serialized = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hmac.new(
            self._hmac_secret,
            serialized.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def validate_hmac(self, stored_hmac: str, computed_hmac: str) -> bool:
        """Validate HMAC using constant-time comparison."""
        return hmac.compare_digest(stored_hmac, computed_hmac)

    @property
    def file_path(self) -> Optional[Path]:
        return self._file_path

    @property
    def last_updated(self) -> str:
        return self._last_updated


class SettingsRepository:
    """The NotificationSettings singleton, kept behind the same store as the records."""

    KEY = "notification"

    def __init__(self, store: StateStore) -> None:
        self._store = store

    def get(self) -> NotificationSettings:
        return NotificationSettings.from_dict(self._store.get(SETTINGS, self.KEY))

    def save(self, settings: NotificationSettings) -> None:
        self._store.put(SETTINGS, self.KEY, settings.to_dict())
