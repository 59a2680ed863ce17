"""
MiSub - Key-Value Store
========================
Whole-value key-value storage used by every handler.

Each key holds one JSON document. Writes replace the whole document; there
are no partial updates and no transactions across keys. Every key carries
an integer version (0 when absent, +1 on each write) so that callers can
do read-check-write cycles with compare_and_swap instead of blind puts.

Backends:
    MemoryKeyValueStore -> process-local dict, lost on restart
    FileKeyValueStore   -> same, persisted to a single JSON file

File layout (default, under project dir):
    data/
      kv.json   <- {"<key>": {"value": <json>, "version": <int>}, ...}

Usage:
    store = create_store(config, project_dir)
    groups = atomic_update(store, KEY_NODE_GROUPS, add_group, default=[])
"""

import json
import logging
import os
import tempfile
import threading
from typing import Any, Callable

from misub.errors import ConflictError, StoreError


logger = logging.getLogger(__name__)


# KV keys shared with the deployed worker.
KEY_SUBSCRIPTIONS = "misub_subscriptions_v1"
KEY_PROFILES = "misub_profiles_v1"
KEY_SETTINGS = "worker_settings_v1"
KEY_NODE_GROUPS = "misub_node_groups_v1"


class KeyValueStore:
    """
    Interface for a versioned whole-value store.

    Subclasses implement _read/_write; locking and JSON encoding live here
    so every backend hands out independent copies of stored values.
    """

    def __init__(self):
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        """Return the value stored under key, or None if absent."""
        value, _ = self.get_versioned(key)
        return value

    def get_versioned(self, key: str) -> tuple[Any | None, int]:
        """
        Return the value and its version.

        Returns:
            (value, version). Absent keys give (None, 0).
        """
        with self._lock:
            raw, version = self._read(key)
        if raw is None:
            return None, 0
        return json.loads(raw), version

    def put(self, key: str, value: Any) -> int:
        """
        Replace the value under key unconditionally (last writer wins).

        Returns:
            The new version.
        """
        raw = _encode(value)
        with self._lock:
            _, version = self._read(key)
            self._write(key, raw, version + 1)
            return version + 1

    def compare_and_swap(self, key: str, expected_version: int, value: Any) -> bool:
        """
        Write value only if the key is still at expected_version.

        Args:
            key:              The key to write.
            expected_version: Version observed by the caller's read.
            value:            New JSON-serializable value.

        Returns:
            True if written, False if another writer got there first.
        """
        raw = _encode(value)
        with self._lock:
            _, version = self._read(key)
            if version != expected_version:
                return False
            self._write(key, raw, version + 1)
            return True

    # -- Backend hooks ---------------------------------------------------------

    def _read(self, key: str) -> tuple[str | None, int]:
        raise NotImplementedError

    def _write(self, key: str, raw: str, version: int) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    """In-process store. Useful for tests and throwaway sessions."""

    def __init__(self):
        super().__init__()
        self._data: dict[str, tuple[str, int]] = {}

    def _read(self, key: str) -> tuple[str | None, int]:
        return self._data.get(key, (None, 0))

    def _write(self, key: str, raw: str, version: int) -> None:
        self._data[key] = (raw, version)


class FileKeyValueStore(MemoryKeyValueStore):
    """
    Memory store mirrored to a JSON file after every write.

    Attributes:
        path: Absolute path of the backing JSON file.
    """

    def __init__(self, path: str):
        """
        Load existing data from path, if present.

        Raises:
            StoreError: If the file exists but cannot be read or parsed.
        """
        super().__init__()
        self.path = path
        if os.path.exists(path):
            self._load()

    def _load(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                doc = json.load(f)
            for key, entry in doc.items():
                self._data[key] = (
                    json.dumps(entry["value"], ensure_ascii=False),
                    int(entry["version"]),
                )
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("Cannot load KV file %s: %s", self.path, e)
            raise StoreError(f"Cannot load KV file {self.path}: {e}") from e
        logger.info("Loaded %d keys from %s", len(self._data), self.path)

    def _write(self, key: str, raw: str, version: int) -> None:
        previous = self._data.get(key)
        super()._write(key, raw, version)
        try:
            self._persist()
        except OSError as e:
            # Keep memory and disk consistent
            if previous is None:
                self._data.pop(key, None)
            else:
                self._data[key] = previous
            logger.error("Cannot persist KV file %s: %s", self.path, e)
            raise StoreError(f"Cannot persist KV file: {e}") from e

    def _persist(self) -> None:
        doc = {
            key: {"value": json.loads(raw), "version": version}
            for key, (raw, version) in self._data.items()
        }
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".kv-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


# -- Factory / helpers --------------------------------------------------------

def create_store(config: dict, project_dir: str) -> KeyValueStore | None:
    """
    Build the store configured under the 'kv' section.

    Args:
        config:      Full configuration dict (see config.DEFAULTS).
        project_dir: Base directory for relative file paths.

    Returns:
        A store instance, or None when backend is 'none' (no KV binding).
    """
    kv = config.get("kv", {})
    backend = str(kv.get("backend") or "none").lower()

    if backend == "memory":
        return MemoryKeyValueStore()
    if backend == "file":
        path = kv.get("path") or "data/kv.json"
        if not os.path.isabs(path):
            path = os.path.join(project_dir, path)
        return FileKeyValueStore(path)
    if backend == "none":
        logger.warning("No KV backend configured; data endpoints will fail")
        return None
    raise ValueError(f"Unknown kv.backend: {backend!r}")


def atomic_update(
    store: KeyValueStore,
    key: str,
    mutate: Callable[[Any], Any],
    default: Any = None,
    attempts: int = 5,
) -> Any:
    """
    Read-check-write a key under its version token.

    mutate receives a fresh copy of the current value (or of default when
    the key is absent) and returns the value to write. If another writer
    bumps the version in between, the cycle restarts from a new read, so
    mutate must be safe to call more than once. Exceptions raised by mutate
    abort the update without writing.

    Args:
        store:    Store to operate on.
        key:      Key to update.
        mutate:   Function from current value to new value.
        default:  Value used when the key is absent.
        attempts: Maximum number of read-check-write cycles.

    Returns:
        The value that was written.

    Raises:
        ConflictError: If every attempt lost to a concurrent writer.
    """
    for attempt in range(1, attempts + 1):
        current, version = store.get_versioned(key)
        if current is None:
            current = json.loads(_encode(default))
        updated = mutate(current)
        if store.compare_and_swap(key, version, updated):
            return updated
        logger.info("Write conflict on %s (attempt %d/%d), retrying", key, attempt, attempts)

    logger.warning("Giving up on %s after %d conflicting writes", key, attempts)
    raise ConflictError("Concurrent modification, please retry")


def _encode(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise StoreError(f"Value is not JSON-serializable: {e}") from e
