# -*- coding: utf-8 -*-
"""
persistence.py - Local file-based key-value store

Stores every PyStove record in a single JSON file, addressed by path
(e.g. "production/maintenance"). Provides atomic writes with temp file to
prevent corruption, and optimistic transactions for read-modify-write.

File structure:
    {
        'nodes': {'production/maintenance': {...}, ...},
        'revisions': {'production/maintenance': 12, ...}
    }
"""

import copy
import fcntl
import json
import os
import tempfile
import threading
from typing import Any, Callable, Dict, Optional

import pystove.core.constants as C
from pystove.core.errors import StorageUnavailable


class TransactionResult:
    """Outcome of a transaction: whether it wrote, and the value now stored."""

    def __init__(self, committed: bool, value: Any, attempts: int):
        self.committed = committed
        self.value = value
        self.attempts = attempts

    def __repr__(self):
        return f"TransactionResult(committed={self.committed}, attempts={self.attempts})"


class PersistenceManager:
    """Path-addressed JSON store with per-environment namespacing.

    Every public path is prefixed with the environment name, so a dev and a
    production instance can share one file without seeing each other's data.

    Concurrency: writers take an exclusive flock on a sidecar lock file (and
    an in-process lock), so read-check-write sequences are atomic across
    processes. Readers never lock; os.replace() makes every read see a whole
    file.
    """

    def __init__(self, file_path: str, environment: str = C.ENVIRONMENT_DEFAULT):
        """Initialize persistence manager.

        Args:
            file_path: Absolute path to persistence file
            environment: Prefix applied to every path
        """
        self.file_path = file_path
        self.lock_path = file_path + '.lock'
        self.environment = environment.strip('/')
        self._thread_lock = threading.RLock()
        # Ensure directory exists
        os.makedirs(os.path.dirname(file_path) or '.', exist_ok=True)

    def full_path(self, path: str) -> str:
        """Apply the environment prefix to a record path."""
        return f"{self.environment}/{path.strip('/')}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, path: str) -> Optional[Any]:
        """Read the value at path.

        Returns:
            A copy of the stored value, or None if nothing is stored there

        Raises:
            StorageUnavailable: file unreadable or not valid JSON
        """
        data = self._load()
        value = data['nodes'].get(self.full_path(path))
        return copy.deepcopy(value)

    def set(self, path: str, value: Any) -> None:
        """Overwrite the value at path."""
        key = self.full_path(path)
        with self._locked():
            data = self._load()
            data['nodes'][key] = copy.deepcopy(value)
            self._bump(data, key)
            self._save(data)

    def update(self, path: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge fields into the dict stored at path.

        Returns:
            The merged record as written
        """
        key = self.full_path(path)
        with self._locked():
            data = self._load()
            current = data['nodes'].get(key)
            merged = dict(current) if isinstance(current, dict) else {}
            merged.update(copy.deepcopy(fields))
            data['nodes'][key] = merged
            self._bump(data, key)
            self._save(data)
            return copy.deepcopy(merged)

    def delete(self, path: str) -> None:
        """Remove the value at path (no-op if absent)."""
        key = self.full_path(path)
        with self._locked():
            data = self._load()
            if key in data['nodes']:
                del data['nodes'][key]
                self._bump(data, key)
                self._save(data)

    def transact(self, path: str, fn: Callable[[Optional[Any]], Optional[Any]],
                 max_retries: int = C.TRANSACTION_MAX_RETRIES) -> TransactionResult:
        """Optimistic read-modify-write on a single path.

        fn receives a copy of the current value (None if absent) and returns
        the new value, or None to abort without writing. The value is read
        unlocked, fn runs, then the path revision is re-checked under the
        lock; if another writer got in first, fn runs again on the fresh
        value. fn may therefore run several times and must be pure.

        Args:
            path: Record path (environment prefix is applied)
            fn: Transaction function
            max_retries: Attempts before giving up

        Returns:
            TransactionResult with committed flag and the stored value

        Raises:
            StorageUnavailable: I/O failure or retries exhausted
        """
        key = self.full_path(path)
        for attempt in range(1, max_retries + 1):
            data = self._load()
            revision = data['revisions'].get(key, 0)
            current = data['nodes'].get(key)

            new_value = fn(copy.deepcopy(current))
            if new_value is None:
                return TransactionResult(False, copy.deepcopy(current), attempt)

            with self._locked():
                latest = self._load()
                if latest['revisions'].get(key, 0) != revision:
                    continue
                latest['nodes'][key] = copy.deepcopy(new_value)
                self._bump(latest, key)
                self._save(latest)
                return TransactionResult(True, copy.deepcopy(new_value), attempt)

        raise StorageUnavailable(f"Transaction on '{key}' gave up after {max_retries} conflicting attempts")

    def revision(self, path: str) -> int:
        """Number of writes ever committed to path."""
        return self._load()['revisions'].get(self.full_path(path), 0)

    # ------------------------------------------------------------------
    # File handling
    # ------------------------------------------------------------------

    def _bump(self, data: Dict[str, Any], key: str) -> None:
        data['revisions'][key] = data['revisions'].get(key, 0) + 1

    def _locked(self):
        return _FileLock(self.lock_path, self._thread_lock)

    def _load(self) -> Dict[str, Any]:
        """Load the whole store from disk.

        Returns:
            {'nodes': {...}, 'revisions': {...}}, empty if the file doesn't exist
        """
        try:
            if not os.path.exists(self.file_path):
                return {'nodes': {}, 'revisions': {}}

            with open(self.file_path, 'r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise StorageUnavailable(f"Failed to load persistence file {self.file_path}: {e}") from e

        if not isinstance(data, dict):
            raise StorageUnavailable(f"Persistence file {self.file_path} is not a JSON object")
        data.setdefault('nodes', {})
        data.setdefault('revisions', {})
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        """Save the whole store using atomic write (temp file + rename)."""
        try:
            fd, temp_path = tempfile.mkstemp(
                dir=os.path.dirname(self.file_path) or '.',
                prefix='.persistence_tmp_',
                suffix='.json'
            )

            try:
                with os.fdopen(fd, 'w') as f:
                    json.dump(data, f, separators=(',', ':'))

                # Actual permissions will be 0o666 & ~umask
                os.chmod(temp_path, 0o666)

                os.replace(temp_path, self.file_path)
            except Exception:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
                raise

        except (IOError, OSError) as e:
            raise StorageUnavailable(f"Failed to save persistence file {self.file_path}: {e}") from e


class _FileLock:
    """Exclusive lock held across processes (flock) and threads (RLock)."""

    def __init__(self, lock_path: str, thread_lock):
        self.lock_path = lock_path
        self.thread_lock = thread_lock
        self.fd = None

    def __enter__(self):
        self.thread_lock.acquire()
        try:
            self.fd = os.open(self.lock_path, os.O_CREAT | os.O_RDWR, 0o666)
            fcntl.flock(self.fd, fcntl.LOCK_EX)
        except OSError as e:
            if self.fd is not None:
                os.close(self.fd)
                self.fd = None
            self.thread_lock.release()
            raise StorageUnavailable(f"Failed to lock {self.lock_path}: {e}") from e
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            fcntl.flock(self.fd, fcntl.LOCK_UN)
            os.close(self.fd)
        finally:
            self.fd = None
            self.thread_lock.release()
        return False
