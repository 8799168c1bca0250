"""
Durable storage for the config document.

The document is a single JSON file. Every mutation runs under an exclusive
lock held on a sidecar ``.lock`` file, re-reads the on-disk state inside the
lock, and replaces the file atomically, so concurrent apimgr processes never
lose each other's updates and readers never observe a partial file.
"""

import json
import logging
import os
from pathlib import Path
from typing import Callable, Optional

from apimgr.config import Settings
from apimgr.errors import ConfigIOError
from apimgr.fileio import atomic_write_text, exclusive_lock
from apimgr.models import ConfigFile

logger = logging.getLogger(__name__)


class Store:
    """Read/modify/write access to ``config.json``."""

    def __init__(
        self,
        path: Path,
        lock_path: Optional[Path] = None,
        lock_timeout: float = 5.0,
        lock_retry_interval: float = 0.05,
    ):
        self.path = Path(path)
        self.lock_path = Path(lock_path) if lock_path else self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout
        self.lock_retry_interval = lock_retry_interval

    @classmethod
    def from_settings(cls, settings: Settings) -> "Store":
        return cls(
            settings.config_path,
            lock_path=settings.lock_path,
            lock_timeout=settings.lock_timeout,
            lock_retry_interval=settings.lock_retry_interval,
        )

    def _ensure_dir(self) -> None:
        directory = self.path.parent
        if not directory.exists():
            try:
                directory.mkdir(parents=True, exist_ok=True)
                os.chmod(directory, 0o700)
            except OSError as e:
                raise ConfigIOError(f"failed to create config directory {directory}: {e}") from e

    def _read(self) -> ConfigFile:
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            return ConfigFile()
        except OSError as e:
            raise ConfigIOError(f"failed to read config file {self.path}: {e}") from e

        try:
            raw = data.decode("utf-8")
            if not raw.strip():
                return ConfigFile()
            return ConfigFile.from_data(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            # Covers UnicodeDecodeError and JSONDecodeError
            raise ConfigIOError(f"failed to parse config file {self.path}: {e}") from e

    def _write(self, doc: ConfigFile) -> None:
        text = json.dumps(doc.to_dict(), indent=2, ensure_ascii=False) + "\n"
        try:
            atomic_write_text(self.path, text)
        except OSError as e:
            raise ConfigIOError(f"failed to write config file {self.path}: {e}") from e

    def load(self) -> ConfigFile:
        """
        Read the current document.

        A missing or empty file is a valid empty document (first run).
        The read takes no lock; it may be stale relative to a concurrent
        writer but is never partial.

        Raises:
            ConfigIOError: If the file cannot be read or parsed
        """
        return self._read()

    def atomic_update(self, fn: Callable[[ConfigFile], ConfigFile]) -> ConfigFile:
        """
        Apply ``fn`` to the freshly read document and persist the result.

        ``fn`` runs while the lock is held. If it raises, nothing is written
        and the exception propagates unchanged.

        Returns:
            The document that was written

        Raises:
            LockTimeoutError: If the lock is not acquired within the timeout
            ConfigIOError: On read/write failure
        """
        self._ensure_dir()
        try:
            lock = exclusive_lock(
                self.lock_path,
                timeout=self.lock_timeout,
                retry_interval=self.lock_retry_interval,
            )
            with lock:
                doc = self._read()
                updated = fn(doc)
                self._write(updated)
        except OSError as e:
            raise ConfigIOError(f"failed to lock config file {self.lock_path}: {e}") from e
        logger.debug("Wrote %s (%d configs)", self.path, len(updated.configs))
        return updated

    def migrate_from(self, legacy_path: Path) -> bool:
        """
        Copy a legacy config document into place if this store has none.

        The legacy file is renamed to ``<name>.backup`` afterwards.

        Returns:
            True if a migration happened
        """
        legacy_path = Path(legacy_path)
        if self.path.exists() or not legacy_path.exists():
            return False

        try:
            data = legacy_path.read_bytes()
        except OSError as e:
            raise ConfigIOError(f"failed to read old config file {legacy_path}: {e}") from e
        if not data.strip():
            raise ConfigIOError(f"old config file {legacy_path} is empty")
        try:
            legacy = ConfigFile.from_data(json.loads(data.decode("utf-8")))
        except (ValueError, KeyError, TypeError) as e:
            raise ConfigIOError(f"old config file format is invalid: {e}") from e

        def _adopt(current: ConfigFile) -> ConfigFile:
            # Another process may have created the file while we waited
            return current if current.configs or current.active else legacy

        self.atomic_update(_adopt)

        backup_path = legacy_path.with_name(legacy_path.name + ".backup")
        try:
            legacy_path.rename(backup_path)
        except OSError as e:
            logger.warning("Failed to create backup of old config: %s", e)
        return True
