"""
Per-shell local activation bookkeeping.

A shell that switches configuration with ``--local`` gets a marker file
``session-<pid>`` in the config directory. Markers never touch the config
document; they only tell later invocations that some terminal still has a
local override in effect. Markers whose process has exited are reaped lazily.

Process liveness is keyed on the pid. To reduce false positives from pid
reuse, markers also record the process start time when it is available and
a live process with a different start time is treated as a new, unrelated
process.
"""

import json
import logging
from pathlib import Path
from typing import Optional

import psutil

from apimgr.errors import ConfigIOError
from apimgr.fileio import atomic_write_text
from apimgr.models import SessionMarker

logger = logging.getLogger(__name__)

MARKER_PREFIX = "session-"
# Tolerance when comparing recorded and current process start times
START_TIME_TOLERANCE = 1.0


def process_start_time(pid: int) -> Optional[float]:
    try:
        return psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied, ValueError):
        return None


def is_process_alive(pid: int, started_at: Optional[float] = None) -> bool:
    """
    Check whether ``pid`` still denotes the process that created a marker.

    Zombies count as exited. When ``started_at`` is given, a process whose
    start time differs is a reused pid and also counts as exited.
    """
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        if started_at is not None and abs(proc.create_time() - started_at) > START_TIME_TOLERANCE:
            return False
        return True
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but owned by someone else
        return psutil.pid_exists(pid)


class SessionTracker:
    """Manages ``session-<pid>`` marker files in one directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def marker_path(self, pid: int) -> Path:
        return self.directory / f"{MARKER_PREFIX}{pid}"

    def create_marker(self, pid: int, alias: str) -> SessionMarker:
        """
        Record that ``pid`` has locally activated ``alias``.

        Raises:
            ConfigIOError: If the marker cannot be written
        """
        marker = SessionMarker(pid=int(pid), alias=alias)
        data = marker.to_dict()
        started_at = process_start_time(marker.pid)
        if started_at is not None:
            data["started_at"] = started_at
        try:
            atomic_write_text(self.marker_path(marker.pid), json.dumps(data, indent=2) + "\n")
        except OSError as e:
            raise ConfigIOError(f"failed to write session marker: {e}") from e
        logger.debug("Created session marker for pid %s (%s)", pid, alias)
        return marker

    def remove_marker(self, pid) -> None:
        """
        Remove the marker for ``pid``. Removing a missing marker is a no-op.

        Raises:
            ConfigIOError: If an existing marker cannot be removed
        """
        try:
            self.marker_path(pid).unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise ConfigIOError(f"failed to remove session marker: {e}") from e
        logger.debug("Removed session marker for pid %s", pid)

    def _marker_files(self) -> list[Path]:
        if not self.directory.exists():
            return []
        try:
            return sorted(
                p for p in self.directory.iterdir()
                if p.name.startswith(MARKER_PREFIX) and p.is_file()
            )
        except OSError as e:
            raise ConfigIOError(f"failed to read config directory: {e}") from e

    def _read_started_at(self, path: Path) -> Optional[float]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            value = data.get("started_at")
            return float(value) if value is not None else None
        except (OSError, json.JSONDecodeError, AttributeError, TypeError, ValueError):
            return None

    def _discard(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove stale session marker %s: %s", path.name, e)

    def list_markers(self) -> list[SessionMarker]:
        """Return the markers currently on disk, live or not."""
        markers = []
        for path in self._marker_files():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                markers.append(SessionMarker.from_dict(data))
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError):
                logger.debug("Skipping unreadable session marker %s", path.name)
        return markers

    def has_active_sessions(self) -> bool:
        """
        Report whether any live process holds a local override.

        Markers with an unparseable name or a dead process are removed first
        and never count toward the result.
        """
        has_active = False
        for path in self._marker_files():
            pid_str = path.name[len(MARKER_PREFIX):]
            try:
                pid = int(pid_str)
            except ValueError:
                self._discard(path)
                continue

            if is_process_alive(pid, self._read_started_at(path)):
                has_active = True
            else:
                logger.debug("Reaping stale session marker for pid %d", pid)
                self._discard(path)
        return has_active
