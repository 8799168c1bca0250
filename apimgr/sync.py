"""
Mirror the resolved configuration into Claude Code settings files.

A settings file is an arbitrary JSON object holding an ``env`` map among
other keys. Syncing clears apimgr's credential variables from that map and
sets the ones the configuration defines; every other key, inside or outside
``env``, is preserved. Only the text of the ``env`` value is rewritten; the
rest of the file keeps its bytes. Files that do not exist are never created.
"""

import json
import logging
import os
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from apimgr.errors import ConfigIOError
from apimgr.fileio import atomic_write_text
from apimgr.models import APIConfig
from apimgr.script import CREDENTIAL_VARS, env_vars_for

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_RETENTION = 3


class BackupManager:
    """Timestamped copies of a file, pruned to the newest ``max_backups``."""

    def __init__(self, max_backups: int = DEFAULT_BACKUP_RETENTION):
        self.max_backups = max_backups if max_backups > 0 else DEFAULT_BACKUP_RETENTION

    def create_backup(self, path: Path) -> Path:
        """Copy ``path`` to ``<path>.backup-YYYYMMDDHHMMSS-<pid>``."""
        path = Path(path)
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.name}.backup-{stamp}-{os.getpid()}")
        shutil.copy2(path, backup_path)
        return backup_path

    def list_backups(self, path: Path) -> list[Path]:
        """Backups of ``path``, oldest first."""
        path = Path(path)
        backups = list(path.parent.glob(f"{path.name}.backup-*"))
        return sorted(backups, key=lambda p: (p.stat().st_mtime, p.name))

    def cleanup_old_backups(self, path: Path) -> None:
        backups = self.list_backups(path)
        for old in backups[: max(0, len(backups) - self.max_backups)]:
            old.unlink()

    def restore_latest(self, path: Path) -> Path:
        """
        Restore ``path`` from its most recent backup.

        Raises:
            FileNotFoundError: If no backup exists
        """
        backups = self.list_backups(path)
        if not backups:
            raise FileNotFoundError(f"no backup files found for {path}")
        latest = backups[-1]
        shutil.copy2(latest, path)
        return latest


def merge_env(document: dict[str, Any], cfg: Optional[APIConfig]) -> dict[str, Any]:
    """
    Return a copy of ``document`` with its env map resynchronized to ``cfg``.

    With ``cfg`` None the credential variables are only cleared.

    Raises:
        ValueError: If ``env`` exists but is not an object
    """
    updated = dict(document)
    env = updated.get("env", {})
    if not isinstance(env, dict):
        raise ValueError("env field is not a map")

    new_env = {key: value for key, value in env.items() if key not in CREDENTIAL_VARS}
    if cfg is not None:
        new_env.update(env_vars_for(cfg))
    updated["env"] = new_env
    return updated


_decoder = json.JSONDecoder()
_WHITESPACE = " \t\n\r"


def _skip_ws(text: str, idx: int) -> int:
    while idx < len(text) and text[idx] in _WHITESPACE:
        idx += 1
    return idx


def _member_value_span(text: str, key: str) -> Optional[tuple[int, int]]:
    """
    Locate the value of ``key`` in the top-level object of ``text``.

    ``text`` must already be known to be valid JSON. With duplicate keys the
    last one wins, as with ``json.loads``.
    """
    idx = _skip_ws(text, 0)
    if text[idx] != "{":
        raise ValueError("settings document is not a JSON object")
    idx = _skip_ws(text, idx + 1)
    if text[idx] == "}":
        return None

    span = None
    while True:
        name, idx = json.decoder.scanstring(text, idx + 1)
        idx = _skip_ws(text, idx)
        idx = _skip_ws(text, idx + 1)  # ':'
        _, end = _decoder.raw_decode(text, idx)
        if name == key:
            span = (idx, end)
        idx = _skip_ws(text, end)
        if text[idx] == "}":
            return span
        idx = _skip_ws(text, idx + 1)  # ','


def _indent_unit(text: str) -> Optional[str]:
    """Indentation of the top-level members, or None for a single-line document."""
    match = re.match(r"\s*\{[ \t\r]*\n([ \t]+)\S", text)
    return match.group(1) if match else None


def _render(value: Any, unit: Optional[str], prefix: str) -> str:
    if unit is None:
        return json.dumps(value, ensure_ascii=False)
    return json.dumps(value, indent=unit, ensure_ascii=False).replace("\n", "\n" + prefix)


def splice_env(raw: str, env: dict[str, Any]) -> str:
    """
    Replace the ``env`` member of the settings text ``raw`` with ``env``.

    Everything outside the ``env`` value is kept as written, including
    indentation and number spelling. A document without ``env`` gets it
    inserted as the first member.
    """
    unit = _indent_unit(raw)
    span = _member_value_span(raw, "env")
    if span is not None:
        start, end = span
        line_start = raw.rfind("\n", 0, start) + 1
        prefix = re.match(r"[ \t]*", raw[line_start:]).group()
        return raw[:start] + _render(env, unit, prefix) + raw[end:]

    brace = raw.index("{")
    after = _skip_ws(raw, brace + 1)
    if raw[after] == "}":
        # Nothing else to preserve
        return raw[:brace] + json.dumps({"env": env}, indent=2, ensure_ascii=False) + raw[after + 1:]
    if unit is None:
        member = f'"env": {_render(env, None, "")}, '
    else:
        member = f'\n{unit}"env": {_render(env, unit, unit)},'
    return raw[: brace + 1] + member + raw[brace + 1:]


def verify_update(original: dict[str, Any], updated: dict[str, Any]) -> None:
    """
    Check that a merge only touched apimgr's variables.

    Raises:
        ValueError: Listing the keys that changed unexpectedly
    """
    differences = []
    for key in original.keys() | updated.keys():
        if key == "env":
            continue
        if key not in updated:
            differences.append(f"{key} (missing)")
        elif key not in original:
            differences.append(f"{key} (new)")
        elif original[key] != updated[key]:
            differences.append(key)
    if differences:
        raise ValueError(f"unexpected changes to non-env fields: {', '.join(sorted(differences))}")

    original_env = original.get("env") or {}
    updated_env = updated.get("env") or {}
    for key, value in original_env.items():
        if key in CREDENTIAL_VARS:
            continue
        if key not in updated_env:
            raise ValueError(f"non-credential env field '{key}' was deleted")
        if updated_env[key] != value:
            raise ValueError(f"non-credential env field '{key}' was modified")


class SyncEngine:
    """
    Writes configurations into Claude Code settings files.

    ``settings_path`` is the user-level settings file. ``project_settings_path``,
    when given, is additionally updated by global activations.
    """

    def __init__(
        self,
        settings_path: Path,
        project_settings_path: Optional[Path] = None,
        backup_retention: int = DEFAULT_BACKUP_RETENTION,
    ):
        self.settings_path = Path(settings_path)
        self.project_settings_path = Path(project_settings_path) if project_settings_path else None
        self.backups = BackupManager(backup_retention)

    def sync_file(self, path: Path, cfg: Optional[APIConfig]) -> bool:
        """
        Merge ``cfg`` into the settings file at ``path``.

        Returns:
            False if the file does not exist (nothing written), True otherwise

        Raises:
            ConfigIOError: If the file cannot be read, parsed or rewritten
        """
        path = Path(path)
        if not path.exists():
            return False

        try:
            data = path.read_bytes()
            mode = path.stat().st_mode & 0o777
        except OSError as e:
            raise ConfigIOError(f"failed to read settings {path}: {e}") from e

        try:
            raw = data.decode("utf-8")
            original = json.loads(raw) if raw.strip() else {}
            if not isinstance(original, dict):
                raise ValueError("settings document is not a JSON object")
            updated = merge_env(original, cfg)
            if updated == original:
                logger.debug("Settings %s already up to date", path)
                return True
            if raw.strip():
                text = splice_env(raw, updated["env"])
            else:
                text = json.dumps(updated, indent=2, ensure_ascii=False) + "\n"
            verify_update(original, json.loads(text))
        except ValueError as e:
            # UnicodeDecodeError and JSONDecodeError are ValueErrors too
            raise ConfigIOError(f"failed to update settings content of {path}: {e}") from e

        try:
            self.backups.create_backup(path)
            self.backups.cleanup_old_backups(path)
        except OSError as e:
            logger.warning("Failed to back up %s: %s", path, e)

        try:
            atomic_write_text(path, text, mode=mode)
        except OSError as e:
            try:
                self.backups.restore_latest(path)
            except OSError as restore_error:
                raise ConfigIOError(
                    f"failed to write settings file and restore from backup: "
                    f"update error={e}, restore error={restore_error}"
                ) from e
            raise ConfigIOError(f"failed to write settings file but restored from backup: {e}") from e

        logger.debug("Synced %s", path)
        return True

    def sync_local_only(self, cfg: APIConfig) -> bool:
        """Mirror a local activation into the user-level settings file only."""
        return self.sync_file(self.settings_path, cfg)

    def sync_global(self, cfg: Optional[APIConfig]) -> list[Path]:
        """
        Mirror a global activation into every configured settings file.

        Returns:
            The files that exist and were synchronized
        """
        synced = []
        targets = [self.settings_path]
        if self.project_settings_path and self.project_settings_path != self.settings_path:
            targets.append(self.project_settings_path)
        for target in targets:
            if self.sync_file(target, cfg):
                synced.append(target)
        return synced

    def restore_to_global(self, active: Optional[APIConfig]) -> bool:
        """
        Resynchronize the user-level settings file with the global configuration.

        With no global configuration the credential variables are cleared.
        """
        return self.sync_file(self.settings_path, active)
