"""
Tool settings for apimgr.

Defaults are defined here. Users can override them by creating
settings.json in the apimgr config directory (~/.config/apimgr by default).
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Default settings values
DEFAULTS: dict[str, Any] = {
    # Seconds to wait for the config lock before giving up
    "lock_timeout": 5.0,
    # Seconds between lock attempts
    "lock_retry_interval": 0.05,
    # Number of settings.json backups kept by the sync engine
    "backup_retention": 3,
    # Provider assigned to configurations added without one
    "default_provider": "anthropic",
    # Claude Code settings file mirrored on activation.
    # Empty string means $CLAUDE_CONFIG_DIR/settings.json or ~/.claude/settings.json
    "claude_settings_path": "",
    # Also mirror global activations into ./.claude/settings.json when it exists
    "sync_project_settings": True,
}

CONFIG_FILENAME = "config.json"
SETTINGS_FILENAME = "settings.json"
ACTIVE_ENV_FILENAME = "active.env"
LEGACY_CONFIG_FILENAME = ".apimgr.json"


def get_config_dir(cli_arg: Optional[str] = None) -> Path:
    """
    Get the apimgr config directory with proper precedence.

    Precedence order:
    1. CLI argument (if provided)
    2. APIMGR_CONFIG_DIR environment variable
    3. $XDG_CONFIG_HOME/apimgr
    4. ~/.config/apimgr
    """
    if cli_arg:
        return Path(cli_arg).expanduser()

    env_dir = os.environ.get("APIMGR_CONFIG_DIR")
    if env_dir:
        return Path(env_dir).expanduser()

    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / "apimgr"


def get_claude_home() -> Path:
    """Claude Code home: CLAUDE_CONFIG_DIR if set, else ~/.claude."""
    env_var = os.environ.get("CLAUDE_CONFIG_DIR")
    if env_var:
        return Path(env_var).expanduser()
    return Path.home() / ".claude"


def _load_user_config(config_dir: Path) -> dict[str, Any]:
    """Load user overrides from settings.json if it exists."""
    settings_path = config_dir / SETTINGS_FILENAME
    if not settings_path.exists():
        return {}
    try:
        with open(settings_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (ValueError, OSError) as e:
        # ValueError covers JSONDecodeError and UnicodeDecodeError
        logger.warning("Ignoring unreadable settings file %s: %s", settings_path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring settings file %s: not a JSON object", settings_path)
        return {}
    return data


@dataclass(frozen=True)
class Settings:
    """Resolved settings for one apimgr invocation."""

    config_dir: Path
    lock_timeout: float
    lock_retry_interval: float
    backup_retention: int
    default_provider: str
    claude_settings_path: Path
    sync_project_settings: bool
    legacy_config_path: Path

    @property
    def config_path(self) -> Path:
        return self.config_dir / CONFIG_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.config_dir / (CONFIG_FILENAME + ".lock")

    @property
    def active_env_path(self) -> Path:
        return self.config_dir / ACTIVE_ENV_FILENAME

    @property
    def project_settings_path(self) -> Path:
        return Path.cwd() / ".claude" / "settings.json"


def load_settings(config_dir: Optional[Path] = None, **overrides: Any) -> Settings:
    """
    Build the merged settings (defaults + settings.json + keyword overrides).

    Args:
        config_dir: Config directory; resolved with get_config_dir() if None
        **overrides: Values that take precedence over both defaults and file

    Returns:
        Settings for this invocation
    """
    config_dir = Path(config_dir) if config_dir else get_config_dir()
    merged = {**DEFAULTS, **_load_user_config(config_dir), **overrides}

    claude_settings = merged.get("claude_settings_path") or ""
    claude_settings_path = (
        Path(claude_settings).expanduser() if claude_settings else get_claude_home() / "settings.json"
    )

    return Settings(
        config_dir=config_dir,
        lock_timeout=float(merged["lock_timeout"]),
        lock_retry_interval=float(merged["lock_retry_interval"]),
        backup_retention=max(1, int(merged["backup_retention"])),
        default_provider=str(merged["default_provider"] or DEFAULTS["default_provider"]),
        claude_settings_path=claude_settings_path,
        sync_project_settings=bool(merged["sync_project_settings"]),
        legacy_config_path=Path.home() / LEGACY_CONFIG_FILENAME,
    )
