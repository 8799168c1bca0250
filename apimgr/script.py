"""
Shell script rendering.

All shell output apimgr produces (command stdout, ``active.env``) and the
env map written to Claude Code settings come from the same projection of a
configuration onto the recognized environment variables.
"""

import logging
from pathlib import Path
from typing import Optional

from apimgr.fileio import atomic_write_text
from apimgr.models import APIConfig
from apimgr.utils import shell_double_quote

logger = logging.getLogger(__name__)

API_KEY_VAR = "ANTHROPIC_API_KEY"
AUTH_TOKEN_VAR = "ANTHROPIC_AUTH_TOKEN"
BASE_URL_VAR = "ANTHROPIC_BASE_URL"
MODEL_VAR = "ANTHROPIC_MODEL"
ACTIVE_VAR = "APIMGR_ACTIVE"

# Variables owned by apimgr in the shell environment
RECOGNIZED_VARS = (API_KEY_VAR, AUTH_TOKEN_VAR, BASE_URL_VAR, MODEL_VAR, ACTIVE_VAR)
# Subset owned by apimgr inside a settings file's env map
CREDENTIAL_VARS = (API_KEY_VAR, AUTH_TOKEN_VAR, BASE_URL_VAR, MODEL_VAR)


def env_vars_for(cfg: APIConfig) -> dict[str, str]:
    """
    Project ``cfg`` onto the credential variables.

    Only non-empty fields produce a variable. When both credentials are set
    the API key wins and the auth token is left out.
    """
    env: dict[str, str] = {}
    if cfg.api_key:
        env[API_KEY_VAR] = cfg.api_key
    elif cfg.auth_token:
        env[AUTH_TOKEN_VAR] = cfg.auth_token
    if cfg.base_url:
        env[BASE_URL_VAR] = cfg.base_url
    if cfg.model:
        env[MODEL_VAR] = cfg.model
    return env


def unset_lines() -> list[str]:
    return [f"unset {var}" for var in RECOGNIZED_VARS]


def export_lines(cfg: APIConfig) -> list[str]:
    lines = [f"export {var}={shell_double_quote(value)}" for var, value in env_vars_for(cfg).items()]
    lines.append(f"export {ACTIVE_VAR}={shell_double_quote(cfg.alias)}")
    return lines


def render_env_commands(cfg: Optional[APIConfig]) -> str:
    """Unset every recognized variable, then export those ``cfg`` defines."""
    lines = unset_lines()
    if cfg is not None:
        lines.extend(export_lines(cfg))
    return "\n".join(lines) + "\n"


def render_active_script(cfg: Optional[APIConfig]) -> str:
    """Render the content of ``active.env`` for the global configuration."""
    parts = [
        "# Auto-generated active configuration - updated on each config change",
        "# Do not edit this file manually",
        "",
        "# Clear previously set environment variables",
        *unset_lines(),
    ]
    if cfg is not None:
        parts += ["", "# Set new environment variables", *export_lines(cfg)]
    return "\n".join(parts) + "\n"


class ScriptGenerator:
    """Writes ``active.env`` so new shells pick up the global configuration."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def generate(self, active: Optional[APIConfig]) -> None:
        """
        Atomically rewrite the activation script.

        With no active configuration the script only unsets variables.

        Raises:
            OSError: If the script cannot be written
        """
        atomic_write_text(self.path, render_active_script(active))
        logger.debug("Wrote activation script %s", self.path)
