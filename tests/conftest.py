"""Shared fixtures: every test gets its own config dir, Claude home and cwd."""

import json
from pathlib import Path

import pytest

from apimgr.config import load_settings
from apimgr.manager import ConfigManager
from apimgr.models import APIConfig
from apimgr.script import RECOGNIZED_VARS


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Point apimgr and Claude Code at temp directories for each test."""
    home = tmp_path / "home"
    config_dir = tmp_path / "apimgr"
    claude_dir = tmp_path / "claude"
    project_dir = tmp_path / "project"
    for d in (home, claude_dir, project_dir):
        d.mkdir()

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("APIMGR_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("CLAUDE_CONFIG_DIR", str(claude_dir))
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    monkeypatch.delenv("APIMGR_DEBUG", raising=False)
    for var in RECOGNIZED_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(project_dir)

    return {
        "home": home,
        "config_dir": config_dir,
        "claude_dir": claude_dir,
        "project_dir": project_dir,
    }


@pytest.fixture
def settings(isolated_env):
    return load_settings()


@pytest.fixture
def manager(settings):
    return ConfigManager(settings)


@pytest.fixture
def claude_settings(isolated_env) -> Path:
    """Create a Claude Code settings.json with unrelated content to preserve."""
    path = isolated_env["claude_dir"] / "settings.json"
    path.write_text(json.dumps({
        "env": {
            "ANTHROPIC_API_KEY": "sk-stale-value",
            "HTTP_PROXY": "http://proxy.local:3128",
        },
        "permissions": {"allow": ["Bash(ls:*)"]},
        "alwaysThinkingEnabled": True,
    }, indent=2))
    return path


def read_json(path: Path) -> dict:
    return json.loads(Path(path).read_text())


def make_config(alias: str, **fields) -> APIConfig:
    """Build a valid APIConfig; defaults to an API-key profile."""
    if "api_key" not in fields and "auth_token" not in fields:
        fields["api_key"] = f"sk-ant-{alias}-0123456789"
    fields.setdefault("base_url", "https://api.anthropic.com")
    return APIConfig(alias=alias, **fields)
