"""Tests for the apimgr command line."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from apimgr.cli import main
from apimgr.config import load_settings
from apimgr.manager import ConfigManager

from conftest import read_json


@pytest.fixture
def runner():
    return CliRunner()


def invoke(runner, *args, env=None):
    return runner.invoke(main, list(args), env=env, catch_exceptions=False)


@pytest.fixture
def populated(runner):
    """Two profiles: 'work' (API key, two models) and 'proxy' (auth token)."""
    result = invoke(runner, "add", "work", "--sk", "sk-ant-work-0123456789", "--models", "m1,m2")
    assert result.exit_code == 0, result.output
    result = invoke(runner, "add", "proxy", "--ak", "tok-proxy-0123456789", "-u", "http://localhost:8080")
    assert result.exit_code == 0, result.output


def _manager():
    return ConfigManager(load_settings())


class TestAdd:
    def test_add_defaults(self, runner, populated):
        cfg = _manager().get("work")
        assert cfg.base_url == "https://api.anthropic.com"
        assert cfg.model == "m1"
        assert cfg.provider == "anthropic"

    def test_add_requires_credential(self, runner):
        result = invoke(runner, "add", "bad")
        assert result.exit_code != 0
        assert "--sk or --ak" in result.output

    def test_add_duplicate(self, runner, populated):
        result = invoke(runner, "add", "work", "--sk", "sk-other-0123456789")
        assert result.exit_code == 1
        assert "Error: configuration 'work' already exists" in result.stderr

    def test_add_invalid_url(self, runner):
        result = invoke(runner, "add", "bad", "--sk", "sk-0123456789", "--url", "nope")
        assert result.exit_code == 1
        assert "invalid URL format" in result.stderr

    def test_add_prints_nothing_on_stdout(self, runner):
        result = invoke(runner, "add", "a", "--sk", "sk-0123456789")
        assert result.stdout == ""


class TestSwitch:
    def test_global_switch(self, runner, populated, isolated_env):
        result = invoke(runner, "switch", "work")
        assert result.exit_code == 0, result.output
        assert "unset ANTHROPIC_AUTH_TOKEN" in result.stdout
        assert 'export ANTHROPIC_API_KEY="sk-ant-work-0123456789"' in result.stdout
        assert 'export APIMGR_ACTIVE="work"' in result.stdout
        assert "Switched to configuration: work" in result.stderr

        assert _manager().get_active_name() == "work"
        active_env = isolated_env["config_dir"] / "active.env"
        assert 'export ANTHROPIC_MODEL="m1"' in active_env.read_text()

    def test_global_switch_with_model(self, runner, populated):
        result = invoke(runner, "switch", "work", "-m", "m2")
        assert result.exit_code == 0, result.output
        assert 'export ANTHROPIC_MODEL="m2"' in result.stdout
        assert _manager().get("work").model == "m2"

    def test_switch_model_not_in_list(self, runner, populated):
        result = invoke(runner, "switch", "work", "-m", "m9")
        assert result.exit_code == 1
        assert "not in supported models list" in result.stderr
        assert result.stdout == ""

    def test_switch_missing(self, runner):
        result = invoke(runner, "switch", "nope")
        assert result.exit_code == 1
        assert "Error: configuration 'nope' does not exist" in result.stderr

    def test_local_switch_is_isolated(self, runner, populated, isolated_env, claude_settings):
        """Test that a local switch leaves the global pointer and active.env alone."""
        invoke(runner, "switch", "work")
        config_path = isolated_env["config_dir"] / "config.json"
        active_env = isolated_env["config_dir"] / "active.env"
        config_before = config_path.read_bytes()
        script_before = active_env.read_bytes()

        result = invoke(runner, "switch", "-l", "proxy", "--pid", "4242")

        assert result.exit_code == 0, result.output
        lines = result.stdout.splitlines()
        assert lines[0] == "trap 'apimgr cleanup-session 4242' EXIT"
        assert 'export ANTHROPIC_AUTH_TOKEN="tok-proxy-0123456789"' in lines
        assert config_path.read_bytes() == config_before
        assert active_env.read_bytes() == script_before
        assert (isolated_env["config_dir"] / "session-4242").exists()
        assert read_json(claude_settings)["env"]["ANTHROPIC_AUTH_TOKEN"] == "tok-proxy-0123456789"

    def test_local_switch_before_any_global(self, runner, populated, isolated_env):
        result = invoke(runner, "switch", "--local", "work", "--pid", "4242")
        assert result.exit_code == 0, result.output
        assert not (isolated_env["config_dir"] / "active.env").exists()
        assert _manager().get_active_name() == ""

    def test_local_switch_with_model(self, runner, populated):
        result = invoke(runner, "switch", "-l", "work", "-m", "m2", "--pid", "4242")
        assert result.exit_code == 0, result.output
        assert 'export ANTHROPIC_MODEL="m2"' in result.stdout
        assert _manager().get("work").model == "m1"


class TestEdit:
    def test_edit_fields(self, runner, populated):
        result = invoke(runner, "edit", "proxy", "--url", "http://localhost:9090", "--sk", "sk-new-0123456789")
        assert result.exit_code == 0, result.output
        cfg = _manager().get("proxy")
        assert cfg.base_url == "http://localhost:9090"
        assert cfg.api_key == "sk-new-0123456789"
        assert cfg.auth_token == "tok-proxy-0123456789"

    def test_edit_rename(self, runner, populated):
        invoke(runner, "switch", "work")
        result = invoke(runner, "edit", "work", "--alias", "job")
        assert result.exit_code == 0, result.output
        manager = _manager()
        assert manager.get_active_name() == "job"
        assert [c.alias for c in manager.list_configs()] == ["job", "proxy"]

    def test_edit_models_fallback_notice(self, runner, populated):
        result = invoke(runner, "edit", "work", "--models", "m3,m4")
        assert result.exit_code == 0, result.output
        assert "active model is now 'm3'" in result.stderr
        assert _manager().get("work").model == "m3"

    def test_edit_models_with_model(self, runner, populated):
        result = invoke(runner, "edit", "work", "--models", "m3,m4", "--model", "m4")
        assert result.exit_code == 0, result.output
        cfg = _manager().get("work")
        assert cfg.models == ["m3", "m4"]
        assert cfg.model == "m4"

    def test_edit_clearing_last_credential(self, runner, populated):
        result = invoke(runner, "edit", "work", "--sk", "")
        assert result.exit_code == 1
        assert "cannot both be empty" in result.stderr

    def test_edit_rejected_change_keeps_alias(self, runner, populated):
        """Test that a rename is not saved when another edited field is invalid."""
        result = invoke(runner, "edit", "work", "--alias", "job", "--sk", "")
        assert result.exit_code == 1
        assert [c.alias for c in _manager().list_configs()] == ["work", "proxy"]

    def test_edit_nothing(self, runner, populated):
        result = invoke(runner, "edit", "work")
        assert result.exit_code != 0

    def test_edit_current_shell_alias_prints_exports(self, runner, populated):
        result = invoke(runner, "edit", "work", "--url", "http://localhost:7000",
                        env={"APIMGR_ACTIVE": "work"})
        assert result.exit_code == 0, result.output
        assert 'export ANTHROPIC_BASE_URL="http://localhost:7000"' in result.stdout


class TestRemove:
    def test_remove(self, runner, populated):
        result = invoke(runner, "remove", "proxy")
        assert result.exit_code == 0, result.output
        assert [c.alias for c in _manager().list_configs()] == ["work"]

    def test_remove_active(self, runner, populated, isolated_env):
        invoke(runner, "switch", "work")
        result = invoke(runner, "remove", "work", env={"APIMGR_ACTIVE": "work"})
        assert result.exit_code == 0, result.output
        assert "export" not in result.stdout
        assert "unset ANTHROPIC_API_KEY" in result.stdout
        assert "export" not in (isolated_env["config_dir"] / "active.env").read_text()

    def test_remove_missing(self, runner):
        result = invoke(runner, "remove", "nope")
        assert result.exit_code == 1


class TestListAndStatus:
    def test_list_empty(self, runner):
        result = invoke(runner, "list")
        assert "No configurations available" in result.stdout

    def test_list_unreadable_config_file(self, runner, isolated_env):
        config_path = load_settings().config_path
        config_path.parent.mkdir(parents=True)
        config_path.write_bytes(b'{"active": "\xff", "configs": []}')
        result = invoke(runner, "list")
        assert result.exit_code == 1
        assert "Error: failed to parse config file" in result.stderr

    def test_list_masks_keys(self, runner, populated):
        invoke(runner, "switch", "work")
        result = invoke(runner, "list")
        assert result.exit_code == 0, result.output
        assert "work" in result.stdout
        assert "proxy" in result.stdout
        assert "sk-ant-work-0123456789" not in result.stdout
        assert "sk-a****6789" in result.stdout

    def test_models(self, runner, populated):
        result = invoke(runner, "models", "work")
        assert result.stdout.splitlines() == ["* m1", "  m2"]

    def test_status_with_shell_override(self, runner, populated):
        invoke(runner, "switch", "work")
        result = invoke(runner, "status", env={
            "ANTHROPIC_AUTH_TOKEN": "tok-proxy-0123456789",
            "APIMGR_ACTIVE": "proxy",
        })
        assert result.exit_code == 0, result.output
        assert "Alias: work" in result.stdout
        assert "Alias: proxy" in result.stdout
        assert "overrides global configuration" in result.stdout
        assert "tok-proxy-0123456789" not in result.stdout

    def test_status_without_config(self, runner):
        result = invoke(runner, "status")
        assert "No global active configuration set" in result.stdout
        assert "No configuration set" in result.stdout


class TestLoadActive:
    def test_no_active_prints_nothing(self, runner):
        result = invoke(runner, "load-active")
        assert result.exit_code == 0
        assert result.stdout == ""

    def test_prints_exports(self, runner, populated):
        invoke(runner, "switch", "work")
        result = invoke(runner, "load-active")
        assert 'export ANTHROPIC_API_KEY="sk-ant-work-0123456789"' in result.stdout
        assert "unset" not in result.stdout

    def test_restores_claude_settings_when_sessions_live(self, runner, populated, claude_settings):
        invoke(runner, "switch", "work")
        invoke(runner, "switch", "-l", "proxy", "--pid", "4242")
        assert "ANTHROPIC_AUTH_TOKEN" in read_json(claude_settings)["env"]

        with patch("apimgr.session.is_process_alive", return_value=True):
            result = invoke(runner, "load-active")

        assert result.exit_code == 0, result.output
        env = read_json(claude_settings)["env"]
        assert env["ANTHROPIC_API_KEY"] == "sk-ant-work-0123456789"
        assert "ANTHROPIC_AUTH_TOKEN" not in env


class TestCleanupSession:
    def test_cleanup(self, runner, populated, isolated_env):
        invoke(runner, "switch", "-l", "work", "--pid", "4242")
        result = invoke(runner, "cleanup-session", "4242")
        assert result.exit_code == 0
        assert not (isolated_env["config_dir"] / "session-4242").exists()

    def test_cleanup_unknown_pid(self, runner):
        result = invoke(runner, "cleanup-session", "99999")
        assert result.exit_code == 0


class TestSync:
    def test_sync_defaults_to_status(self, runner, populated):
        invoke(runner, "switch", "work")
        result = invoke(runner, "sync")
        assert result.exit_code == 0, result.output
        assert "Current configuration: work" in result.stdout

    def test_sync_claude(self, runner, populated, claude_settings):
        invoke(runner, "switch", "work")
        claude_settings.write_text(json.dumps({"env": {}, "model": "opus"}))
        result = invoke(runner, "sync", "claude")
        assert result.exit_code == 0, result.output
        doc = read_json(claude_settings)
        assert doc["env"]["ANTHROPIC_API_KEY"] == "sk-ant-work-0123456789"
        assert doc["model"] == "opus"

    def test_sync_claude_without_active(self, runner):
        result = invoke(runner, "sync", "claude")
        assert result.exit_code == 1
        assert "no active configuration" in result.stderr

    def test_sync_init(self, runner, populated, isolated_env):
        invoke(runner, "switch", "work")
        result = invoke(runner, "sync", "init")
        assert result.exit_code == 0, result.output
        project = isolated_env["project_dir"] / ".claude" / "settings.json"
        assert read_json(project)["env"]["ANTHROPIC_API_KEY"] == "sk-ant-work-0123456789"

        result = invoke(runner, "sync", "init")
        assert "already exists" in result.stderr
