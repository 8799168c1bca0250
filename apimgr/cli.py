#!/usr/bin/env python3
"""
apimgr - manage named API credential profiles for Claude Code.

Commands that change the active configuration print shell code on stdout,
so they are meant to be evaluated by the calling shell:

    eval "$(apimgr switch work)"
    eval "$(apimgr switch -l personal)"

Everything meant for humans (confirmations, warnings, errors) goes to
stderr, which keeps stdout safe to eval.
"""

import functools
import json
import os
import sys

import click
from rich import box
from rich.console import Console
from rich.table import Table

from apimgr.config import load_settings
from apimgr.errors import ApimgrError, NoActiveConfigError
from apimgr.fileio import atomic_write_text
from apimgr.logging_setup import init_logging
from apimgr.manager import ConfigManager
from apimgr.models import APIConfig, ConfigPatch
from apimgr.providers import get_provider, list_providers
from apimgr.script import (
    ACTIVE_VAR,
    API_KEY_VAR,
    AUTH_TOKEN_VAR,
    BASE_URL_VAR,
    MODEL_VAR,
    export_lines,
    render_env_commands,
)
from apimgr.sync import merge_env
from apimgr.utils import format_models_list, mask_api_key

console = Console(highlight=False, markup=False, soft_wrap=True)
err_console = Console(stderr=True, highlight=False, markup=False, soft_wrap=True)


def _handle_errors(func):
    """Report apimgr errors as click errors (message on stderr, exit 1)."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ApimgrError as e:
            raise click.ClickException(str(e)) from e

    return wrapper


def _split_models(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [m.strip() for m in value.split(",")]


def _success(message: str) -> None:
    err_console.print(f"✓ {message}", style="green")


def _warn(message: str) -> None:
    err_console.print(f"⚠ {message}", style="yellow")


@click.group()
@click.version_option(package_name="apimgr")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging on stderr")
@click.option(
    "--config-dir",
    envvar="APIMGR_CONFIG_DIR",
    type=click.Path(file_okay=False),
    help="Config directory (default: $XDG_CONFIG_HOME/apimgr)",
)
@click.pass_context
def main(ctx, verbose, config_dir):
    """
    API key and model configuration manager for Claude Code.

    Keeps named credential profiles and activates one either globally
    (persisted, picked up by new shells) or locally (this shell only).

    \b
    Examples:
        apimgr add work --sk sk-ant-xxx -m claude-sonnet-4
        eval "$(apimgr switch work)"          # global
        eval "$(apimgr switch -l personal)"   # this shell only
        apimgr list
        apimgr status
    """
    init_logging(verbose)
    ctx.obj = ConfigManager.open(load_settings(config_dir))


# ----- activation -----


@main.command()
@click.argument("alias")
@click.option("--local", "-l", is_flag=True,
              help="Only take effect in the current shell; global configuration is untouched")
@click.option("--model", "-m", "model", help="Switch to a specific model of the configuration")
@click.option("--pid", type=int, default=None,
              help="Process id of the shell owning a local switch (default: parent process)")
@click.pass_obj
@_handle_errors
def switch(manager: ConfigManager, alias, local, model, pid):
    """
    Switch to the configuration ALIAS.

    Prints unset/export commands; evaluate them in the shell:

    \b
        eval "$(apimgr switch <alias>)"
        eval "$(apimgr switch -l <alias>)"
        eval "$(apimgr switch <alias> --model claude-opus-4)"
    """
    if local:
        shell_pid = pid if pid is not None else os.getppid()
        # Local switches persist nothing, including the model choice
        cfg = manager.activate_local(alias, shell_pid, model=model)
        click.echo(f"trap 'apimgr cleanup-session {shell_pid}' EXIT")
        click.echo(render_env_commands(cfg), nl=False)
        _success(f"Switched to configuration locally: {alias}")
        return

    if model:
        manager.switch_model(alias, model)
        _success(f"Switched model to: {model}")
    cfg = manager.activate_global(alias)
    click.echo(render_env_commands(cfg), nl=False)
    _show_sync_info(manager)
    _success(f"Switched to configuration: {alias}")


def _show_sync_info(manager: ConfigManager) -> None:
    targets = [manager.sync.settings_path]
    if manager.sync.project_settings_path:
        targets.append(manager.sync.project_settings_path)
    existing = [t for t in targets if t.exists()]
    if not existing:
        return
    err_console.print("Configuration synced to Claude Code:")
    for target in existing:
        err_console.print(f"   • {target}")


@main.command("load-active")
@click.pass_obj
def load_active(manager: ConfigManager):
    """
    Print exports for the global configuration (for shell startup).

    If other terminals still hold local switches, Claude Code settings are
    first restored to the global configuration. Prints nothing when no
    configuration is active.

    \b
        eval "$(apimgr load-active)"
    """
    try:
        if manager.has_active_sessions():
            manager.restore_claude_to_global()
    except ApimgrError as e:
        _warn(f"Failed to restore Claude Code settings: {e}")

    try:
        cfg = manager.get_active()
    except ApimgrError:
        return
    click.echo("\n".join(export_lines(cfg)))


@main.command("cleanup-session")
@click.argument("pid", type=int)
@click.pass_obj
def cleanup_session(manager: ConfigManager, pid):
    """Remove the local session marker of PID (used by the shell exit trap)."""
    try:
        manager.cleanup_session(pid)
    except ApimgrError as e:
        # Runs during shell exit: report but never fail
        _warn(f"Failed to cleanup session: {e}")


# ----- CRUD -----


@main.command()
@click.argument("alias")
@click.option("--sk", "api_key", default="", help="API key (ANTHROPIC_API_KEY)")
@click.option("--ak", "auth_token", default="", help="Auth token (ANTHROPIC_AUTH_TOKEN)")
@click.option("--url", "-u", "base_url", default=None,
              help="API base URL (default: the provider's URL)")
@click.option("--model", "-m", default="", help="Active model")
@click.option("--models", default=None, help="Supported models, comma-separated")
@click.option("--provider", "-p", type=click.Choice(list_providers()), default=None,
              help="API provider")
@click.pass_obj
@_handle_errors
def add(manager: ConfigManager, alias, api_key, auth_token, base_url, model, models, provider):
    """
    Add a new configuration ALIAS.

    \b
        apimgr add my-config --sk sk-xxx --url https://api.anthropic.com -m claude-3
        apimgr add my-config --ak bearer-token --models claude-a,claude-b
    """
    if not api_key and not auth_token:
        raise click.UsageError("must provide either --sk or --ak")
    provider_name = provider or manager.settings.default_provider
    if base_url is None:
        base_url = get_provider(provider_name).default_base_url

    model_list = _split_models(models) or []
    cfg = manager.add(APIConfig(
        alias=alias,
        provider=provider_name,
        api_key=api_key,
        auth_token=auth_token,
        base_url=base_url,
        model=model,
        models=model_list,
    ))
    _success(f"Configuration added: {cfg.alias}")


@main.command()
@click.argument("alias")
@click.option("--alias", "new_alias", default=None, help="Rename the configuration")
@click.option("--sk", "api_key", default=None, help="Change API key ('' clears it)")
@click.option("--ak", "auth_token", default=None, help="Change auth token ('' clears it)")
@click.option("--url", "base_url", default=None, help="Change base URL")
@click.option("--model", default=None, help="Change active model")
@click.option("--models", default=None, help="Replace supported models (comma-separated)")
@click.option("--provider", type=click.Choice(list_providers()), default=None,
              help="Change API provider")
@click.pass_obj
@_handle_errors
def edit(manager: ConfigManager, alias, new_alias, api_key, auth_token, base_url, model, models, provider):
    """
    Edit configuration ALIAS; only the given fields change.

    All changes are validated together; if one is invalid nothing is saved.

    If ALIAS is the configuration of the current shell, updated exports
    are printed on stdout.
    """
    patch = ConfigPatch(
        provider=provider,
        api_key=api_key,
        auth_token=auth_token,
        base_url=base_url,
        model=model,
    )
    model_list = _split_models(models)
    if new_alias is None and model_list is None and patch.is_empty():
        raise click.UsageError("nothing to change; pass at least one option")

    target = new_alias if new_alias is not None else alias
    _, result = manager.edit(
        alias,
        new_alias=new_alias,
        models=model_list,
        patch=None if patch.is_empty() else patch,
    )
    if target != alias:
        _success(f"Renamed configuration: {alias} -> {target}")
    if result is not None and result.model_changed and result.previous_model and model is None:
        if result.model:
            _warn(f"Model '{result.previous_model}' is not in the new list; "
                  f"active model is now '{result.model}'")
        else:
            _warn("Models list is empty; active model cleared")

    _success(f"Configuration updated: {target}")

    if os.environ.get(ACTIVE_VAR) in (alias, target):
        click.echo(render_env_commands(manager.get(target)), nl=False)


@main.command()
@click.argument("alias")
@click.pass_obj
@_handle_errors
def remove(manager: ConfigManager, alias):
    """Remove configuration ALIAS."""
    was_active = manager.remove(alias)
    _success(f"Configuration removed: {alias}")
    if was_active:
        _warn("Removed the global active configuration; no configuration is active now")
    if os.environ.get(ACTIVE_VAR) == alias:
        click.echo(render_env_commands(None), nl=False)


@main.command("list")
@click.pass_obj
@_handle_errors
def list_configs(manager: ConfigManager):
    """List all configurations (* marks the global active one)."""
    configs = manager.list_configs()
    if not configs:
        console.print("No configurations available")
        return

    active_name = manager.get_active_name()
    table = Table(box=box.SIMPLE, show_header=True)
    table.add_column("", width=1)
    table.add_column("Alias", style="bold")
    table.add_column("Auth")
    table.add_column("Base URL")
    table.add_column("Model")
    for cfg in configs:
        if cfg.api_key:
            auth = f"API Key: {mask_api_key(cfg.api_key)}"
        else:
            auth = f"Auth Token: {mask_api_key(cfg.auth_token)}"
        table.add_row(
            "*" if cfg.alias == active_name else "",
            cfg.alias,
            auth,
            cfg.base_url or "-",
            cfg.model or "-",
        )
    console.print(table)
    if active_name:
        console.print("* indicates the currently active configuration")


@main.command()
@click.argument("alias")
@click.pass_obj
@_handle_errors
def models(manager: ConfigManager, alias):
    """Show the supported models of configuration ALIAS."""
    cfg = manager.get(alias)
    supported = cfg.supported_models()
    if not supported:
        console.print(f"No models configured for {alias}")
        return
    for name in supported:
        marker = "*" if name == cfg.model else " "
        console.print(f"{marker} {name}")


@main.command()
@click.pass_obj
@_handle_errors
def status(manager: ConfigManager):
    """Show the global configuration and the current shell environment."""
    shell_api_key = os.environ.get(API_KEY_VAR, "")
    shell_auth_token = os.environ.get(AUTH_TOKEN_VAR, "")
    shell_base_url = os.environ.get(BASE_URL_VAR, "")
    shell_model = os.environ.get(MODEL_VAR, "")
    shell_alias = os.environ.get(ACTIVE_VAR, "")

    try:
        active = manager.get_active()
    except NoActiveConfigError:
        active = None

    console.print("Current configuration status:")
    console.print("=" * 41)
    console.print("1. Global active configuration (config file):")
    if active is None:
        console.print("   No global active configuration set")
    else:
        console.print(f"   Alias: {active.alias}")
        if active.api_key:
            console.print(f"   API Key: {mask_api_key(active.api_key)}")
        if active.auth_token:
            console.print(f"   Auth Token: {mask_api_key(active.auth_token)}")
        if active.base_url:
            console.print(f"   Base URL: {active.base_url}")
        if active.model:
            console.print(f"   Active Model: {active.model}")
        supported = active.supported_models()
        if supported:
            console.print(f"   Supported Models: {format_models_list(supported, active.model)}")

    console.print("\n2. Current shell environment:")
    if not shell_api_key and not shell_auth_token:
        console.print("   No environment variables set")
    else:
        if shell_alias:
            console.print(f"   Alias: {shell_alias}")
        if shell_api_key:
            console.print(f"   API Key: {mask_api_key(shell_api_key)}")
        if shell_auth_token:
            console.print(f"   Auth Token: {mask_api_key(shell_auth_token)}")
        if shell_base_url:
            console.print(f"   Base URL: {shell_base_url}")
        if shell_model:
            console.print(f"   Model: {shell_model}")

    console.print("\n" + "=" * 41)
    if shell_api_key or shell_auth_token:
        if active is None or active.alias != shell_alias:
            console.print("Currently using shell environment configuration (overrides global configuration)")
        else:
            console.print("Currently using global configuration")
    elif active is None:
        console.print("No configuration set")
    else:
        console.print("Currently using global configuration (shell has no environment variables set)")

    if manager.has_active_sessions():
        console.print("Local sessions are active in other terminals")


# ----- sync -----


@main.group(invoke_without_command=True)
@click.pass_context
def sync(ctx):
    """Sync the active configuration to Claude Code settings."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(sync_status)


@sync.command("status")
@click.pass_obj
@_handle_errors
def sync_status(manager: ConfigManager):
    """Show which settings files are kept in sync."""
    console.print("=" * 60)
    console.print("Configuration Sync Status")
    console.print("=" * 60)
    try:
        active = manager.get_active()
    except NoActiveConfigError:
        console.print("\nNo active configuration")
        return

    console.print(f"\nCurrent configuration: {active.alias}")
    console.print(f"Model: {active.model or '-'}")
    if active.api_key:
        console.print(f"API Key: {mask_api_key(active.api_key)}")
    else:
        console.print(f"Auth Token: {mask_api_key(active.auth_token)}")
    console.print(f"Base URL: {active.base_url or '-'}")

    console.print("\nSync status:")
    user_path = manager.sync.settings_path
    if user_path.exists():
        console.print(f"✓ Claude Code (user): {user_path}")
    else:
        console.print(f"- Claude Code (user): {user_path} (not installed)")
    project_path = manager.sync.project_settings_path
    if project_path is not None:
        if project_path.exists():
            console.print(f"✓ Claude Code (project): {project_path}")
        else:
            console.print(f"- Claude Code (project): {project_path} (not initialized)")
    console.print("=" * 60)


@sync.command("claude")
@click.pass_obj
@_handle_errors
def sync_claude(manager: ConfigManager):
    """Force-sync the global configuration to Claude Code and active.env."""
    active = manager.get_active()
    manager.generate_active_script()
    synced = manager.sync.sync_global(active)
    if not synced:
        _warn("No Claude Code settings file found; nothing to sync")
        return
    for path in synced:
        _success(f"Synced {path}")


@sync.command("list")
def sync_list():
    """List the tools apimgr can sync to."""
    table = Table(box=box.SIMPLE)
    table.add_column("Tool")
    table.add_column("Settings file")
    table.add_column("Status")
    table.add_row("Claude Code", "~/.claude/settings.json", "supported")
    table.add_row("Claude Code (project)", ".claude/settings.json", "supported")
    console.print(table)


@sync.command("init")
@click.pass_obj
@_handle_errors
def sync_init(manager: ConfigManager):
    """Create ./.claude/settings.json so this project gets synced."""
    path = manager.settings.project_settings_path
    if path.exists():
        err_console.print(f"Claude Code configuration already exists: {path}")
        return

    try:
        active = manager.get_active()
    except NoActiveConfigError:
        active = None
    document = merge_env({"env": {}}, active)
    try:
        atomic_write_text(path, json.dumps(document, indent=2) + "\n")
    except OSError as e:
        raise click.ClickException(f"failed to create Claude Code configuration: {e}") from e
    _success(f"Created Claude Code configuration: {path}")


if __name__ == "__main__":
    sys.exit(main())
