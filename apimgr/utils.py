"""Small helpers shared by the command layer and the script renderer."""

from typing import Optional


def mask_api_key(key: Optional[str]) -> str:
    """Mask a credential for display, keeping the first and last 4 chars."""
    if not key or len(key) <= 8:
        return "****"
    return key[:4] + "****" + key[-4:]


def shell_double_quote(value: str) -> str:
    """
    Quote ``value`` for use inside a POSIX shell double-quoted string.

    Backslash, double quote, dollar and backtick are the only characters
    that keep a special meaning inside double quotes.
    """
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("`", "\\`")
    )
    return f'"{escaped}"'


def format_models_list(models: list[str], active_model: str) -> str:
    """Format a model list for display, marking the active model."""
    if not models:
        return "(none)"
    return ", ".join(f"{m} [active]" if m == active_model else m for m in models)
