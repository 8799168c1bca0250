"""Validation of configuration records and model lists."""

from typing import Iterable
from urllib.parse import urlparse

from apimgr.errors import ValidationError, ValidationKind
from apimgr.models import APIConfig
from apimgr.providers import get_provider


def is_valid_url(raw_url: str) -> bool:
    """Return True for an absolute http(s) URL with a non-empty host."""
    if not raw_url:
        return False
    try:
        parsed = urlparse(raw_url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.hostname)


def normalize_models(models: Iterable[str]) -> list[str]:
    """Trim names, drop empty ones and de-duplicate preserving order."""
    seen: set[str] = set()
    result = []
    for m in models:
        trimmed = (m or "").strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        result.append(trimmed)
    return result


def validate_models_list(models: list[str]) -> None:
    if not any((m or "").strip() for m in models):
        raise ValidationError(ValidationKind.EMPTY_MODELS_LIST, "models list cannot be empty")


def validate_model_in_list(model: str, models: list[str]) -> None:
    """
    Check that ``model`` may be selected given the supported list.

    An empty supported list places no restriction on the model name.
    """
    if not model or not model.strip():
        raise ValidationError(ValidationKind.MODEL_NOT_IN_LIST, "model name cannot be empty")
    if not models:
        return
    wanted = model.strip()
    if not any(m.strip() == wanted for m in models):
        raise ValidationError(
            ValidationKind.MODEL_NOT_IN_LIST,
            f"model '{model}' is not in supported models list: {', '.join(models)}",
        )


def validate_config(cfg: APIConfig) -> None:
    """
    Check every record-level invariant of ``cfg``.

    Raises:
        ValidationError: On the first violated invariant
    """
    if not cfg.alias or not cfg.alias.strip():
        raise ValidationError(ValidationKind.EMPTY_ALIAS, "alias cannot be empty")

    if not cfg.api_key and not cfg.auth_token:
        raise ValidationError(
            ValidationKind.BOTH_AUTH_METHODS_EMPTY,
            "API key and auth token cannot both be empty",
        )

    provider = get_provider(cfg.provider)
    provider.validate_credentials(cfg.api_key, cfg.auth_token)

    if cfg.base_url and not is_valid_url(cfg.base_url):
        raise ValidationError(ValidationKind.INVALID_BASE_URL, f"invalid URL format: {cfg.base_url}")

    if cfg.models and cfg.model not in cfg.models:
        raise ValidationError(
            ValidationKind.MODEL_NOT_IN_LIST,
            f"model '{cfg.model}' is not in supported models list: {', '.join(cfg.models)}",
        )
