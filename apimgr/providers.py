"""
Provider registry.

A configuration's ``provider`` tag selects the rules used to validate its
credentials and the defaults offered when adding it.
"""

from dataclasses import dataclass
from typing import Optional

from apimgr.errors import ValidationError, ValidationKind

DEFAULT_PROVIDER = "anthropic"


@dataclass(frozen=True)
class Provider:
    name: str
    default_base_url: str
    # Providers that only accept x-api-key style credentials
    requires_api_key: bool = False

    def validate_credentials(self, api_key: str, auth_token: str) -> None:
        """Raise ValidationError if the credentials do not suit this provider."""
        if self.requires_api_key and not api_key:
            raise ValidationError(
                ValidationKind.PROVIDER_REQUIREMENT,
                f"{self.name}: must provide API key",
            )


_REGISTRY: dict[str, Provider] = {
    "anthropic": Provider(
        name="anthropic",
        default_base_url="https://api.anthropic.com",
    ),
    "openai": Provider(
        name="openai",
        default_base_url="https://api.openai.com/v1",
        requires_api_key=True,
    ),
}


def get_provider(name: Optional[str]) -> Provider:
    """
    Look up a provider by tag.

    An empty tag means the default provider.

    Raises:
        ValidationError: If the tag is not registered
    """
    key = (name or DEFAULT_PROVIDER).strip().lower()
    provider = _REGISTRY.get(key)
    if provider is None:
        raise ValidationError(ValidationKind.UNKNOWN_PROVIDER, f"unknown API provider: {name}")
    return provider


def list_providers() -> list[str]:
    return sorted(_REGISTRY)
