"""Data model for the config document and session markers."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional


@dataclass
class APIConfig:
    """A single named credential profile."""

    alias: str
    provider: str = ""
    api_key: str = ""
    auth_token: str = ""
    base_url: str = ""
    model: str = ""
    models: list[str] = field(default_factory=list)

    def supported_models(self) -> list[str]:
        """
        Supported model list as seen by readers.

        Records written before model lists existed only carry ``model``;
        those report ``[model]`` without the stored record being rewritten.
        """
        if self.models:
            return list(self.models)
        if self.model:
            return [self.model]
        return []

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "alias": self.alias,
            "provider": self.provider,
            "api_key": self.api_key,
            "auth_token": self.auth_token,
            "base_url": self.base_url,
            "model": self.model,
        }
        if self.models:
            data["models"] = list(self.models)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "APIConfig":
        if not isinstance(data, dict):
            raise ValueError("configuration entry must be a JSON object")
        models = data.get("models") or []
        if not isinstance(models, list):
            raise ValueError(f"models of {data.get('alias')!r} must be a list")
        return cls(
            alias=str(data.get("alias") or ""),
            provider=str(data.get("provider") or ""),
            api_key=str(data.get("api_key") or ""),
            auth_token=str(data.get("auth_token") or ""),
            base_url=str(data.get("base_url") or ""),
            model=str(data.get("model") or ""),
            models=[str(m) for m in models],
        )


@dataclass
class ConfigFile:
    """The persisted document: all configurations plus the global active alias."""

    active: str = ""
    configs: list[APIConfig] = field(default_factory=list)

    def index_of(self, alias: str) -> Optional[int]:
        for i, cfg in enumerate(self.configs):
            if cfg.alias == alias:
                return i
        return None

    def find(self, alias: str) -> Optional[APIConfig]:
        idx = self.index_of(alias)
        return None if idx is None else self.configs[idx]

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "configs": [cfg.to_dict() for cfg in self.configs],
        }

    @classmethod
    def from_data(cls, data: Any) -> "ConfigFile":
        """
        Build a document from decoded JSON.

        Accepts both the current object form and the legacy form, which was
        a bare array of configurations with no active pointer.
        """
        if isinstance(data, list):
            return cls(configs=[APIConfig.from_dict(item) for item in data])
        if not isinstance(data, dict):
            raise ValueError("config document must be a JSON object")
        configs = data.get("configs") or []
        if not isinstance(configs, list):
            raise ValueError("configs must be a JSON array")
        return cls(
            active=str(data.get("active") or ""),
            configs=[APIConfig.from_dict(item) for item in configs],
        )


@dataclass
class ConfigPatch:
    """
    Sparse update for a configuration.

    A field left as ``None`` is not touched; an empty string clears it.
    """

    provider: Optional[str] = None
    api_key: Optional[str] = None
    auth_token: Optional[str] = None
    base_url: Optional[str] = None
    model: Optional[str] = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.provider, self.api_key, self.auth_token, self.base_url, self.model)
        )

    def apply(self, cfg: APIConfig) -> APIConfig:
        """Return a copy of ``cfg`` with the supplied fields replaced."""
        changes = {
            name: value
            for name, value in (
                ("provider", self.provider),
                ("api_key", self.api_key),
                ("auth_token", self.auth_token),
                ("base_url", self.base_url),
                ("model", self.model),
            )
            if value is not None
        }
        return replace(cfg, models=list(cfg.models), **changes)


@dataclass
class SessionMarker:
    """Records that the shell process ``pid`` has locally activated ``alias``."""

    pid: int
    alias: str
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": str(self.pid),
            "alias": self.alias,
            "timestamp": self.timestamp or datetime.now().astimezone().isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionMarker":
        return cls(
            pid=int(data["pid"]),
            alias=str(data.get("alias") or ""),
            timestamp=str(data.get("timestamp") or ""),
        )
