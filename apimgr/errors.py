"""Error taxonomy for apimgr.

Every error raised by the store, manager and session layers derives from
``ApimgrError`` so the command layer can report them uniformly.
"""

from enum import Enum


class ApimgrError(Exception):
    """Base class for all apimgr errors."""


class NotFoundError(ApimgrError):
    """Raised when an alias does not exist."""

    def __init__(self, alias: str):
        self.alias = alias
        super().__init__(f"configuration '{alias}' does not exist")


class DuplicateAliasError(ApimgrError):
    """Raised when adding or renaming onto an alias that already exists."""

    def __init__(self, alias: str):
        self.alias = alias
        super().__init__(f"configuration '{alias}' already exists")


class NoActiveConfigError(ApimgrError):
    """Raised when no global active configuration is set."""

    def __init__(self, message: str = "no active configuration set"):
        super().__init__(message)


class LockTimeoutError(ApimgrError):
    """Raised when the config lock cannot be acquired in time."""


class ConfigIOError(ApimgrError):
    """Raised for read/write/permission failures on apimgr's own files."""


class ValidationKind(Enum):
    EMPTY_ALIAS = "empty_alias"
    BOTH_AUTH_METHODS_EMPTY = "both_auth_methods_empty"
    INVALID_BASE_URL = "invalid_base_url"
    MODEL_NOT_IN_LIST = "model_not_in_list"
    EMPTY_MODELS_LIST = "empty_models_list"
    UNKNOWN_PROVIDER = "unknown_provider"
    PROVIDER_REQUIREMENT = "provider_requirement"


class ValidationError(ApimgrError):
    """Raised when a configuration record violates an invariant.

    Attributes:
        kind: Which invariant failed (a ``ValidationKind``)
    """

    def __init__(self, kind: ValidationKind, message: str):
        self.kind = kind
        super().__init__(message)
