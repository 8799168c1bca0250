"""
Configuration manager: CRUD, validation and activation over the store.

One ``ConfigManager`` is built per command invocation from the resolved
``Settings`` and passed to whatever needs it.

Every mutation goes through ``Store.atomic_update``; validation runs inside
the update callback against the freshly read document, so a failed check
writes nothing. Side effects that mirror the global configuration (the
activation script and Claude Code settings) run after the mutation has been
committed and are best-effort: their failures are logged, never raised.
"""

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from apimgr.config import Settings
from apimgr.errors import (
    ApimgrError,
    ConfigIOError,
    DuplicateAliasError,
    NoActiveConfigError,
    NotFoundError,
    ValidationError,
    ValidationKind,
)
from apimgr.models import APIConfig, ConfigFile, ConfigPatch
from apimgr.script import ScriptGenerator
from apimgr.session import SessionTracker
from apimgr.store import Store
from apimgr.sync import SyncEngine
from apimgr.validation import (
    normalize_models,
    validate_config,
    validate_model_in_list,
    validate_models_list,
)

logger = logging.getLogger(__name__)


def _fit_models(cfg: APIConfig, models: list[str]) -> APIConfig:
    """Set the model list; a model outside it falls back to the first entry or is cleared."""
    model = cfg.model if cfg.model in models else (models[0] if models else "")
    return replace(cfg, models=list(models), model=model)


@dataclass
class ModelsUpdate:
    """Model list change made by ``ConfigManager.set_models`` or ``edit``."""

    alias: str
    models: list[str]
    model: str
    previous_model: str

    @property
    def model_changed(self) -> bool:
        """True when the active model had to fall back because it left the list."""
        return self.model != self.previous_model


class ConfigManager:
    def __init__(
        self,
        settings: Settings,
        store: Optional[Store] = None,
        sessions: Optional[SessionTracker] = None,
        sync: Optional[SyncEngine] = None,
        script: Optional[ScriptGenerator] = None,
    ):
        self.settings = settings
        self.store = store or Store.from_settings(settings)
        self.sessions = sessions or SessionTracker(settings.config_dir)
        self.sync = sync or SyncEngine(
            settings.claude_settings_path,
            project_settings_path=settings.project_settings_path if settings.sync_project_settings else None,
            backup_retention=settings.backup_retention,
        )
        self.script = script or ScriptGenerator(settings.active_env_path)

    @classmethod
    def open(cls, settings: Settings) -> "ConfigManager":
        """Build a manager, migrating a legacy config file if one is found."""
        manager = cls(settings)
        try:
            if manager.store.migrate_from(settings.legacy_config_path):
                logger.warning(
                    "Migrated config from %s to %s", settings.legacy_config_path, settings.config_path
                )
        except ApimgrError as e:
            logger.warning("Failed to migrate config: %s", e)
        return manager

    @property
    def config_path(self) -> Path:
        return self.store.path

    # ----- reads -----

    def _require(self, doc: ConfigFile, alias: str) -> int:
        idx = doc.index_of(alias)
        if idx is None:
            raise NotFoundError(alias)
        return idx

    def list_configs(self) -> list[APIConfig]:
        """All configurations in insertion order."""
        return self.store.load().configs

    def get(self, alias: str) -> APIConfig:
        doc = self.store.load()
        return doc.configs[self._require(doc, alias)]

    def get_models(self, alias: str) -> list[str]:
        return self.get(alias).supported_models()

    def get_active_name(self) -> str:
        return self.store.load().active

    def get_active(self) -> APIConfig:
        """
        Resolve the global active pointer to its configuration.

        Raises:
            NoActiveConfigError: If nothing is active or the pointer dangles
        """
        doc = self.store.load()
        if not doc.active:
            raise NoActiveConfigError()
        cfg = doc.find(doc.active)
        if cfg is None:
            raise NoActiveConfigError(f"active configuration '{doc.active}' does not exist")
        return cfg

    def _get_active_or_none(self) -> Optional[APIConfig]:
        try:
            return self.get_active()
        except NoActiveConfigError:
            return None

    # ----- mutations -----

    def add(self, cfg: APIConfig) -> APIConfig:
        """
        Store a new configuration.

        An empty provider becomes the configured default provider; a models
        list without a model selects the first listed model.

        Raises:
            DuplicateAliasError: If the alias is taken
            ValidationError: If the record violates an invariant
        """
        cfg = replace(cfg, models=normalize_models(cfg.models))
        if not cfg.provider:
            cfg = replace(cfg, provider=self.settings.default_provider)
        if cfg.models and not cfg.model:
            cfg = replace(cfg, model=cfg.models[0])
        validate_config(cfg)

        def _add(doc: ConfigFile) -> ConfigFile:
            if doc.index_of(cfg.alias) is not None:
                raise DuplicateAliasError(cfg.alias)
            doc.configs.append(cfg)
            return doc

        self.store.atomic_update(_add)
        logger.debug("Added configuration %s", cfg.alias)
        return cfg

    def remove(self, alias: str) -> bool:
        """
        Delete a configuration, clearing the active pointer if it was active.

        Returns:
            True if the removed configuration was the global active one
        """
        was_active = False

        def _remove(doc: ConfigFile) -> ConfigFile:
            nonlocal was_active
            del doc.configs[self._require(doc, alias)]
            if doc.active == alias:
                doc.active = ""
                was_active = True
            return doc

        self.store.atomic_update(_remove)
        if was_active:
            self.refresh_global_outputs()
        return was_active

    def rename_alias(self, old: str, new: str) -> None:
        """
        Rename a configuration; the active pointer follows the rename.

        Raises:
            NotFoundError: If ``old`` does not exist
            DuplicateAliasError: If ``new`` already exists
            ValidationError: If ``new`` is empty
        """
        if not new or not new.strip():
            raise ValidationError(ValidationKind.EMPTY_ALIAS, "alias cannot be empty")
        if new == old:
            self.get(old)
            return
        was_active = False

        def _rename(doc: ConfigFile) -> ConfigFile:
            nonlocal was_active
            if doc.index_of(new) is not None:
                raise DuplicateAliasError(new)
            idx = self._require(doc, old)
            doc.configs[idx] = replace(doc.configs[idx], alias=new)
            if doc.active == old:
                doc.active = new
                was_active = True
            return doc

        self.store.atomic_update(_rename)
        if was_active:
            self.refresh_global_outputs()

    def update_partial(self, alias: str, patch: ConfigPatch) -> APIConfig:
        """
        Apply only the fields set in ``patch`` and validate the result.

        The whole resulting record is validated, so e.g. clearing the only
        credential fails even though the patch names just that field.
        """
        updated: Optional[APIConfig] = None
        is_active = False

        def _update(doc: ConfigFile) -> ConfigFile:
            nonlocal updated, is_active
            idx = self._require(doc, alias)
            candidate = patch.apply(doc.configs[idx])
            validate_config(candidate)
            doc.configs[idx] = candidate
            updated = candidate
            is_active = doc.active == alias
            return doc

        self.store.atomic_update(_update)
        if is_active:
            self.refresh_global_outputs()
        return updated

    def set_models(self, alias: str, models: list[str]) -> ModelsUpdate:
        """
        Replace the supported model list.

        If the current model is not in the new list it falls back to the
        first entry, or is cleared when the list is empty. The returned
        ``ModelsUpdate`` reports whether that happened.

        Raises:
            ValidationError: EMPTY_MODELS_LIST if the list only has blank names
        """
        normalized = normalize_models(models)
        if models and not normalized:
            validate_models_list(models)
        result: Optional[ModelsUpdate] = None
        is_active = False

        def _set(doc: ConfigFile) -> ConfigFile:
            nonlocal result, is_active
            idx = self._require(doc, alias)
            current = doc.configs[idx]
            candidate = _fit_models(current, normalized)
            validate_config(candidate)
            doc.configs[idx] = candidate
            result = ModelsUpdate(alias, list(normalized), candidate.model, current.model)
            is_active = doc.active == alias
            return doc

        self.store.atomic_update(_set)
        if result.model_changed:
            logger.debug("Model for %s fell back from %r to %r", alias, result.previous_model, result.model)
        if is_active:
            self.refresh_global_outputs()
        return result

    def edit(
        self,
        alias: str,
        new_alias: Optional[str] = None,
        models: Optional[list[str]] = None,
        patch: Optional[ConfigPatch] = None,
    ) -> tuple[APIConfig, Optional[ModelsUpdate]]:
        """
        Rename, replace the model list and patch fields in one update.

        The steps apply in that order to the same candidate record, which
        is validated once at the end; if anything fails nothing is written.

        Returns:
            The stored record and, when ``models`` was given, the
            ``ModelsUpdate`` describing any model fallback
        """
        if new_alias is not None and not new_alias.strip():
            raise ValidationError(ValidationKind.EMPTY_ALIAS, "alias cannot be empty")
        normalized: Optional[list[str]] = None
        if models is not None:
            normalized = normalize_models(models)
            if models and not normalized:
                validate_models_list(models)

        updated: Optional[APIConfig] = None
        models_update: Optional[ModelsUpdate] = None
        is_active = False

        def _edit(doc: ConfigFile) -> ConfigFile:
            nonlocal updated, models_update, is_active
            idx = self._require(doc, alias)
            target = new_alias if new_alias is not None else alias
            if target != alias and doc.index_of(target) is not None:
                raise DuplicateAliasError(target)

            current = doc.configs[idx]
            candidate = replace(current, alias=target, models=list(current.models))
            if normalized is not None:
                candidate = _fit_models(candidate, normalized)
                models_update = ModelsUpdate(target, list(normalized), candidate.model, current.model)
            if patch is not None:
                candidate = patch.apply(candidate)
            validate_config(candidate)

            doc.configs[idx] = candidate
            updated = candidate
            if doc.active == alias:
                doc.active = target
                is_active = True
            return doc

        self.store.atomic_update(_edit)
        if is_active:
            self.refresh_global_outputs()
        return updated, models_update

    def switch_model(self, alias: str, model: str) -> APIConfig:
        """
        Select ``model`` for a configuration.

        Raises:
            ValidationError: MODEL_NOT_IN_LIST if a non-empty supported list
                does not contain ``model``
        """
        updated: Optional[APIConfig] = None
        is_active = False

        def _switch(doc: ConfigFile) -> ConfigFile:
            nonlocal updated, is_active
            idx = self._require(doc, alias)
            current = doc.configs[idx]
            validate_model_in_list(model, current.models)
            updated = replace(current, models=list(current.models), model=model.strip())
            doc.configs[idx] = updated
            is_active = doc.active == alias
            return doc

        self.store.atomic_update(_switch)
        if is_active:
            self.refresh_global_outputs()
        return updated

    def set_active(self, alias: str) -> None:
        """Point the global active pointer at ``alias``."""

        def _activate(doc: ConfigFile) -> ConfigFile:
            self._require(doc, alias)
            doc.active = alias
            return doc

        self.store.atomic_update(_activate)

    # ----- global outputs -----

    def generate_active_script(self) -> None:
        """
        Rewrite active.env from the global configuration.

        Raises:
            ConfigIOError: If the script cannot be written
        """
        try:
            self.script.generate(self._get_active_or_none())
        except OSError as e:
            raise ConfigIOError(f"failed to write activation script: {e}") from e

    def refresh_global_outputs(self) -> list[Path]:
        """
        Regenerate active.env and sync Claude Code settings to the global config.

        Both steps are best-effort and independent.

        Returns:
            The settings files that were synchronized
        """
        try:
            self.generate_active_script()
        except ApimgrError as e:
            logger.warning("Failed to generate activation script: %s", e)

        try:
            return self.sync.sync_global(self._get_active_or_none())
        except ApimgrError as e:
            logger.warning("Failed to sync to Claude Code settings: %s", e)
            return []

    def activate_global(self, alias: str) -> APIConfig:
        """Make ``alias`` the global configuration and refresh its mirrors."""
        self.set_active(alias)
        self.refresh_global_outputs()
        return self.get(alias)

    def activate_local(self, alias: str, pid: int, model: Optional[str] = None) -> APIConfig:
        """
        Activate ``alias`` for the shell ``pid`` only.

        The config document and active.env are left untouched; a session
        marker is recorded and the user-level Claude Code settings are synced.
        Marker and sync failures are logged.

        ``model`` overrides the model for this activation without storing it.
        """
        cfg = self.get(alias)
        if model:
            validate_model_in_list(model, cfg.models)
            cfg = replace(cfg, models=list(cfg.models), model=model.strip())
        try:
            self.sessions.create_marker(pid, alias)
        except ApimgrError as e:
            logger.warning("Failed to create session marker: %s", e)
        try:
            self.sync.sync_local_only(cfg)
        except ApimgrError as e:
            logger.warning("Failed to sync to Claude Code: %s", e)
        return cfg

    def restore_claude_to_global(self) -> bool:
        """
        Point Claude Code settings back at the global configuration.

        Clears apimgr's variables if there is no global configuration.

        Raises:
            ConfigIOError: If the settings file cannot be rewritten
        """
        return self.sync.restore_to_global(self._get_active_or_none())

    def has_active_sessions(self) -> bool:
        return self.sessions.has_active_sessions()

    def cleanup_session(self, pid) -> None:
        self.sessions.remove_marker(pid)
