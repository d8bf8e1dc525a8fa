"""
Runtime settings store.

Holds the current PluginSettings, persists them as JSON and publishes a
change notification on the matching topic whenever a value actually changes:
model_key -> MODEL_KEY, chain_type -> CHAIN_TYPE, anything else -> SETTINGS.
"""

import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from vault_copilot.core.events import EventBus, Topic
from vault_copilot.models.settings import ChainType, PluginSettings

logger = logging.getLogger(__name__)


class SettingsStore:
    """Current plugin settings, persisted as JSON and published per topic."""

    def __init__(
        self,
        bus: EventBus,
        settings: PluginSettings | None = None,
        path: Path | None = None,
    ) -> None:
        self.bus = bus
        self._settings = settings or PluginSettings()
        self._path = path

    @classmethod
    def load(cls, bus: EventBus, path: Path) -> "SettingsStore":
        """Load settings from `path`, falling back to defaults if absent or invalid."""
        settings = PluginSettings()
        if path.exists():
            try:
                settings = PluginSettings.model_validate_json(path.read_text(encoding="utf-8"))
            except ValidationError as e:
                logger.error("Invalid settings in %s, using defaults:\n%s", path, e)
        return cls(bus, settings, path)

    def save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(self._settings.model_dump_json(indent=2), encoding="utf-8")

    def get(self) -> PluginSettings:
        return self._settings

    @property
    def model_key(self) -> str:
        return self._settings.model_key

    @property
    def chain_type(self) -> ChainType:
        return self._settings.chain_type

    @property
    def system_prompt(self) -> str:
        return self._settings.system_prompt

    @property
    def debug(self) -> bool:
        return self._settings.debug

    async def update(self, **changes: Any) -> PluginSettings:
        """Apply `changes`, persist, and publish one event per affected topic."""
        current = self._settings.model_dump()
        merged = {**current, **changes}
        new_settings = PluginSettings.model_validate(merged)
        new_dump = new_settings.model_dump()
        changed = {k for k in new_dump if new_dump[k] != current.get(k)}
        if not changed:
            return self._settings

        self._settings = new_settings
        self.save()
        logger.info("Settings changed: %s", ", ".join(sorted(changed)))

        if "model_key" in changed:
            await self.bus.publish(Topic.MODEL_KEY)
        if "chain_type" in changed:
            await self.bus.publish(Topic.CHAIN_TYPE)
        if changed - {"model_key", "chain_type"}:
            await self.bus.publish(Topic.SETTINGS)
        return self._settings

    def record_chain_type(self, chain_type: ChainType) -> None:
        """Store the chain type a manager just built, without notifying anyone."""
        if self._settings.chain_type != chain_type:
            self._settings = self._settings.model_copy(update={"chain_type": chain_type})
            self.save()
