"""Persisted runtime settings (provider and model choices) that survive restarts."""

import json
from pathlib import Path
from typing import Any

from loguru import logger

from clawgate.utils.helpers import atomic_write_json


class SettingsStore:
    """
    Small JSON-backed store for settings changed at runtime via chat commands.

    Stored separately from config.json so switching provider or model never
    rewrites the user's configuration file.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to read settings from {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self) -> None:
        atomic_write_json(self.path, self._data)

    def get_provider(self) -> str | None:
        value = self._data.get("provider")
        return str(value) if value else None

    def set_provider(self, name: str) -> None:
        self._data["provider"] = name
        self._save()

    def get_model(self, provider: str) -> str | None:
        models = self._data.get("models")
        if not isinstance(models, dict):
            return None
        value = models.get(provider)
        return str(value) if value else None

    def set_model(self, provider: str, model: str) -> None:
        models = self._data.get("models")
        if not isinstance(models, dict):
            models = {}
        models[provider] = model
        self._data["models"] = models
        self._save()

    def as_dict(self) -> dict[str, Any]:
        return json.loads(json.dumps(self._data))
