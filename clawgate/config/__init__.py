"""Configuration module for clawgate."""

from clawgate.config.loader import get_config_path, load_config
from clawgate.config.schema import Config
from clawgate.config.settings import SettingsStore

__all__ = ["Config", "SettingsStore", "load_config", "get_config_path"]
