"""Configuration module for cordbridge."""

from cordbridge.config.loader import get_config_path, load_config, save_config
from cordbridge.config.schema import Config

__all__ = ["Config", "get_config_path", "load_config", "save_config"]
