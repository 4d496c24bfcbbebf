"""Configuration module for memkeep."""

from memkeep.config.loader import get_config_path, load_config, save_config
from memkeep.config.schema import Config, MemoryConfig

__all__ = ["Config", "MemoryConfig", "get_config_path", "load_config", "save_config"]
