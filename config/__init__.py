"""Configuration management for the voting system."""

from .config import SystemConfig, ZKConfig, NullificationConfig, StoreConfig, load_config, save_config

__all__ = ['SystemConfig', 'ZKConfig', 'NullificationConfig', 'StoreConfig', 'load_config', 'save_config']
