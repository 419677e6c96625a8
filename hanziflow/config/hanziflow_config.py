"""
hanziflow Configuration Management

This module provides configuration management for hanziflow.
"""

import os
import logging
from typing import Dict, Any, Optional
from pathlib import Path

import yaml

# Configure logging
logger = logging.getLogger(__name__)


class HanziflowConfig:
    """
    Manages system-wide configuration for hanziflow

    This class follows the singleton pattern to ensure only one configuration instance exists.
    Defaults come from default_config.yaml next to this module and are overlaid with
    ~/.hanziflow/config.yaml when that file exists.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not hasattr(self, 'initialized'):
            self.config: Dict[str, Any] = self._load_defaults()

            self.config_file = Path.home() / '.hanziflow' / 'config.yaml'
            if self.config_file.exists():
                self._load_config()

            self.initialized = True

    @staticmethod
    def _load_defaults() -> Dict[str, Any]:
        default_config_path = Path(__file__).parent / 'default_config.yaml'
        with open(default_config_path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f)

    @classmethod
    def from_file(cls, config_path: str) -> 'HanziflowConfig':
        """Load configuration from file

        Values in the file are merged over the packaged defaults.

        Args:
            config_path: Path to configuration file

        Returns:
            HanziflowConfig instance
        """
        instance = cls()
        try:
            with open(config_path, encoding='utf-8') as f:
                file_config = yaml.safe_load(f) or {}
        except Exception as e:
            logger.error(f"Failed to load configuration from {config_path}: {str(e)}")
            raise
        instance._update_config_recursive(instance.config, file_config)
        instance._validate_config()
        return instance

    @classmethod
    def setup(cls, **kwargs) -> 'HanziflowConfig':
        """
        Update configuration sections in place

        Args:
            **kwargs: Top-level sections (database, rate_limits, jobs, batch, ...)
                merged recursively into the current configuration
        """
        instance = cls()
        instance._update_config_recursive(instance.config, kwargs)
        instance._validate_config()
        logger.info("hanziflow configuration updated")
        return instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next access reloads defaults"""
        cls._instance = None

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value

        Args:
            key: Configuration key (dot notation)
            default: Default value if key not found

        Returns:
            Configuration value
        """
        try:
            value = self.config
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value

        Args:
            key: Configuration key (dot notation)
            value: Configuration value
        """
        keys = key.split('.')
        config = self.config
        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def get_queue_config(self, queue_name: str) -> Dict[str, Any]:
        """Queue settings with the job defaults filled in"""
        merged = dict(self.get('jobs.defaults', {}))
        merged.update(self.get(f'jobs.queues.{queue_name}', {}) or {})
        return merged

    def get_openai_config(self) -> Dict[str, Any]:
        openai_config = dict(self.get('openai', {}) or {})
        if not openai_config.get('api_key'):
            openai_config['api_key'] = os.environ.get('OPENAI_API_KEY')
        return openai_config

    def get_database_config(self) -> Dict[str, Any]:
        """Get database configuration"""
        return self.config.get('database', {})

    def get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration"""
        return self.config.get('logging', {})

    def _load_config(self) -> None:
        """Load configuration from the user config file"""
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                file_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise RuntimeError(f"Invalid YAML in configuration file: {str(e)}")

        if file_config:
            self._update_config_recursive(self.config, file_config)
            logger.info(f"Configuration loaded from {self.config_file}")
        self._validate_config()

    def _validate_config(self) -> None:
        """Validate configuration structure and values"""
        if not isinstance(self.config, dict):
            raise RuntimeError("Configuration must be a dictionary")

        for section in ['database', 'storage', 'logging', 'jobs']:
            if section not in self.config:
                raise RuntimeError(f"Missing required configuration section: {section}")

        db_type = self.config['database'].get('type')
        if db_type not in ['sqlite', 'postgresql', 'postgres']:
            raise RuntimeError(f"Unsupported database type: {db_type}")

        for service, limits in (self.config.get('rate_limits') or {}).items():
            if not limits or limits.get('rate', 0) <= 0:
                raise RuntimeError(f"Rate limit for {service} must have a positive rate")

    def _update_config_recursive(self, base: Dict[str, Any], update: Dict[str, Any]) -> None:
        """Update configuration recursively"""
        for key, value in update.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._update_config_recursive(base[key], value)
            else:
                base[key] = value

    def get_all(self) -> Dict[str, Any]:
        """Get all configuration"""
        return self.config.copy()
