"""
Configuration loader for YAML files
"""
import yaml
import logging
from pathlib import Path
from typing import List

from .models import BacktestConfig

logger = logging.getLogger(__name__)


class ConfigLoader:
    """Loads and saves backtest configurations from YAML files"""

    def __init__(self, config_path: str = "config/backtest.yaml"):
        self.config_path = Path(config_path)

    def load(self) -> BacktestConfig:
        """
        Load a single backtest configuration

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the file is empty, malformed or fails validation
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r', encoding='utf-8') as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Malformed YAML in {self.config_path}: {e}")

        if not data:
            raise ValueError(f"Empty config file: {self.config_path}")

        config = BacktestConfig.from_dict(data)

        errors = config.validate()
        if errors:
            logger.error(f"Configuration validation errors: {errors}")
            raise ValueError(f"Configuration validation failed: {errors}")

        logger.info(f"Loaded backtest configuration for {config.symbol} from {self.config_path}")
        return config

    def load_many(self) -> List[BacktestConfig]:
        """Load a file holding a 'runs' list, with optional shared 'defaults'"""
        with open(self.config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        defaults = data.get('defaults', {})
        configs = []
        for run in data.get('runs', []):
            merged = {**defaults, **run}
            config = BacktestConfig.from_dict(merged)
            errors = config.validate()
            if errors:
                raise ValueError(f"Configuration validation failed for {config.symbol}: {errors}")
            configs.append(config)

        logger.info(f"Loaded {len(configs)} backtest configurations from {self.config_path}")
        return configs

    def save(self, config: BacktestConfig) -> bool:
        """Save configuration to YAML file"""
        errors = config.validate()
        if errors:
            logger.error(f"Cannot save invalid configuration: {errors}")
            return False

        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False, indent=2)
        except OSError as e:
            logger.error(f"Failed to save config to {self.config_path}: {e}")
            return False

        logger.info(f"Configuration saved to {self.config_path}")
        return True


def load_config(config_path: str = "config/backtest.yaml") -> BacktestConfig:
    """Convenience function to load configuration"""
    return ConfigLoader(config_path).load()


def save_config(config: BacktestConfig, config_path: str = "config/backtest.yaml") -> bool:
    """Convenience function to save configuration"""
    return ConfigLoader(config_path).save(config)
