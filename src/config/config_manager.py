"""
Configuration Manager for the trade backtester
Handles loading, validation, merging and environment overrides of the
backtesting thresholds
"""

import json
import math
import os
from pathlib import Path
from typing import Any, Dict, Optional

from jsonschema import validate, ValidationError
from pydantic import BaseModel, ConfigDict


class ConfigPaths:
    """Configuration file paths"""
    BASE_DIR = Path(__file__).resolve().parent.parent.parent
    CONFIG_DIR = BASE_DIR / "config"
    DEFAULT_CONFIG = CONFIG_DIR / "default_config.json"
    CONFIG_SCHEMA = CONFIG_DIR / "config_schema.json"


class ConfigurationError(Exception):
    """Raised when the configuration files are missing or invalid."""


# env var -> (section, key, type)
ENV_OVERRIDES = {
    "BACKTEST_MIN_DATA_QUALITY": ("backtesting", "min_data_quality", float),
    "BACKTEST_GAP_MULTIPLIER": ("backtesting", "gap_multiplier", float),
    "BACKTEST_ALLOCATION_TOLERANCE": ("backtesting", "allocation_tolerance", float),
    "BACKTEST_MAX_BATCH_SIZE": ("api", "max_batch_size", int),
    "BACKTEST_LOG_LEVEL": ("logging", "level", str),
}


class BacktestSettings(BaseModel):
    """Flattened, immutable view of the thresholds the engine uses."""
    model_config = ConfigDict(frozen=True)

    min_data_quality: float = 70.0
    gap_multiplier: float = 2.0
    allocation_tolerance: float = 0.01
    gap_tolerance_multiplier: float = 1.5
    max_price_change_percent: float = 50.0
    max_batch_size: int = 100
    log_level: str = "INFO"

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "BacktestSettings":
        bt = config.get("backtesting", {})
        dq = config.get("data_quality", {})
        return cls(
            min_data_quality=bt.get("min_data_quality", 70.0),
            gap_multiplier=bt.get("gap_multiplier", 2.0),
            allocation_tolerance=bt.get("allocation_tolerance", 0.01),
            gap_tolerance_multiplier=dq.get("gap_tolerance_multiplier", 1.5),
            max_price_change_percent=dq.get("max_price_change_percent", 50.0),
            max_batch_size=config.get("api", {}).get("max_batch_size", 100),
            log_level=config.get("logging", {}).get("level", "INFO"),
        )


class ConfigurationManager:
    """
    Manages backtester configuration with validation
    """

    def __init__(self, config_path: Optional[Path] = None, schema_path: Optional[Path] = None):
        self.config_path = Path(config_path or ConfigPaths.DEFAULT_CONFIG)
        self.schema_path = Path(schema_path or ConfigPaths.CONFIG_SCHEMA)
        self.default_config = self._load_json(self.config_path, "Default config")
        self.schema = self._load_json(self.schema_path, "Config schema")

    def _load_json(self, path: Path, label: str) -> Dict[str, Any]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"{label} not found at {path}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {label.lower()}: {e}")

    def validate_config(self, config: Dict[str, Any]) -> bool:
        """
        Validate configuration against JSON schema

        Args:
            config: Configuration dictionary to validate

        Returns:
            bool: True if valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        try:
            validate(instance=config, schema=self.schema)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e.message}")

        self._validate_finite(config)
        self._validate_gap_thresholds(config)
        return True

    def _validate_finite(self, config: Dict[str, Any]) -> None:
        """Reject NaN and infinity, which pass the schema bounds"""
        for section, values in config.items():
            for key, value in values.items():
                if isinstance(value, float) and not math.isfinite(value):
                    raise ConfigurationError(
                        f"Configuration value {section}.{key} must be finite (got {value})"
                    )

    def _validate_gap_thresholds(self, config: Dict[str, Any]) -> None:
        """Quality scoring must flag every gap the engine would warn about"""
        engine_multiplier = config["backtesting"]["gap_multiplier"]
        quality_multiplier = config["data_quality"]["gap_tolerance_multiplier"]
        if quality_multiplier > engine_multiplier:
            raise ConfigurationError(
                "data_quality.gap_tolerance_multiplier "
                f"({quality_multiplier}) must not exceed "
                f"backtesting.gap_multiplier ({engine_multiplier})"
            )

    def merge_configs(self, *configs: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deep merge multiple configuration dictionaries
        Later configs override earlier ones
        """
        def deep_merge(base: Dict, override: Dict) -> Dict:
            result = base.copy()

            for key, value in override.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = deep_merge(result[key], value)
                else:
                    result[key] = value

            return result

        result = {}
        for config in configs:
            result = deep_merge(result, config)

        return result

    def env_overrides(self, environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Collect overrides from ``BACKTEST_*`` environment variables

        Unparseable values are ignored so a typo in the environment
        falls back to the file value instead of crashing start-up.
        """
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for env_key, (section, key, cast) in ENV_OVERRIDES.items():
            raw = environ.get(env_key)
            if raw is None or not raw.strip():
                continue
            try:
                value = cast(raw.strip())
            except ValueError:
                continue
            if cast is float and not math.isfinite(value):
                continue
            if cast is str:
                value = value.upper()
            overrides.setdefault(section, {})[key] = value
        return overrides

    def get_config(
        self,
        overrides: Optional[Dict[str, Any]] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Get final configuration
        Merges: default -> environment -> explicit overrides
        """
        config = self.merge_configs(
            self.default_config,
            self.env_overrides(environ),
            overrides or {},
        )
        self.validate_config(config)
        return config

    def get_settings(
        self,
        overrides: Optional[Dict[str, Any]] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> BacktestSettings:
        return BacktestSettings.from_config(self.get_config(overrides, environ))


# Singleton instance
_config_manager = None


def get_config_manager() -> ConfigurationManager:
    """Get singleton ConfigurationManager instance"""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigurationManager()
    return _config_manager


def get_settings() -> BacktestSettings:
    """Settings built from the default files plus environment overrides"""
    return get_config_manager().get_settings()
