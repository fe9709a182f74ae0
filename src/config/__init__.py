"""Backtester Configuration Module"""
from .config_manager import (
    BacktestSettings,
    ConfigurationError,
    ConfigurationManager,
    get_config_manager,
    get_settings,
)

__all__ = [
    'BacktestSettings',
    'ConfigurationError',
    'ConfigurationManager',
    'get_config_manager',
    'get_settings',
]
