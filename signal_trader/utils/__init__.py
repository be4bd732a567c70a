"""
Signal Trader Utilities
"""

from .config_loader import (
    ConfigManager,
    get_config,
    resolve_env_vars,
    SentimentConfig,
    SignalConfig,
    ExecutionConfig,
    TierConfig,
    TierLimits,
    ProtectionConfig,
    DiagnosticsConfig,
    ReasoningConfig,
    ExchangeConfig,
    PathsConfig,
)
from .logger import setup_logging, ColoredFormatter, RedactingFilter

__all__ = [
    "ConfigManager",
    "get_config",
    "resolve_env_vars",
    "SentimentConfig",
    "SignalConfig",
    "ExecutionConfig",
    "TierConfig",
    "TierLimits",
    "ProtectionConfig",
    "DiagnosticsConfig",
    "ReasoningConfig",
    "ExchangeConfig",
    "PathsConfig",
    "setup_logging",
    "ColoredFormatter",
    "RedactingFilter",
]
