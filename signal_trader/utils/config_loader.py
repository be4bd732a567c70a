"""
Configuration loader and manager
"""

import os
import yaml
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field
import logging

logger = logging.getLogger(__name__)


TIER_ORDER = ["FREE", "BASIC", "PREMIUM", "VIP"]


def resolve_env_vars(value: Any) -> Any:
    """Resolve "${VAR}" references to environment values"""
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.getenv(env_var, "")
    return value


@dataclass
class SentimentConfig:
    """Market sentiment aggregator configuration"""
    refresh_minutes: float = 15.0
    stale_multiplier: float = 2.0
    fear_greed_long_below: float = 30.0
    fear_greed_short_above: float = 80.0
    pulse_directional_pct: float = 60.0
    pulse_neutral_low: float = 40.0
    pulse_neutral_high: float = 60.0
    vw_delta_threshold: float = 0.5
    top_n: int = 100
    quote_asset: str = "USDT"
    dominance_trend_band: float = 0.1
    dominance_confidence_nudge: float = 0.05
    request_timeout_seconds: float = 15.0
    coinstats_api_key: str = ""
    history_size: int = 96


@dataclass
class SignalConfig:
    """Signal intake configuration"""
    freshness_seconds: float = 30.0
    strong_freshness_seconds: float = 60.0
    quote_assets: List[str] = field(default_factory=lambda: ["USDT"])
    allowed_instruments: List[str] = field(default_factory=list)
    default_exchange: str = "bybit"


@dataclass
class ExecutionConfig:
    """Execution fan-out configuration"""
    max_concurrency: int = 10
    batch_timeout_seconds: float = 60.0
    connector_timeout_seconds: float = 15.0
    max_open_positions: int = 2
    cooldown_hours: float = 2.0
    allow_hedged_positions: bool = False
    balance_refresh_minutes: float = 5.0
    settlement_asset: str = "USDT"
    set_leverage: bool = True


@dataclass
class TierLimits:
    """Sizing limits for one plan tier"""
    min_notional: float
    max_fraction: float
    leverage: int


@dataclass
class TierConfig:
    """Tier sizing table, keyed by tier name"""
    tiers: Dict[str, TierLimits] = field(default_factory=lambda: {
        "FREE": TierLimits(min_notional=50.0, max_fraction=0.10, leverage=3),
        "BASIC": TierLimits(min_notional=20.0, max_fraction=0.20, leverage=5),
        "PREMIUM": TierLimits(min_notional=15.0, max_fraction=0.30, leverage=7),
        "VIP": TierLimits(min_notional=10.0, max_fraction=0.40, leverage=10),
    })
    max_leverage: int = 10

    def validate(self) -> None:
        """Raise ValueError unless limits are monotonic in tier order"""
        missing = [t for t in TIER_ORDER if t not in self.tiers]
        if missing:
            raise ValueError(f"Tier table missing: {', '.join(missing)}")

        for lower, higher in zip(TIER_ORDER, TIER_ORDER[1:]):
            lo, hi = self.tiers[lower], self.tiers[higher]
            if hi.min_notional > lo.min_notional:
                raise ValueError(f"min_notional must not increase from {lower} to {higher}")
            if hi.max_fraction < lo.max_fraction:
                raise ValueError(f"max_fraction must not decrease from {lower} to {higher}")
            if hi.leverage < lo.leverage:
                raise ValueError(f"leverage must not decrease from {lower} to {higher}")

        for name, limits in self.tiers.items():
            if not 0 < limits.max_fraction <= 1:
                raise ValueError(f"{name}: max_fraction must be in (0, 1]")
            if limits.leverage < 1:
                raise ValueError(f"{name}: leverage must be >= 1")
            if limits.min_notional <= 0:
                raise ValueError(f"{name}: min_notional must be positive")


@dataclass
class ProtectionConfig:
    """Stop-loss / take-profit policy, as multiples of leverage (percent of margin)"""
    stop_loss_multiplier: float = 2.0
    take_profit_multiplier: float = 3.0
    stop_loss_min_multiplier: float = 1.0
    stop_loss_max_multiplier: float = 4.0
    take_profit_min_multiplier: float = 1.5
    take_profit_max_multiplier: float = 5.0
    exempt_tiers: List[str] = field(default_factory=list)


@dataclass
class DiagnosticsConfig:
    """Connector diagnostics and health monitor configuration"""
    probe_timeout_seconds: float = 5.0
    monitor_interval_minutes: float = 5.0
    probe_instrument: str = "BTCUSDT"
    alert_webhook_url: str = ""


@dataclass
class ReasoningConfig:
    """External reasoning oracle configuration"""
    enabled: bool = True
    endpoint: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0


@dataclass
class ExchangeConfig:
    """Per-exchange connector configuration"""
    name: str
    enabled: bool = True
    recv_window: int = 5000
    timeout_seconds: float = 15.0


@dataclass
class PathsConfig:
    users_file: str = "config/users.yaml"
    data_dir: str = "data"
    log_file: str = "logs/signal_trader.log"
    log_level: str = "INFO"


class ConfigManager:
    """Manages system configuration"""

    def __init__(self, config_path: str = None, raw: Optional[Dict[str, Any]] = None):
        if raw is not None:
            self.config_path = config_path or "<memory>"
            self._raw_config: Dict = raw
        else:
            self.config_path = config_path or self._find_config()
            self._raw_config = {}
            self._load_config()

    def _find_config(self) -> str:
        """Find configuration file"""
        possible_paths = [
            "config/settings.yaml",
            "../config/settings.yaml",
            "settings.yaml",
            os.path.expanduser("~/.signal_trader/settings.yaml")
        ]

        for path in possible_paths:
            if os.path.exists(path):
                return path

        return "config/settings.yaml"

    def _load_config(self) -> None:
        """Load configuration from file"""
        if not os.path.exists(self.config_path):
            logger.warning(f"Config file not found: {self.config_path}, using defaults")
            return
        try:
            with open(self.config_path, 'r') as f:
                self._raw_config = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {self.config_path}")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading config: {e}")
            self._raw_config = {}

    def _section(self, name: str) -> Dict[str, Any]:
        return {k: resolve_env_vars(v) for k, v in (self._raw_config.get(name) or {}).items()}

    @property
    def raw(self) -> Dict[str, Any]:
        return self._raw_config

    @property
    def sentiment(self) -> SentimentConfig:
        cfg = self._section("sentiment")
        defaults = SentimentConfig()
        return SentimentConfig(
            refresh_minutes=float(cfg.get("refresh_minutes", defaults.refresh_minutes)),
            stale_multiplier=float(cfg.get("stale_multiplier", defaults.stale_multiplier)),
            fear_greed_long_below=float(cfg.get("fear_greed_long_below", defaults.fear_greed_long_below)),
            fear_greed_short_above=float(cfg.get("fear_greed_short_above", defaults.fear_greed_short_above)),
            pulse_directional_pct=float(cfg.get("pulse_directional_pct", defaults.pulse_directional_pct)),
            pulse_neutral_low=float(cfg.get("pulse_neutral_low", defaults.pulse_neutral_low)),
            pulse_neutral_high=float(cfg.get("pulse_neutral_high", defaults.pulse_neutral_high)),
            vw_delta_threshold=float(cfg.get("vw_delta_threshold", defaults.vw_delta_threshold)),
            top_n=int(cfg.get("top_n", defaults.top_n)),
            quote_asset=cfg.get("quote_asset", defaults.quote_asset),
            dominance_trend_band=float(cfg.get("dominance_trend_band", defaults.dominance_trend_band)),
            dominance_confidence_nudge=float(
                cfg.get("dominance_confidence_nudge", defaults.dominance_confidence_nudge)
            ),
            request_timeout_seconds=float(
                cfg.get("request_timeout_seconds", defaults.request_timeout_seconds)
            ),
            coinstats_api_key=cfg.get("coinstats_api_key", "") or "",
            history_size=int(cfg.get("history_size", defaults.history_size)),
        )

    @property
    def signals(self) -> SignalConfig:
        cfg = self._section("signals")
        defaults = SignalConfig()
        return SignalConfig(
            freshness_seconds=float(cfg.get("freshness_seconds", defaults.freshness_seconds)),
            strong_freshness_seconds=float(
                cfg.get("strong_freshness_seconds", defaults.strong_freshness_seconds)
            ),
            quote_assets=[q.upper() for q in cfg.get("quote_assets", defaults.quote_assets)],
            allowed_instruments=[s.upper() for s in cfg.get("allowed_instruments", []) or []],
            default_exchange=str(cfg.get("default_exchange", defaults.default_exchange)).lower(),
        )

    @property
    def execution(self) -> ExecutionConfig:
        cfg = self._section("execution")
        defaults = ExecutionConfig()
        return ExecutionConfig(
            max_concurrency=int(cfg.get("max_concurrency", defaults.max_concurrency)),
            batch_timeout_seconds=float(cfg.get("batch_timeout_seconds", defaults.batch_timeout_seconds)),
            connector_timeout_seconds=float(
                cfg.get("connector_timeout_seconds", defaults.connector_timeout_seconds)
            ),
            max_open_positions=int(cfg.get("max_open_positions", defaults.max_open_positions)),
            cooldown_hours=float(cfg.get("cooldown_hours", defaults.cooldown_hours)),
            allow_hedged_positions=bool(cfg.get("allow_hedged_positions", defaults.allow_hedged_positions)),
            balance_refresh_minutes=float(
                cfg.get("balance_refresh_minutes", defaults.balance_refresh_minutes)
            ),
            settlement_asset=cfg.get("settlement_asset", defaults.settlement_asset),
            set_leverage=bool(cfg.get("set_leverage", defaults.set_leverage)),
        )

    @property
    def tiers(self) -> TierConfig:
        """Tier table, validated as monotonic"""
        cfg = self._raw_config.get("tiers") or {}
        config = TierConfig()
        for name, limits in (cfg.get("levels") or {}).items():
            name = str(name).upper()
            base = config.tiers.get(name, TierLimits(50.0, 0.1, 1))
            config.tiers[name] = TierLimits(
                min_notional=float(limits.get("min_notional", base.min_notional)),
                max_fraction=float(limits.get("max_fraction", base.max_fraction)),
                leverage=int(limits.get("leverage", base.leverage)),
            )
        config.max_leverage = int(cfg.get("max_leverage", config.max_leverage))
        config.validate()
        return config

    @property
    def protection(self) -> ProtectionConfig:
        cfg = self._section("protection")
        defaults = ProtectionConfig()
        return ProtectionConfig(
            stop_loss_multiplier=float(cfg.get("stop_loss_multiplier", defaults.stop_loss_multiplier)),
            take_profit_multiplier=float(cfg.get("take_profit_multiplier", defaults.take_profit_multiplier)),
            stop_loss_min_multiplier=float(
                cfg.get("stop_loss_min_multiplier", defaults.stop_loss_min_multiplier)
            ),
            stop_loss_max_multiplier=float(
                cfg.get("stop_loss_max_multiplier", defaults.stop_loss_max_multiplier)
            ),
            take_profit_min_multiplier=float(
                cfg.get("take_profit_min_multiplier", defaults.take_profit_min_multiplier)
            ),
            take_profit_max_multiplier=float(
                cfg.get("take_profit_max_multiplier", defaults.take_profit_max_multiplier)
            ),
            exempt_tiers=[t.upper() for t in cfg.get("exempt_tiers", []) or []],
        )

    @property
    def diagnostics(self) -> DiagnosticsConfig:
        cfg = self._section("diagnostics")
        defaults = DiagnosticsConfig()
        return DiagnosticsConfig(
            probe_timeout_seconds=float(cfg.get("probe_timeout_seconds", defaults.probe_timeout_seconds)),
            monitor_interval_minutes=float(
                cfg.get("monitor_interval_minutes", defaults.monitor_interval_minutes)
            ),
            probe_instrument=cfg.get("probe_instrument", defaults.probe_instrument),
            alert_webhook_url=cfg.get("alert_webhook_url", "") or "",
        )

    @property
    def reasoning(self) -> ReasoningConfig:
        cfg = self._section("reasoning")
        defaults = ReasoningConfig()
        return ReasoningConfig(
            enabled=bool(cfg.get("enabled", defaults.enabled)),
            endpoint=cfg.get("endpoint", "") or "",
            api_key=cfg.get("api_key", "") or "",
            timeout_seconds=float(cfg.get("timeout_seconds", defaults.timeout_seconds)),
        )

    @property
    def exchanges(self) -> Dict[str, ExchangeConfig]:
        """Per-exchange settings; bybit and binance enabled by default"""
        cfg = self._raw_config.get("exchanges") or {"bybit": {}, "binance": {}}
        result = {}
        for name, values in cfg.items():
            values = values or {}
            result[str(name).lower()] = ExchangeConfig(
                name=str(name).lower(),
                enabled=bool(values.get("enabled", True)),
                recv_window=int(values.get("recv_window", 5000)),
                timeout_seconds=float(values.get("timeout_seconds", 15.0)),
            )
        return result

    @property
    def paths(self) -> PathsConfig:
        cfg = self._section("paths")
        defaults = PathsConfig()
        return PathsConfig(
            users_file=cfg.get("users_file", defaults.users_file),
            data_dir=cfg.get("data_dir", defaults.data_dir),
            log_file=cfg.get("log_file", defaults.log_file),
            log_level=cfg.get("log_level", defaults.log_level),
        )


# Global config instance
_config: Optional[ConfigManager] = None


def get_config(config_path: str = None) -> ConfigManager:
    """Get or create global configuration manager"""
    global _config
    if _config is None or config_path is not None:
        _config = ConfigManager(config_path)
    return _config
