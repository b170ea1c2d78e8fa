"""Configuration loader for the guided trading engine.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import asdict, dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass
class RegimeConfig:
    """Market regime classifier thresholds."""
    window: int = 120
    min_candles: int = 20
    atr_period: int = 14
    high_volatility_atr_percent: Decimal = Decimal('2.0')
    whipsaw_sign_change_ratio: Decimal = Decimal('0.5')
    trend_efficiency_threshold: Decimal = Decimal('0.25')


@dataclass
class RankingConfig:
    """Win-rate ranking pass limits."""
    sample_market_limit: int = 60
    candle_count: int = 120
    warmup_bars: int = 20
    concurrency: int = 8
    per_market_timeout_seconds: float = 2.5
    cache_ttl_seconds: float = 30.0


@dataclass
class GuidedDefaultsConfig:
    """Defaults applied to new guided trades."""
    trailing_trigger_percent: Decimal = Decimal('2.0')
    trailing_offset_percent: Decimal = Decimal('1.0')
    dca_step_percent: Decimal = Decimal('2.0')
    half_take_profit_ratio: Decimal = Decimal('0.5')
    min_order_krw: Decimal = Decimal('5100')
    min_effective_holding_krw: Decimal = Decimal('5000')
    default_interval: str = "minute30"
    default_mode: str = "SWING"
    stats_utc_offset_hours: int = 9


@dataclass
class ReconcileConfig:
    """P&L reconciliation sweep settings."""
    max_window_days: int = 30
    max_trades: int = 5000
    sample_size: int = 20
    quantity_tolerance: Decimal = Decimal('0.00000001')
    pnl_tolerance: Decimal = Decimal('0.01')
    price_tolerance: Decimal = Decimal('0.00000001')


@dataclass
class PersistenceConfig:
    """Database and logging settings."""
    db_path: str = "guided_trading.db"
    log_file: str = "guided_trading.log"
    log_level: str = "INFO"


_SECTIONS = {
    "regime": RegimeConfig,
    "ranking": RankingConfig,
    "guided": GuidedDefaultsConfig,
    "reconcile": ReconcileConfig,
    "persistence": PersistenceConfig,
}


def _coerce_section(section_cls, raw: Optional[Dict[str, Any]]):
    """Build a section dataclass, turning Decimal-typed fields into Decimal."""
    raw = raw or {}
    known = {f.name: f for f in fields(section_cls)}
    unknown = set(raw) - set(known)
    if unknown:
        raise ValueError(f"Unknown {section_cls.__name__} keys: {sorted(unknown)}")
    kwargs = {}
    for key, value in raw.items():
        if isinstance(known[key].default, Decimal) and value is not None:
            value = Decimal(str(value))
        kwargs[key] = value
    return section_cls(**kwargs)


@dataclass
class GuidedTradingConfig:
    """Complete engine configuration."""
    regime: RegimeConfig = field(default_factory=RegimeConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)
    guided: GuidedDefaultsConfig = field(default_factory=GuidedDefaultsConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)

    @classmethod
    def from_yaml(cls, config_path: str) -> "GuidedTradingConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            GuidedTradingConfig instance

        Example YAML:
            regime:
              high_volatility_atr_percent: 2.0
            ranking:
              sample_market_limit: 60
            persistence:
              db_path: "${STATE_DIR}/guided.db"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}

        return cls(**{
            name: _coerce_section(section_cls, data.get(name))
            for name, section_cls in _SECTIONS.items()
        })

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = {}
        for name in _SECTIONS:
            section = asdict(getattr(self, name))
            data[name] = {
                k: str(v) if isinstance(v, Decimal) else v
                for k, v in section.items()
            }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
