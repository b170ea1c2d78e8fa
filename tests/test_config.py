from decimal import Decimal
from pathlib import Path

import pytest

from guided_trading.config import GuidedTradingConfig


class TestGuidedTradingConfig:
    """Test YAML configuration loading."""

    def test_defaults(self):
        config = GuidedTradingConfig()
        assert config.ranking.sample_market_limit == 60
        assert config.guided.min_order_krw == Decimal('5100')
        assert config.guided.min_effective_holding_krw == Decimal('5000')
        assert config.reconcile.max_window_days == 30

    def test_from_yaml_with_env(self, tmp_path: Path, monkeypatch):
        """Env vars are interpolated and decimals stay Decimal."""
        monkeypatch.setenv("GUIDED_STATE_DIR", "/var/guided")
        path = tmp_path / "config.yaml"
        path.write_text(
            "ranking:\n"
            "  sample_market_limit: 30\n"
            "guided:\n"
            "  trailing_offset_percent: 1.5\n"
            "persistence:\n"
            "  db_path: \"${GUIDED_STATE_DIR}/guided.db\"\n"
        )
        config = GuidedTradingConfig.from_yaml(str(path))
        assert config.ranking.sample_market_limit == 30
        assert config.guided.trailing_offset_percent == Decimal('1.5')
        assert isinstance(config.guided.trailing_offset_percent, Decimal)
        assert config.persistence.db_path == "/var/guided/guided.db"
        # untouched sections keep their defaults
        assert config.regime.min_candles == 20

    def test_unknown_key_rejected(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("ranking:\n  sample_limit: 30\n")
        with pytest.raises(ValueError):
            GuidedTradingConfig.from_yaml(str(path))

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            GuidedTradingConfig.from_yaml(str(tmp_path / "nope.yaml"))

    def test_yaml_round_trip(self, tmp_path: Path):
        config = GuidedTradingConfig()
        config.reconcile.pnl_tolerance = Decimal('0.05')
        path = tmp_path / "out" / "config.yaml"
        config.to_yaml(str(path))

        loaded = GuidedTradingConfig.from_yaml(str(path))
        assert loaded.reconcile.pnl_tolerance == Decimal('0.05')
        assert loaded == config
