"""
Unit tests for the dynamic position sizer.

Covers configuration validation, the Kelly and confidence arithmetic, the
exposure cap, compare-and-swap state updates and balance synchronization.
"""

import random
from decimal import Decimal
from unittest.mock import Mock

import pytest

from risk_engine.core.event_hub import EventHub, EventType
from risk_engine.core.retry import RetryExecutor, create_exchange_retry_policy
from risk_engine.execution.exchange_client import ExchangeTransientError
from risk_engine.risk_management.position_sizer import (
    BalanceSyncError,
    BalanceSynchronizer,
    DynamicPositionSizer,
    DynamicSizingConfig,
    ExposureLimitExceededError,
    InvalidPositionSizingConfigError,
    PositionSizingCalculationError,
    PositionSizingError,
    SizerState,
    create_position_sizer,
)


@pytest.fixture
def config():
    return DynamicSizingConfig()


@pytest.fixture
def sizer(config):
    return DynamicPositionSizer(config, SizerState(balance=10000.0))


def seasoned_state(balance=10000.0):
    """Ten trades, 60% wins, 2.5% average win, 1.5% average loss."""
    return SizerState(
        balance=balance,
        total_trades=10,
        winning_trades=6,
        losing_trades=4,
        avg_win_pct=0.025,
        avg_loss_pct=0.015,
    )


class TestDynamicSizingConfig:
    """Test cases for DynamicSizingConfig validation."""

    def test_defaults(self, config):
        assert config.kelly_damping == 0.25
        assert config.kelly_min_trades == 10
        assert config.min_risk_fraction == 0.01
        assert config.max_risk_fraction == 0.10
        assert config.capital_mode == "fixed"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"kelly_damping": 0.0},
            {"kelly_min_trades": 0},
            {"min_risk_fraction": 0.2, "max_risk_fraction": 0.1},
            {"min_confidence": 90.0, "max_confidence": 80.0},
            {"max_concurrent_risk_fraction": 0.0},
            {"capital_mode": "leveraged"},
        ],
    )
    def test_invalid_config(self, kwargs):
        with pytest.raises(InvalidPositionSizingConfigError):
            DynamicSizingConfig(**kwargs)


class TestRiskFraction:
    """Test cases for Kelly and confidence scaling."""

    def test_default_fraction_below_min_trades(self, sizer):
        breakdown = sizer.calculate_risk_fraction(72.5)

        assert breakdown.used_default
        assert breakdown.raw_kelly is None
        assert breakdown.confidence_multiplier == pytest.approx(1.25)
        assert breakdown.final_fraction == pytest.approx(0.0625)

    def test_kelly_fraction(self, config):
        sizer = DynamicPositionSizer(config, seasoned_state())

        assert sizer.calculate_kelly_fraction() == pytest.approx(0.36)
        breakdown = sizer.calculate_risk_fraction(50.0)
        assert breakdown.base_fraction == pytest.approx(0.09)
        assert breakdown.final_fraction == pytest.approx(0.045)

    def test_negative_edge_clamped_to_minimum(self, config):
        state = SizerState(
            balance=10000.0,
            total_trades=20,
            winning_trades=4,
            losing_trades=16,
            avg_win_pct=0.01,
            avg_loss_pct=0.03,
        )
        sizer = DynamicPositionSizer(config, state)

        assert sizer.calculate_kelly_fraction() < 0
        assert sizer.calculate_risk_fraction(95.0).final_fraction == pytest.approx(0.02)
        assert sizer.calculate_risk_fraction(50.0).final_fraction == pytest.approx(0.01)

    def test_confidence_multiplier_bounds(self, sizer):
        assert sizer.confidence_multiplier(10.0) == pytest.approx(0.5)
        assert sizer.confidence_multiplier(50.0) == pytest.approx(0.5)
        assert sizer.confidence_multiplier(95.0) == pytest.approx(2.0)
        assert sizer.confidence_multiplier(100.0) == pytest.approx(2.0)

    def test_fraction_always_within_bounds(self, config):
        rng = random.Random(42)
        for _ in range(500):
            wins = rng.randint(0, 50)
            losses = rng.randint(0, 50)
            state = SizerState(
                balance=rng.uniform(1.0, 1e6),
                total_trades=wins + losses,
                winning_trades=wins,
                losing_trades=losses,
                avg_win_pct=rng.uniform(0.0001, 0.5),
                avg_loss_pct=rng.uniform(0.0, 0.5),
            )
            sizer = DynamicPositionSizer(config, state)
            fraction = sizer.calculate_risk_fraction(rng.uniform(0.0, 100.0)).final_fraction
            assert config.min_risk_fraction <= fraction <= config.max_risk_fraction


class TestSizePosition:
    """Test cases for size_position."""

    def test_size_from_risk_and_stop(self, sizer):
        result = sizer.size_position(confidence=50.0, price=50000.0, stop_loss_pct=0.02)

        assert result.risk_fraction == pytest.approx(0.025)
        assert result.risk_quote == pytest.approx(250.0)
        assert result.size_quote == pytest.approx(12500.0)
        assert result.size_asset == pytest.approx(0.25)
        assert result.state_version == 0

    def test_publishes_sized_event(self, config):
        hub = EventHub()
        callback = Mock()
        hub.subscribe(EventType.POSITION_SIZED, callback)
        sizer = DynamicPositionSizer(config, SizerState(balance=10000.0), hub)

        sizer.size_position(50.0, 100.0, 0.02)

        callback.assert_called_once()
        assert callback.call_args[0][0]["risk_quote"] == pytest.approx(250.0)

    @pytest.mark.parametrize(
        "confidence,price,stop",
        [(50.0, 0.0, 0.02), (50.0, 100.0, 0.0), (50.0, 100.0, 1.5), (150.0, 100.0, 0.02)],
    )
    def test_invalid_inputs(self, sizer, confidence, price, stop):
        with pytest.raises(PositionSizingCalculationError):
            sizer.size_position(confidence, price, stop)

    def test_zero_balance_rejected(self, config):
        sizer = DynamicPositionSizer(config, SizerState(balance=0.0))

        with pytest.raises(PositionSizingCalculationError):
            sizer.size_position(50.0, 100.0, 0.02)

    def test_exposure_cap(self, sizer):
        assert sizer.can_add_position(200.0, 250.0)
        assert not sizer.can_add_position(400.0, 250.0)

        with pytest.raises(ExposureLimitExceededError):
            sizer.size_position(50.0, 100.0, 0.02, open_risk_quote=400.0)


class TestStateUpdates:
    """Test cases for trade recording and compare-and-swap."""

    def test_record_win_and_loss(self, sizer):
        sizer.record_trade_result(net_pnl=30.0, net_pnl_percent=3.0)
        state = sizer.record_trade_result(net_pnl=-10.0, net_pnl_percent=-1.0)

        assert state.total_trades == 2
        assert state.winning_trades == 1
        assert state.losing_trades == 1
        assert state.avg_win_pct == pytest.approx(0.03)
        assert state.avg_loss_pct == pytest.approx(0.01)
        assert state.balance == pytest.approx(10020.0)
        assert state.version == 2

    def test_unlimited_mode_leaves_balance(self):
        sizer = DynamicPositionSizer(
            DynamicSizingConfig(capital_mode="unlimited"), SizerState(balance=10000.0)
        )

        state = sizer.record_trade_result(net_pnl=50.0, net_pnl_percent=5.0)

        assert state.balance == 10000.0
        assert state.winning_trades == 1

    def test_compare_and_swap_rejects_stale_version(self, sizer):
        stale = sizer.state
        sizer.update_balance(12000.0)

        assert not sizer.compare_and_swap(stale.version, SizerState(balance=1.0))
        assert sizer.state.balance == 12000.0

    def test_compare_and_swap_bumps_version(self, sizer):
        current = sizer.state

        assert sizer.compare_and_swap(current.version, SizerState(balance=5000.0))
        assert sizer.state.version == current.version + 1
        assert sizer.state.balance == 5000.0

    def test_closed_position_event_updates_statistics(self, sizer):
        hub = EventHub()
        sizer.attach(hub)

        hub.publish(EventType.POSITION_CLOSED, {"net_pnl": 12.5, "net_pnl_percent": 2.5})

        assert sizer.state.total_trades == 1
        assert sizer.state.balance == pytest.approx(10012.5)

    def test_reset_requires_operator(self, sizer):
        sizer.record_trade_result(10.0, 1.0)

        with pytest.raises(PositionSizingError):
            sizer.reset_state(5000.0, operator="")

        state = sizer.reset_state(5000.0, operator="ops")
        assert state.total_trades == 0
        assert state.balance == 5000.0

    def test_negative_balance_rejected(self, sizer):
        with pytest.raises(PositionSizingCalculationError):
            sizer.update_balance(-1.0)

    def test_summary(self, config):
        sizer = DynamicPositionSizer(config, seasoned_state())

        summary = sizer.get_summary()

        assert summary["win_rate"] == pytest.approx(0.6)
        assert summary["kelly_fraction"] == pytest.approx(0.36)


class TestBalanceSynchronizer:
    """Test cases for exchange balance synchronization."""

    def _executor(self):
        policy = create_exchange_retry_policy(
            max_retries=1,
            base_delay=0.0,
            max_delay=0.0,
            is_retryable=lambda e: isinstance(e, ExchangeTransientError),
        )
        return RetryExecutor(policy)

    def test_sync_updates_balance(self):
        sizer = DynamicPositionSizer(
            DynamicSizingConfig(capital_mode="unlimited"), SizerState(balance=1000.0)
        )
        exchange = Mock()
        exchange.get_free_balance.return_value = Decimal("2500.5")

        balance = BalanceSynchronizer(sizer, exchange, "USDT", self._executor()).sync()

        assert balance == pytest.approx(2500.5)
        assert sizer.state.balance == pytest.approx(2500.5)
        exchange.get_free_balance.assert_called_with("USDT")

    def test_sync_failure_raises(self):
        sizer = DynamicPositionSizer(DynamicSizingConfig(), SizerState(balance=1000.0))
        exchange = Mock()
        exchange.get_free_balance.side_effect = ExchangeTransientError("rate limited", -1003)

        with pytest.raises(BalanceSyncError):
            BalanceSynchronizer(sizer, exchange, "USDT", self._executor()).sync()

        assert exchange.get_free_balance.call_count == 2
        assert sizer.state.balance == 1000.0


def test_factory_builds_from_config_section():
    sizer = create_position_sizer(
        {
            "initial_balance": 2000.0,
            "kelly_damping": 0.5,
            "kelly_min_trades": 5,
            "default_risk_fraction": 0.04,
            "min_risk_fraction": 0.01,
            "max_risk_fraction": 0.08,
            "min_confidence": 40.0,
            "max_confidence": 90.0,
            "max_concurrent_risk_fraction": 0.06,
        },
        capital_mode="unlimited",
    )

    assert sizer.state.balance == 2000.0
    assert sizer.config.kelly_min_trades == 5
    assert sizer.config.capital_mode == "unlimited"
