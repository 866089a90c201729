"""
Unit tests for the underwater policy.
"""

from datetime import datetime, timedelta, timezone

import pytest

from risk_engine.models.position import ExitReason, Position, Regime
from risk_engine.risk_management.regime import build_regime_table
from risk_engine.risk_management.underwater_policy import UnderwaterPolicy, UnderwaterState


ENTRY = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_position(current=-0.6, peak=0.0, threshold=-0.5, dwell=15.0, regime=Regime.MODERATE):
    return Position(
        position_id="uw-1",
        bot_id="bot-a",
        pair="ETHUSDT",
        entry_price=2500,
        quantity="0.4",
        entry_fee="1.0",
        entry_time=ENTRY,
        regime=regime,
        current_profit_pct=current,
        peak_profit_pct=peak,
        underwater_threshold_pct=threshold,
        underwater_min_dwell_minutes=dwell,
    )


@pytest.fixture
def policy():
    return UnderwaterPolicy(build_regime_table())


class TestUnderwaterPolicy:
    """Test cases for UnderwaterPolicy.evaluate."""

    def test_breach_before_dwell_is_pending(self, policy):
        decision = policy.evaluate(make_position(), ENTRY + timedelta(minutes=10))

        assert decision.state == UnderwaterState.PENDING
        assert decision.recommendation is None
        assert decision.minutes_remaining == pytest.approx(5.0)

    def test_breach_after_dwell_forces_exit(self, policy):
        decision = policy.evaluate(make_position(), ENTRY + timedelta(minutes=16))

        assert decision.state == UnderwaterState.EXIT
        assert decision.recommendation == ExitReason.UNDERWATER_NEVER_PROFITED
        assert decision.minutes_remaining == 0.0

    def test_loss_within_threshold(self, policy):
        decision = policy.evaluate(make_position(current=-0.3), ENTRY + timedelta(minutes=60))

        assert decision.state == UnderwaterState.WITHIN_THRESHOLD
        assert decision.recommendation is None

    def test_position_that_was_green_not_governed(self, policy):
        decision = policy.evaluate(make_position(peak=0.4), ENTRY + timedelta(minutes=60))

        assert decision.state == UnderwaterState.NOT_APPLICABLE

    def test_small_peak_governed_when_allowed(self, policy):
        position = make_position(peak=0.4)

        pending = policy.evaluate(position, ENTRY + timedelta(minutes=10), small_peak_max_pct=0.5)
        exited = policy.evaluate(position, ENTRY + timedelta(minutes=60), small_peak_max_pct=0.5)

        assert pending.state == UnderwaterState.PENDING
        assert exited.state == UnderwaterState.EXIT
        assert exited.recommendation == ExitReason.UNDERWATER_SMALL_PEAK_TIMEOUT

    def test_peak_at_small_peak_limit_not_governed(self, policy):
        decision = policy.evaluate(
            make_position(peak=0.5), ENTRY + timedelta(minutes=60), small_peak_max_pct=0.5
        )

        assert decision.state == UnderwaterState.NOT_APPLICABLE

    def test_flat_position_not_governed(self, policy):
        decision = policy.evaluate(make_position(current=0.0), ENTRY + timedelta(minutes=60))

        assert decision.state == UnderwaterState.NOT_APPLICABLE

    def test_regime_defaults_when_position_has_none(self, policy):
        position = make_position(current=-0.9, threshold=None, dwell=None, regime=Regime.MODERATE)

        pending = policy.evaluate(position, ENTRY + timedelta(minutes=19))
        exited = policy.evaluate(position, ENTRY + timedelta(minutes=21))

        assert pending.threshold_pct == -0.8
        assert pending.state == UnderwaterState.PENDING
        assert exited.state == UnderwaterState.EXIT

    def test_future_entry_time_does_not_pin_position(self, policy):
        decision = policy.evaluate(make_position(), ENTRY - timedelta(minutes=5))

        assert decision.age_minutes < 0
        assert decision.state == UnderwaterState.EXIT
