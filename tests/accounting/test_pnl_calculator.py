"""
Unit tests for fee-aware P&L arithmetic.
"""

from decimal import Decimal

import pytest

from risk_engine.accounting.pnl_calculator import (
    InvalidTradeInputError,
    UnsupportedFeeAssetError,
    calculate_mark_to_market_pct,
    calculate_net_pnl,
    calculate_net_pnl_percent,
    calculate_trade_pnl,
    compute_min_exit_price,
    normalize_fee_to_quote,
    project_exit_fee,
)


class TestNetPnL:
    """Test cases for net P&L and net percent."""

    def test_round_trip_deducts_both_fees(self):
        """A $10 gross gain with $0.20 in fees is 9.8% net."""
        net = calculate_net_pnl(100, 110, 1, 0.1, 0.1)
        percent = calculate_net_pnl_percent(net, 100, 1)

        assert net == Decimal("9.8")
        assert percent == Decimal("9.8")

    def test_fees_turn_flat_trade_negative(self):
        net = calculate_net_pnl(45000, 45000, "0.01", 2, "0.45")

        assert net == Decimal("-2.45")

    def test_trade_breakdown(self):
        breakdown = calculate_trade_pnl(100, 110, 2, "0.2", "0.22")

        assert breakdown.gross_pnl == Decimal("20")
        assert breakdown.total_fees == Decimal("0.42")
        assert breakdown.net_pnl == Decimal("19.58")
        assert breakdown.net_pnl_percent == Decimal("9.79")
        assert not breakdown.is_net_negative

    def test_losing_trade_is_net_negative(self):
        breakdown = calculate_trade_pnl(45000, 44990, "0.01", 2, "0.4499")

        assert breakdown.is_net_negative
        assert breakdown.net_pnl == Decimal("-2.5499")

    @pytest.mark.parametrize(
        "entry,exit_,qty,entry_fee,exit_fee",
        [
            (0, 110, 1, 0, 0),
            (100, -1, 1, 0, 0),
            (100, 110, 0, 0, 0),
            (100, 110, 1, -0.1, 0),
            (100, 110, 1, 0, -0.1),
            (float("nan"), 110, 1, 0, 0),
        ],
    )
    def test_invalid_inputs_rejected(self, entry, exit_, qty, entry_fee, exit_fee):
        with pytest.raises(InvalidTradeInputError):
            calculate_net_pnl(entry, exit_, qty, entry_fee, exit_fee)

    def test_percent_requires_positive_basis(self):
        with pytest.raises(InvalidTradeInputError):
            calculate_net_pnl_percent(5, 100, 0)


class TestExitFloor:
    """Test cases for the net-positive IOC floor."""

    def test_floor_without_buffer_breaks_even(self):
        floor = compute_min_exit_price(45000, 2, "0.01", "0.001", buffer_pct=0)
        exit_fee = project_exit_fee(floor, "0.01", "0.001")
        net = calculate_net_pnl(45000, floor, "0.01", 2, exit_fee)

        assert abs(net) < Decimal("1e-12")

    def test_buffer_lifts_floor(self):
        bare = compute_min_exit_price(45000, 2, "0.01", "0.001", buffer_pct=0)
        buffered = compute_min_exit_price(45000, 2, "0.01", "0.001", buffer_pct="0.001")

        assert buffered == bare * Decimal("1.001")
        assert buffered > Decimal("45200")

    def test_selling_at_floor_is_never_negative(self):
        floor = compute_min_exit_price(100, "0.1", 1, "0.001")
        breakdown = calculate_trade_pnl(100, floor, 1, "0.1", project_exit_fee(floor, 1, "0.001"))

        assert breakdown.net_pnl_percent >= 0

    def test_taker_rate_must_be_fraction(self):
        with pytest.raises(InvalidTradeInputError):
            compute_min_exit_price(100, 0, 1, 1)


class TestFeeNormalization:
    """Test cases for expressing exchange fees in quote currency."""

    def test_quote_fee_unchanged(self):
        assert normalize_fee_to_quote("0.45", "USDT", "BTC", "USDT", 45000) == Decimal("0.45")

    def test_missing_asset_treated_as_quote(self):
        assert normalize_fee_to_quote("0.45", None, "BTC", "USDT", 45000) == Decimal("0.45")

    def test_base_fee_converted_at_fill_price(self):
        fee = normalize_fee_to_quote("0.00001", "btc", "BTC", "USDT", 45000)

        assert fee == Decimal("0.45")

    def test_third_asset_unsupported(self):
        with pytest.raises(UnsupportedFeeAssetError, match="BNB"):
            normalize_fee_to_quote("0.001", "BNB", "BTC", "USDT", 45000)


class TestMarkToMarket:
    def test_includes_projected_exit_fee(self):
        pct = calculate_mark_to_market_pct(100, 110, 1, "0.1", "0.001")

        # 10 gross - 0.1 entry fee - 0.11 projected exit fee
        assert pct == pytest.approx(9.79)

    def test_flat_price_is_red(self):
        assert calculate_mark_to_market_pct(100, 100, 1, "0.1", "0.001") < 0
