"""Tests for the pure settlement math."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from backend.exceptions import InvalidRiskParameters
from backend.services import settlement


def _position(direction="long", amount="100", multiplier=10, open_price="50000",
              take_profit=None, stop_loss=None, opened_at=None):
    return SimpleNamespace(
        direction=direction,
        amount=Decimal(amount),
        multiplier=multiplier,
        open_price=Decimal(open_price),
        take_profit=Decimal(take_profit) if take_profit is not None else None,
        stop_loss=Decimal(stop_loss) if stop_loss is not None else None,
        opened_at=opened_at or datetime.now(timezone.utc),
    )


# ---------------------------------------------------------------------------
# 1. PnL and commission
# ---------------------------------------------------------------------------

class TestUnrealizedPnl:
    def test_long_gain_scales_with_multiplier(self):
        pos = _position(direction="long")
        # +2% move on a 1000 notional
        assert settlement.unrealized_pnl(pos, Decimal("51000")) == Decimal("20.00000000")

    def test_short_gain_when_price_falls(self):
        pos = _position(direction="short", multiplier=5)
        assert settlement.unrealized_pnl(pos, Decimal("49000")) == Decimal("10")

    def test_long_loss_when_price_falls(self):
        pos = _position(direction="long")
        assert settlement.unrealized_pnl(pos, Decimal("49500")) == Decimal("-10")

    def test_unchanged_price_is_zero(self):
        assert settlement.unrealized_pnl(_position(), Decimal("50000")) == 0

    def test_loss_can_exceed_stake(self):
        pos = _position(amount="100", multiplier=100, open_price="100")
        pnl = settlement.unrealized_pnl(pos, Decimal("98"))
        assert pnl == Decimal("-200")
        assert -pnl > pos.amount

    def test_accepts_float_and_string_prices(self):
        pos = _position()
        assert settlement.unrealized_pnl(pos, 51000.0) == settlement.unrealized_pnl(pos, "51000")


class TestCommission:
    def test_fraction_of_notional(self):
        assert settlement.commission(_position(amount="100", multiplier=10)) == Decimal("0.50")

    def test_rounded_half_up_to_cents(self):
        # 99.99 * 0.0005 = 0.049995
        pos = _position(amount="33.33", multiplier=3)
        assert settlement.commission(pos) == Decimal("0.05")

    def test_custom_rate(self):
        pos = _position(amount="100", multiplier=10)
        assert settlement.commission(pos, Decimal("0.001")) == Decimal("1.00")

    def test_independent_of_price(self):
        pos = _position()
        fee = settlement.commission(pos)
        assert settlement.net_profit(pos, "60000") - settlement.unrealized_pnl(pos, "60000") == -fee
        assert settlement.net_profit(pos, "40000") - settlement.unrealized_pnl(pos, "40000") == -fee


def test_net_profit_is_pnl_minus_commission():
    pos = _position()
    assert settlement.net_profit(pos, Decimal("51000")) == Decimal("19.50")


def test_net_profit_negative_at_entry_price():
    assert settlement.net_profit(_position(), Decimal("50000")) == Decimal("-0.50")


def test_settlement_breakdown():
    breakdown = settlement.settlement_breakdown(_position(), Decimal("51000"))
    assert breakdown.volume == Decimal("1000")
    assert breakdown.price_change == Decimal("0.02")
    assert breakdown.gross_profit == Decimal("20")
    assert breakdown.commission == Decimal("0.50")
    assert breakdown.net_profit == Decimal("19.50")
    assert breakdown.profit_pct == Decimal("19.50")


# ---------------------------------------------------------------------------
# 2. Auto-close decisions
# ---------------------------------------------------------------------------

class TestShouldAutoClose:
    def test_long_take_profit(self):
        pos = _position(take_profit="55000", stop_loss="45000")
        decision = settlement.should_auto_close(pos, Decimal("55000"))
        assert decision.close and decision.reason == "take_profit"

    def test_long_stop_loss(self):
        pos = _position(take_profit="55000", stop_loss="45000")
        decision = settlement.should_auto_close(pos, Decimal("44999.99"))
        assert decision.close and decision.reason == "stop_loss"

    def test_short_take_profit(self):
        pos = _position(direction="short", take_profit="45000", stop_loss="55000")
        decision = settlement.should_auto_close(pos, Decimal("44000"))
        assert decision.reason == "take_profit"

    def test_short_stop_loss(self):
        pos = _position(direction="short", take_profit="45000", stop_loss="55000")
        decision = settlement.should_auto_close(pos, Decimal("55000"))
        assert decision.reason == "stop_loss"

    def test_between_levels_stays_open(self):
        pos = _position(take_profit="55000", stop_loss="45000")
        decision = settlement.should_auto_close(pos, Decimal("50000"))
        assert not decision.close
        assert decision.reason is None

    def test_no_levels_never_closes(self):
        pos = _position()
        assert not settlement.should_auto_close(pos, Decimal("1")).close
        assert not settlement.should_auto_close(pos, Decimal("1000000")).close

    def test_take_profit_wins_when_both_trigger(self):
        # Contradictory levels: both true at 50000
        pos = _position(take_profit="49000", stop_loss="51000")
        assert settlement.should_auto_close(pos, Decimal("50000")).reason == "take_profit"


class TestIsExpired:
    def test_exactly_max_age_is_expired(self):
        now = datetime(2024, 1, 3, tzinfo=timezone.utc)
        pos = _position(opened_at=now - timedelta(hours=48))
        assert settlement.is_expired(pos, now)

    def test_younger_is_not_expired(self):
        now = datetime(2024, 1, 3, tzinfo=timezone.utc)
        pos = _position(opened_at=now - timedelta(hours=47, minutes=59))
        assert not settlement.is_expired(pos, now)

    def test_naive_opened_at_treated_as_utc(self):
        now = datetime(2024, 1, 3, tzinfo=timezone.utc)
        pos = _position(opened_at=datetime(2024, 1, 1))
        assert settlement.is_expired(pos, now)

    def test_custom_max_age(self):
        now = datetime.now(timezone.utc)
        pos = _position(opened_at=now - timedelta(hours=2))
        assert settlement.is_expired(pos, now, max_age=timedelta(hours=1))


# ---------------------------------------------------------------------------
# 3. Risk parameter validation
# ---------------------------------------------------------------------------

class TestValidateRiskParameters:
    def test_valid_long(self):
        settlement.validate_risk_parameters("long", "50000", take_profit="55000", stop_loss="45000")

    def test_valid_short(self):
        settlement.validate_risk_parameters("short", "50000", take_profit="45000", stop_loss="55000")

    def test_none_values_allowed(self):
        settlement.validate_risk_parameters("long", "50000")

    @pytest.mark.parametrize("direction,tp,sl", [
        ("long", "49000", None),
        ("long", None, "51000"),
        ("long", "50000", None),
        ("short", "51000", None),
        ("short", None, "49000"),
        ("long", "-1", None),
        ("short", None, "0"),
    ])
    def test_wrong_side_rejected(self, direction, tp, sl):
        with pytest.raises(InvalidRiskParameters):
            settlement.validate_risk_parameters(direction, "50000", take_profit=tp, stop_loss=sl)

    def test_unknown_direction(self):
        with pytest.raises(InvalidRiskParameters):
            settlement.validate_risk_parameters("sideways", "50000")

    def test_is_a_value_error(self):
        with pytest.raises(ValueError):
            settlement.validate_risk_parameters("long", "50000", take_profit="1")
