"""Stateless settlement math for leveraged deals.

Nothing here touches the database or the network. Inputs and outputs are
Decimal; callers convert at the edges.

PnL is ratio based: a p% favorable price move earns p% * multiplier of the
staked amount. There is no liquidation floor, so a loss can exceed the stake
when the price gaps past the stop-loss between evaluations.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP

from backend.exceptions import InvalidRiskParameters
from backend.utils.constants import (
    AMOUNT_STEP,
    DEFAULT_COMMISSION_RATE,
    DEFAULT_MAX_AGE_HOURS,
    LONG,
    MONEY_STEP,
    REASON_STOP_LOSS,
    REASON_TAKE_PROFIT,
    SHORT,
)

DEFAULT_MAX_AGE = timedelta(hours=DEFAULT_MAX_AGE_HOURS)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CloseDecision:
    """Auto-close decision for one position at one price."""
    close: bool
    reason: str | None = None  # "take_profit", "stop_loss"


@dataclass(frozen=True)
class SettlementBreakdown:
    """Full PnL breakdown at a given close price."""
    volume: Decimal
    price_change: Decimal
    gross_profit: Decimal
    commission: Decimal
    net_profit: Decimal
    profit_pct: Decimal


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def to_decimal(value) -> Decimal:
    """Convert ints, strings and floats to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def as_utc(moment: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def notional(position) -> Decimal:
    return to_decimal(position.amount) * position.multiplier


# ---------------------------------------------------------------------------
# Main settlement functions
# ---------------------------------------------------------------------------

def unrealized_pnl(position, current_price) -> Decimal:
    """Leveraged PnL of the position if it were closed at current_price."""
    open_price = to_decimal(position.open_price)
    price = to_decimal(current_price)
    if position.direction == LONG:
        ratio = (price - open_price) / open_price
    else:
        ratio = (open_price - price) / open_price
    return (ratio * notional(position)).quantize(AMOUNT_STEP, rounding=ROUND_HALF_UP)


def commission(position, rate=DEFAULT_COMMISSION_RATE) -> Decimal:
    """Fee on the notional, charged once at close, rounded to cents."""
    fee = notional(position) * to_decimal(rate)
    return fee.quantize(MONEY_STEP, rounding=ROUND_HALF_UP)


def net_profit(position, current_price, rate=DEFAULT_COMMISSION_RATE) -> Decimal:
    """Value persisted as profit and credited to the balance (may be negative)."""
    return unrealized_pnl(position, current_price) - commission(position, rate)


def settlement_breakdown(position, close_price, rate=DEFAULT_COMMISSION_RATE) -> SettlementBreakdown:
    open_price = to_decimal(position.open_price)
    price = to_decimal(close_price)
    gross = unrealized_pnl(position, price)
    fee = commission(position, rate)
    net = gross - fee
    amount = to_decimal(position.amount)
    profit_pct = (net / amount * 100).quantize(MONEY_STEP, rounding=ROUND_HALF_UP) if amount else Decimal("0")
    return SettlementBreakdown(
        volume=notional(position),
        price_change=(price - open_price) / open_price,
        gross_profit=gross,
        commission=fee,
        net_profit=net,
        profit_pct=profit_pct,
    )


def should_auto_close(position, current_price) -> CloseDecision:
    """Take-profit is evaluated first, so it wins when both trigger."""
    price = to_decimal(current_price)
    is_long = position.direction == LONG

    if position.take_profit is not None:
        tp = to_decimal(position.take_profit)
        if (is_long and price >= tp) or (not is_long and price <= tp):
            return CloseDecision(close=True, reason=REASON_TAKE_PROFIT)

    if position.stop_loss is not None:
        sl = to_decimal(position.stop_loss)
        if (is_long and price <= sl) or (not is_long and price >= sl):
            return CloseDecision(close=True, reason=REASON_STOP_LOSS)

    return CloseDecision(close=False)


def is_expired(position, now: datetime, max_age: timedelta = DEFAULT_MAX_AGE) -> bool:
    return as_utc(now) - as_utc(position.opened_at) >= max_age


def validate_risk_parameters(
    direction: str,
    open_price,
    take_profit=None,
    stop_loss=None,
):
    """Reject take-profit/stop-loss values on the wrong side of the entry."""
    if direction not in (LONG, SHORT):
        raise InvalidRiskParameters(f"Unknown direction: {direction}")
    entry = to_decimal(open_price)

    if take_profit is not None:
        tp = to_decimal(take_profit)
        if tp <= 0:
            raise InvalidRiskParameters("take_profit must be positive")
        if direction == LONG and tp <= entry:
            raise InvalidRiskParameters(f"take_profit {tp} must be above entry {entry} for a long")
        if direction == SHORT and tp >= entry:
            raise InvalidRiskParameters(f"take_profit {tp} must be below entry {entry} for a short")

    if stop_loss is not None:
        sl = to_decimal(stop_loss)
        if sl <= 0:
            raise InvalidRiskParameters("stop_loss must be positive")
        if direction == LONG and sl >= entry:
            raise InvalidRiskParameters(f"stop_loss {sl} must be below entry {entry} for a long")
        if direction == SHORT and sl <= entry:
            raise InvalidRiskParameters(f"stop_loss {sl} must be above entry {entry} for a short")
