"""Shared constants for deals and settlement."""

from decimal import Decimal

LONG = "long"
SHORT = "short"
DIRECTIONS = (LONG, SHORT)

STATUS_OPEN = "open"
STATUS_CLOSED = "closed"

REASON_TAKE_PROFIT = "take_profit"
REASON_STOP_LOSS = "stop_loss"
REASON_EXPIRED = "expired"
REASON_MANUAL = "manual"
AUTOMATIC_REASONS = (REASON_TAKE_PROFIT, REASON_STOP_LOSS, REASON_EXPIRED)

# Quantization steps
MONEY_STEP = Decimal("0.01")
AMOUNT_STEP = Decimal("0.00000001")  # matches Numeric(18, 8) columns

DEFAULT_COMMISSION_RATE = Decimal("0.0005")
DEFAULT_MAX_AGE_HOURS = 48

# Rating score weights
SCORE_WEIGHT_PNL = Decimal("0.4")
SCORE_WEIGHT_WIN_RATE = Decimal("0.3")
SCORE_WEIGHT_VOLUME = Decimal("0.2")
SCORE_WEIGHT_TRADES = Decimal("0.1")
SCORE_TRADES_CAP = 100

NOTIFICATION_AUTO_CLOSE = "auto_close_trade"

JOB_EXPIRY_SWEEP = "expiry_sweep"
JOB_RANK_RECONCILE = "rank_reconcile"
