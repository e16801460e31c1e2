"""Error taxonomy for the settlement engine.

An already-closed position is not an error: settlement reports it through
``SettlementResult.already_closed`` and returns the persisted result.
"""


class SettlementError(Exception):
    """Base class for engine errors."""


class PositionNotFound(SettlementError):
    """Position does not exist, is not owned by the caller, or is no longer open."""

    def __init__(self, position_id: int, detail: str = "Position not found"):
        self.position_id = position_id
        super().__init__(f"{detail} (id={position_id})")


class InvalidRiskParameters(SettlementError, ValueError):
    """Take-profit or stop-loss on the wrong side of the entry price."""


class InsufficientBalance(SettlementError, ValueError):
    """Owner balance cannot cover the staked amount."""


class PersistenceFailure(SettlementError):
    """Transient database failure; safe to retry."""


class PriceFeedUnavailable(SettlementError):
    """No usable price for a symbol right now."""

    def __init__(self, symbol: str, detail: str = "price unavailable"):
        self.symbol = symbol
        super().__init__(f"{symbol}: {detail}")


class InvalidOrder(SettlementError, ValueError):
    """Open request with an unsupported symbol, direction, amount or multiplier."""
