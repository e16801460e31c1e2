"""PositionStore: the single source of truth for position state.

Two writer entry points exist and both are scoped to one position id:

- ``apply_close`` performs the open → closed transition as one conditional
  UPDATE (``WHERE status = 'open'``) and applies the balance delta and the
  closed-trade counter in the same transaction. Only the first of any number
  of concurrent close attempts changes a row; the rest observe the persisted
  closed record.
- ``update_risk_parameters`` edits take-profit/stop-loss, guarded the same way.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from backend.database import engine as default_engine
from backend.exceptions import PersistenceFailure, PositionNotFound
from backend.models.position import Position
from backend.models.user import User
from backend.services.settlement import validate_risk_parameters
from backend.utils.constants import STATUS_CLOSED, STATUS_OPEN

logger = logging.getLogger(__name__)

UNSET = object()


@dataclass
class CloseOutcome:
    position: Position
    applied: bool  # False: someone else closed it first, position holds their result


class PositionStore:
    def __init__(self, db_engine=None):
        self._engine = db_engine or default_engine

    # -- readers ----------------------------------------------------------

    def get_position(self, position_id: int) -> Position | None:
        try:
            with Session(self._engine) as session:
                return session.get(Position, position_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to load position {position_id}: {e}") from e

    def list_open_positions_by_symbol(self, symbol: str) -> list[Position]:
        with Session(self._engine) as session:
            return list(session.exec(
                select(Position).where(
                    Position.symbol == symbol.upper(),
                    Position.status == STATUS_OPEN,
                )
            ).all())

    def list_open_positions_older_than(self, age: timedelta, now: datetime | None = None) -> list[Position]:
        cutoff = (now or datetime.now(timezone.utc)) - age
        with Session(self._engine) as session:
            return list(session.exec(
                select(Position)
                .where(Position.status == STATUS_OPEN, Position.opened_at <= cutoff)
                .order_by(Position.opened_at)
            ).all())

    def list_open_symbols(self) -> list[str]:
        with Session(self._engine) as session:
            rows = session.exec(
                select(Position.symbol).where(Position.status == STATUS_OPEN).distinct()
            ).all()
            return sorted(rows)

    def get_open_position_for_update(self, position_id: int, owner_id: int | None = None) -> Position:
        with Session(self._engine) as session:
            return self._load_open_for_update(session, position_id, owner_id)

    # -- writers ----------------------------------------------------------

    def create_position(
        self,
        owner_id: int,
        symbol: str,
        direction: str,
        amount: Decimal,
        multiplier: int,
        open_price: Decimal,
        take_profit: Decimal | None = None,
        stop_loss: Decimal | None = None,
        opened_at: datetime | None = None,
    ) -> Position:
        position = Position(
            owner_id=owner_id,
            symbol=symbol.upper(),
            direction=direction,
            amount=amount,
            multiplier=multiplier,
            open_price=open_price,
            take_profit=take_profit,
            stop_loss=stop_loss,
            status=STATUS_OPEN,
        )
        if opened_at is not None:
            position.opened_at = opened_at
        try:
            with Session(self._engine) as session:
                session.add(position)
                session.commit()
                session.refresh(position)
                return position
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to create position: {e}") from e

    def apply_close(
        self,
        position_id: int,
        close_price: Decimal,
        closed_at: datetime,
        profit: Decimal,
        commission: Decimal,
        reason: str | None = None,
    ) -> CloseOutcome:
        """Close the position if still open; otherwise return the existing close."""
        try:
            with Session(self._engine) as session:
                conn = session.connection()
                result = conn.execute(
                    update(Position)
                    .where(Position.id == position_id, Position.status == STATUS_OPEN)
                    .values(
                        status=STATUS_CLOSED,
                        close_price=close_price,
                        closed_at=closed_at,
                        profit=profit,
                        commission=commission,
                        close_reason=reason,
                    )
                )
                applied = result.rowcount == 1
                if applied:
                    owner_id = conn.execute(
                        select(Position.owner_id).where(Position.id == position_id)
                    ).scalar_one()
                    conn.execute(
                        update(User)
                        .where(User.id == owner_id)
                        .values(
                            balance=User.balance + profit,
                            trades_count=User.trades_count + 1,
                            updated_at=closed_at,
                        )
                    )
                    session.commit()
                else:
                    session.rollback()

                position = session.get(Position, position_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to close position {position_id}: {e}") from e

        if position is None:
            raise PositionNotFound(position_id)
        if not applied:
            logger.info(f"Position {position_id} already closed, returning persisted result")
        return CloseOutcome(position=position, applied=applied)

    def update_risk_parameters(
        self,
        position_id: int,
        owner_id: int,
        take_profit=UNSET,
        stop_loss=UNSET,
    ) -> Position:
        """Edit TP/SL while open. UNSET leaves a value unchanged, None clears it."""
        try:
            with Session(self._engine) as session:
                position = self._load_open_for_update(session, position_id, owner_id)

                # Only values being written now are validated
                validate_risk_parameters(
                    position.direction,
                    position.open_price,
                    take_profit=None if take_profit is UNSET else take_profit,
                    stop_loss=None if stop_loss is UNSET else stop_loss,
                )
                values = {}
                if take_profit is not UNSET:
                    values["take_profit"] = take_profit
                if stop_loss is not UNSET:
                    values["stop_loss"] = stop_loss
                if not values:
                    return position

                result = session.connection().execute(
                    update(Position)
                    .where(
                        Position.id == position_id,
                        Position.owner_id == owner_id,
                        Position.status == STATUS_OPEN,
                    )
                    .values(**values)
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise PositionNotFound(position_id, "Position is not open")
                session.commit()
                session.refresh(position)
                return position
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to update position {position_id}: {e}") from e

    # -- internals --------------------------------------------------------

    @staticmethod
    def _load_open_for_update(session: Session, position_id: int, owner_id: int | None) -> Position:
        # FOR UPDATE is dropped by dialects without row locks (SQLite)
        position = session.exec(
            select(Position).where(Position.id == position_id).with_for_update()
        ).first()
        if position is None or (owner_id is not None and position.owner_id != owner_id):
            raise PositionNotFound(position_id)
        if position.status != STATUS_OPEN:
            raise PositionNotFound(position_id, "Position is not open")
        return position
