"""Positions API: open, list, close and edit risk parameters."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from backend.api.deps import get_current_user, get_service, to_http_exception
from backend.database import get_session
from backend.engine.position_store import UNSET
from backend.exceptions import SettlementError
from backend.models.position import Position
from backend.models.user import User
from backend.schemas.position import (
    PositionOpen,
    PositionRead,
    RiskParametersUpdate,
    SettlementResultRead,
)
from backend.utils.constants import STATUS_CLOSED, STATUS_OPEN

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/positions", tags=["positions"])


@router.get("", response_model=list[PositionRead])
def list_positions(
    status: str | None = None,
    symbol: str | None = None,
    limit: int = 50,
    offset: int = 0,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    stmt = select(Position).where(Position.owner_id == user.id)
    if status is not None:
        if status not in (STATUS_OPEN, STATUS_CLOSED):
            raise HTTPException(status_code=422, detail="status must be 'open' or 'closed'")
        stmt = stmt.where(Position.status == status)
    if symbol is not None:
        stmt = stmt.where(Position.symbol == symbol.upper())
    stmt = stmt.order_by(Position.opened_at.desc()).offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.post("", response_model=PositionRead, status_code=201)
async def open_position(
    body: PositionOpen,
    user: User = Depends(get_current_user),
    service=Depends(get_service),
):
    try:
        return await service.open_position(
            owner_id=user.id,
            symbol=body.symbol,
            direction=body.direction,
            amount=body.amount,
            multiplier=body.multiplier,
            take_profit=body.take_profit,
            stop_loss=body.stop_loss,
        )
    except SettlementError as e:
        raise to_http_exception(e)


@router.get("/enriched")
async def enriched_positions(
    user: User = Depends(get_current_user),
    service=Depends(get_service),
):
    """Open positions with current prices and unrealized P&L."""
    try:
        return await service.enriched_positions(user.id)
    except SettlementError as e:
        raise to_http_exception(e)


@router.get("/{position_id}", response_model=PositionRead)
def get_position(
    position_id: int,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    position = session.get(Position, position_id)
    if not position or position.owner_id != user.id:
        raise HTTPException(status_code=404, detail="Position not found")
    return position


@router.post("/{position_id}/close", response_model=SettlementResultRead)
async def close_position(
    position_id: int,
    user: User = Depends(get_current_user),
    service=Depends(get_service),
):
    """Close at the current market price. Closing twice returns the first result."""
    try:
        return await service.close_position(user.id, position_id)
    except SettlementError as e:
        raise to_http_exception(e)


@router.patch("/{position_id}/risk", response_model=PositionRead)
async def update_risk_parameters(
    position_id: int,
    body: RiskParametersUpdate,
    user: User = Depends(get_current_user),
    service=Depends(get_service),
):
    fields = body.model_fields_set
    try:
        return await service.update_risk_parameters(
            user.id,
            position_id,
            take_profit=body.take_profit if "take_profit" in fields else UNSET,
            stop_loss=body.stop_loss if "stop_loss" in fields else UNSET,
        )
    except SettlementError as e:
        raise to_http_exception(e)
