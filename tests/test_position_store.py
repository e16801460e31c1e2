"""Tests for PositionStore: conditional close, risk edits and listings."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from backend.engine.position_store import PositionStore
from backend.exceptions import InvalidRiskParameters, PersistenceFailure, PositionNotFound
from conftest import load_user


def _close(store, position_id, profit="19.50", commission="0.50", price="51000", reason="take_profit"):
    return store.apply_close(
        position_id,
        close_price=Decimal(price),
        closed_at=datetime.now(timezone.utc),
        profit=Decimal(profit),
        commission=Decimal(commission),
        reason=reason,
    )


# ---------------------------------------------------------------------------
# 1. apply_close
# ---------------------------------------------------------------------------

def test_apply_close_sets_exit_fields_and_credits_owner(db_engine, store, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)

    outcome = _close(store, pos.id)

    assert outcome.applied
    closed = outcome.position
    assert closed.status == "closed"
    assert closed.close_price == Decimal("51000")
    assert closed.profit == Decimal("19.50")
    assert closed.commission == Decimal("0.50")
    assert closed.closed_at is not None
    assert closed.close_reason == "take_profit"

    owner = load_user(db_engine, user.id)
    assert owner.balance == Decimal("10019.50")
    assert owner.trades_count == 1


def test_apply_close_twice_returns_first_result(db_engine, store, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)

    first = _close(store, pos.id, profit="19.50", price="51000")
    second = _close(store, pos.id, profit="-100.00", price="45000", reason="manual")

    assert first.applied
    assert not second.applied
    assert second.position.profit == Decimal("19.50")
    assert second.position.close_price == Decimal("51000")
    assert second.position.close_reason == "take_profit"

    owner = load_user(db_engine, user.id)
    assert owner.balance == Decimal("10019.50")
    assert owner.trades_count == 1


def test_apply_close_negative_profit_debits(db_engine, store, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)

    _close(store, pos.id, profit="-205.00", commission="5.00", price="49000", reason="stop_loss")

    assert load_user(db_engine, user.id).balance == Decimal("9795.00")


def test_apply_close_unknown_position(store):
    with pytest.raises(PositionNotFound):
        _close(store, 999)


def test_apply_close_database_error_is_persistence_failure(store, make_user, make_position):
    pos = make_position(make_user().id)
    with patch("backend.engine.position_store.Session") as session_cls:
        session_cls.side_effect = OperationalError("UPDATE", {}, Exception("database is locked"))
        with pytest.raises(PersistenceFailure):
            _close(store, pos.id)


def test_closed_position_fields_unchanged_by_later_close(store, make_user, make_position):
    pos = make_position(make_user().id)
    _close(store, pos.id)
    _close(store, pos.id, profit="1.00", price="1")

    reloaded = store.get_position(pos.id)
    assert reloaded.amount == Decimal("100")
    assert reloaded.multiplier == 10
    assert reloaded.open_price == Decimal("50000")
    assert reloaded.profit == Decimal("19.50")


# ---------------------------------------------------------------------------
# 2. Risk parameters
# ---------------------------------------------------------------------------

class TestUpdateRiskParameters:
    def test_sets_both(self, store, make_user, make_position):
        user = make_user()
        pos = make_position(user.id)
        updated = store.update_risk_parameters(
            pos.id, user.id, take_profit=Decimal("55000"), stop_loss=Decimal("45000")
        )
        assert updated.take_profit == Decimal("55000")
        assert updated.stop_loss == Decimal("45000")

    def test_omitted_value_unchanged(self, store, make_user, make_position):
        user = make_user()
        pos = make_position(user.id, take_profit="55000", stop_loss="45000")
        updated = store.update_risk_parameters(pos.id, user.id, stop_loss=Decimal("46000"))
        assert updated.take_profit == Decimal("55000")
        assert updated.stop_loss == Decimal("46000")

    def test_none_clears(self, store, make_user, make_position):
        user = make_user()
        pos = make_position(user.id, take_profit="55000")
        updated = store.update_risk_parameters(pos.id, user.id, take_profit=None)
        assert updated.take_profit is None

    def test_wrong_side_rejected(self, store, make_user, make_position):
        user = make_user()
        pos = make_position(user.id)
        with pytest.raises(InvalidRiskParameters):
            store.update_risk_parameters(pos.id, user.id, take_profit=Decimal("40000"))
        assert store.get_position(pos.id).take_profit is None

    def test_other_owner_not_found(self, store, make_user, make_position):
        owner = make_user()
        other = make_user()
        pos = make_position(owner.id)
        with pytest.raises(PositionNotFound):
            store.update_risk_parameters(pos.id, other.id, take_profit=Decimal("55000"))

    def test_closed_position_rejected(self, store, make_user, make_position):
        user = make_user()
        pos = make_position(user.id)
        _close(store, pos.id)
        with pytest.raises(PositionNotFound):
            store.update_risk_parameters(pos.id, user.id, take_profit=Decimal("55000"))


def test_get_open_position_for_update(store, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)

    assert store.get_open_position_for_update(pos.id, user.id).id == pos.id
    assert store.get_open_position_for_update(pos.id).id == pos.id

    with pytest.raises(PositionNotFound):
        store.get_open_position_for_update(pos.id, user.id + 100)

    _close(store, pos.id)
    with pytest.raises(PositionNotFound):
        store.get_open_position_for_update(pos.id, user.id)


# ---------------------------------------------------------------------------
# 3. Listings
# ---------------------------------------------------------------------------

def test_list_open_positions_by_symbol(store, make_user, make_position):
    user = make_user()
    btc = make_position(user.id, symbol="BTCUSDT")
    make_position(user.id, symbol="ETHUSDT", open_price="3000")
    closed = make_position(user.id, symbol="BTCUSDT")
    _close(store, closed.id)

    result = store.list_open_positions_by_symbol("btcusdt")
    assert [p.id for p in result] == [btc.id]


def test_list_open_positions_older_than(store, make_user, make_position):
    user = make_user()
    old = make_position(user.id, age_hours=49)
    make_position(user.id, age_hours=1)
    expired_but_closed = make_position(user.id, age_hours=72)
    _close(store, expired_but_closed.id)

    result = store.list_open_positions_older_than(timedelta(hours=48))
    assert [p.id for p in result] == [old.id]


def test_list_open_positions_older_than_uses_given_now(store, make_user, make_position):
    user = make_user()
    pos = make_position(user.id, age_hours=1)
    later = datetime.now(timezone.utc) + timedelta(hours=48)
    assert [p.id for p in store.list_open_positions_older_than(timedelta(hours=48), now=later)] == [pos.id]


def test_list_open_symbols(store, make_user, make_position):
    user = make_user()
    make_position(user.id, symbol="ETHUSDT", open_price="3000")
    make_position(user.id, symbol="BTCUSDT")
    make_position(user.id, symbol="BTCUSDT")
    closed = make_position(user.id, symbol="SOLUSDT", open_price="100")
    _close(store, closed.id)

    assert store.list_open_symbols() == ["BTCUSDT", "ETHUSDT"]


def test_create_position_normalizes_symbol(store, make_user):
    user = make_user()
    pos = store.create_position(
        owner_id=user.id,
        symbol="ethusdt",
        direction="short",
        amount=Decimal("50"),
        multiplier=2,
        open_price=Decimal("3000"),
    )
    assert pos.id is not None
    assert pos.symbol == "ETHUSDT"
    assert pos.status == "open"


def test_store_uses_default_engine_when_none_given():
    from backend.database import engine

    assert PositionStore()._engine is engine
