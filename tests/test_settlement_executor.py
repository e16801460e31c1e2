"""Tests for SettlementExecutor: exactly-once settlement and its side effects."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from backend.engine.settlement_executor import ClosureStats, SettlementExecutor
from backend.exceptions import PersistenceFailure, PositionNotFound, PriceFeedUnavailable
from conftest import load_user


@pytest.mark.asyncio
async def test_settle_closes_and_credits(db_engine, executor, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)

    result = await executor.settle(pos.id, user.id, Decimal("51000"), "take_profit")

    assert result.id == pos.id
    assert result.close_price == Decimal("51000")
    assert result.profit == Decimal("19.50")
    assert result.commission == Decimal("0.50")
    assert result.reason == "take_profit"
    assert not result.already_closed

    owner = load_user(db_engine, user.id)
    assert owner.balance == Decimal("10019.50")
    assert owner.trades_count == 1


@pytest.mark.asyncio
async def test_balance_moves_by_net_profit(db_engine, executor, make_user, make_position):
    user = make_user(balance="500.00")
    pos = make_position(user.id, direction="short", multiplier=5)

    result = await executor.settle(pos.id, user.id, Decimal("49000"), "take_profit")

    assert result.profit == Decimal("9.75")
    assert load_user(db_engine, user.id).balance == Decimal("509.75")


@pytest.mark.asyncio
async def test_second_settle_returns_first_result(db_engine, executor, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)

    first = await executor.settle(pos.id, user.id, Decimal("51000"), "take_profit")
    second = await executor.settle(pos.id, user.id, Decimal("40000"), "manual")

    assert second.already_closed
    assert second.profit == first.profit
    assert second.close_price == first.close_price
    assert second.closed_at == first.closed_at
    assert load_user(db_engine, user.id).trades_count == 1
    assert executor.stats.total_closed == 1
    assert executor.stats.already_closed == 1


@pytest.mark.asyncio
async def test_concurrent_settles_credit_once(db_engine, executor, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)

    results = await asyncio.gather(
        executor.settle(pos.id, user.id, Decimal("51000"), "take_profit"),
        executor.settle(pos.id, user.id, Decimal("51000"), "manual"),
    )

    fresh = [r for r in results if not r.already_closed]
    assert len(fresh) == 1
    assert results[0].profit == results[1].profit
    assert results[0].closed_at == results[1].closed_at

    owner = load_user(db_engine, user.id)
    assert owner.balance == Decimal("10019.50")
    assert owner.trades_count == 1


@pytest.mark.asyncio
async def test_not_owner_is_not_found(executor, make_user, make_position):
    owner = make_user()
    other = make_user()
    pos = make_position(owner.id)

    with pytest.raises(PositionNotFound):
        await executor.settle(pos.id, other.id, Decimal("51000"), "manual")


@pytest.mark.asyncio
async def test_missing_position_is_not_found(executor):
    with pytest.raises(PositionNotFound):
        await executor.settle(12345, None, Decimal("1"), "expired")


@pytest.mark.asyncio
async def test_persistence_failure_propagates_and_is_counted(store, rating, feed, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)
    store.apply_close = MagicMock(side_effect=PersistenceFailure("database is locked"))
    executor = SettlementExecutor(store=store, rating=rating, price_feed=feed, notifier=AsyncMock())

    with pytest.raises(PersistenceFailure):
        await executor.settle(pos.id, user.id, Decimal("51000"), "take_profit")

    assert executor.stats.failures == 1
    assert executor.stats.recent_errors[-1]["position_id"] == pos.id


@pytest.mark.asyncio
async def test_rating_refreshed_after_close(db_engine, executor, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)

    await executor.settle(pos.id, user.id, Decimal("51000"), "take_profit")

    owner = load_user(db_engine, user.id)
    assert owner.total_pnl == Decimal("19.50")
    assert owner.win_rate == Decimal("100.00")
    assert owner.rating_rank == 1


@pytest.mark.asyncio
async def test_rating_failure_does_not_fail_settlement(db_engine, store, feed, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)
    rating = MagicMock()
    rating.refresh_owner.side_effect = PersistenceFailure("boom")
    executor = SettlementExecutor(store=store, rating=rating, price_feed=feed, notifier=AsyncMock())

    result = await executor.settle(pos.id, user.id, Decimal("51000"), "take_profit")

    assert not result.already_closed
    assert load_user(db_engine, user.id).trades_count == 1


@pytest.mark.asyncio
async def test_notification_sent_for_automatic_close_only(executor, notifier, make_user, make_position):
    user = make_user()
    auto = make_position(user.id)
    manual = make_position(user.id)

    await executor.settle(auto.id, user.id, Decimal("51000"), "take_profit")
    await executor.settle(manual.id, user.id, Decimal("51000"), "manual")
    await executor.drain()

    assert notifier.await_count == 1
    position, reason = notifier.await_args.args
    assert position.id == auto.id
    assert reason == "take_profit"


@pytest.mark.asyncio
async def test_no_notification_for_already_closed(executor, notifier, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)

    await executor.settle(pos.id, user.id, Decimal("51000"), "stop_loss")
    await executor.settle(pos.id, user.id, Decimal("51000"), "expired")
    await executor.drain()

    assert notifier.await_count == 1


# ---------------------------------------------------------------------------
# Manual close
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_close_manually_uses_current_price(db_engine, executor, feed, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)
    feed.prices["BTCUSDT"] = Decimal("51000")

    result = await executor.close_manually(user.id, pos.id)

    assert result.close_price == Decimal("51000")
    assert result.reason == "manual"
    assert feed.calls == ["BTCUSDT"]


@pytest.mark.asyncio
async def test_close_manually_already_closed_skips_price_fetch(executor, feed, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)
    first = await executor.close_manually(user.id, pos.id)
    feed.calls.clear()

    again = await executor.close_manually(user.id, pos.id)

    assert again.already_closed
    assert again.profit == first.profit
    assert feed.calls == []


@pytest.mark.asyncio
async def test_close_manually_price_unavailable_propagates(db_engine, executor, feed, make_user, make_position):
    user = make_user()
    pos = make_position(user.id)
    feed.unavailable.add("BTCUSDT")

    with pytest.raises(PriceFeedUnavailable):
        await executor.close_manually(user.id, pos.id)

    assert load_user(db_engine, user.id).trades_count == 0


@pytest.mark.asyncio
async def test_close_manually_other_owner(executor, make_user, make_position):
    pos = make_position(make_user().id)
    with pytest.raises(PositionNotFound):
        await executor.close_manually(make_user().id, pos.id)


def test_closure_stats_to_dict():
    stats = ClosureStats()
    stats.record_success("take_profit", 10.0)
    stats.record_success("take_profit", 30.0)
    stats.record_success("expired", 20.0)
    stats.record_failure(7, RuntimeError("locked"))

    data = stats.to_dict()
    assert data["total_closed"] == 3
    assert data["by_reason"] == {"take_profit": 2, "expired": 1}
    assert data["average_processing_ms"] == 20.0
    assert data["failures"] == 1
    assert data["recent_errors"][0]["error"] == "locked"
