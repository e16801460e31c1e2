"""Streams trade ticks for symbols with open positions into the evaluator.

The subscription follows the set of symbols that currently have open
positions; ``refresh_subscriptions`` is run on an interval by the scheduler
and right after a position opens on a new symbol.
"""

import asyncio
import logging

from backend.engine.auto_closer import AutoCloseEvaluator, get_evaluator
from backend.engine.position_store import PositionStore

logger = logging.getLogger(__name__)


class PriceListener:
    def __init__(self, evaluator: AutoCloseEvaluator | None = None, store: PositionStore | None = None, price_feed=None):
        if price_feed is None:
            from backend.services.price_feed import price_feed as default_feed
            price_feed = default_feed
        self._evaluator = evaluator
        self._store = store or PositionStore()
        self._price_feed = price_feed
        self._task: asyncio.Task | None = None
        self.symbols: tuple[str, ...] = ()
        self.started = False
        self.ticks_received = 0

    @property
    def evaluator(self) -> AutoCloseEvaluator:
        if self._evaluator is None:
            self._evaluator = get_evaluator()
        return self._evaluator

    async def start(self):
        self.started = True
        await self.refresh_subscriptions()

    async def stop(self):
        self.started = False
        await self._stop_stream()
        self.symbols = ()

    async def refresh_subscriptions(self):
        """Resubscribe when the set of open-position symbols changed."""
        if not self.started:
            return
        loop = asyncio.get_running_loop()
        open_symbols = await loop.run_in_executor(None, self._store.list_open_symbols)

        symbols = []
        for symbol in open_symbols:
            if self._price_feed.is_supported(symbol):
                symbols.append(symbol)
            else:
                logger.warning(f"{symbol}: open positions on unsupported symbol, only the sweep will close them")
        wanted = tuple(sorted(symbols))

        running = self._task is not None and not self._task.done()
        if wanted == self.symbols and (running or not wanted):
            return

        await self._stop_stream()
        self.symbols = wanted
        if wanted:
            logger.info(f"Subscribing to {len(wanted)} symbols: {', '.join(wanted)}")
            self._task = asyncio.create_task(self._consume(list(wanted)))

    async def _consume(self, symbols: list[str]):
        try:
            async for tick in self._price_feed.subscribe(symbols, on_disconnect=self._on_disconnect):
                self.ticks_received += 1
                self.evaluator.submit_tick(tick)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Price listener stopped unexpectedly: {e}", exc_info=True)

    def _on_disconnect(self, reason: str):
        self.evaluator.pause_symbols(self.symbols, reason)

    async def _stop_stream(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def status(self) -> dict:
        return {
            "started": self.started,
            "streaming": self._task is not None and not self._task.done(),
            "connected": getattr(self._price_feed, "connected", False),
            "symbols": list(self.symbols),
            "ticks_received": self.ticks_received,
        }


_listener: PriceListener | None = None


def get_listener() -> PriceListener:
    global _listener
    if _listener is None:
        _listener = PriceListener()
    return _listener
