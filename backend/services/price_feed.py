"""Binance market prices.

REST (`/api/v3/ticker/price`, `/api/v3/ticker/24hr`) for point lookups and a
`<symbol>@trade` WebSocket stream for live ticks. The latest streamed price per
symbol is cached and used as a fallback when REST is unreachable.
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import AsyncIterator

import httpx
import websockets

from backend.config import settings
from backend.exceptions import PriceFeedUnavailable

logger = logging.getLogger(__name__)

RECONNECT_BASE_SECONDS = 0.5
RECONNECT_MAX_SECONDS = 30.0
RECONNECT_JITTER_SECONDS = 0.25


@dataclass(frozen=True)
class PriceTick:
    symbol: str
    price: Decimal
    timestamp: datetime  # UTC


def reconnect_delay(attempt: int) -> float:
    """Capped exponential backoff plus jitter for stream reconnects."""
    backoff = min(RECONNECT_MAX_SECONDS, RECONNECT_BASE_SECONDS * (2 ** attempt))
    return backoff + random.uniform(0, RECONNECT_JITTER_SECONDS)


def parse_trade_message(raw) -> PriceTick | None:
    """Parse a Binance trade event. Returns None for anything else (acks, errors)."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or data.get("e") != "trade":
        return None
    try:
        price = Decimal(data["p"])
        millis = data.get("T") or data.get("E")
        ts = datetime.fromtimestamp(millis / 1000, tz=timezone.utc) if millis else datetime.now(timezone.utc)
        return PriceTick(symbol=data["s"].upper(), price=price, timestamp=ts)
    except (KeyError, TypeError, InvalidOperation) as e:
        logger.debug(f"Malformed trade message: {e}")
        return None


class BinancePriceFeed:
    def __init__(
        self,
        rest_url: str | None = None,
        ws_url: str | None = None,
        timeout: float | None = None,
        supported_symbols: list[str] | None = None,
    ):
        self.rest_url = rest_url or settings.binance_rest_url
        self.ws_url = ws_url or settings.binance_ws_url
        self.timeout = timeout or settings.price_request_timeout_seconds
        self.supported_symbols = [s.upper() for s in (supported_symbols or settings.supported_symbols)]
        self._latest: dict[str, PriceTick] = {}
        self.connected = False

    def is_supported(self, symbol: str) -> bool:
        return symbol.upper() in self.supported_symbols

    def latest(self, symbol: str) -> PriceTick | None:
        return self._latest.get(symbol.upper())

    def _remember(self, tick: PriceTick):
        current = self._latest.get(tick.symbol)
        if current is None or tick.timestamp >= current.timestamp:
            self._latest[tick.symbol] = tick

    def _fresh_cached(self, symbol: str) -> PriceTick | None:
        cached = self._latest.get(symbol)
        if cached is None:
            return None
        age = (datetime.now(timezone.utc) - cached.timestamp).total_seconds()
        if age > settings.max_tick_age_seconds:
            return None
        return cached

    async def _get_json(self, path: str, symbol: str) -> dict:
        async with httpx.AsyncClient(base_url=self.rest_url, timeout=self.timeout) as client:
            resp = await client.get(path, params={"symbol": symbol})
            resp.raise_for_status()
            return resp.json()

    async def get_current_price(self, symbol: str) -> PriceTick:
        """Current price via REST, falling back to a recent streamed tick."""
        symbol = symbol.upper()
        try:
            data = await self._get_json("/api/v3/ticker/price", symbol)
            tick = PriceTick(
                symbol=symbol,
                price=Decimal(data["price"]),
                timestamp=datetime.now(timezone.utc),
            )
        except (httpx.HTTPError, KeyError, ValueError, InvalidOperation) as e:
            cached = self._fresh_cached(symbol)
            if cached is not None:
                logger.warning(f"REST price for {symbol} failed ({e}), using streamed price {cached.price}")
                return cached
            raise PriceFeedUnavailable(symbol, str(e) or type(e).__name__) from e

        self._remember(tick)
        return tick

    async def get_24h_stats(self, symbol: str) -> dict:
        symbol = symbol.upper()
        try:
            data = await self._get_json("/api/v3/ticker/24hr", symbol)
            return {
                "symbol": symbol,
                "last_price": Decimal(data["lastPrice"]),
                "price_change": Decimal(data["priceChange"]),
                "price_change_percent": Decimal(data["priceChangePercent"]),
                "high_price": Decimal(data["highPrice"]),
                "low_price": Decimal(data["lowPrice"]),
                "volume": Decimal(data["volume"]),
                "quote_volume": Decimal(data["quoteVolume"]),
            }
        except (httpx.HTTPError, KeyError, ValueError, InvalidOperation) as e:
            raise PriceFeedUnavailable(symbol, str(e) or type(e).__name__) from e

    async def subscribe(self, symbols: list[str], on_disconnect=None) -> AsyncIterator[PriceTick]:
        """Yield trade ticks for symbols forever, reconnecting on disconnect.

        Cancel the consuming task to stop. Each reconnect re-sends the
        subscription, so callers do not need to resubscribe. on_disconnect,
        if given, is called with the reason before each reconnect wait.
        """
        streams = [f"{s.lower()}@trade" for s in symbols]
        if not streams:
            return

        attempt = 0
        while True:
            try:
                async with websockets.connect(self.ws_url, ping_interval=20) as ws:
                    await ws.send(json.dumps({"method": "SUBSCRIBE", "params": streams, "id": 1}))
                    self.connected = True
                    attempt = 0
                    logger.info(f"Price stream connected: {len(streams)} streams")

                    async for raw in ws:
                        tick = parse_trade_message(raw)
                        if tick is None:
                            continue
                        self._remember(tick)
                        yield tick
                reason = "closed by server"
            except (websockets.exceptions.WebSocketException, OSError) as e:
                reason = str(e) or type(e).__name__
            finally:
                self.connected = False

            delay = reconnect_delay(attempt)
            attempt += 1
            logger.warning(f"Price stream disconnected ({reason}), reconnecting in {delay:.2f}s")
            if on_disconnect is not None:
                on_disconnect(reason)
            await asyncio.sleep(delay)


price_feed = BinancePriceFeed()
