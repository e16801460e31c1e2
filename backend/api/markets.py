"""Markets API: supported symbols, current price and 24h stats from Binance."""

from fastapi import APIRouter, Depends, HTTPException

from backend.api.deps import get_current_user, to_http_exception
from backend.exceptions import PriceFeedUnavailable

router = APIRouter(prefix="/api/markets", tags=["markets"], dependencies=[Depends(get_current_user)])


def get_price_feed():
    from backend.services.price_feed import price_feed
    return price_feed


def _check_supported(feed, symbol: str) -> str:
    symbol = symbol.upper()
    if not feed.is_supported(symbol):
        raise HTTPException(status_code=404, detail=f"Unsupported symbol: {symbol}")
    return symbol


@router.get("")
def list_markets(feed=Depends(get_price_feed)):
    return {"symbols": feed.supported_symbols}


@router.get("/{symbol}/price")
async def current_price(symbol: str, feed=Depends(get_price_feed)):
    symbol = _check_supported(feed, symbol)
    try:
        tick = await feed.get_current_price(symbol)
    except PriceFeedUnavailable as e:
        raise to_http_exception(e)
    return {"symbol": tick.symbol, "price": tick.price, "timestamp": tick.timestamp}


@router.get("/{symbol}/stats")
async def daily_stats(symbol: str, feed=Depends(get_price_feed)):
    symbol = _check_supported(feed, symbol)
    try:
        return await feed.get_24h_stats(symbol)
    except PriceFeedUnavailable as e:
        raise to_http_exception(e)
