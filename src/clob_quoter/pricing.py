from __future__ import annotations

from dataclasses import replace
import math

from clob_quoter.errors import CrossedQuoteError
from clob_quoter.models import DesiredQuote

PRICE_EPSILON = 1e-9


def prices_equal(a: float, b: float, eps: float = PRICE_EPSILON) -> bool:
    return abs(a - b) <= eps


def round_tick(price: float, tick: float = 0.01) -> float:
    ticks = round(price / tick)
    return max(tick, min(1.0 - tick, ticks * tick))


def _tick_decimals(tick: float) -> int:
    text = f"{tick:.10f}".rstrip("0")
    return len(text.split(".")[1]) if "." in text else 0


def floor_tick(price: float, tick: float) -> float:
    return round(math.floor(price / tick + PRICE_EPSILON) * tick, _tick_decimals(tick))


def ceil_tick(price: float, tick: float) -> float:
    return round(math.ceil(price / tick - PRICE_EPSILON) * tick, _tick_decimals(tick))


def snap_quote(quote: DesiredQuote, tick: float, max_price: float = 0.0) -> DesiredQuote:
    """
    Move a quote onto the venue tick grid, each side away from the book:
    bids round down, asks round up, so bid < ask still holds.
      0.505 / 0.515 at tick 0.01 -> 0.50 / 0.52
    With ``max_price`` set, both sides stay inside [tick, max_price - tick].
    """
    bid = max(tick, floor_tick(quote.bid_price, tick))
    ask = max(bid + tick, ceil_tick(quote.ask_price, tick))
    if max_price > 0:
        top = ceil_tick(max_price - tick, tick)
        bid = min(bid, top - tick)
        ask = min(ask, top)
    places = _tick_decimals(tick)
    return replace(quote, bid_price=round(bid, places), ask_price=round(ask, places))


def improve_top(best_bid: float, best_ask: float, offset: float) -> tuple[float, float]:
    """Step one offset inside the top of book on each side."""
    bid = best_bid + offset
    ask = best_ask - offset
    if bid >= ask - PRICE_EPSILON:
        raise CrossedQuoteError("offset crosses the book", bid=bid, ask=ask, offset=offset)
    return bid, ask


def shrink_to_mid(best_bid: float, best_ask: float, offset: float) -> tuple[float, float]:
    mid = (best_bid + best_ask) / 2.0
    half = offset / 2.0
    return mid - half, mid + half


def compute_desired_quote(best_bid: float, best_ask: float, offset: float, size: float) -> DesiredQuote:
    """
    Top-of-book quote one offset inside each side. When that would cross,
    both prices are re-centred on the mid, one offset apart:
      (100.00, 100.02), offset 0.01 -> 100.005 / 100.015
    """
    if offset <= 0:
        raise ValueError(f"offset must be > 0, got {offset}")
    shrunk = False
    try:
        bid, ask = improve_top(best_bid, best_ask, offset)
    except CrossedQuoteError:
        bid, ask = shrink_to_mid(best_bid, best_ask, offset)
        shrunk = True
    return DesiredQuote(bid_price=bid, bid_size=size, ask_price=ask, ask_size=size, shrunk=shrunk)
