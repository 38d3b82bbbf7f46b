from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from clob_quoter.config import load_config  # noqa: E402
from clob_quoter.models import BookLevel, OrderBookSide, RestingOrder, Side  # noqa: E402

MARKET = "tok-1"


def test_config(**kwargs):
    cfg = load_config()
    defaults = {
        "mode": "paper",
        "markets": (MARKET,),
        "database_path": ":memory:",
        "tick_offset": 0.01,
        "order_size": 100.0,
        "reconcile_interval_seconds": 0.01,
        "min_reinforce_increment": 0.1,
        "reinforce_tolerance_ticks": 1,
        "fallback_bid": 1.0,
        "fallback_ask": 1_000_000.0,
        "price_tick": 0.0,
        "max_price": 0.0,
    }
    defaults.update(kwargs)
    return replace(cfg, **defaults)


test_config.__test__ = False


def build_side(side: Side, prices_sizes: list[tuple[float, float]], market: str = MARKET, ts: int = 0) -> OrderBookSide:
    return OrderBookSide.from_levels(
        market,
        side,
        [BookLevel(price=p, size=s) for p, s in prices_sizes],
        timestamp_ms=ts,
    )


def resting(order_id: str, side: Side, price: float, size: float, market: str = MARKET) -> RestingOrder:
    return RestingOrder(order_id=order_id, market=market, side=side, price=price, size=size, owner="paper")


class FakeBookFeed:
    def __init__(
        self,
        bids: list[tuple[float, float]] | None = None,
        asks: list[tuple[float, float]] | None = None,
        fail_side: Side | None = None,
    ) -> None:
        self.bids = bids if bids is not None else [(100.00, 50.0)]
        self.asks = asks if asks is not None else [(100.02, 50.0)]
        self.fail_side = fail_side
        self.callbacks: dict[tuple[str, Side], list] = {}
        self.fetches: list[tuple[str, Side]] = []

    def fetch_order_book_side(self, market: str, side: Side) -> OrderBookSide:
        self.fetches.append((market, side))
        if side is self.fail_side:
            raise ConnectionError(f"{side.value} fetch refused")
        levels = self.bids if side is Side.BUY else self.asks
        return build_side(side, levels, market=market, ts=1)

    def on_side_change(self, market: str, side: Side, callback) -> None:
        self.callbacks.setdefault((market, side), []).append(callback)

    def push(self, side: Side, prices_sizes: list[tuple[float, float]], market: str = MARKET, ts: int = 0) -> None:
        side_book = build_side(side, prices_sizes, market=market, ts=ts)
        for callback in self.callbacks.get((market, side), []):
            callback(side_book)
