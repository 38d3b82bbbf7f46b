from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

from clob_quoter.errors import LoadError, NotReadyError
from clob_quoter.models import BookLevel, OrderBookSide, OrderBookSnapshot, Side, TopOfBook

LOGGER = logging.getLogger("clob_quoter")

SideCallback = Callable[[OrderBookSide], None]
UpdateListener = Callable[[OrderBookSnapshot], None]


class BookFeed(Protocol):
    def fetch_order_book_side(self, market: str, side: Side) -> OrderBookSide: ...

    def on_side_change(self, market: str, side: Side, callback: SideCallback) -> None: ...


class OrderBookCache:
    """Locally cached two-sided book for one market.

    Each side is held as an immutable ``OrderBookSide`` and replaced by a
    single reference swap, so readers never see a half-applied side. The two
    sides are written by independent notification streams and are not
    synchronised with each other: a reader may pair a bid side from one
    moment with an ask side from a later one. That skew is accepted.

    Notifications are applied in delivery order. Nothing here detects a
    dropped or reordered notification.
    """

    def __init__(self, market: str, feed: BookFeed) -> None:
        self.market = market
        self.feed = feed
        self._lock = threading.Lock()
        self._bids: OrderBookSide | None = None
        self._asks: OrderBookSide | None = None
        self._ready = False
        self._subscribed = False
        self._listeners: list[UpdateListener] = []
        self.updates_applied = 0

    @property
    def ready(self) -> bool:
        with self._lock:
            return self._ready

    def initialize(self) -> OrderBookSnapshot:
        fetched: dict[Side, OrderBookSide] = {}
        for side in (Side.BUY, Side.SELL):
            try:
                fetched[side] = self.feed.fetch_order_book_side(self.market, side)
                self._check_side(fetched[side], side)
            except Exception as exc:
                raise LoadError(
                    "initial book fetch failed",
                    market=self.market,
                    side=side.value,
                    error=exc,
                ) from exc

        with self._lock:
            self._bids = fetched[Side.BUY]
            self._asks = fetched[Side.SELL]
            self._ready = True
            snapshot = OrderBookSnapshot(market=self.market, bids=self._bids, asks=self._asks)
        LOGGER.info(
            "book_loaded market=%s bid=%s ask=%s bid_levels=%s ask_levels=%s",
            self.market,
            snapshot.best_bid,
            snapshot.best_ask,
            len(snapshot.bids.levels),
            len(snapshot.asks.levels),
        )
        return snapshot

    def subscribe(self, on_update: UpdateListener | None = None) -> None:
        if on_update is not None:
            with self._lock:
                self._listeners.append(on_update)
        if self._subscribed:
            return
        self.feed.on_side_change(self.market, Side.BUY, self.apply_side)
        self.feed.on_side_change(self.market, Side.SELL, self.apply_side)
        self._subscribed = True

    def apply_side(self, side_book: OrderBookSide) -> None:
        self._check_side(side_book, side_book.side)
        with self._lock:
            if side_book.side is Side.BUY:
                self._bids = side_book
            else:
                self._asks = side_book
            if self._bids is not None and self._asks is not None:
                self._ready = True
            self.updates_applied += 1
            listeners = list(self._listeners)
            snapshot = self._snapshot_locked()

        if snapshot is None:
            return
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                LOGGER.exception("book_listener_failed market=%s", self.market)

    def top_of_book(self) -> TopOfBook:
        with self._lock:
            bids = self._bids
            asks = self._asks
            ready = self._ready
        if not ready or bids is None or asks is None:
            raise NotReadyError("book not loaded", market=self.market)
        if bids.best is None or asks.best is None:
            raise NotReadyError(
                "book side empty",
                market=self.market,
                bid_levels=len(bids.levels),
                ask_levels=len(asks.levels),
            )
        return TopOfBook(
            best_bid=bids.best.price,
            best_ask=asks.best.price,
            bid_timestamp_ms=bids.timestamp_ms,
            ask_timestamp_ms=asks.timestamp_ms,
        )

    def snapshot(self) -> OrderBookSnapshot:
        with self._lock:
            snapshot = self._snapshot_locked()
        if snapshot is None or not self.ready:
            raise NotReadyError("book not loaded", market=self.market)
        return snapshot

    def depth(self, side: Side, levels: int | None = None) -> tuple[BookLevel, ...]:
        return self.snapshot().side(side).depth(levels)

    def _snapshot_locked(self) -> OrderBookSnapshot | None:
        if self._bids is None or self._asks is None:
            return None
        return OrderBookSnapshot(market=self.market, bids=self._bids, asks=self._asks)

    def _check_side(self, side_book: OrderBookSide, expected: Side) -> None:
        if side_book.market != self.market:
            raise ValueError(f"side for market={side_book.market} pushed into cache for {self.market}")
        if side_book.side is not expected:
            raise ValueError(f"expected {expected.label} side, got {side_book.side.label}")
