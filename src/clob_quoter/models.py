from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

MAX_BOOK_LEVELS = 200


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def parse_float(raw: Any, default: float = 0.0) -> float:
    if raw is None:
        return default
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str) and raw.strip() == "":
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @staticmethod
    def parse(raw: Any) -> "Side":
        if isinstance(raw, Side):
            return raw
        value = str(raw or "").strip().lower()
        if value in {"buy", "bid", "bids"}:
            return Side.BUY
        if value in {"sell", "ask", "asks"}:
            return Side.SELL
        raise ValueError(f"unknown side={raw!r}")

    @property
    def label(self) -> str:
        return "bid" if self is Side.BUY else "ask"


class OrderType(str, Enum):
    LIMIT = "limit"
    POST_ONLY = "post_only"


class TimeInForce(str, Enum):
    GTC = "GTC"
    FOK = "FOK"
    IOC = "IOC"


@dataclass(frozen=True)
class BookLevel:
    price: float
    size: float


@dataclass(frozen=True)
class OrderBookSide:
    """One complete side of a market's book.

    Bids are ordered best-to-worst descending, asks ascending. Instances are
    never mutated; an update produces a new side that replaces the old one.
    """

    market: str
    side: Side
    levels: tuple[BookLevel, ...] = ()
    timestamp_ms: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.side, Side):
            raise TypeError(f"side must be Side, got {self.side!r}")
        descending = self.side is Side.BUY
        previous: float | None = None
        for level in self.levels:
            if level.price <= 0 or level.size <= 0:
                raise ValueError(f"non-positive level price={level.price} size={level.size}")
            if previous is not None:
                in_order = level.price < previous if descending else level.price > previous
                if not in_order:
                    raise ValueError(
                        f"{self.side.label} levels out of order: {previous} then {level.price}"
                    )
            previous = level.price

    @classmethod
    def from_levels(
        cls,
        market: str,
        side: Side,
        levels: list[BookLevel] | tuple[BookLevel, ...],
        timestamp_ms: int = 0,
        max_levels: int = MAX_BOOK_LEVELS,
    ) -> "OrderBookSide":
        sizes: dict[float, float] = {}
        for level in levels:
            if level.price <= 0 or level.size <= 0:
                continue
            sizes[level.price] = sizes.get(level.price, 0.0) + level.size
        ordered = sorted(sizes.items(), key=lambda item: item[0], reverse=side is Side.BUY)
        return cls(
            market=market,
            side=side,
            levels=tuple(BookLevel(price=p, size=s) for p, s in ordered[:max_levels]),
            timestamp_ms=int(timestamp_ms),
        )

    @property
    def best(self) -> BookLevel | None:
        return self.levels[0] if self.levels else None

    @property
    def best_price(self) -> float:
        return self.levels[0].price if self.levels else 0.0

    def depth(self, levels: int | None = None) -> tuple[BookLevel, ...]:
        if levels is None:
            return self.levels
        return self.levels[: max(0, int(levels))]


@dataclass(frozen=True)
class OrderBookSnapshot:
    market: str
    bids: OrderBookSide
    asks: OrderBookSide

    @property
    def best_bid(self) -> float:
        return self.bids.best_price

    @property
    def best_ask(self) -> float:
        return self.asks.best_price

    @property
    def spread(self) -> float:
        if self.best_bid <= 0 or self.best_ask <= 0:
            return 0.0
        return max(0.0, self.best_ask - self.best_bid)

    @property
    def mid(self) -> float:
        if self.best_bid > 0 and self.best_ask > 0:
            return (self.best_bid + self.best_ask) / 2.0
        return self.best_ask or self.best_bid

    def side(self, side: Side) -> OrderBookSide:
        return self.bids if side is Side.BUY else self.asks


@dataclass(frozen=True)
class TopOfBook:
    """Best bid and best ask, each as of the last update applied to its side.

    The two sides update independently, so ``bid_timestamp_ms`` and
    ``ask_timestamp_ms`` can belong to different notifications.
    """

    best_bid: float
    best_ask: float
    bid_timestamp_ms: int = 0
    ask_timestamp_ms: int = 0


@dataclass(frozen=True)
class RestingOrder:
    order_id: str
    market: str
    side: Side
    price: float
    size: float
    owner: str = ""


@dataclass(frozen=True)
class DesiredQuote:
    bid_price: float
    bid_size: float
    ask_price: float
    ask_size: float
    shrunk: bool = False

    def price(self, side: Side) -> float:
        return self.bid_price if side is Side.BUY else self.ask_price

    def size(self, side: Side) -> float:
        return self.bid_size if side is Side.BUY else self.ask_size


@dataclass(frozen=True)
class PlannedOrder:
    side: Side
    price: float
    size: float
    reinforcement: bool = False


@dataclass
class ReconciliationPlan:
    orders_to_cancel: list[RestingOrder] = field(default_factory=list)
    orders_to_place: list[PlannedOrder] = field(default_factory=list)
    settle_required: bool = True

    @property
    def is_noop(self) -> bool:
        return not self.orders_to_cancel and not self.orders_to_place

    def cancels_for(self, side: Side) -> list[RestingOrder]:
        return [order for order in self.orders_to_cancel if order.side is side]

    def placements_for(self, side: Side) -> list[PlannedOrder]:
        return [order for order in self.orders_to_place if order.side is side]


@dataclass(frozen=True)
class PlaceOrderOp:
    market: str
    side: Side
    price: float
    size: float
    order_type: OrderType = OrderType.POST_ONLY
    tif: TimeInForce = TimeInForce.GTC

    def __post_init__(self) -> None:
        object.__setattr__(self, "side", Side.parse(self.side))
        object.__setattr__(self, "order_type", OrderType(self.order_type))
        object.__setattr__(self, "tif", TimeInForce(self.tif))
        if not self.market:
            raise ValueError("place op requires a market")
        if self.price <= 0 or self.size <= 0:
            raise ValueError(f"place op requires positive price/size, got {self.price}/{self.size}")

    @property
    def kind(self) -> str:
        return "place"


@dataclass(frozen=True)
class CancelOrderOp:
    market: str
    order: RestingOrder

    def __post_init__(self) -> None:
        if self.order.market != self.market:
            raise ValueError(f"order {self.order.order_id} belongs to {self.order.market}, not {self.market}")

    @property
    def kind(self) -> str:
        return "cancel"


@dataclass(frozen=True)
class SettleOp:
    market: str
    account: str

    @property
    def kind(self) -> str:
        return "settle"


Operation = Union[CancelOrderOp, PlaceOrderOp, SettleOp]


@dataclass
class Confirmation:
    batch_id: str
    status: str
    placed_order_ids: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status in {"confirmed", "ok", "finalized"}


class PassStatus(str, Enum):
    SUBMITTED = "submitted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class PassResult:
    market: str
    status: PassStatus
    quote: DesiredQuote | None = None
    plan: ReconciliationPlan | None = None
    confirmation: Confirmation | None = None
    top_of_book: TopOfBook | None = None
    used_fallback: bool = False
    error: str = ""
    finished_at: datetime = field(default_factory=utc_now)

    @property
    def submitted(self) -> bool:
        return self.status is PassStatus.SUBMITTED
