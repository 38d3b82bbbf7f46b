from __future__ import annotations

from dataclasses import dataclass
import os


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return int(raw)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _env_markets(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class QuoterConfig:
    mode: str
    clob_url: str
    clob_ws_url: str
    database_path: str
    api_timeout_seconds: float
    stream_ready_timeout_seconds: float

    markets: tuple[str, ...]
    tick_offset: float
    order_size: float
    reconcile_interval_seconds: float
    min_reinforce_increment: float
    reinforce_tolerance_ticks: int
    fallback_bid: float
    fallback_ask: float
    price_tick: float
    max_price: float
    cancel_on_exit: bool

    poly_private_key: str
    poly_proxy_address: str
    poly_chain_id: int
    poly_signature_type: int | None

    log_level: str

    @property
    def live_mode(self) -> bool:
        return self.mode.lower() == "live"

    @property
    def reinforce_tolerance(self) -> float:
        return self.reinforce_tolerance_ticks * self.tick_offset

    def validate(self) -> None:
        if self.mode not in {"paper", "live"}:
            raise ValueError(f"unsupported mode={self.mode!r}")
        if self.tick_offset <= 0:
            raise ValueError("tick_offset must be > 0")
        if self.order_size <= 0:
            raise ValueError("order_size must be > 0")
        if self.reconcile_interval_seconds <= 0:
            raise ValueError("reconcile_interval_seconds must be > 0")
        if self.min_reinforce_increment < 0:
            raise ValueError("min_reinforce_increment must be >= 0")
        if self.reinforce_tolerance_ticks < 0:
            raise ValueError("reinforce_tolerance_ticks must be >= 0")
        if self.price_tick < 0 or self.max_price < 0:
            raise ValueError("price_tick and max_price must be >= 0")
        if self.live_mode and (self.price_tick <= 0 or self.max_price <= 0):
            raise ValueError("live mode needs price_tick > 0 and max_price > 0")
        if not 0 < self.fallback_bid < self.fallback_ask:
            raise ValueError(
                f"fallback spread must satisfy 0 < bid < ask, got {self.fallback_bid}/{self.fallback_ask}"
            )
        if self.max_price > 0 and self.fallback_ask >= self.max_price:
            raise ValueError(
                f"fallback ask {self.fallback_ask} must be below max_price {self.max_price}"
            )


def load_config(mode: str | None = None) -> QuoterConfig:
    raw_signature_type = os.getenv("POLY_SIGNATURE_TYPE", "").strip()
    parsed_signature_type: int | None = None
    if raw_signature_type:
        try:
            parsed_signature_type = int(raw_signature_type)
        except ValueError:
            parsed_signature_type = None

    mode = (mode or os.getenv("QUOTER_MODE", "paper")).strip().lower()
    live = mode == "live"

    # Paper fallback spread (1, 1_000_000) lies outside any real book. Polymarket
    # prices live in (0, 1) on a 0.01 grid, so live mode defaults to its edges.
    return QuoterConfig(
        mode=mode,
        clob_url="https://clob.polymarket.com",
        clob_ws_url="wss://ws-subscriptions-clob.polymarket.com/ws/market",
        database_path=os.getenv("QUOTER_DB_PATH", "data/quoter.db"),
        api_timeout_seconds=3.0,
        stream_ready_timeout_seconds=6.0,
        markets=_env_markets("QUOTER_MARKETS"),
        tick_offset=_env_float("QUOTER_TICK_OFFSET", 0.01),
        order_size=_env_float("QUOTER_ORDER_SIZE", 100.0),
        reconcile_interval_seconds=_env_float("QUOTER_INTERVAL_SECONDS", 5.0),
        min_reinforce_increment=_env_float("QUOTER_MIN_INCREMENT", 0.1),
        reinforce_tolerance_ticks=_env_int("QUOTER_TOLERANCE_TICKS", 1),
        fallback_bid=_env_float("QUOTER_FALLBACK_BID", 0.01 if live else 1.0),
        fallback_ask=_env_float("QUOTER_FALLBACK_ASK", 0.99 if live else 1_000_000.0),
        price_tick=_env_float("QUOTER_PRICE_TICK", 0.01 if live else 0.0),
        max_price=_env_float("QUOTER_MAX_PRICE", 1.0 if live else 0.0),
        cancel_on_exit=_env_flag("QUOTER_CANCEL_ON_EXIT", True),
        poly_private_key=os.getenv("POLY_PRIVATE_KEY", os.getenv("PRIVATE_KEY", "")),
        poly_proxy_address=os.getenv("POLY_PROXY_ADDRESS", ""),
        poly_chain_id=137,
        poly_signature_type=parsed_signature_type,
        log_level=os.getenv("QUOTER_LOG_LEVEL", "INFO").strip().upper(),
    )
