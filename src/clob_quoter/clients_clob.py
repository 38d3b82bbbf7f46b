from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import threading
import time
from typing import Any, Callable

from clob_quoter.http_utils import get_json, websocket_sslopt
from clob_quoter.models import BookLevel, OrderBookSide, OrderBookSnapshot, Side, parse_float

LOGGER = logging.getLogger("clob_quoter")

SideCallback = Callable[[OrderBookSide], None]


def _parse_levels(raw_levels: Any) -> list[BookLevel]:
    levels: list[BookLevel] = []
    if not isinstance(raw_levels, list):
        return levels
    for level in raw_levels:
        if not isinstance(level, dict):
            continue
        price = parse_float(level.get("price"))
        size = parse_float(level.get("size"))
        if price <= 0 or size <= 0:
            continue
        levels.append(BookLevel(price=price, size=size))
    return levels


def _parse_timestamp_ms(raw: Any) -> int:
    if raw is None:
        return int(time.time() * 1000)
    try:
        return int(raw)
    except (TypeError, ValueError):
        return int(time.time() * 1000)


@dataclass
class ClobClient:
    base_url: str
    timeout_seconds: float = 10.0

    def get_book(self, token_id: str) -> OrderBookSnapshot:
        payload = get_json(f"{self.base_url}/book", params={"token_id": token_id}, timeout=self.timeout_seconds)
        timestamp_ms = _parse_timestamp_ms(payload.get("timestamp"))
        return OrderBookSnapshot(
            market=token_id,
            bids=OrderBookSide.from_levels(token_id, Side.BUY, _parse_levels(payload.get("bids")), timestamp_ms),
            asks=OrderBookSide.from_levels(token_id, Side.SELL, _parse_levels(payload.get("asks")), timestamp_ms),
        )

    def fetch_order_book_side(self, market: str, side: Side) -> OrderBookSide:
        return self.get_book(market).side(side)


class ClobMarketStream:
    """Market-channel websocket that emits complete book sides.

    A ``book`` event carries both sides and is emitted as two independent
    side notifications. A ``price_change`` event is folded into a fresh copy
    of the last side this stream emitted, so subscribers only ever receive
    whole sides.
    """

    def __init__(self, ws_url: str) -> None:
        self.ws_url = ws_url
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._ping_thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._sides: dict[tuple[str, Side], OrderBookSide] = {}
        self._callbacks: dict[tuple[str, Side], list[SideCallback]] = {}
        self._subscribed_assets: set[str] = set()
        self._connected = False
        self._ws = None
        self._fatal_error: str | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        with self._lock:
            self._connected = False
            self._fatal_error = None
            self._subscribed_assets = set()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="clob-market-ws", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except Exception as exc:
                LOGGER.debug("clob_ws_close_failed error=%s", exc)
        if self._ping_thread and self._ping_thread.is_alive():
            self._ping_thread.join(timeout=1.5)
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.5)
        self._thread = None
        self._ping_thread = None

    def wait_until_ready(self, timeout_seconds: float = 5.0) -> None:
        deadline = time.time() + timeout_seconds
        while time.time() < deadline:
            with self._lock:
                if self._fatal_error:
                    raise RuntimeError(f"CLOB WS failed: {self._fatal_error}")
                if self._connected:
                    return
            time.sleep(0.05)
        with self._lock:
            if self._fatal_error:
                raise RuntimeError(f"CLOB WS failed: {self._fatal_error}")
        raise RuntimeError("CLOB WS did not connect within startup timeout")

    def assert_healthy(self) -> None:
        with self._lock:
            if self._fatal_error:
                raise RuntimeError(f"CLOB WS failed: {self._fatal_error}")
            if not self._connected:
                raise RuntimeError("CLOB WS not connected")

    def on_side_change(self, market: str, side: Side, callback: SideCallback) -> None:
        with self._lock:
            self._callbacks.setdefault((market, side), []).append(callback)
            connected = self._connected
        if connected and self._ws is not None:
            self._sync_subscriptions()

    def subscribed_markets(self) -> list[str]:
        with self._lock:
            return sorted({market for market, _ in self._callbacks})

    def _run_loop(self) -> None:
        from websocket import WebSocketApp

        try:
            app = WebSocketApp(
                self.ws_url,
                on_open=self._on_open,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
            )
            self._ws = app
            app.run_forever(ping_interval=15, ping_timeout=8, sslopt=websocket_sslopt())
        except Exception as exc:
            self._mark_fatal(str(exc))
        finally:
            self._ws = None
            with self._lock:
                self._connected = False
                self._subscribed_assets = set()

    def _on_open(self, ws) -> None:
        with self._lock:
            self._connected = True
            desired = sorted({market for market, _ in self._callbacks})
        if desired:
            self._send_json(ws, {"assets_ids": desired, "type": "market"})
            with self._lock:
                self._subscribed_assets = set(desired)
        self._start_ping_loop(ws)

    def _start_ping_loop(self, ws) -> None:
        if self._ping_thread and self._ping_thread.is_alive():
            return

        def _ping() -> None:
            while not self._stop_event.wait(10.0):
                try:
                    with self._send_lock:
                        ws.send("PING")
                except Exception as exc:
                    LOGGER.debug("clob_ws_ping_failed error=%s", exc)
                    return

        self._ping_thread = threading.Thread(target=_ping, name="clob-market-ws-ping", daemon=True)
        self._ping_thread.start()

    def _on_message(self, _ws, message: str) -> None:
        if message in {"PONG", "PING"}:
            return
        try:
            payload = json.loads(message)
        except json.JSONDecodeError:
            LOGGER.debug("clob_ws_bad_json message=%s", message[:120])
            return
        events = payload if isinstance(payload, list) else [payload]
        for event in events:
            if isinstance(event, dict):
                self.process_payload(event)

    def process_payload(self, payload: dict[str, Any]) -> None:
        event_type = str(payload.get("event_type") or "").lower()
        if event_type == "book":
            self._process_book(payload)
            return
        if event_type == "price_change":
            self._process_price_change(payload)
            return

    def _process_book(self, payload: dict[str, Any]) -> None:
        asset_id = str(payload.get("asset_id") or "")
        if not asset_id:
            return
        timestamp_ms = _parse_timestamp_ms(payload.get("timestamp"))
        bids_raw = payload.get("bids") or payload.get("buys") or []
        asks_raw = payload.get("asks") or payload.get("sells") or []
        self._emit(OrderBookSide.from_levels(asset_id, Side.BUY, _parse_levels(bids_raw), timestamp_ms))
        self._emit(OrderBookSide.from_levels(asset_id, Side.SELL, _parse_levels(asks_raw), timestamp_ms))

    def _process_price_change(self, payload: dict[str, Any]) -> None:
        changes = payload.get("price_changes") or payload.get("changes") or []
        if not isinstance(changes, list):
            return
        timestamp_ms = _parse_timestamp_ms(payload.get("timestamp"))
        touched: dict[tuple[str, Side], dict[float, float]] = {}
        for change in changes:
            if not isinstance(change, dict):
                continue
            asset_id = str(change.get("asset_id") or payload.get("asset_id") or "")
            if not asset_id:
                continue
            try:
                side = Side.parse(change.get("side"))
            except ValueError:
                continue
            price = parse_float(change.get("price"))
            size = parse_float(change.get("size"))
            if price <= 0:
                continue
            key = (asset_id, side)
            if key not in touched:
                with self._lock:
                    current = self._sides.get(key)
                if current is None:
                    # No full side seen yet; wait for the next book event.
                    continue
                touched[key] = {level.price: level.size for level in current.levels}
            if size <= 0:
                touched[key].pop(price, None)
            else:
                touched[key][price] = size

        for (asset_id, side), sizes in touched.items():
            levels = [BookLevel(price=p, size=s) for p, s in sizes.items()]
            self._emit(OrderBookSide.from_levels(asset_id, side, levels, timestamp_ms))

    def _emit(self, side_book: OrderBookSide) -> None:
        key = (side_book.market, side_book.side)
        with self._lock:
            self._sides[key] = side_book
            callbacks = list(self._callbacks.get(key, ()))
        for callback in callbacks:
            try:
                callback(side_book)
            except Exception:
                LOGGER.exception("side_callback_failed market=%s side=%s", side_book.market, side_book.side.value)

    def _on_error(self, _ws, error) -> None:
        self._mark_fatal(str(error))

    def _on_close(self, _ws, status_code, msg) -> None:
        with self._lock:
            self._connected = False
        if not self._stop_event.is_set():
            self._mark_fatal(f"closed code={status_code} msg={msg}")

    def _sync_subscriptions(self) -> None:
        ws = self._ws
        if ws is None:
            raise RuntimeError("CLOB WS unavailable while syncing subscriptions")
        with self._lock:
            if not self._connected:
                raise RuntimeError("CLOB WS not connected while syncing subscriptions")
            desired = {market for market, _ in self._callbacks}
            subscribed = set(self._subscribed_assets)
        to_sub = sorted(desired - subscribed)
        if to_sub:
            self._send_json(ws, {"assets_ids": to_sub, "operation": "subscribe"})
            with self._lock:
                self._subscribed_assets |= set(to_sub)

    def _send_json(self, ws, payload: dict[str, Any]) -> None:
        try:
            body = json.dumps(payload, separators=(",", ":"))
            with self._send_lock:
                ws.send(body)
        except Exception as exc:
            self._mark_fatal(f"send failed: {exc}")

    def _mark_fatal(self, message: str) -> None:
        with self._lock:
            if self._fatal_error is not None:
                return
            self._fatal_error = message
            self._connected = False
        LOGGER.error("CLOB WS fatal: %s", message)


@dataclass
class ClobBookFeed:
    """REST snapshots for the initial load, websocket sides afterwards."""

    client: ClobClient
    stream: ClobMarketStream

    def fetch_order_book_side(self, market: str, side: Side) -> OrderBookSide:
        return self.client.fetch_order_book_side(market, side)

    def on_side_change(self, market: str, side: Side, callback: SideCallback) -> None:
        self.stream.on_side_change(market, side, callback)
