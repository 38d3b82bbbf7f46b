from __future__ import annotations

import argparse
from dataclasses import replace
import json
import logging
import signal
import threading
from typing import Iterable

from clob_quoter.book_cache import OrderBookCache
from clob_quoter.clients_clob import ClobBookFeed, ClobClient, ClobMarketStream
from clob_quoter.config import QuoterConfig, load_config
from clob_quoter.controller import ReconciliationController
from clob_quoter.errors import LoadError
from clob_quoter.execution import BaseExecutor, LiveExecutor, PaperExecutor
from clob_quoter.models import Side
from clob_quoter.storage import Storage

LOGGER = logging.getLogger("clob_quoter")


class QuoterRuntime:
    """One book cache and one controller thread per market, sharing a stream."""

    def __init__(self, config: QuoterConfig, executor: BaseExecutor | None = None) -> None:
        self.config = config
        self.storage = Storage(config.database_path)
        self.clob = ClobClient(config.clob_url, timeout_seconds=config.api_timeout_seconds)
        self.clob_stream = ClobMarketStream(config.clob_ws_url)
        self.feed = ClobBookFeed(client=self.clob, stream=self.clob_stream)

        self.executor: BaseExecutor
        if executor is not None:
            self.executor = executor
        elif config.live_mode:
            self.executor = LiveExecutor(config)
        else:
            self.executor = PaperExecutor(config)

        self.caches: dict[str, OrderBookCache] = {}
        self.controllers: dict[str, ReconciliationController] = {}
        for market in config.markets:
            cache = OrderBookCache(market, self.feed)
            self.caches[market] = cache
            self.controllers[market] = ReconciliationController(
                config,
                market,
                cache,
                self.executor,
                journal=self.storage,
            )
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self.health_check_seconds = 1.0
        self.join_timeout_seconds = max(30.0, config.reconcile_interval_seconds + 5.0)

    def stop(self) -> None:
        self._stop_event.set()

    def preflight(self) -> None:
        self.executor.preflight()

    def start_books(self) -> None:
        self.clob_stream.start()
        self.clob_stream.wait_until_ready(timeout_seconds=self.config.stream_ready_timeout_seconds)
        for cache in self.caches.values():
            cache.initialize()
            cache.subscribe()
        # TODO: periodic full-side resync from REST so a dropped notification cannot leave a side stale.

    def run(self) -> None:
        self.start_books()
        for market, controller in self.controllers.items():
            thread = threading.Thread(
                target=controller.run,
                args=(self._stop_event,),
                name=f"quoter-{market[:12]}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        try:
            while not self._stop_event.wait(self.health_check_seconds):
                self.clob_stream.assert_healthy()
        finally:
            self._stop_controllers()

    def _stop_controllers(self) -> None:
        # A pass in flight finishes its batch; nothing may be cancelled or closed before that.
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=self.join_timeout_seconds)
            if thread.is_alive():
                LOGGER.warning("controller_join_timeout thread=%s", thread.name)
        self._threads = [thread for thread in self._threads if thread.is_alive()]

    def close(self) -> None:
        self._stop_controllers()
        if self.config.cancel_on_exit:
            for market in self.controllers:
                try:
                    self.executor.cancel_all(market)
                except Exception as exc:
                    LOGGER.warning("close_cancel_failed market=%s error=%s", market, exc)
        self.clob_stream.stop()
        self.storage.close()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "httpcore", "urllib3", "websocket"):
        logging.getLogger(noisy).setLevel(logging.ERROR)


def _apply_run_overrides(config: QuoterConfig, args: argparse.Namespace) -> QuoterConfig:
    overrides: dict[str, object] = {}
    if getattr(args, "mode", None):
        overrides["mode"] = args.mode.lower()
    if getattr(args, "market", None):
        overrides["markets"] = tuple(dict.fromkeys(str(m).strip() for m in args.market if str(m).strip()))
    if getattr(args, "interval", None) is not None:
        overrides["reconcile_interval_seconds"] = float(args.interval)
    if getattr(args, "size", None) is not None:
        overrides["order_size"] = float(args.size)
    if getattr(args, "offset", None) is not None:
        overrides["tick_offset"] = float(args.offset)
    if not overrides:
        return config
    return replace(config, **overrides)


def _run_command(args: argparse.Namespace) -> int:
    # Mode decides the venue defaults (tick grid, fallback spread), so it is read first.
    config = _apply_run_overrides(load_config(mode=args.mode), args)
    _setup_logging(config.log_level)
    try:
        config.validate()
    except ValueError as exc:
        LOGGER.error("invalid config: %s", exc)
        return 2
    if not config.markets:
        LOGGER.error("no markets configured; pass --market or set QUOTER_MARKETS")
        return 2

    runtime = QuoterRuntime(config)
    try:
        runtime.preflight()
    except Exception as exc:
        LOGGER.error("Live preflight failed: %s", exc)
        runtime.close()
        return 2
    LOGGER.info(
        "Starting quoter mode=%s markets=%s interval=%.2fs",
        config.mode,
        ",".join(config.markets),
        config.reconcile_interval_seconds,
    )
    signal_count = {"count": 0}

    def _handle_signal(signum: int, _frame: object) -> None:
        signal_count["count"] += 1
        if signal_count["count"] >= 2:
            LOGGER.error("Received signal %s again, forcing exit now", signum)
            raise SystemExit(130)
        LOGGER.warning("Received signal %s, stopping loop (press Ctrl+C again to force-exit)", signum)
        runtime.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    try:
        runtime.run()
        return 0
    except LoadError as exc:
        LOGGER.error("Book cache failed to load: %s", exc)
        return 2
    except Exception as exc:
        LOGGER.error("Fatal runtime error: %s", exc)
        return 2
    finally:
        runtime.close()


def _report_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    storage = Storage(config.database_path)
    try:
        report = storage.report(args.window)
        print(json.dumps(report, indent=2, default=str))
    finally:
        storage.close()
    return 0


def format_book(client: ClobClient, market: str, depth: int) -> str:
    book = client.get_book(market)
    lines = [f"market={market} bid={book.best_bid} ask={book.best_ask} spread={book.spread:.6f}"]
    for side in (Side.SELL, Side.BUY):
        levels = book.side(side).depth(depth)
        if side is Side.SELL:
            levels = tuple(reversed(levels))
        for level in levels:
            lines.append(f"{side.label:>3} | price: {level.price:<12} | size: {level.size}")
        if side is Side.SELL:
            lines.append("-" * 48)
    return "\n".join(lines)


def _book_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    client = ClobClient(config.clob_url, timeout_seconds=config.api_timeout_seconds)
    try:
        print(format_book(client, args.market, args.depth))
    except Exception as exc:
        LOGGER.error("book fetch failed market=%s error=%s", args.market, exc)
        return 2
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clob_quoter", description="Top-of-book CLOB quoting agent")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the reconciliation loop")
    run.add_argument("--mode", choices=("paper", "live"), default=None)
    run.add_argument(
        "--market",
        action="append",
        default=None,
        help="Token id to quote; repeat for several markets",
    )
    run.add_argument("--interval", type=float, default=None, help="Seconds between reconciliation passes")
    run.add_argument("--size", type=float, default=None, help="Target order size per side")
    run.add_argument("--offset", type=float, default=None, help="Price offset inside the top of book")
    run.set_defaults(func=_run_command)

    report = sub.add_parser("report", help="Print pass summary from SQLite")
    report.add_argument("--window", type=int, default=24, help="Window in hours")
    report.set_defaults(func=_report_command)

    book = sub.add_parser("book", help="Print both sides of a market's book")
    book.add_argument("--market", required=True, help="Token id")
    book.add_argument("--depth", type=int, default=10, help="Levels per side")
    book.set_defaults(func=_book_command)
    return parser


def cli(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return int(args.func(args))


def main() -> None:
    raise SystemExit(cli())


if __name__ == "__main__":
    main()
