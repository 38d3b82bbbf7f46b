from __future__ import annotations

import logging
import threading
import time
from typing import Protocol

from clob_quoter.book_cache import OrderBookCache
from clob_quoter.config import QuoterConfig
from clob_quoter.errors import FetchOrdersError, NotReadyError, SubmitError
from clob_quoter.execution import BaseExecutor
from clob_quoter.models import (
    DesiredQuote,
    Operation,
    PassResult,
    PassStatus,
    PlannedOrder,
    ReconciliationPlan,
    RestingOrder,
    Side,
    TopOfBook,
)
from clob_quoter.pricing import compute_desired_quote, prices_equal, snap_quote

LOGGER = logging.getLogger("clob_quoter")


class PassJournal(Protocol):
    def record_pass(self, result: PassResult, mode: str) -> None: ...


def _reconcile_side(
    side: Side,
    target_price: float,
    target_size: float,
    resting: list[RestingOrder],
    *,
    tolerance: float,
    min_increment: float,
) -> tuple[list[RestingOrder], list[PlannedOrder]]:
    # Less aggressive neighbour: one band below for bids, above for asks.
    neighbour = target_price - tolerance if side is Side.BUY else target_price + tolerance
    keep = [order for order in resting if prices_equal(order.price, target_price)]
    if not keep and tolerance > 0:
        keep = [order for order in resting if prices_equal(order.price, neighbour)]

    if not keep:
        return list(resting), [PlannedOrder(side=side, price=target_price, size=target_size)]

    anchor_price = keep[0].price
    kept_ids = {order.order_id for order in keep}
    cancels = [order for order in resting if order.order_id not in kept_ids]
    shortfall = target_size - sum(order.size for order in keep)
    placements: list[PlannedOrder] = []
    if shortfall > min_increment:
        placements.append(PlannedOrder(side=side, price=anchor_price, size=shortfall, reinforcement=True))
    return cancels, placements


def build_plan(
    quote: DesiredQuote,
    resting: list[RestingOrder],
    *,
    tolerance: float,
    min_increment: float,
) -> ReconciliationPlan:
    """
    Diff the desired quote against resting orders, one side at a time.

    Resting orders at the target price (or one tolerance band less
    aggressive) are kept and topped up when short by more than
    ``min_increment``; that keeps queue priority when the target has not
    moved. Every other resting order on the side is cancelled, and a side
    with nothing worth keeping gets exactly one fresh order at the target.
    """
    plan = ReconciliationPlan()
    for side in (Side.BUY, Side.SELL):
        on_side = [order for order in resting if order.side is side]
        cancels, placements = _reconcile_side(
            side,
            quote.price(side),
            quote.size(side),
            on_side,
            tolerance=tolerance,
            min_increment=min_increment,
        )
        plan.orders_to_cancel.extend(cancels)
        plan.orders_to_place.extend(placements)
    return plan


class ReconciliationController:
    def __init__(
        self,
        config: QuoterConfig,
        market: str,
        cache: OrderBookCache,
        executor: BaseExecutor,
        journal: PassJournal | None = None,
    ) -> None:
        self.config = config
        self.market = market
        self.cache = cache
        self.executor = executor
        self.journal = journal
        self.passes = 0
        self.last_result: PassResult | None = None

    def read_top_of_book(self) -> tuple[TopOfBook, bool]:
        try:
            return self.cache.top_of_book(), False
        except NotReadyError as exc:
            LOGGER.warning(
                "top_of_book_unavailable market=%s fallback_bid=%s fallback_ask=%s reason=%s",
                self.market,
                self.config.fallback_bid,
                self.config.fallback_ask,
                exc,
            )
            return TopOfBook(best_bid=self.config.fallback_bid, best_ask=self.config.fallback_ask), True

    def fetch_resting_orders(self) -> list[RestingOrder]:
        try:
            return self.executor.fetch_open_orders(self.market)
        except FetchOrdersError:
            raise
        except Exception as exc:
            raise FetchOrdersError("open order query failed", market=self.market, error=exc) from exc

    def build_operations(self, plan: ReconciliationPlan) -> list[Operation]:
        operations: list[Operation] = []
        for order in plan.orders_to_cancel:
            operations.append(self.executor.build_cancel_op(self.market, order))
        for planned in plan.orders_to_place:
            operations.append(
                self.executor.build_place_order_op(self.market, planned.side, planned.price, planned.size)
            )
        if plan.settle_required:
            operations.append(self.executor.build_settle_op(self.market))
        return operations

    def run_pass(self) -> PassResult:
        self.passes += 1
        result = PassResult(market=self.market, status=PassStatus.FAILED)
        try:
            top, used_fallback = self.read_top_of_book()
            result.top_of_book = top
            result.used_fallback = used_fallback
            quote = compute_desired_quote(
                top.best_bid,
                top.best_ask,
                self.config.tick_offset,
                self.config.order_size,
            )
            if self.config.price_tick > 0:
                quote = snap_quote(quote, self.config.price_tick, self.config.max_price)
            result.quote = quote

            resting = self.fetch_resting_orders()
            plan = build_plan(
                quote,
                resting,
                tolerance=self.config.reinforce_tolerance,
                min_increment=self.config.min_reinforce_increment,
            )
            result.plan = plan

            if plan.is_noop:
                result.status = PassStatus.SKIPPED
                LOGGER.info(
                    "pass_skipped market=%s bid=%.6f ask=%.6f resting=%s",
                    self.market,
                    quote.bid_price,
                    quote.ask_price,
                    len(resting),
                )
            else:
                confirmation = self.executor.submit_batch(self.build_operations(plan))
                result.confirmation = confirmation
                if not confirmation.ok:
                    raise SubmitError(
                        "batch not confirmed",
                        batch_id=confirmation.batch_id,
                        status=confirmation.status,
                    )
                result.status = PassStatus.SUBMITTED
                LOGGER.info(
                    "pass_submitted market=%s batch=%s bid=%.6f ask=%.6f cancels=%s places=%s fallback=%s",
                    self.market,
                    confirmation.batch_id,
                    quote.bid_price,
                    quote.ask_price,
                    len(plan.orders_to_cancel),
                    len(plan.orders_to_place),
                    used_fallback,
                )
        except Exception as exc:
            result.status = PassStatus.FAILED
            result.error = str(exc)
            LOGGER.error("pass_failed market=%s error_type=%s error=%s", self.market, type(exc).__name__, exc)

        self.last_result = result
        self._journal(result)
        return result

    def _journal(self, result: PassResult) -> None:
        if self.journal is None:
            return
        try:
            self.journal.record_pass(result, self.config.mode)
        except Exception as exc:
            LOGGER.warning("journal_failed market=%s error=%s", self.market, exc)

    def run(self, stop_event: threading.Event) -> None:
        LOGGER.info(
            "controller_start market=%s interval=%.2fs offset=%s size=%s",
            self.market,
            self.config.reconcile_interval_seconds,
            self.config.tick_offset,
            self.config.order_size,
        )
        while not stop_event.is_set():
            started = time.time()
            self.run_pass()
            LOGGER.debug("pass_elapsed market=%s seconds=%.3f", self.market, time.time() - started)
            stop_event.wait(self.config.reconcile_interval_seconds)
        LOGGER.info("controller_stop market=%s passes=%s", self.market, self.passes)
