from __future__ import annotations

import threading
import unittest
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from clob_quoter.book_cache import OrderBookCache
from clob_quoter.controller import ReconciliationController, build_plan
from clob_quoter.errors import SubmitError
from clob_quoter.execution import PaperExecutor
from clob_quoter.models import (
    CancelOrderOp,
    Confirmation,
    DesiredQuote,
    PassStatus,
    PlaceOrderOp,
    SettleOp,
    Side,
)
from tests.helpers import MARKET, FakeBookFeed, resting, test_config


class _RecordingExecutor(PaperExecutor):
    def __init__(self, config, orders=None) -> None:
        super().__init__(config)
        for order in orders or []:
            self.open_orders[order.order_id] = order
        self.batches: list[list] = []
        self.fetch_calls = 0

    def fetch_open_orders(self, market):
        self.fetch_calls += 1
        return super().fetch_open_orders(market)

    def submit_batch(self, operations):
        self.batches.append(list(operations))
        return super().submit_batch(operations)


class _FailingFetchExecutor(_RecordingExecutor):
    def fetch_open_orders(self, market):
        self.fetch_calls += 1
        raise TimeoutError("orders endpoint timed out")


class _RejectingExecutor(_RecordingExecutor):
    def submit_batch(self, operations):
        self.batches.append(list(operations))
        raise SubmitError("blockhash expired", batch_id="b-1")


class _UnconfirmedExecutor(_RecordingExecutor):
    def submit_batch(self, operations):
        self.batches.append(list(operations))
        return Confirmation(batch_id="b-2", status="failed")


def _controller(executor, bids=None, asks=None, initialize=True, **config_overrides):
    cfg = test_config(**config_overrides)
    cache = OrderBookCache(MARKET, FakeBookFeed(bids=bids, asks=asks))
    if initialize:
        cache.initialize()
    return ReconciliationController(cfg, MARKET, cache, executor)


class BuildPlanTests(unittest.TestCase):
    quote = DesiredQuote(bid_price=100.005, bid_size=100.0, ask_price=100.015, ask_size=100.0)

    def test_no_resting_orders_places_both_sides(self) -> None:
        plan = build_plan(self.quote, [], tolerance=0.01, min_increment=0.1)
        self.assertEqual(plan.orders_to_cancel, [])
        self.assertEqual(len(plan.orders_to_place), 2)
        bid, ask = plan.orders_to_place
        self.assertIs(bid.side, Side.BUY)
        self.assertAlmostEqual(bid.price, 100.005)
        self.assertAlmostEqual(bid.size, 100.0)
        self.assertIs(ask.side, Side.SELL)
        self.assertAlmostEqual(ask.price, 100.015)
        self.assertTrue(plan.settle_required)

    def test_resting_bid_at_target_gets_top_up_only(self) -> None:
        orders = [
            resting("b1", Side.BUY, 100.005, 60.0),
            resting("a1", Side.SELL, 100.015, 100.0),
        ]
        plan = build_plan(self.quote, orders, tolerance=0.01, min_increment=0.1)
        self.assertEqual(plan.orders_to_cancel, [])
        self.assertEqual(len(plan.orders_to_place), 1)
        top_up = plan.orders_to_place[0]
        self.assertIs(top_up.side, Side.BUY)
        self.assertAlmostEqual(top_up.price, 100.005)
        self.assertAlmostEqual(top_up.size, 40.0)
        self.assertTrue(top_up.reinforcement)

    def test_small_shortfall_is_not_topped_up(self) -> None:
        orders = [
            resting("b1", Side.BUY, 100.005, 99.95),
            resting("a1", Side.SELL, 100.015, 100.0),
        ]
        plan = build_plan(self.quote, orders, tolerance=0.01, min_increment=0.1)
        self.assertTrue(plan.is_noop)

    def test_order_one_tick_behind_target_is_kept(self) -> None:
        orders = [
            resting("b1", Side.BUY, 99.995, 100.0),
            resting("a1", Side.SELL, 100.025, 30.0),
        ]
        plan = build_plan(self.quote, orders, tolerance=0.01, min_increment=0.1)
        self.assertEqual(plan.orders_to_cancel, [])
        self.assertEqual(len(plan.orders_to_place), 1)
        top_up = plan.orders_to_place[0]
        self.assertIs(top_up.side, Side.SELL)
        self.assertAlmostEqual(top_up.price, 100.025)
        self.assertAlmostEqual(top_up.size, 70.0)

    def test_order_one_tick_ahead_of_target_is_replaced(self) -> None:
        orders = [resting("b1", Side.BUY, 100.015, 100.0)]
        plan = build_plan(self.quote, orders, tolerance=0.01, min_increment=0.1)
        self.assertEqual([o.order_id for o in plan.cancels_for(Side.BUY)], ["b1"])
        self.assertEqual(len(plan.placements_for(Side.BUY)), 1)

    def test_zero_tolerance_only_keeps_exact_price(self) -> None:
        orders = [resting("b1", Side.BUY, 99.995, 100.0)]
        plan = build_plan(self.quote, orders, tolerance=0.0, min_increment=0.1)
        self.assertEqual([o.order_id for o in plan.cancels_for(Side.BUY)], ["b1"])

    def test_moved_target_cancels_every_resting_order_on_side(self) -> None:
        orders = [
            resting("b1", Side.BUY, 99.0, 100.0),
            resting("b2", Side.BUY, 98.0, 100.0),
            resting("a1", Side.SELL, 100.015, 100.0),
        ]
        plan = build_plan(self.quote, orders, tolerance=0.01, min_increment=0.1)
        self.assertEqual(sorted(o.order_id for o in plan.orders_to_cancel), ["b1", "b2"])
        bids = plan.placements_for(Side.BUY)
        self.assertEqual(len(bids), 1)
        self.assertAlmostEqual(bids[0].price, 100.005)
        self.assertAlmostEqual(bids[0].size, 100.0)
        self.assertFalse(bids[0].reinforcement)
        self.assertEqual(plan.placements_for(Side.SELL), [])

    def test_stray_orders_beside_kept_order_are_cancelled(self) -> None:
        orders = [
            resting("b1", Side.BUY, 100.005, 100.0),
            resting("b-old", Side.BUY, 97.0, 5.0),
            resting("a1", Side.SELL, 100.015, 100.0),
        ]
        plan = build_plan(self.quote, orders, tolerance=0.01, min_increment=0.1)
        self.assertEqual([o.order_id for o in plan.orders_to_cancel], ["b-old"])
        self.assertEqual(plan.orders_to_place, [])

    def test_split_orders_at_target_count_toward_size(self) -> None:
        orders = [
            resting("b1", Side.BUY, 100.005, 30.0),
            resting("b2", Side.BUY, 100.005, 30.0),
            resting("a1", Side.SELL, 100.015, 100.0),
        ]
        plan = build_plan(self.quote, orders, tolerance=0.01, min_increment=0.1)
        self.assertEqual(plan.orders_to_cancel, [])
        self.assertAlmostEqual(plan.orders_to_place[0].size, 40.0)


class ReconciliationPassTests(unittest.TestCase):
    def test_first_pass_places_shrunk_quote(self) -> None:
        executor = _RecordingExecutor(test_config())
        controller = _controller(executor, bids=[(100.00, 10)], asks=[(100.02, 10)])
        result = controller.run_pass()

        self.assertIs(result.status, PassStatus.SUBMITTED)
        self.assertFalse(result.used_fallback)
        self.assertTrue(result.quote.shrunk)
        ops = executor.batches[0]
        places = [op for op in ops if isinstance(op, PlaceOrderOp)]
        self.assertEqual(len(places), 2)
        self.assertAlmostEqual(places[0].price, 100.005)
        self.assertAlmostEqual(places[1].price, 100.015)
        self.assertIsInstance(ops[-1], SettleOp)
        self.assertEqual(len(executor.fetch_open_orders(MARKET)), 2)

    def test_second_pass_on_unchanged_book_is_skipped(self) -> None:
        executor = _RecordingExecutor(test_config())
        controller = _controller(executor, bids=[(100.00, 10)], asks=[(100.02, 10)])
        controller.run_pass()
        result = controller.run_pass()
        self.assertIs(result.status, PassStatus.SKIPPED)
        self.assertEqual(len(executor.batches), 1)
        self.assertEqual(executor.fetch_calls, 2)

    def test_batch_orders_cancels_before_places_before_settle(self) -> None:
        orders = [
            resting("b-old", Side.BUY, 0.30, 100.0),
            resting("a-old", Side.SELL, 0.70, 100.0),
        ]
        executor = _RecordingExecutor(test_config(), orders=orders)
        controller = _controller(executor, bids=[(0.40, 10)], asks=[(0.60, 10)])
        result = controller.run_pass()

        self.assertIs(result.status, PassStatus.SUBMITTED)
        kinds = [op.kind for op in executor.batches[0]]
        self.assertEqual(kinds, ["cancel", "cancel", "place", "place", "settle"])
        cancelled = {op.order.order_id for op in executor.batches[0] if isinstance(op, CancelOrderOp)}
        self.assertEqual(cancelled, {"b-old", "a-old"})
        prices = sorted(order.price for order in executor.fetch_open_orders(MARKET))
        self.assertAlmostEqual(prices[0], 0.41)
        self.assertAlmostEqual(prices[1], 0.59)
        self.assertEqual(executor.settle_counts[MARKET], 1)

    def test_top_up_pass_issues_no_cancel(self) -> None:
        orders = [
            resting("b1", Side.BUY, 100.005, 60.0),
            resting("a1", Side.SELL, 100.015, 100.0),
        ]
        executor = _RecordingExecutor(test_config(), orders=orders)
        controller = _controller(executor, bids=[(100.00, 10)], asks=[(100.02, 10)])
        result = controller.run_pass()

        self.assertIs(result.status, PassStatus.SUBMITTED)
        ops = executor.batches[0]
        self.assertFalse(any(isinstance(op, CancelOrderOp) for op in ops))
        places = [op for op in ops if isinstance(op, PlaceOrderOp)]
        self.assertEqual(len(places), 1)
        self.assertIs(places[0].side, Side.BUY)
        self.assertAlmostEqual(places[0].size, 40.0)

    def test_not_ready_cache_uses_fallback_spread(self) -> None:
        executor = _RecordingExecutor(test_config())
        controller = _controller(executor, initialize=False)
        result = controller.run_pass()

        self.assertIs(result.status, PassStatus.SUBMITTED)
        self.assertTrue(result.used_fallback)
        self.assertAlmostEqual(result.quote.bid_price, 1.01)
        self.assertAlmostEqual(result.quote.ask_price, 999_999.99)
        self.assertLess(result.quote.bid_price, result.quote.ask_price)

    def test_grid_snapped_quote_is_stable_across_passes(self) -> None:
        executor = _RecordingExecutor(test_config())
        controller = _controller(
            executor,
            bids=[(0.50, 10)],
            asks=[(0.52, 10)],
            price_tick=0.01,
            max_price=1.0,
        )
        first = controller.run_pass()
        self.assertIs(first.status, PassStatus.SUBMITTED)
        self.assertEqual((first.quote.bid_price, first.quote.ask_price), (0.50, 0.52))
        prices = sorted(order.price for order in executor.fetch_open_orders(MARKET))
        self.assertEqual(prices, [0.50, 0.52])

        second = controller.run_pass()
        self.assertIs(second.status, PassStatus.SKIPPED)
        self.assertEqual(len(executor.batches), 1)

    def test_grid_fallback_quote_stays_inside_price_range(self) -> None:
        executor = _RecordingExecutor(test_config())
        controller = _controller(
            executor,
            initialize=False,
            price_tick=0.01,
            max_price=1.0,
            fallback_bid=0.01,
            fallback_ask=0.99,
        )
        result = controller.run_pass()
        self.assertTrue(result.used_fallback)
        self.assertEqual((result.quote.bid_price, result.quote.ask_price), (0.02, 0.98))

    def test_fetch_failure_fails_pass_without_submission(self) -> None:
        executor = _FailingFetchExecutor(test_config())
        controller = _controller(executor)
        result = controller.run_pass()
        self.assertIs(result.status, PassStatus.FAILED)
        self.assertIn("open order query failed", result.error)
        self.assertEqual(executor.batches, [])

    def test_submit_error_fails_pass(self) -> None:
        executor = _RejectingExecutor(test_config())
        controller = _controller(executor)
        result = controller.run_pass()
        self.assertIs(result.status, PassStatus.FAILED)
        self.assertIn("blockhash expired", result.error)
        self.assertEqual(len(executor.batches), 1)

    def test_unconfirmed_batch_fails_pass(self) -> None:
        executor = _UnconfirmedExecutor(test_config())
        controller = _controller(executor)
        result = controller.run_pass()
        self.assertIs(result.status, PassStatus.FAILED)
        self.assertIsNotNone(result.confirmation)
        self.assertIn("batch not confirmed", result.error)

    def test_loop_keeps_running_after_failed_passes(self) -> None:
        stop = threading.Event()

        class _StopAfterThree(_FailingFetchExecutor):
            def fetch_open_orders(self, market):
                if self.fetch_calls >= 2:
                    stop.set()
                return super().fetch_open_orders(market)

        executor = _StopAfterThree(test_config())
        controller = _controller(executor)
        controller.run(stop)
        self.assertEqual(controller.passes, 3)
        self.assertIs(controller.last_result.status, PassStatus.FAILED)

    def test_pass_is_journalled(self) -> None:
        recorded = []

        class _Journal:
            def record_pass(self, result, mode):
                recorded.append((result.status, mode))

        executor = _RecordingExecutor(test_config())
        controller = _controller(executor)
        controller.journal = _Journal()
        controller.run_pass()
        self.assertEqual(recorded, [(PassStatus.SUBMITTED, "paper")])


if __name__ == "__main__":
    unittest.main()
