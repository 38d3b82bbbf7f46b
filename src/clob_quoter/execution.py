from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Sequence
import uuid

from clob_quoter.config import QuoterConfig
from clob_quoter.errors import FetchOrdersError, SubmitError
from clob_quoter.pricing import round_tick
from clob_quoter.models import (
    CancelOrderOp,
    Confirmation,
    Operation,
    OrderType,
    PlaceOrderOp,
    RestingOrder,
    SettleOp,
    Side,
    TimeInForce,
    parse_float,
)

LOGGER = logging.getLogger("clob_quoter")

# py-clob-client names immediate-or-cancel "FAK" (fill-and-kill).
_CLOB_TIF = {TimeInForce.IOC: "FAK"}


def exception_payload(exc: Exception) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": exc.__class__.__name__,
        "error": str(exc),
    }
    for field in ("status_code", "error_msg", "msg"):
        if hasattr(exc, field):
            payload[field] = getattr(exc, field)
    return payload


class BaseExecutor:
    """Order-query and execution capabilities consumed by the controller.

    The owning account and its signer are bound once, before the first pass;
    every call acts on behalf of that one account.
    """

    account: str = ""

    def preflight(self) -> None:
        return

    def fetch_open_orders(self, market: str) -> list[RestingOrder]:
        raise NotImplementedError

    def build_place_order_op(self, market: str, side: Side, price: float, size: float) -> PlaceOrderOp:
        return PlaceOrderOp(
            market=market,
            side=side,
            price=float(price),
            size=float(size),
            order_type=OrderType.POST_ONLY,
        )

    def build_cancel_op(self, market: str, order: RestingOrder) -> CancelOrderOp:
        return CancelOrderOp(market=market, order=order)

    def build_settle_op(self, market: str) -> SettleOp:
        return SettleOp(market=market, account=self.account)

    def submit_batch(self, operations: Sequence[Operation]) -> Confirmation:
        raise NotImplementedError

    def cancel_all(self, market: str) -> None:
        raise NotImplementedError


class PaperExecutor(BaseExecutor):
    """In-memory venue. A batch is staged on a copy and committed whole."""

    def __init__(self, config: QuoterConfig, account: str = "paper") -> None:
        self.config = config
        self.account = account
        self.open_orders: dict[str, RestingOrder] = {}
        self.settle_counts: dict[str, int] = {}
        self.batches_submitted = 0
        self._lock = threading.Lock()

    def fetch_open_orders(self, market: str) -> list[RestingOrder]:
        with self._lock:
            return [order for order in self.open_orders.values() if order.market == market]

    def submit_batch(self, operations: Sequence[Operation]) -> Confirmation:
        batch_id = f"paper-{uuid.uuid4().hex[:12]}"
        placed: list[str] = []
        with self._lock:
            staged = dict(self.open_orders)
            settles = dict(self.settle_counts)
            for op in operations:
                if isinstance(op, CancelOrderOp):
                    if staged.pop(op.order.order_id, None) is None:
                        raise SubmitError(
                            "cancel of unknown order",
                            batch_id=batch_id,
                            order_id=op.order.order_id,
                        )
                elif isinstance(op, PlaceOrderOp):
                    order_id = f"paper-{uuid.uuid4().hex[:12]}"
                    staged[order_id] = RestingOrder(
                        order_id=order_id,
                        market=op.market,
                        side=op.side,
                        price=op.price,
                        size=op.size,
                        owner=self.account,
                    )
                    placed.append(order_id)
                elif isinstance(op, SettleOp):
                    settles[op.market] = settles.get(op.market, 0) + 1
                else:
                    raise SubmitError("unsupported operation", batch_id=batch_id, op=type(op).__name__)
            self.open_orders = staged
            self.settle_counts = settles
            self.batches_submitted += 1
        return Confirmation(batch_id=batch_id, status="confirmed", placed_order_ids=placed)

    def cancel_all(self, market: str) -> None:
        with self._lock:
            self.open_orders = {
                order_id: order for order_id, order in self.open_orders.items() if order.market != market
            }


class LiveExecutor(BaseExecutor):
    """Polymarket CLOB execution through py-clob-client.

    The CLOB has no multi-instruction transaction, so a batch is sent as one
    cancel request followed by one ``post_orders`` request. Placements are
    never sent when the cancel request fails. When the cancel succeeds and
    ``post_orders`` then fails, the cancelled orders stay gone and the pass
    can leave a side flat until the next pass re-places it. Matches settle
    on-chain by themselves, so a settle op is acknowledged without a request.
    """

    def __init__(self, config: QuoterConfig) -> None:
        self.config = config
        self.client = None
        self.account = ""
        self._bootstrap_done = False
        self._preflight_done = False
        self._signer_address = ""
        self._funder_address = ""
        self._signature_type = -1

    @staticmethod
    def _normalize_address(address: str) -> str:
        return address.strip().lower()

    @staticmethod
    def _api_creds_from_env() -> dict[str, str] | None:
        key = (os.getenv("POLY_CLOB_API_KEY") or os.getenv("POLY_API_KEY") or "").strip()
        secret = (os.getenv("POLY_CLOB_API_SECRET") or os.getenv("POLY_API_SECRET") or "").strip()
        passphrase = (os.getenv("POLY_CLOB_API_PASSPHRASE") or os.getenv("POLY_API_PASSPHRASE") or "").strip()
        if key and secret and passphrase:
            return {"key": key, "secret": secret, "passphrase": passphrase}
        return None

    @staticmethod
    def _derive_api_creds_with_retry(client: Any, attempts: int = 4) -> Any:
        last_exc: Exception | None = None
        for attempt in range(max(1, attempts)):
            try:
                return client.create_or_derive_api_creds()
            except Exception as exc:  # pragma: no cover - live path
                last_exc = exc
                if attempt + 1 < attempts:
                    time.sleep(0.4 * (attempt + 1))
        if last_exc is not None:
            raise last_exc
        return None

    def _infer_signature_type(self, signer_address: str, funder_address: str) -> int:
        if self.config.poly_signature_type is not None:
            return int(self.config.poly_signature_type)
        if self._normalize_address(funder_address) != self._normalize_address(signer_address):
            # Proxy / safe wallet funds the orders.
            return 2
        return 0

    def _bootstrap_client(self) -> None:
        if self._bootstrap_done:
            return
        if not self.config.poly_private_key:
            raise RuntimeError("Missing POLY_PRIVATE_KEY for live mode")

        from eth_account import Account
        from py_clob_client.client import ClobClient as PyClobClient

        signer_address = Account.from_key(self.config.poly_private_key).address
        funder_address = self.config.poly_proxy_address.strip() or signer_address
        signature_type = self._infer_signature_type(signer_address, funder_address)

        self.client = PyClobClient(
            host=self.config.clob_url,
            key=self.config.poly_private_key,
            chain_id=self.config.poly_chain_id,
            signature_type=signature_type,
            funder=funder_address,
        )
        self._signer_address = signer_address
        self._funder_address = funder_address
        self._signature_type = signature_type
        self.account = funder_address
        LOGGER.info(
            "live_auth signer=%s funder=%s signature_type=%s",
            self._signer_address,
            self._funder_address,
            self._signature_type,
        )
        try:
            creds = self._derive_api_creds_with_retry(self.client)
        except Exception as exc:
            creds = self._api_creds_from_env()
            if creds is None:
                raise RuntimeError(
                    "Unable to derive Polymarket API credentials. "
                    f"signer={self._signer_address} funder={self._funder_address} error={exception_payload(exc)}"
                ) from exc
            LOGGER.warning("Using CLOB API creds from environment fallback after derive failure")
        if creds is None:
            creds = self._api_creds_from_env()
            if creds is None:
                raise RuntimeError("Unable to derive Polymarket API credentials from wallet key")
            LOGGER.warning("Using CLOB API creds from environment fallback")
        if isinstance(creds, dict):
            from py_clob_client.clob_types import ApiCreds

            creds = ApiCreds(
                api_key=creds["key"],
                api_secret=creds["secret"],
                api_passphrase=creds["passphrase"],
            )
        self.client.set_api_creds(creds)
        self._bootstrap_done = True

    def preflight(self) -> None:
        self._bootstrap_client()
        if self._preflight_done:
            return
        last_exc: Exception | None = None
        for attempt in range(3):
            try:
                self.client.get_api_keys()
                self._preflight_done = True
                return
            except Exception as exc:  # pragma: no cover - live path
                last_exc = exc
                if attempt < 2:
                    time.sleep(0.6 * (attempt + 1))
        if last_exc is not None:
            raise RuntimeError(
                "Live auth preflight failed. "
                f"signer={self._signer_address} funder={self._funder_address} "
                f"error={exception_payload(last_exc)}"
            ) from last_exc

    @staticmethod
    def _pick_ci(payload: dict[str, Any] | None, *keys: str) -> Any:
        if not isinstance(payload, dict):
            return None
        lowered = {str(k).lower(): v for k, v in payload.items()}
        for key in keys:
            if key.lower() in lowered:
                return lowered[key.lower()]
        return None

    @classmethod
    def _parse_resting_order(cls, payload: dict[str, Any], market: str) -> RestingOrder | None:
        order_id = cls._pick_ci(payload, "id", "orderID", "order_id")
        if not order_id:
            return None
        try:
            side = Side.parse(cls._pick_ci(payload, "side"))
        except ValueError:
            return None
        original = parse_float(cls._pick_ci(payload, "original_size", "originalSize", "size"))
        matched = parse_float(cls._pick_ci(payload, "size_matched", "sizeMatched"))
        remaining = max(0.0, original - matched)
        price = parse_float(cls._pick_ci(payload, "price"))
        if remaining <= 0 or price <= 0:
            return None
        return RestingOrder(
            order_id=str(order_id),
            market=str(cls._pick_ci(payload, "asset_id", "assetId") or market),
            side=side,
            price=price,
            size=remaining,
            owner=str(cls._pick_ci(payload, "maker_address", "owner") or ""),
        )

    def fetch_open_orders(self, market: str) -> list[RestingOrder]:
        self.preflight()
        from py_clob_client.clob_types import OpenOrderParams

        try:
            rows = self.client.get_orders(OpenOrderParams(asset_id=market))
        except Exception as exc:
            raise FetchOrdersError("open order query failed", market=market, error=exception_payload(exc)) from exc
        orders: list[RestingOrder] = []
        for row in rows or []:
            order = self._parse_resting_order(row, market)
            if order is not None and order.market == market:
                orders.append(order)
        return orders

    def submit_batch(self, operations: Sequence[Operation]) -> Confirmation:
        self.preflight()
        cancels = [op for op in operations if isinstance(op, CancelOrderOp)]
        placements = [op for op in operations if isinstance(op, PlaceOrderOp)]
        settles = [op for op in operations if isinstance(op, SettleOp)]
        batch_id = f"live-{uuid.uuid4().hex[:12]}"
        raw: dict[str, Any] = {}

        if cancels:
            order_ids = [op.order.order_id for op in cancels]
            try:
                response = self.client.cancel_orders(order_ids)
            except Exception as exc:
                raise SubmitError("cancel request failed", batch_id=batch_id, error=exception_payload(exc)) from exc
            not_canceled = self._pick_ci(response, "not_canceled") or {}
            if not_canceled:
                raise SubmitError("cancel rejected", batch_id=batch_id, not_canceled=not_canceled)
            raw["cancel"] = response

        placed_ids: list[str] = []
        if placements:
            try:
                response = self.client.post_orders([self._post_args(op) for op in placements])
            except Exception as exc:
                raise SubmitError("post_orders failed", batch_id=batch_id, error=exception_payload(exc)) from exc
            rows = response if isinstance(response, list) else [response]
            for row in rows:
                if not isinstance(row, dict) or not row.get("success", False):
                    raise SubmitError("placement rejected", batch_id=batch_id, response=row)
                placed_ids.append(str(self._pick_ci(row, "orderID", "orderId", "id") or ""))
            raw["post"] = rows

        if settles:
            raw["settle"] = [op.market for op in settles]
        return Confirmation(batch_id=batch_id, status="confirmed", placed_order_ids=placed_ids, raw=raw)

    def _post_args(self, op: PlaceOrderOp):
        from py_clob_client.clob_types import OrderArgs, OrderType as ClobOrderType, PostOrdersArgs

        signed = self.client.create_order(
            OrderArgs(
                price=round_tick(op.price, self.config.price_tick),
                size=float(op.size),
                side="BUY" if op.side is Side.BUY else "SELL",
                token_id=op.market,
            )
        )
        return PostOrdersArgs(
            order=signed,
            orderType=getattr(ClobOrderType, _CLOB_TIF.get(op.tif, op.tif.value)),
            postOnly=op.order_type is OrderType.POST_ONLY,
        )

    def cancel_all(self, market: str) -> None:
        self._bootstrap_client()
        try:  # pragma: no cover - live path
            self.client.cancel_market_orders(asset_id=market)
        except Exception as exc:
            LOGGER.warning("cancel_all_failed market=%s error=%s", market, exception_payload(exc))
