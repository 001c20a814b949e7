"""Drive PENDING simulated orders to EXECUTED or CANCELLED exactly once."""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from infra.trading_models import Order, OrderSide, OrderStatus, Stock
from libs.schemas.order_execution import BatchError, BatchResult, ExecutionOutcome, WorkerHeartbeat

from .events import EventPublisher, OrderExecutedEvent
from .funds import FundManagementService
from .locks import DistributedLock
from .margin import MarginCalculator
from .quotes import NullQuoteOracle, QuoteOracle
from .registry import WorkerSettingsStore
from .repositories import OrderRepository, PositionRepository, TransactionRepository

LOGGER = logging.getLogger("order_execution.worker")

MAX_BATCH_LIMIT = 200
DEFAULT_CRON_LIMIT = 25

ZERO = Decimal("0")

# serialization_failure, deadlock_detected, lock_not_available, unique_violation
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03", "23505"})
TRANSIENT_MARKERS = (
    "deadlock",
    "serializ",
    "could not obtain lock",
    "database is locked",
    "unique constraint",
    "duplicate key",
)


@dataclass(slots=True)
class _Attempt:
    outcome: ExecutionOutcome
    event: OrderExecutedEvent | None = None
    price: Decimal | None = None
    position_id: str | None = None


def _positive(value: Decimal | None) -> Decimal | None:
    if value is None:
        return None
    return value if value > 0 else None


def is_transient_db_error(exc: BaseException) -> bool:
    """Whether ``exc`` is a conflict that may succeed when the transaction is replayed."""

    if not isinstance(exc, (OperationalError, IntegrityError)):
        return False
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in TRANSIENT_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


class OrderExecutionWorker:
    """Execute pending orders against the simulated book.

    Each attempt runs in its own transaction holding the order's lock.
    Deadlocks, serialization failures and unique-key races are replayed up to
    ``max_attempts`` times with exponential backoff. Any other failure, or the
    last transient one, rolls the transaction back and triggers a separate
    compensation transaction which cancels the order and releases its margin.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        lock: DistributedLock,
        *,
        quotes: QuoteOracle | None = None,
        publisher: EventPublisher | None = None,
        settings_store: WorkerSettingsStore | None = None,
        margin_calculator: MarginCalculator | None = None,
        funds: FundManagementService | None = None,
        orders: OrderRepository | None = None,
        positions: PositionRepository | None = None,
        transactions: TransactionRepository | None = None,
        clock: Callable[[], datetime] | None = None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session_factory = session_factory
        self._lock = lock
        self._quotes = quotes or NullQuoteOracle()
        self._publisher = publisher
        self._settings_store = settings_store
        self._margin = margin_calculator or MarginCalculator()
        self._transactions = transactions or TransactionRepository()
        self._funds = funds or FundManagementService(transactions=self._transactions)
        self._orders = orders or OrderRepository()
        self._positions = positions or PositionRepository()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._max_attempts = max_attempts
        self._backoff_seconds = max(0.0, backoff_seconds)
        self._sleep = sleep
        self._host = socket.gethostname()
        self._pid = os.getpid()

    def is_enabled(self) -> bool:
        if self._settings_store is None:
            return True
        return self._settings_store.is_order_worker_enabled()

    def process_pending_orders(
        self, limit: int = DEFAULT_CRON_LIMIT, max_age_ms: int = 0
    ) -> BatchResult:
        """Process the oldest PENDING orders and aggregate their outcomes."""

        if not self.is_enabled():
            LOGGER.info("Order execution worker disabled; skipping batch")
            return BatchResult()

        limit = min(max(1, int(limit)), MAX_BATCH_LIMIT)
        started = time.perf_counter()
        cutoff = self._clock() - timedelta(milliseconds=max_age_ms) if max_age_ms > 0 else None
        with self._session_factory() as session:
            pending = self._orders.list_pending(session, limit=limit, created_before=cutoff)
            order_ids = [order.id for order in pending]
        LOGGER.debug("Scanned %d pending orders (limit=%d, max_age_ms=%d)", len(order_ids), limit, max_age_ms)

        result = BatchResult(scanned=len(order_ids))
        for order_id in order_ids:
            try:
                outcome = self._process_order(order_id)
            except Exception as exc:
                LOGGER.exception("Failed processing order %s", order_id)
                result.errors.append(
                    BatchError(order_id=order_id, message=str(exc) or exc.__class__.__name__)
                )
                continue
            if outcome is ExecutionOutcome.EXECUTED:
                result.executed += 1
            elif outcome is ExecutionOutcome.CANCELLED:
                result.cancelled += 1

        elapsed_ms = (time.perf_counter() - started) * 1000
        LOGGER.info(
            "Batch completed: scanned=%d executed=%d cancelled=%d errors=%d",
            result.scanned,
            result.executed,
            result.cancelled,
            len(result.errors),
            extra={"elapsed_ms": round(elapsed_ms, 3)},
        )
        self._record_heartbeat(result, elapsed_ms)
        return result

    def process_order_by_id(self, order_id: str) -> ExecutionOutcome:
        """Execute a single order; safe to call concurrently and repeatedly."""

        if not self.is_enabled():
            LOGGER.info("Order execution worker disabled; skipping order %s", order_id)
            return ExecutionOutcome.SKIPPED
        return self._process_order(order_id)

    def _process_order(self, order_id: str) -> ExecutionOutcome:
        tries = 1
        backoff = self._backoff_seconds
        while True:
            locked = False
            try:
                with self._session_factory() as session, session.begin():
                    if not self._lock.try_acquire(session, order_id):
                        LOGGER.info("Order %s is locked by another worker; skipping", order_id)
                        return ExecutionOutcome.SKIPPED
                    locked = True
                    attempt = self._execute_locked(session, order_id)
            except Exception as exc:
                if not locked:
                    raise
                if is_transient_db_error(exc) and tries < self._max_attempts:
                    LOGGER.warning(
                        "Transient failure executing order %s (attempt %d/%d); retrying in %.3fs: %s",
                        order_id,
                        tries,
                        self._max_attempts,
                        backoff,
                        exc,
                    )
                    self._sleep(backoff)
                    tries += 1
                    backoff *= 2
                    continue
                LOGGER.exception("Execution of order %s failed; compensating", order_id)
                return self._compensate(order_id)
            break

        if attempt.outcome is ExecutionOutcome.EXECUTED:
            LOGGER.info(
                "Order %s executed at %s",
                order_id,
                attempt.price,
                extra={"order_id": order_id, "position_id": attempt.position_id},
            )
        if attempt.event is not None:
            self._publish(attempt.event)
        return attempt.outcome

    def _execute_locked(self, session: Session, order_id: str) -> _Attempt:
        order = self._orders.get(session, order_id, for_update=True)
        if order is None:
            LOGGER.warning("Order %s not found; skipping", order_id)
            return _Attempt(ExecutionOutcome.SKIPPED)
        if order.status != OrderStatus.PENDING:
            LOGGER.info("Order %s is %s; skipping", order_id, OrderStatus(order.status).value)
            return _Attempt(ExecutionOutcome.SKIPPED)

        stock = order.stock
        price = self._resolve_price(order, stock)
        if price is None:
            LOGGER.error("No executable price for order %s; cancelling", order_id)
            self._cancel(session, order, None, reason="no executable price")
            return _Attempt(ExecutionOutcome.CANCELLED)
        if stock is None:
            LOGGER.error("Order %s has no instrument reference; cancelling", order_id)
            self._cancel(session, order, price, reason="unknown instrument")
            return _Attempt(ExecutionOutcome.CANCELLED)

        side = OrderSide(order.side)
        signed_quantity = order.quantity if side is OrderSide.BUY else -order.quantity
        position = self._positions.upsert(
            session,
            order.trading_account_id,
            stock.id,
            order.symbol,
            signed_quantity,
            price,
        )

        executed_at = self._clock()
        self._orders.update(session, order_id, position_id=position.position_id)
        self._orders.mark_executed(
            session,
            order_id,
            filled_quantity=order.quantity,
            average_price=price,
            executed_at=executed_at,
        )
        self._transactions.link_position(session, order_id, position.position_id)

        account = order.trading_account
        event = None
        if account is not None and account.user_id:
            event = OrderExecutedEvent(
                order_id=order_id,
                trading_account_id=order.trading_account_id,
                user_id=account.user_id,
                symbol=order.symbol,
                side=side.value,
                quantity=order.quantity,
                average_price=price,
                position_id=position.position_id,
                executed_at=executed_at,
            )
        else:
            LOGGER.warning("Order %s has no account owner; no notification will be sent", order_id)
        return _Attempt(
            ExecutionOutcome.EXECUTED,
            event,
            price=price,
            position_id=position.position_id,
        )

    def _compensate(self, order_id: str) -> ExecutionOutcome:
        try:
            with self._session_factory() as session, session.begin():
                if not self._lock.try_acquire(session, order_id):
                    LOGGER.warning("Order %s is locked; compensation deferred", order_id)
                    return ExecutionOutcome.SKIPPED
                order = self._orders.get(session, order_id, for_update=True)
                if order is None or order.status != OrderStatus.PENDING:
                    return ExecutionOutcome.SKIPPED
                price = self._resolve_price(order, order.stock)
                self._cancel(session, order, price, reason="execution failed")
        except Exception:
            LOGGER.exception("Compensation failed for order %s; it stays PENDING", order_id)
            return ExecutionOutcome.SKIPPED
        LOGGER.info("Order %s cancelled after a failed execution", order_id)
        return ExecutionOutcome.CANCELLED

    def _cancel(self, session: Session, order: Order, price: Decimal | None, *, reason: str) -> None:
        self._orders.mark_cancelled(session, order.id)
        amount = self._margin_to_release(session, order, price)
        if amount > 0:
            self._funds.release_margin_tx(
                session,
                order.trading_account_id,
                amount,
                f"Margin released for cancelled order {order.id} ({reason})",
                order_id=order.id,
            )

    def _margin_to_release(self, session: Session, order: Order, price: Decimal | None) -> Decimal:
        """Amount still blocked for ``order``.

        The ledger is authoritative whenever it holds a block for the order.
        Otherwise the calculator estimates the amount at ``price``, capped by
        the account's used margin.
        """

        blocked = self._funds.blocked_margin_for_order(session, order.id)
        if blocked > ZERO or self._funds.has_margin_block(session, order.id):
            return blocked
        if price is None:
            return ZERO
        account = order.trading_account
        used = account.used_margin if account is not None else ZERO
        stock = order.stock
        calculation = self._margin.calculate_margin(
            stock.segment if stock is not None else "NSE",
            order.product_type,
            order.quantity,
            price,
            stock.lot_size if stock is not None else 1,
        )
        return min(calculation.required_margin, max(used, ZERO))

    def _resolve_price(self, order: Order, stock: Stock | None) -> Decimal | None:
        preset = _positive(order.average_price) or _positive(order.price)
        if preset is not None:
            return preset
        if stock is None:
            return None
        token = stock.instrument_token
        if token is not None and token > 0:
            try:
                quote = self._quotes.get_quote(token)
            except Exception:
                LOGGER.warning("Quote lookup failed for token %s", token, exc_info=True)
                quote = None
            if quote is not None and _positive(quote.last_trade_price) is not None:
                return quote.last_trade_price
        return _positive(stock.ltp)

    def _publish(self, event: OrderExecutedEvent) -> None:
        if self._publisher is None:
            return
        try:
            self._publisher.publish(event)
        except Exception:
            LOGGER.warning("Failed to publish execution of order %s", event.order_id, exc_info=True)

    def _record_heartbeat(self, result: BatchResult, elapsed_ms: float) -> None:
        if self._settings_store is None:
            return
        heartbeat = WorkerHeartbeat(
            last_run_at=self._clock(),
            host=self._host,
            pid=self._pid,
            elapsed_ms=round(elapsed_ms, 3),
            last_batch=result,
        )
        try:
            self._settings_store.write_heartbeat(heartbeat)
        except Exception:
            LOGGER.warning("Failed to update worker heartbeat", exc_info=True)


class OrderWorkerLoop:
    """Poll for pending orders until stopped."""

    def __init__(
        self,
        worker: OrderExecutionWorker,
        *,
        limit: int = 50,
        interval_ms: int = 750,
        max_age_ms: int = 0,
    ) -> None:
        self._worker = worker
        self._limit = limit
        self._interval = max(0, interval_ms) / 1000
        self._max_age_ms = max_age_ms
        self._stopped = asyncio.Event()

    async def stop(self) -> None:
        """Request the loop to stop after the current batch."""

        self._stopped.set()

    async def run_once(self) -> BatchResult:
        return await asyncio.to_thread(
            self._worker.process_pending_orders, self._limit, self._max_age_ms
        )

    async def run_forever(self) -> None:
        LOGGER.info(
            "Order worker loop started (limit=%d, interval=%.3fs)", self._limit, self._interval
        )
        while not self._stopped.is_set():
            try:
                result = await self.run_once()
            except Exception:  # pragma: no cover
                LOGGER.exception("Order worker iteration failed")
            else:
                if result.errors:
                    LOGGER.warning("Batch finished with %d errors", len(result.errors))
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
        LOGGER.info("Order worker loop stopped")


__all__ = ["MAX_BATCH_LIMIT", "OrderExecutionWorker", "OrderWorkerLoop", "is_transient_db_error"]
