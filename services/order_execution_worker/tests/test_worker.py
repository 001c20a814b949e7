from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from infra.trading_models import OrderSide, OrderStatus, TransactionCategory
from libs.schemas.order_execution import ExecutionOutcome
from services.order_execution_worker.app.events import InMemoryEventBus, OrderExecutedEvent
from services.order_execution_worker.app.locks import LocalAdvisoryLock
from services.order_execution_worker.app.quotes import InMemoryQuoteCache
from services.order_execution_worker.app.repositories import PositionRepository
from services.order_execution_worker.app.worker import OrderExecutionWorker, OrderWorkerLoop

INITIAL_BALANCE = Decimal("100000")


class ExplodingPositionRepository(PositionRepository):
    def upsert(self, *args, **kwargs):  # type: ignore[override]
        raise OperationalError("INSERT INTO positions", {}, Exception("disk I/O error"))


class ConflictingPositionRepository(PositionRepository):
    """Fail the first ``failures`` upserts with ``error``, then behave normally."""

    def __init__(self, error: Exception, failures: int = 1) -> None:
        super().__init__()
        self._error = error
        self.remaining = failures
        self.calls = 0

    def upsert(self, *args, **kwargs):  # type: ignore[override]
        self.calls += 1
        if self.remaining > 0:
            self.remaining -= 1
            raise self._error
        return super().upsert(*args, **kwargs)


def _deadlock() -> OperationalError:
    return OperationalError("UPDATE positions", {}, Exception("deadlock detected"))


class FirstAttemptOnlyLock:
    """Grant the lock once, then report contention forever."""

    def __init__(self) -> None:
        self._inner = LocalAdvisoryLock()
        self.calls = 0

    def try_acquire(self, session, order_id: str) -> bool:
        self.calls += 1
        if self.calls > 1:
            return False
        return self._inner.try_acquire(session, order_id)


class BrokenLock:
    def try_acquire(self, session, order_id: str) -> bool:
        raise RuntimeError("lock backend unavailable")


@pytest.fixture()
def quotes() -> InMemoryQuoteCache:
    return InMemoryQuoteCache()


@pytest.fixture()
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture()
def worker(session_factory, lock, quotes, bus, settings_store, clock) -> OrderExecutionWorker:
    return OrderExecutionWorker(
        session_factory,
        lock,
        quotes=quotes,
        publisher=bus,
        settings_store=settings_store,
        clock=clock,
    )


def test_market_order_executes_and_links_position(factory, worker, bus) -> None:
    published: List[OrderExecutedEvent] = []
    bus.subscribe(published.append)
    account_id = factory.account()
    stock_id = factory.stock(ltp=Decimal("2500"))
    order_id = factory.order(account_id, stock_id, quantity=10, margin_price=Decimal("2500"))

    outcome = worker.process_order_by_id(order_id)

    assert outcome is ExecutionOutcome.EXECUTED
    order = factory.get_order(order_id)
    assert order.status == OrderStatus.EXECUTED
    assert order.filled_quantity == 10
    assert order.average_price == Decimal("2500")
    [position] = factory.positions(account_id)
    assert order.position_id == position.id
    assert position.quantity == 10
    assert all(entry.position_id == position.id for entry in factory.transactions(order_id))

    [event] = published
    assert event.order_id == order_id
    assert event.user_id == "user-1"
    assert event.side == "BUY"
    assert event.average_price == Decimal("2500")
    assert event.position_id == position.id


def test_sell_order_reduces_position(factory, worker) -> None:
    account_id = factory.account()
    stock_id = factory.stock()
    buy = factory.order(account_id, stock_id, quantity=10, price=Decimal("100"))
    sell = factory.order(account_id, stock_id, side=OrderSide.SELL, quantity=4, price=Decimal("130"))

    assert worker.process_order_by_id(buy) is ExecutionOutcome.EXECUTED
    assert worker.process_order_by_id(sell) is ExecutionOutcome.EXECUTED

    [position] = factory.positions(account_id)
    assert position.quantity == 6
    assert position.average_price == Decimal("100")


def test_order_price_wins_over_quote(factory, worker, quotes) -> None:
    account_id = factory.account()
    stock_id = factory.stock(instrument_token=101, ltp=Decimal("70"))
    quotes.update(101, Decimal("60"))
    order_id = factory.order(account_id, stock_id, price=Decimal("50"))

    worker.process_order_by_id(order_id)

    assert factory.get_order(order_id).average_price == Decimal("50")


def test_quote_wins_over_stock_ltp(factory, worker, quotes) -> None:
    account_id = factory.account()
    stock_id = factory.stock(instrument_token=101, ltp=Decimal("70"))
    quotes.update(101, Decimal("60"))
    order_id = factory.order(account_id, stock_id, margin_price=Decimal("70"))

    worker.process_order_by_id(order_id)

    assert factory.get_order(order_id).average_price == Decimal("60")


def test_stock_ltp_is_the_last_fallback(factory, worker) -> None:
    account_id = factory.account()
    stock_id = factory.stock(instrument_token=101, ltp=Decimal("70"))
    order_id = factory.order(account_id, stock_id, margin_price=Decimal("70"))

    worker.process_order_by_id(order_id)

    assert factory.get_order(order_id).average_price == Decimal("70")


def test_instrument_without_token_executes_at_stock_ltp(factory, worker, quotes) -> None:
    account_id = factory.account()
    stock_id = factory.stock(instrument_token=None, ltp=Decimal("70"))
    quotes.update(101, Decimal("60"))
    order_id = factory.order(account_id, stock_id)

    assert worker.process_order_by_id(order_id) is ExecutionOutcome.EXECUTED
    assert factory.get_order(order_id).average_price == Decimal("70")


def test_unresolvable_price_cancels_and_releases_blocked_margin(factory, worker) -> None:
    account_id = factory.account(balance=INITIAL_BALANCE)
    stock_id = factory.stock(instrument_token=101, ltp=None)
    order_id = factory.order(account_id, stock_id, quantity=10, margin_price=Decimal("2500"))
    assert factory.get_account(account_id).available_margin == INITIAL_BALANCE - Decimal("125")

    outcome = worker.process_order_by_id(order_id)

    assert outcome is ExecutionOutcome.CANCELLED
    assert factory.get_order(order_id).status == OrderStatus.CANCELLED
    account = factory.get_account(account_id)
    assert account.available_margin == INITIAL_BALANCE
    assert account.used_margin == Decimal("0")
    assert factory.positions(account_id) == []


def test_missing_instrument_cancels_order(factory, worker) -> None:
    account_id = factory.account(balance=INITIAL_BALANCE)
    order_id = factory.order(account_id, None, quantity=10, price=Decimal("2500"))

    outcome = worker.process_order_by_id(order_id)

    assert outcome is ExecutionOutcome.CANCELLED
    assert factory.get_order(order_id).status == OrderStatus.CANCELLED
    assert factory.get_account(account_id).available_margin == INITIAL_BALANCE
    releases = [
        entry
        for entry in factory.transactions(order_id)
        if entry.category == TransactionCategory.MARGIN_RELEASE
    ]
    assert len(releases) == 1
    assert "unknown instrument" in releases[0].description


def test_reinvocation_of_finished_order_is_skipped(factory, worker) -> None:
    account_id = factory.account()
    stock_id = factory.stock()
    order_id = factory.order(account_id, stock_id, price=Decimal("100"))
    assert worker.process_order_by_id(order_id) is ExecutionOutcome.EXECUTED
    ledger_before = len(factory.transactions(order_id))
    account_before = factory.get_account(account_id)

    assert worker.process_order_by_id(order_id) is ExecutionOutcome.SKIPPED

    [position] = factory.positions(account_id)
    assert position.quantity == 10
    assert len(factory.transactions(order_id)) == ledger_before
    assert factory.get_account(account_id).available_margin == account_before.available_margin


def test_unknown_order_is_skipped(worker) -> None:
    assert worker.process_order_by_id("does-not-exist") is ExecutionOutcome.SKIPPED


def test_order_locked_elsewhere_is_skipped(session_factory, factory, worker, lock) -> None:
    account_id = factory.account()
    stock_id = factory.stock()
    order_id = factory.order(account_id, stock_id, price=Decimal("100"))

    with session_factory() as session, session.begin():
        assert lock.try_acquire(session, order_id)
        assert worker.process_order_by_id(order_id) is ExecutionOutcome.SKIPPED
        assert factory.get_order(order_id).status == OrderStatus.PENDING

    assert worker.process_order_by_id(order_id) is ExecutionOutcome.EXECUTED


def test_concurrent_workers_execute_an_order_once(
    session_factory, factory, lock, settings_store, clock
) -> None:
    account_id = factory.account(balance=INITIAL_BALANCE)
    stock_id = factory.stock()
    order_id = factory.order(account_id, stock_id, quantity=10, price=Decimal("100"))
    workers = [
        OrderExecutionWorker(session_factory, lock, settings_store=settings_store, clock=clock)
        for _ in range(4)
    ]
    barrier = threading.Barrier(len(workers))
    outcomes: List[ExecutionOutcome] = []
    outcomes_lock = threading.Lock()

    def attempt(worker: OrderExecutionWorker) -> None:
        barrier.wait()
        outcome = worker.process_order_by_id(order_id)
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=attempt, args=(worker,)) for worker in workers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcome.value for outcome in outcomes) == ["executed", "skipped", "skipped", "skipped"]
    [position] = factory.positions(account_id)
    assert position.quantity == 10
    assert factory.get_order(order_id).filled_quantity == 10


def test_batch_processes_oldest_orders_first(factory, worker) -> None:
    account_id = factory.account()
    stock_id = factory.stock()
    base = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    first = factory.order(account_id, stock_id, price=Decimal("100"), created_at=base)
    third = factory.order(
        account_id, stock_id, price=Decimal("100"), created_at=base + timedelta(seconds=2)
    )
    second = factory.order(
        account_id, stock_id, price=Decimal("100"), created_at=base + timedelta(seconds=1)
    )

    result = worker.process_pending_orders(limit=2)

    assert (result.scanned, result.executed, result.cancelled, result.errors) == (2, 2, 0, [])
    assert factory.get_order(first).status == OrderStatus.EXECUTED
    assert factory.get_order(second).status == OrderStatus.EXECUTED
    assert factory.get_order(third).status == OrderStatus.PENDING


def test_batch_respects_max_age(factory, worker, clock) -> None:
    account_id = factory.account()
    stock_id = factory.stock()
    old = factory.order(
        account_id, stock_id, price=Decimal("100"), created_at=clock.now - timedelta(seconds=30)
    )
    fresh = factory.order(
        account_id, stock_id, price=Decimal("100"), created_at=clock.now - timedelta(seconds=1)
    )

    result = worker.process_pending_orders(limit=10, max_age_ms=5_000)

    assert result.scanned == 1
    assert factory.get_order(old).status == OrderStatus.EXECUTED
    assert factory.get_order(fresh).status == OrderStatus.PENDING


def test_batch_counts_cancellations(factory, worker) -> None:
    account_id = factory.account()
    priced = factory.stock(symbol="INFY", ltp=Decimal("1500"))
    unpriced = factory.stock(symbol="TCS", instrument_token=None, ltp=None)
    factory.order(account_id, priced, symbol="INFY")
    factory.order(account_id, unpriced, symbol="TCS")

    result = worker.process_pending_orders(limit=10)

    assert (result.scanned, result.executed, result.cancelled) == (2, 1, 1)


def test_failed_execution_is_compensated(session_factory, factory, lock, settings_store, clock) -> None:
    account_id = factory.account(balance=INITIAL_BALANCE)
    stock_id = factory.stock()
    order_id = factory.order(account_id, stock_id, quantity=10, price=Decimal("2500"))
    assert factory.get_account(account_id).used_margin == Decimal("125")
    worker = OrderExecutionWorker(
        session_factory,
        lock,
        positions=ExplodingPositionRepository(),
        settings_store=settings_store,
        clock=clock,
    )

    outcome = worker.process_order_by_id(order_id)

    assert outcome is ExecutionOutcome.CANCELLED
    assert factory.get_order(order_id).status == OrderStatus.CANCELLED
    account = factory.get_account(account_id)
    assert account.available_margin == INITIAL_BALANCE
    assert account.used_margin == Decimal("0")
    assert factory.positions(account_id) == []
    categories = sorted(entry.category.value for entry in factory.transactions(order_id))
    assert categories == ["MARGIN_BLOCK", "MARGIN_RELEASE"]
    assert not lock.is_held(order_id)


def test_failed_compensation_leaves_order_pending(session_factory, factory, settings_store) -> None:
    account_id = factory.account(balance=INITIAL_BALANCE)
    stock_id = factory.stock()
    order_id = factory.order(account_id, stock_id, quantity=10, price=Decimal("2500"))
    worker = OrderExecutionWorker(
        session_factory,
        FirstAttemptOnlyLock(),
        positions=ExplodingPositionRepository(),
        settings_store=settings_store,
    )

    outcome = worker.process_order_by_id(order_id)

    assert outcome is ExecutionOutcome.SKIPPED
    assert factory.get_order(order_id).status == OrderStatus.PENDING
    assert factory.get_account(account_id).used_margin == Decimal("125")


def test_compensation_releases_margin_blocked_at_placement(
    session_factory, factory, lock, quotes, settings_store, clock
) -> None:
    account_id = factory.account(balance=INITIAL_BALANCE)
    stock_id = factory.stock(instrument_token=738561, ltp=Decimal("2500"))
    order_id = factory.order(account_id, stock_id, quantity=10, margin_price=Decimal("2500"))
    assert factory.get_account(account_id).used_margin == Decimal("125")
    quotes.update(738561, Decimal("3000"))
    worker = OrderExecutionWorker(
        session_factory,
        lock,
        quotes=quotes,
        positions=ExplodingPositionRepository(),
        settings_store=settings_store,
        clock=clock,
    )

    assert worker.process_order_by_id(order_id) is ExecutionOutcome.CANCELLED

    account = factory.get_account(account_id)
    assert account.used_margin == Decimal("0")
    assert account.available_margin == INITIAL_BALANCE
    releases = [
        entry.amount
        for entry in factory.transactions(order_id)
        if entry.category == TransactionCategory.MARGIN_RELEASE
    ]
    assert releases == [Decimal("125")]


def test_cancellation_without_ledger_block_never_overdraws_used_margin(
    session_factory, factory, lock, settings_store, clock
) -> None:
    account_id = factory.account(balance=INITIAL_BALANCE)
    stock_id = factory.stock(ltp=Decimal("2500"))
    order_id = factory.order(account_id, stock_id, quantity=10)
    worker = OrderExecutionWorker(
        session_factory,
        lock,
        positions=ExplodingPositionRepository(),
        settings_store=settings_store,
        clock=clock,
    )

    assert worker.process_order_by_id(order_id) is ExecutionOutcome.CANCELLED

    account = factory.get_account(account_id)
    assert account.used_margin == Decimal("0")
    assert account.available_margin == INITIAL_BALANCE
    assert factory.transactions(order_id) == []


def test_deadlock_is_retried_before_compensating(
    session_factory, factory, lock, settings_store, clock
) -> None:
    account_id = factory.account()
    stock_id = factory.stock()
    order_id = factory.order(account_id, stock_id, price=Decimal("100"))
    positions = ConflictingPositionRepository(_deadlock())
    sleeps: List[float] = []
    worker = OrderExecutionWorker(
        session_factory,
        lock,
        positions=positions,
        settings_store=settings_store,
        clock=clock,
        backoff_seconds=0.05,
        sleep=sleeps.append,
    )

    assert worker.process_order_by_id(order_id) is ExecutionOutcome.EXECUTED

    assert positions.calls == 2
    assert sleeps == [0.05]
    assert factory.get_order(order_id).status == OrderStatus.EXECUTED
    assert [position.quantity for position in factory.positions(account_id)] == [10]
    assert not lock.is_held(order_id)


def test_unique_race_on_new_position_is_retried(
    session_factory, factory, lock, settings_store, clock
) -> None:
    account_id = factory.account()
    stock_id = factory.stock()
    order_id = factory.order(account_id, stock_id, price=Decimal("100"))
    race = IntegrityError(
        "INSERT INTO positions",
        {},
        Exception("UNIQUE constraint failed: positions.trading_account_id, positions.stock_id"),
    )
    worker = OrderExecutionWorker(
        session_factory,
        lock,
        positions=ConflictingPositionRepository(race),
        settings_store=settings_store,
        clock=clock,
        sleep=lambda seconds: None,
    )

    assert worker.process_order_by_id(order_id) is ExecutionOutcome.EXECUTED


def test_exhausted_retries_fall_back_to_compensation(
    session_factory, factory, lock, settings_store, clock
) -> None:
    account_id = factory.account(balance=INITIAL_BALANCE)
    stock_id = factory.stock()
    order_id = factory.order(account_id, stock_id, quantity=10, price=Decimal("2500"))
    positions = ConflictingPositionRepository(_deadlock(), failures=5)
    sleeps: List[float] = []
    worker = OrderExecutionWorker(
        session_factory,
        lock,
        positions=positions,
        settings_store=settings_store,
        clock=clock,
        max_attempts=3,
        backoff_seconds=0.1,
        sleep=sleeps.append,
    )

    assert worker.process_order_by_id(order_id) is ExecutionOutcome.CANCELLED

    assert positions.calls == 3
    assert sleeps == [0.1, 0.2]
    assert factory.get_account(account_id).used_margin == Decimal("0")


def test_non_transient_failure_is_not_retried(
    session_factory, factory, lock, settings_store, clock
) -> None:
    account_id = factory.account()
    stock_id = factory.stock()
    order_id = factory.order(account_id, stock_id, price=Decimal("100"))
    sleeps: List[float] = []
    worker = OrderExecutionWorker(
        session_factory,
        lock,
        positions=ExplodingPositionRepository(),
        settings_store=settings_store,
        clock=clock,
        sleep=sleeps.append,
    )

    assert worker.process_order_by_id(order_id) is ExecutionOutcome.CANCELLED
    assert sleeps == []


def test_order_without_owner_executes_without_notification(
    session_factory, factory, worker, bus
) -> None:
    account_id = factory.account(user_id="")
    stock_id = factory.stock()
    order_id = factory.order(account_id, stock_id, price=Decimal("100"))
    received: List[OrderExecutedEvent] = []
    bus.subscribe(received.append)

    assert worker.process_order_by_id(order_id) is ExecutionOutcome.EXECUTED

    assert factory.get_order(order_id).status == OrderStatus.EXECUTED
    assert received == []


def test_kill_switch_pauses_the_worker(factory, worker, settings_store) -> None:
    account_id = factory.account()
    stock_id = factory.stock()
    order_ids = [factory.order(account_id, stock_id, price=Decimal("100")) for _ in range(3)]
    settings_store.set_order_worker_enabled(False)

    result = worker.process_pending_orders(limit=10)

    assert (result.scanned, result.executed, result.cancelled, result.errors) == (0, 0, 0, [])
    assert worker.process_order_by_id(order_ids[0]) is ExecutionOutcome.SKIPPED
    assert {factory.get_order(order_id).status for order_id in order_ids} == {OrderStatus.PENDING}

    settings_store.set_order_worker_enabled(True)
    assert worker.process_pending_orders(limit=10).executed == 3


def test_batch_collects_per_order_errors(session_factory, factory, settings_store) -> None:
    account_id = factory.account()
    stock_id = factory.stock()
    order_ids = [factory.order(account_id, stock_id, price=Decimal("100")) for _ in range(2)]
    worker = OrderExecutionWorker(session_factory, BrokenLock(), settings_store=settings_store)

    result = worker.process_pending_orders(limit=10)

    assert result.scanned == 2
    assert sorted(error.order_id for error in result.errors) == sorted(order_ids)
    assert {error.message for error in result.errors} == {"lock backend unavailable"}


def test_batch_writes_heartbeat(factory, worker, settings_store, clock) -> None:
    account_id = factory.account()
    stock_id = factory.stock()
    factory.order(account_id, stock_id, price=Decimal("100"))

    worker.process_pending_orders(limit=5)

    heartbeat = settings_store.read_heartbeat()
    assert heartbeat is not None
    assert heartbeat.last_run_at.replace(tzinfo=timezone.utc) == clock.now
    assert heartbeat.pid is not None
    assert heartbeat.last_batch.executed == 1
    assert settings_store.snapshot().health == "healthy"


def test_subscriber_failure_does_not_affect_execution(factory, worker, bus) -> None:
    def explode(event: OrderExecutedEvent) -> None:
        raise RuntimeError("mail server down")

    bus.subscribe(explode)
    account_id = factory.account()
    stock_id = factory.stock()
    order_id = factory.order(account_id, stock_id, price=Decimal("100"))

    assert worker.process_order_by_id(order_id) is ExecutionOutcome.EXECUTED
    assert factory.get_order(order_id).status == OrderStatus.EXECUTED


def test_loop_runs_batches_until_stopped(factory, worker) -> None:
    account_id = factory.account()
    stock_id = factory.stock()
    order_id = factory.order(account_id, stock_id, price=Decimal("100"))
    loop_runner = OrderWorkerLoop(worker, limit=10, interval_ms=10)

    async def _run() -> None:
        task = asyncio.create_task(loop_runner.run_forever())
        for _ in range(200):
            await asyncio.sleep(0.01)
            if factory.get_order(order_id).status == OrderStatus.EXECUTED:
                break
        await loop_runner.stop()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(_run())

    assert factory.get_order(order_id).status == OrderStatus.EXECUTED
