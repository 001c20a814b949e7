from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from infra.trading_models import (
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    Stock,
    TradingAccount,
    TradingBase,
    Transaction,
)
from libs.db.db import build_engine, build_session_factory
from services.order_execution_worker.app.funds import FundManagementService
from services.order_execution_worker.app.locks import LocalAdvisoryLock
from services.order_execution_worker.app.margin import MarginCalculator
from services.order_execution_worker.app.registry import WorkerSettingsStore


class FrozenClock:
    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 2, 9, 15, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class ManualTimer:
    """Monotonic clock advanced explicitly by tests."""

    def __init__(self) -> None:
        self.value = 1_000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class TradingFactory:
    """Seed accounts, instruments and orders the way order placement would."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory
        self._calculator = MarginCalculator()
        self._funds = FundManagementService()

    def account(self, *, user_id: str = "user-1", balance: Decimal = Decimal("100000")) -> str:
        with self._session_factory() as session, session.begin():
            account = TradingAccount(
                user_id=user_id,
                balance=balance,
                available_margin=balance,
                used_margin=Decimal("0"),
            )
            session.add(account)
            session.flush()
            return account.id

    def stock(
        self,
        *,
        symbol: str = "RELIANCE",
        instrument_token: int | None = 738561,
        ltp: Decimal | None = Decimal("2500"),
        segment: str = "NSE",
        lot_size: int = 1,
    ) -> str:
        with self._session_factory() as session, session.begin():
            stock = Stock(
                symbol=symbol,
                instrument_token=instrument_token,
                ltp=ltp,
                segment=segment,
                lot_size=lot_size,
            )
            session.add(stock)
            session.flush()
            return stock.id

    def order(
        self,
        account_id: str,
        stock_id: str | None,
        *,
        side: OrderSide = OrderSide.BUY,
        quantity: int = 10,
        price: Decimal | None = None,
        symbol: str = "RELIANCE",
        product_type: str = "MIS",
        created_at: datetime | None = None,
        margin_price: Decimal | None = None,
    ) -> str:
        """Create a PENDING order and block its margin at ``margin_price`` (or ``price``)."""

        with self._session_factory() as session, session.begin():
            order = Order(
                trading_account_id=account_id,
                stock_id=stock_id,
                symbol=symbol,
                side=side,
                order_type=OrderType.LIMIT if price is not None else OrderType.MARKET,
                product_type=product_type,
                quantity=quantity,
                price=price,
                status=OrderStatus.PENDING,
                created_at=created_at or datetime.now(timezone.utc),
            )
            session.add(order)
            session.flush()

            block_at = margin_price if margin_price is not None else price
            if block_at is not None:
                stock = session.get(Stock, stock_id) if stock_id else None
                calculation = self._calculator.calculate_margin(
                    stock.segment if stock else "NSE",
                    product_type,
                    quantity,
                    block_at,
                    stock.lot_size if stock else 1,
                )
                self._funds.block_margin_tx(
                    session, account_id, calculation.required_margin, order_id=order.id
                )
            return order.id

    def get_order(self, order_id: str) -> Order:
        with self._session_factory() as session:
            return session.get(Order, order_id)

    def get_account(self, account_id: str) -> TradingAccount:
        with self._session_factory() as session:
            return session.get(TradingAccount, account_id)

    def positions(self, account_id: str) -> List[Position]:
        with self._session_factory() as session:
            stmt = select(Position).where(Position.trading_account_id == account_id)
            return list(session.execute(stmt).scalars().all())

    def transactions(self, order_id: str) -> List[Transaction]:
        with self._session_factory() as session:
            stmt = (
                select(Transaction)
                .where(Transaction.order_id == order_id)
                .order_by(Transaction.created_at.asc())
            )
            return list(session.execute(stmt).scalars().all())


@pytest.fixture()
def engine(tmp_path: Any):
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path}/order_execution.db")
    TradingBase.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        TradingBase.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker[Session]:
    return build_session_factory(engine)


@pytest.fixture()
def factory(session_factory: sessionmaker[Session]) -> TradingFactory:
    return TradingFactory(session_factory)


@pytest.fixture()
def lock() -> LocalAdvisoryLock:
    return LocalAdvisoryLock()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def settings_store(session_factory: sessionmaker[Session], clock: FrozenClock) -> WorkerSettingsStore:
    return WorkerSettingsStore(session_factory, cache_ttl_seconds=0, clock=clock)


@pytest.fixture()
def timer() -> ManualTimer:
    return ManualTimer()
