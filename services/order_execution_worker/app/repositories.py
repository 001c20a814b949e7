"""Persistence helpers operating inside a caller-owned SQLAlchemy transaction."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from infra.trading_models import (
    Order,
    OrderStatus,
    Position,
    TradingAccount,
    Transaction,
    TransactionCategory,
    TransactionType,
)

from .errors import AccountNotFoundError, OrderNotFoundError, OrderStateError

LOGGER = logging.getLogger("order_execution.repositories")


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


@dataclass(frozen=True)
class PositionUpsertResult:
    """Outcome of applying a fill to an account's aggregate position.

    ``closed`` is true when the fill brought the net quantity back to zero; the
    position row has then been deleted and ``position_id`` only serves as a
    historical pointer.
    """

    position_id: str
    quantity: int
    average_price: Decimal
    closed: bool = False
    created: bool = False


class OrderRepository:
    def get(self, session: Session, order_id: str, *, for_update: bool = False) -> Order | None:
        stmt = (
            select(Order)
            .options(selectinload(Order.stock), selectinload(Order.trading_account))
            .where(Order.id == order_id)
        )
        if for_update:
            stmt = stmt.with_for_update(of=Order)
        return session.execute(stmt).scalars().first()

    def list_pending(
        self,
        session: Session,
        *,
        limit: int,
        created_before: datetime | None = None,
    ) -> List[Order]:
        stmt = select(Order).where(Order.status == OrderStatus.PENDING)
        if created_before is not None:
            stmt = stmt.where(Order.created_at <= created_before)
        stmt = stmt.order_by(Order.created_at.asc(), Order.id.asc()).limit(limit)
        return list(session.execute(stmt).scalars().all())

    def update(self, session: Session, order_id: str, **fields: Any) -> Order:
        order = session.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        for key, value in fields.items():
            if not hasattr(Order, key):
                raise AttributeError(f"Order has no field {key!r}")
            setattr(order, key, value)
        session.flush()
        return order

    def mark_executed(
        self,
        session: Session,
        order_id: str,
        *,
        filled_quantity: int,
        average_price: Decimal,
        executed_at: datetime | None = None,
    ) -> Order:
        order = self._pending(session, order_id)
        order.status = OrderStatus.EXECUTED
        order.filled_quantity = filled_quantity
        order.average_price = average_price
        order.executed_at = executed_at or datetime.now(timezone.utc)
        session.flush()
        return order

    def mark_cancelled(self, session: Session, order_id: str) -> Order:
        order = self._pending(session, order_id)
        order.status = OrderStatus.CANCELLED
        session.flush()
        return order

    @staticmethod
    def _pending(session: Session, order_id: str) -> Order:
        order = session.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if order.status != OrderStatus.PENDING:
            raise OrderStateError(order_id, OrderStatus(order.status).value)
        return order


class PositionRepository:
    def get(
        self, session: Session, account_id: str, stock_id: str, *, for_update: bool = False
    ) -> Position | None:
        stmt = select(Position).where(
            Position.trading_account_id == account_id, Position.stock_id == stock_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalars().first()

    def list_for_account(self, session: Session, account_id: str) -> List[Position]:
        stmt = (
            select(Position)
            .where(Position.trading_account_id == account_id)
            .order_by(Position.created_at.desc())
        )
        return list(session.execute(stmt).scalars().all())

    def upsert(
        self,
        session: Session,
        account_id: str,
        stock_id: str,
        symbol: str,
        quantity_delta: int,
        price: Decimal,
    ) -> PositionUpsertResult:
        existing = self.get(session, account_id, stock_id, for_update=True)

        if existing is None:
            if quantity_delta == 0:
                raise ValueError("Cannot open a position with a zero quantity")
            position = Position(
                trading_account_id=account_id,
                stock_id=stock_id,
                symbol=symbol,
                quantity=quantity_delta,
                average_price=price,
            )
            session.add(position)
            session.flush()
            LOGGER.info(
                "Opened position %s for %s: %s @ %s", position.id, symbol, quantity_delta, price
            )
            return PositionUpsertResult(
                position_id=position.id,
                quantity=position.quantity,
                average_price=position.average_price,
                created=True,
            )

        old_quantity = existing.quantity
        new_quantity = old_quantity + quantity_delta

        if new_quantity == 0:
            position_id = existing.id
            average_price = existing.average_price
            session.delete(existing)
            session.flush()
            LOGGER.info("Closed position %s for %s", position_id, symbol)
            return PositionUpsertResult(
                position_id=position_id, quantity=0, average_price=average_price, closed=True
            )

        if _sign(new_quantity) == _sign(old_quantity):
            if abs(new_quantity) > abs(old_quantity):
                existing_value = existing.average_price * abs(old_quantity)
                added_value = price * abs(quantity_delta)
                existing.average_price = (existing_value + added_value) / abs(new_quantity)
            # Partial close keeps the entry price of the remaining quantity.
        else:
            existing.average_price = price

        existing.quantity = new_quantity
        session.flush()
        LOGGER.info(
            "Updated position %s for %s: %s -> %s @ %s",
            existing.id,
            symbol,
            old_quantity,
            new_quantity,
            existing.average_price,
        )
        return PositionUpsertResult(
            position_id=existing.id,
            quantity=existing.quantity,
            average_price=existing.average_price,
        )


class TradingAccountRepository:
    def get(self, session: Session, account_id: str, *, for_update: bool = False) -> TradingAccount:
        stmt = select(TradingAccount).where(TradingAccount.id == account_id)
        if for_update:
            stmt = stmt.with_for_update()
        account = session.execute(stmt).scalars().first()
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def apply_deltas(
        self,
        session: Session,
        account_id: str,
        *,
        balance: Decimal = Decimal("0"),
        available_margin: Decimal = Decimal("0"),
        used_margin: Decimal = Decimal("0"),
    ) -> TradingAccount:
        account = self.get(session, account_id, for_update=True)
        account.balance = account.balance + balance
        account.available_margin = account.available_margin + available_margin
        account.used_margin = account.used_margin + used_margin
        session.flush()
        return account


class TransactionRepository:
    def create(
        self,
        session: Session,
        *,
        account_id: str,
        amount: Decimal,
        type: TransactionType,
        category: TransactionCategory,
        description: str | None = None,
        order_id: str | None = None,
        position_id: str | None = None,
    ) -> Transaction:
        record = Transaction(
            trading_account_id=account_id,
            amount=amount,
            type=type,
            category=category,
            description=description,
            order_id=order_id,
            position_id=position_id,
        )
        session.add(record)
        session.flush()
        return record

    def list_for_order(self, session: Session, order_id: str) -> List[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.order_id == order_id)
            .order_by(Transaction.created_at.asc())
        )
        return list(session.execute(stmt).scalars().all())

    def link_position(self, session: Session, order_id: str, position_id: str) -> int:
        """Backfill ``position_id`` on ledger rows tagged with ``order_id``."""

        result = session.execute(
            update(Transaction)
            .where(Transaction.order_id == order_id, Transaction.position_id.is_(None))
            .values(position_id=position_id)
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)


__all__ = [
    "OrderRepository",
    "PositionRepository",
    "PositionUpsertResult",
    "TradingAccountRepository",
    "TransactionRepository",
]
