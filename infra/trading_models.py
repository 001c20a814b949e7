"""SQLAlchemy models backing the simulated brokerage ledger."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

MONEY = Numeric(precision=20, scale=8, asdecimal=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class TradingBase(DeclarativeBase):
    pass


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"


class TransactionType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class TransactionCategory(str, Enum):
    MARGIN_BLOCK = "MARGIN_BLOCK"
    MARGIN_RELEASE = "MARGIN_RELEASE"
    CHARGE = "CHARGE"
    SETTLEMENT = "SETTLEMENT"
    ADJUSTMENT = "ADJUSTMENT"


def _enum(enum_cls: type[Enum]) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=16,
        values_callable=lambda members: [member.value for member in members],
    )


class TradingAccount(TradingBase):
    """Cash and margin buckets for one user."""

    __tablename__ = "trading_accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    available_margin: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    used_margin: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    orders = relationship("Order", back_populates="trading_account")


class Stock(TradingBase):
    """Tradable instrument with its static last-known price."""

    __tablename__ = "stocks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    symbol: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    instrument_token: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    segment: Mapped[str] = mapped_column(String(16), nullable=False, default="NSE")
    lot_size: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    ltp: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)


class Order(TradingBase):
    """Trading instruction placed by a user and executed by the worker."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    trading_account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("trading_accounts.id", ondelete="CASCADE"), nullable=False
    )
    stock_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("stocks.id", ondelete="SET NULL"), nullable=True
    )
    symbol: Mapped[str] = mapped_column(String(64), nullable=False)
    side: Mapped[OrderSide] = mapped_column(_enum(OrderSide), nullable=False)
    order_type: Mapped[OrderType] = mapped_column(
        _enum(OrderType), nullable=False, default=OrderType.MARKET
    )
    product_type: Mapped[str] = mapped_column(String(16), nullable=False, default="MIS")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    average_price: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    filled_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus), nullable=False, default=OrderStatus.PENDING
    )
    # Plain column: the referenced position may be deleted once closed.
    position_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    trading_account = relationship("TradingAccount", back_populates="orders")
    stock = relationship("Stock")

    __table_args__ = (Index("ix_orders_status_created", "status", "created_at"),)


class Position(TradingBase):
    """Aggregate open holding of one account in one instrument."""

    __tablename__ = "positions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    trading_account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("trading_accounts.id", ondelete="CASCADE"), nullable=False
    )
    stock_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stocks.id", ondelete="CASCADE"), nullable=False
    )
    symbol: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    average_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("trading_account_id", "stock_id", name="uq_positions_account_stock"),
    )


class Transaction(TradingBase):
    """Append-only ledger entry for a balance or margin movement."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    trading_account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("trading_accounts.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    type: Mapped[TransactionType] = mapped_column(_enum(TransactionType), nullable=False)
    category: Mapped[TransactionCategory] = mapped_column(
        _enum(TransactionCategory), nullable=False, default=TransactionCategory.ADJUSTMENT
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    position_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_transactions_account_created", "trading_account_id", "created_at"),)


class RiskConfig(TradingBase):
    """Leverage and brokerage policy for a segment/product pair."""

    __tablename__ = "risk_config"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    segment: Mapped[str] = mapped_column(String(16), nullable=False)
    product_type: Mapped[str] = mapped_column(String(16), nullable=False)
    leverage: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    brokerage_flat: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    brokerage_rate: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    brokerage_cap: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class SystemSetting(TradingBase):
    """Key/value operational setting; ``owner_id`` is null for global keys."""

    __tablename__ = "system_settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="GENERAL")
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


__all__ = [
    "Order",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "Position",
    "RiskConfig",
    "Stock",
    "SystemSetting",
    "TradingAccount",
    "TradingBase",
    "Transaction",
    "TransactionCategory",
    "TransactionType",
]
