"""Shared persistence models."""

from .trading_models import (
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    RiskConfig,
    Stock,
    SystemSetting,
    TradingAccount,
    TradingBase,
    Transaction,
    TransactionCategory,
    TransactionType,
)

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
