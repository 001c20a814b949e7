"""Domain errors raised by the order execution service."""

from __future__ import annotations

from decimal import Decimal


class OrderExecutionError(Exception):
    """Base class for order execution failures."""


class OrderNotFoundError(OrderExecutionError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class OrderStateError(OrderExecutionError):
    """Raised when an order is mutated outside of the PENDING state."""

    def __init__(self, order_id: str, status: str) -> None:
        super().__init__(f"Order {order_id} is {status}, expected PENDING")
        self.order_id = order_id
        self.status = status


class AccountNotFoundError(OrderExecutionError):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"Trading account {account_id} not found")
        self.account_id = account_id


class InvalidAmountError(OrderExecutionError, ValueError):
    def __init__(self, amount: object) -> None:
        super().__init__(f"Invalid amount: {amount!r}")
        self.amount = amount


class InsufficientMarginError(OrderExecutionError):
    def __init__(self, required: Decimal, available: Decimal) -> None:
        super().__init__(f"Insufficient margin. Required: {required}, Available: {available}")
        self.required = required
        self.available = available


__all__ = [
    "AccountNotFoundError",
    "InsufficientMarginError",
    "InvalidAmountError",
    "OrderExecutionError",
    "OrderNotFoundError",
    "OrderStateError",
]
