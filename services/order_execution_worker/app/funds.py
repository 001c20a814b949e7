"""Fund management: margin blocking/releasing and ledger postings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from infra.trading_models import Transaction, TransactionCategory, TransactionType

from .errors import InsufficientMarginError, InvalidAmountError
from .margin import MarginValidation, validate_margin
from .repositories import TradingAccountRepository, TransactionRepository

LOGGER = logging.getLogger("order_execution.funds")

ZERO = Decimal("0")


@dataclass(frozen=True)
class FundOperationResult:
    balance: Decimal
    available_margin: Decimal
    used_margin: Decimal
    transaction_id: str | None


def _validate_amount(amount: object) -> Decimal:
    if isinstance(amount, bool):
        raise InvalidAmountError(amount)
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidAmountError(amount) from exc
    if not value.is_finite() or value < 0:
        raise InvalidAmountError(amount)
    return value


class FundManagementService:
    """Apply balance and margin movements to trading accounts.

    The ``*_tx`` methods run inside the caller's transaction and never commit.
    They are not idempotent on their own; callers serialise them per order.
    """

    def __init__(
        self,
        *,
        accounts: TradingAccountRepository | None = None,
        transactions: TransactionRepository | None = None,
    ) -> None:
        self._accounts = accounts or TradingAccountRepository()
        self._transactions = transactions or TransactionRepository()

    def block_margin_tx(
        self,
        session: Session,
        account_id: str,
        amount: object,
        description: str = "Margin blocked for order",
        *,
        order_id: str | None = None,
    ) -> FundOperationResult:
        value = _validate_amount(amount)
        account = self._accounts.get(session, account_id, for_update=True)
        if account.available_margin < value:
            raise InsufficientMarginError(value, account.available_margin)
        return self._post(
            session,
            account_id,
            value,
            available_delta=-value,
            used_delta=value,
            type=TransactionType.DEBIT,
            category=TransactionCategory.MARGIN_BLOCK,
            description=description,
            order_id=order_id,
        )

    def release_margin_tx(
        self,
        session: Session,
        account_id: str,
        amount: object,
        description: str = "Margin released",
        *,
        order_id: str | None = None,
    ) -> FundOperationResult:
        value = _validate_amount(amount)
        if value == ZERO:
            account = self._accounts.get(session, account_id)
            LOGGER.debug("Skipping zero margin release for account %s", account_id)
            return FundOperationResult(
                balance=account.balance,
                available_margin=account.available_margin,
                used_margin=account.used_margin,
                transaction_id=None,
            )
        return self._post(
            session,
            account_id,
            value,
            available_delta=value,
            used_delta=-value,
            type=TransactionType.CREDIT,
            category=TransactionCategory.MARGIN_RELEASE,
            description=description,
            order_id=order_id,
        )

    def debit_tx(
        self,
        session: Session,
        account_id: str,
        amount: object,
        description: str = "Debit",
        *,
        category: TransactionCategory = TransactionCategory.CHARGE,
        order_id: str | None = None,
    ) -> FundOperationResult:
        value = _validate_amount(amount)
        return self._post(
            session,
            account_id,
            value,
            balance_delta=-value,
            available_delta=-value,
            type=TransactionType.DEBIT,
            category=category,
            description=description,
            order_id=order_id,
        )

    def credit_tx(
        self,
        session: Session,
        account_id: str,
        amount: object,
        description: str = "Credit",
        *,
        category: TransactionCategory = TransactionCategory.SETTLEMENT,
        order_id: str | None = None,
    ) -> FundOperationResult:
        value = _validate_amount(amount)
        return self._post(
            session,
            account_id,
            value,
            balance_delta=value,
            available_delta=value,
            type=TransactionType.CREDIT,
            category=category,
            description=description,
            order_id=order_id,
        )

    def blocked_margin_for_order(self, session: Session, order_id: str) -> Decimal:
        """Net margin still blocked for ``order_id`` according to the ledger."""

        signed = case(
            (Transaction.category == TransactionCategory.MARGIN_BLOCK, Transaction.amount),
            (Transaction.category == TransactionCategory.MARGIN_RELEASE, -Transaction.amount),
            else_=0,
        )
        total = session.execute(
            select(func.coalesce(func.sum(signed), 0)).where(Transaction.order_id == order_id)
        ).scalar_one()
        net = Decimal(str(total))
        return net if net > ZERO else ZERO

    def validate_margin(
        self,
        session: Session,
        account_id: str,
        required_margin: object,
        total_charges: object = ZERO,
    ) -> MarginValidation:
        """Check the account's available margin against an order's requirement."""

        account = self._accounts.get(session, account_id)
        return validate_margin(account.available_margin, required_margin, total_charges)

    def has_margin_block(self, session: Session, order_id: str) -> bool:
        stmt = (
            select(Transaction.id)
            .where(
                Transaction.order_id == order_id,
                Transaction.category == TransactionCategory.MARGIN_BLOCK,
            )
            .limit(1)
        )
        return session.execute(stmt).first() is not None

    def block_margin(
        self,
        session_factory: Callable[[], Session],
        account_id: str,
        amount: object,
        description: str = "Margin blocked for order",
        *,
        order_id: str | None = None,
    ) -> FundOperationResult:
        with session_factory() as session, session.begin():
            return self.block_margin_tx(
                session, account_id, amount, description, order_id=order_id
            )

    def release_margin(
        self,
        session_factory: Callable[[], Session],
        account_id: str,
        amount: object,
        description: str = "Margin released",
        *,
        order_id: str | None = None,
    ) -> FundOperationResult:
        with session_factory() as session, session.begin():
            return self.release_margin_tx(
                session, account_id, amount, description, order_id=order_id
            )

    def _post(
        self,
        session: Session,
        account_id: str,
        amount: Decimal,
        *,
        type: TransactionType,
        category: TransactionCategory,
        description: str,
        order_id: str | None,
        balance_delta: Decimal = ZERO,
        available_delta: Decimal = ZERO,
        used_delta: Decimal = ZERO,
    ) -> FundOperationResult:
        account = self._accounts.apply_deltas(
            session,
            account_id,
            balance=balance_delta,
            available_margin=available_delta,
            used_margin=used_delta,
        )
        record = self._transactions.create(
            session,
            account_id=account_id,
            amount=amount,
            type=type,
            category=category,
            description=description,
            order_id=order_id,
        )
        LOGGER.info(
            "funds.%s account=%s amount=%s order=%s",
            category.value.lower(),
            account_id,
            amount,
            order_id,
            extra={
                "trading_account_id": account_id,
                "available_margin": str(account.available_margin),
                "used_margin": str(account.used_margin),
            },
        )
        return FundOperationResult(
            balance=account.balance,
            available_margin=account.available_margin,
            used_margin=account.used_margin,
            transaction_id=record.id,
        )


__all__ = ["FundManagementService", "FundOperationResult"]
