"""Margin and brokerage calculation for simulated orders."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Mapping, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from infra.trading_models import RiskConfig

LOGGER = logging.getLogger("order_execution.margin")

PAISE = Decimal("0.01")
ZERO = Decimal("0")

EQUITY_SEGMENTS = frozenset({"NSE", "NSE_EQ", "BSE"})
DERIVATIVE_SEGMENTS = frozenset({"NFO", "FNO", "MCX"})

PolicyKey = Tuple[str, str]

TRANSACTION_CHARGE_RATE = Decimal("0.0000325")
GST_RATE = Decimal("0.18")
STAMP_DUTY_RATE = Decimal("0.00003")


@dataclass(frozen=True)
class MarginPolicy:
    """Leverage and brokerage settings for one segment/product pair."""

    leverage: Decimal
    brokerage_flat: Decimal | None = None
    brokerage_rate: Decimal | None = None
    brokerage_cap: Decimal | None = None


@dataclass(frozen=True)
class ChargeBreakdown:
    """Brokerage and statutory charges for one order, each rounded to paise."""

    brokerage: Decimal = ZERO
    stt: Decimal = ZERO
    transaction_charges: Decimal = ZERO
    gst: Decimal = ZERO
    stamp_duty: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.brokerage + self.stt + self.transaction_charges + self.gst + self.stamp_duty


@dataclass(frozen=True)
class MarginCalculation:
    required_margin: Decimal
    leverage: Decimal
    turnover: Decimal
    segment: str
    product_type: str
    charges: ChargeBreakdown = ChargeBreakdown()

    @property
    def brokerage(self) -> Decimal:
        return self.charges.brokerage

    @property
    def total_charges(self) -> Decimal:
        return self.charges.total

    @property
    def total_required(self) -> Decimal:
        return self.required_margin + self.total_charges


@dataclass(frozen=True)
class MarginValidation:
    is_valid: bool
    available_margin: Decimal
    required_amount: Decimal
    shortfall: Decimal


DEFAULT_MARGIN_POLICIES: Dict[PolicyKey, MarginPolicy] = {
    ("NSE", "MIS"): MarginPolicy(
        leverage=Decimal("200"), brokerage_rate=Decimal("0.0003"), brokerage_cap=Decimal("20")
    ),
    ("NSE", "CNC"): MarginPolicy(
        leverage=Decimal("50"), brokerage_rate=Decimal("0.0003"), brokerage_cap=Decimal("20")
    ),
    ("NFO", "DELIVERY"): MarginPolicy(leverage=Decimal("100"), brokerage_flat=Decimal("20")),
}


def _to_decimal(value: object) -> Decimal | None:
    if value is None:
        return None
    try:
        numeric = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not numeric.is_finite():
        return None
    return numeric


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(PAISE, rounding=ROUND_HALF_UP)


def default_leverage(segment: str, product_type: str) -> Decimal:
    if segment in EQUITY_SEGMENTS:
        if product_type in {"MIS", "INTRADAY"}:
            return Decimal("200")
        if product_type in {"CNC", "DELIVERY"}:
            return Decimal("50")
    if segment in {"NFO", "FNO"}:
        return Decimal("100")
    if segment == "MCX":
        return Decimal("50")
    return Decimal("1")


def default_brokerage(segment: str, turnover: Decimal) -> Decimal:
    if segment in EQUITY_SEGMENTS:
        return min(Decimal("20"), turnover * Decimal("0.0003"))
    return Decimal("20")


def securities_transaction_tax(segment: str, product_type: str, turnover: Decimal) -> Decimal:
    if segment in {"NSE", "NSE_EQ"}:
        if product_type in {"CNC", "DELIVERY"}:
            return turnover * Decimal("0.001")
        if product_type in {"MIS", "INTRADAY"}:
            return turnover * Decimal("0.00025")
    if segment in {"NFO", "FNO"}:
        return turnover * Decimal("0.0001")
    return ZERO


def validate_margin(
    available_margin: object, required_margin: object, total_charges: object = ZERO
) -> MarginValidation:
    """Compare an account's free margin with what an order needs."""

    available = _to_decimal(available_margin) or ZERO
    required_amount = (_to_decimal(required_margin) or ZERO) + (_to_decimal(total_charges) or ZERO)
    return MarginValidation(
        is_valid=available >= required_amount,
        available_margin=available,
        required_amount=required_amount,
        shortfall=max(ZERO, required_amount - available),
    )


class MarginCalculator:
    """Compute required margin and order charges from configured policies.

    The calculator performs no I/O; policies are supplied at construction,
    typically from :func:`load_margin_policies`.
    """

    def __init__(self, policies: Mapping[PolicyKey, MarginPolicy] | None = None) -> None:
        source = DEFAULT_MARGIN_POLICIES if policies is None else policies
        self._policies: Dict[PolicyKey, MarginPolicy] = {
            (segment.upper(), product.upper()): policy for (segment, product), policy in source.items()
        }

    def policy_for(self, segment: str, product_type: str) -> MarginPolicy | None:
        return self._policies.get((segment.upper(), product_type.upper()))

    def calculate_margin(
        self,
        segment: str,
        product_type: str,
        quantity: object,
        price: object,
        lot_size: object = 1,
    ) -> MarginCalculation:
        segment = (segment or "NSE").upper()
        product_type = (product_type or "MIS").upper()
        policy = self.policy_for(segment, product_type)
        leverage = policy.leverage if policy and policy.leverage > 0 else default_leverage(
            segment, product_type
        )

        qty = _to_decimal(quantity)
        px = _to_decimal(price)
        if qty is None or px is None or qty <= 0 or px <= 0:
            return MarginCalculation(
                required_margin=ZERO,
                leverage=leverage,
                turnover=ZERO,
                segment=segment,
                product_type=product_type,
            )

        turnover = qty * px
        lots = _to_decimal(lot_size)
        if segment in DERIVATIVE_SEGMENTS and lots is not None and lots > 0:
            turnover *= lots

        required_margin = _quantize(turnover / leverage)
        charges = self._charges(segment, product_type, policy, turnover)
        LOGGER.debug(
            "Margin computed for %s/%s: turnover=%s leverage=%s margin=%s charges=%s",
            segment,
            product_type,
            turnover,
            leverage,
            required_margin,
            charges.total,
        )
        return MarginCalculation(
            required_margin=required_margin,
            leverage=leverage,
            turnover=turnover,
            segment=segment,
            product_type=product_type,
            charges=charges,
        )

    def _charges(
        self,
        segment: str,
        product_type: str,
        policy: MarginPolicy | None,
        turnover: Decimal,
    ) -> ChargeBreakdown:
        brokerage = self._brokerage(segment, policy, turnover)
        transaction_charges = turnover * TRANSACTION_CHARGE_RATE
        return ChargeBreakdown(
            brokerage=_quantize(brokerage),
            stt=_quantize(securities_transaction_tax(segment, product_type, turnover)),
            transaction_charges=_quantize(transaction_charges),
            gst=_quantize((brokerage + transaction_charges) * GST_RATE),
            stamp_duty=_quantize(turnover * STAMP_DUTY_RATE),
        )

    @staticmethod
    def _brokerage(segment: str, policy: MarginPolicy | None, turnover: Decimal) -> Decimal:
        if policy is not None:
            if policy.brokerage_flat is not None:
                return policy.brokerage_flat
            if policy.brokerage_rate is not None:
                brokerage = turnover * policy.brokerage_rate
                if policy.brokerage_cap is not None:
                    brokerage = min(brokerage, policy.brokerage_cap)
                return brokerage
        return default_brokerage(segment, turnover)


def load_margin_policies(session: Session) -> Dict[PolicyKey, MarginPolicy]:
    """Read active ``risk_config`` rows into a policy mapping."""

    rows = session.execute(select(RiskConfig).where(RiskConfig.active.is_(True))).scalars().all()
    policies: Dict[PolicyKey, MarginPolicy] = {}
    for row in rows:
        leverage = _to_decimal(row.leverage)
        if leverage is None or leverage <= 0:
            LOGGER.warning("Ignoring risk config %s with invalid leverage %r", row.id, row.leverage)
            continue
        policies[(row.segment.upper(), row.product_type.upper())] = MarginPolicy(
            leverage=leverage,
            brokerage_flat=_to_decimal(row.brokerage_flat),
            brokerage_rate=_to_decimal(row.brokerage_rate),
            brokerage_cap=_to_decimal(row.brokerage_cap),
        )
    return policies


__all__ = [
    "DEFAULT_MARGIN_POLICIES",
    "ChargeBreakdown",
    "MarginCalculation",
    "MarginCalculator",
    "MarginPolicy",
    "MarginValidation",
    "default_brokerage",
    "default_leverage",
    "load_margin_policies",
    "securities_transaction_tax",
    "validate_margin",
]
