"""Last-traded-price lookups used to price market orders."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Generic, Protocol, Tuple, TypeVar

Clock = Callable[[], float]

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Quote:
    instrument_token: int
    last_trade_price: Decimal
    previous_close: Decimal | None = None
    received_at: float = 0.0


class QuoteOracle(Protocol):
    """Source of the latest traded price for an instrument token."""

    def get_quote(self, instrument_token: int) -> Quote | None:
        ...


def _positive_decimal(value: object) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not number.is_finite() or number <= 0:
        return None
    return number


class InMemoryQuoteCache:
    """Quote oracle fed by a market data consumer living in the same process.

    Updates with a non-positive price or token are ignored. When ``max_age_ms``
    is positive, quotes older than that are reported as missing.
    """

    def __init__(self, *, max_age_ms: int = 0, clock: Clock | None = None) -> None:
        self._max_age_ms = max_age_ms
        self._clock = clock or time.monotonic
        self._quotes: Dict[int, Quote] = {}
        self._lock = threading.Lock()

    def update(
        self,
        instrument_token: int,
        last_trade_price: object,
        previous_close: object = None,
    ) -> Quote | None:
        if instrument_token is None or instrument_token <= 0:
            return None
        price = _positive_decimal(last_trade_price)
        if price is None:
            return None
        quote = Quote(
            instrument_token=instrument_token,
            last_trade_price=price,
            previous_close=_positive_decimal(previous_close),
            received_at=self._clock(),
        )
        with self._lock:
            self._quotes[instrument_token] = quote
        return quote

    def get_quote(self, instrument_token: int) -> Quote | None:
        with self._lock:
            quote = self._quotes.get(instrument_token)
        if quote is None:
            return None
        if self._max_age_ms > 0:
            age_ms = (self._clock() - quote.received_at) * 1000
            if age_ms > self._max_age_ms:
                return None
        return quote

    def clear(self) -> None:
        with self._lock:
            self._quotes.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._quotes)


class NullQuoteOracle:
    """Oracle used when no market data feed is wired in."""

    def get_quote(self, instrument_token: int) -> Quote | None:
        return None


class TTLCache(Generic[T]):
    """Single-value cache expiring ``ttl_seconds`` after it was stored."""

    def __init__(self, ttl_seconds: float, *, clock: Clock | None = None) -> None:
        self._ttl = ttl_seconds
        self._clock = clock or time.monotonic
        self._entry: Tuple[float, T] | None = None
        self._lock = threading.Lock()

    def get(self) -> T | None:
        with self._lock:
            if self._entry is None:
                return None
            stored_at, value = self._entry
            if self._clock() - stored_at >= self._ttl:
                self._entry = None
                return None
            return value

    def set(self, value: T) -> None:
        with self._lock:
            self._entry = (self._clock(), value)

    def invalidate(self) -> None:
        with self._lock:
            self._entry = None


__all__ = ["InMemoryQuoteCache", "NullQuoteOracle", "Quote", "QuoteOracle", "TTLCache"]
