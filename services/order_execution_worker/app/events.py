"""Events emitted once an order execution has been committed."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Protocol

import httpx

from libs.schemas.order_execution import DeliveryTarget, NotificationMessage, NotificationRequest

LOGGER = logging.getLogger("order_execution.events")


@dataclass(slots=True)
class OrderExecutedEvent:
    """Fill of a simulated order, published after the execution transaction commits."""

    order_id: str
    trading_account_id: str
    user_id: str
    symbol: str
    side: str
    quantity: int
    average_price: Decimal
    position_id: str | None
    executed_at: datetime

    def to_notification(self, target: DeliveryTarget) -> NotificationRequest:
        action = "Bought" if self.side == "BUY" else "Sold"
        metadata = {
            "type": "order_executed",
            "user_id": self.user_id,
            "order_id": self.order_id,
            "trading_account_id": self.trading_account_id,
            "symbol": self.symbol,
            "side": self.side,
            "quantity": str(self.quantity),
            "average_price": str(self.average_price),
            "executed_at": self.executed_at.isoformat(),
        }
        if self.position_id is not None:
            metadata["position_id"] = self.position_id
        return NotificationRequest(
            notification=NotificationMessage(
                title=f"Order executed: {self.symbol}",
                message=f"{action} {self.quantity} {self.symbol} at {self.average_price}",
                severity="info",
                metadata=metadata,
            ),
            target=target,
        )


class EventPublisher(Protocol):
    def publish(self, event: OrderExecutedEvent) -> None:
        ...


Subscriber = Callable[[OrderExecutedEvent], None]


class InMemoryEventBus:
    """Synchronous fan-out to in-process subscribers.

    A failing subscriber is logged and does not prevent delivery to the
    others; the execution it reports on has already been committed.
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, event: OrderExecutedEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                LOGGER.exception("Order event subscriber failed for order %s", event.order_id)


class NotificationServiceSink:
    """Forward order events to the notification service's ``POST /notifications``."""

    def __init__(
        self,
        base_url: str,
        *,
        target: DeliveryTarget | None = None,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/notifications"
        self._target = target or DeliveryTarget()
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None

    def __call__(self, event: OrderExecutedEvent) -> None:
        self.publish(event)

    def publish(self, event: OrderExecutedEvent) -> None:
        payload = event.to_notification(self._target).model_dump(mode="json", exclude_none=True)
        try:
            response = self._client.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning("Failed to notify execution of order %s: %s", event.order_id, exc)
            return
        LOGGER.debug("Notification sent for order %s", event.order_id)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


__all__ = [
    "EventPublisher",
    "InMemoryEventBus",
    "NotificationServiceSink",
    "OrderExecutedEvent",
]
