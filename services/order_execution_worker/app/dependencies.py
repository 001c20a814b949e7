"""Wiring of the worker and its collaborators from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from secrets import compare_digest

import redis
from fastapi import Depends, Header, HTTPException
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from libs.db.db import build_engine, build_session_factory
from libs.schemas.order_execution import DeliveryTarget

from .config import Settings, get_settings
from .events import InMemoryEventBus, NotificationServiceSink
from .locks import build_lock
from .margin import MarginCalculator, load_margin_policies
from .quotes import InMemoryQuoteCache
from .registry import WorkerSettingsStore
from .worker import OrderExecutionWorker

LOGGER = logging.getLogger("order_execution.dependencies")


@dataclass
class WorkerRuntime:
    """Objects shared by the HTTP surface and the polling loop."""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    quotes: InMemoryQuoteCache
    events: InMemoryEventBus
    settings_store: WorkerSettingsStore
    worker: OrderExecutionWorker
    notification_sink: NotificationServiceSink | None = None

    def close(self) -> None:
        if self.notification_sink is not None:
            self.notification_sink.close()
        self.engine.dispose()


def _load_margin_calculator(session_factory: sessionmaker[Session]) -> MarginCalculator:
    try:
        with session_factory() as session:
            policies = load_margin_policies(session)
    except SQLAlchemyError:
        LOGGER.warning("Could not load risk config; using default margin policies", exc_info=True)
        return MarginCalculator()
    return MarginCalculator(policies or None)


def build_runtime(
    settings: Settings,
    *,
    engine: Engine | None = None,
    redis_client: redis.Redis | None = None,
) -> WorkerRuntime:
    engine = engine or build_engine(settings.database_url)
    session_factory = build_session_factory(engine)

    quotes = InMemoryQuoteCache(max_age_ms=settings.quote_max_age_ms)
    events = InMemoryEventBus()
    sink = None
    if settings.notification_url:
        sink = NotificationServiceSink(
            settings.notification_url,
            target=DeliveryTarget(
                channel=settings.notification_channel,
                webhook_url=settings.notification_webhook_url or None,
                email_to=settings.notification_email_to or None,
            ),
            timeout=settings.notification_timeout,
        )
        events.subscribe(sink)

    settings_store = WorkerSettingsStore(
        session_factory,
        cache_ttl_seconds=settings.enabled_cache_ttl_seconds,
        config={
            "batch_limit_default": settings.batch_limit,
            "cron_limit_default": settings.cron_limit,
            "interval_ms": settings.interval_ms,
            "cron_endpoint": "/cron/order-worker",
            "lock_backend": settings.lock_backend,
        },
    )
    worker = OrderExecutionWorker(
        session_factory,
        build_lock(settings, engine, redis_client=redis_client),
        quotes=quotes,
        publisher=events,
        settings_store=settings_store,
        margin_calculator=_load_margin_calculator(session_factory),
        max_attempts=settings.execution_max_attempts,
        backoff_seconds=settings.retry_backoff_ms / 1000,
    )
    return WorkerRuntime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        quotes=quotes,
        events=events,
        settings_store=settings_store,
        worker=worker,
        notification_sink=sink,
    )


@lru_cache()
def _runtime() -> WorkerRuntime:
    return build_runtime(get_settings())


def get_runtime() -> WorkerRuntime:
    return _runtime()


def get_worker(runtime: WorkerRuntime = Depends(get_runtime)) -> OrderExecutionWorker:
    return runtime.worker


def get_settings_store(runtime: WorkerRuntime = Depends(get_runtime)) -> WorkerSettingsStore:
    return runtime.settings_store


def get_quote_cache(runtime: WorkerRuntime = Depends(get_runtime)) -> InMemoryQuoteCache:
    return runtime.quotes


def require_service_secret(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.cron_secret:
        LOGGER.warning("No cron secret configured; accepting unauthenticated request")
        return
    expected = f"Bearer {settings.cron_secret}"
    if authorization is None or not compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


__all__ = [
    "WorkerRuntime",
    "build_runtime",
    "get_quote_cache",
    "get_runtime",
    "get_settings_store",
    "get_worker",
    "require_service_secret",
]
