"""Kill switch, heartbeat and status snapshot of the order execution worker.

Global settings live in ``system_settings`` rows with a null ``owner_id``.
Nothing prevents several active global rows for the same key, so reads always
pick the most recently updated one and writes soft-disable the others.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from infra.trading_models import SystemSetting
from libs.schemas.order_execution import WorkerHealth, WorkerHeartbeat, WorkerSnapshot

from .quotes import TTLCache

LOGGER = logging.getLogger("order_execution.registry")

ORDER_WORKER_ENABLED_KEY = "worker_order_execution_enabled"
ORDER_WORKER_HEARTBEAT_KEY = "order_worker_heartbeat"
WORKER_ID = "order_execution"

DEFAULT_HEALTH_TTL_MS = 120_000


def parse_boolean_setting(value: str | None) -> bool | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized == "true":
        return True
    if normalized == "false":
        return False
    return None


def parse_heartbeat(value: str | None) -> WorkerHeartbeat | None:
    """Decode a stored heartbeat, accepting JSON or a bare ISO timestamp."""

    if not value:
        return None
    try:
        return WorkerHeartbeat.model_validate_json(value)
    except ValidationError:
        pass
    try:
        last_run_at = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return WorkerHeartbeat(last_run_at=last_run_at)


def compute_health(
    *, enabled: bool, last_run_at: datetime | None, ttl_ms: int, now: datetime
) -> WorkerHealth:
    if not enabled:
        return "disabled"
    if last_run_at is None:
        return "unknown"
    if last_run_at.tzinfo is None:
        last_run_at = last_run_at.replace(tzinfo=timezone.utc)
    age_ms = (now - last_run_at).total_seconds() * 1000
    return "healthy" if age_ms < ttl_ms else "stale"


class WorkerSettingsStore:
    """Read and write the worker's operational settings."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        cache_ttl_seconds: float = 5.0,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] | None = None,
        config: Dict[str, Any] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._enabled_cache: TTLCache[bool] = TTLCache(cache_ttl_seconds, clock=monotonic)
        self._config = dict(config or {})

    def is_order_worker_enabled(self) -> bool:
        cached = self._enabled_cache.get()
        if cached is not None:
            return cached
        try:
            with self._session_factory() as session:
                value = self._latest_value(session, ORDER_WORKER_ENABLED_KEY)
        except SQLAlchemyError:
            LOGGER.warning("Failed to read the order worker flag; assuming enabled", exc_info=True)
            return True
        enabled = parse_boolean_setting(value)
        resolved = True if enabled is None else enabled
        self._enabled_cache.set(resolved)
        return resolved

    def set_order_worker_enabled(self, enabled: bool) -> None:
        self._upsert(
            ORDER_WORKER_ENABLED_KEY,
            "true" if enabled else "false",
            category="SYSTEM",
            description=f"Enable/disable {WORKER_ID} worker",
        )
        self._enabled_cache.invalidate()
        LOGGER.info("Order execution worker %s", "enabled" if enabled else "disabled")

    def write_heartbeat(self, heartbeat: WorkerHeartbeat) -> None:
        self._upsert(
            ORDER_WORKER_HEARTBEAT_KEY,
            heartbeat.model_dump_json(),
            category="TRADING",
            description="Heartbeat for Order Execution Worker.",
        )

    def read_heartbeat(self) -> WorkerHeartbeat | None:
        with self._session_factory() as session:
            return parse_heartbeat(self._latest_value(session, ORDER_WORKER_HEARTBEAT_KEY))

    def snapshot(self, ttl_ms: int = DEFAULT_HEALTH_TTL_MS) -> WorkerSnapshot:
        with self._session_factory() as session:
            flag = parse_boolean_setting(self._latest_value(session, ORDER_WORKER_ENABLED_KEY))
            heartbeat = parse_heartbeat(self._latest_value(session, ORDER_WORKER_HEARTBEAT_KEY))
        enabled = True if flag is None else flag
        last_run_at = heartbeat.last_run_at if heartbeat else None
        return WorkerSnapshot(
            id=WORKER_ID,
            label="Order Execution Worker",
            description="Executes PENDING orders asynchronously and updates positions/account.",
            enabled=enabled,
            enabled_source="default_enabled" if flag is None else "setting",
            health=compute_health(
                enabled=enabled, last_run_at=last_run_at, ttl_ms=ttl_ms, now=self._clock()
            ),
            health_ttl_ms=ttl_ms,
            last_run_at=last_run_at,
            heartbeat=heartbeat,
            config=dict(self._config),
        )

    @staticmethod
    def _latest_value(session: Session, key: str) -> str | None:
        stmt = (
            select(SystemSetting.value)
            .where(
                SystemSetting.key == key,
                SystemSetting.owner_id.is_(None),
                SystemSetting.is_active.is_(True),
            )
            .order_by(SystemSetting.updated_at.desc())
            .limit(1)
        )
        return session.execute(stmt).scalars().first()

    def _upsert(self, key: str, value: str, *, category: str, description: str) -> None:
        now = self._clock()
        with self._session_factory() as session, session.begin():
            existing = (
                session.execute(
                    select(SystemSetting)
                    .where(SystemSetting.key == key, SystemSetting.owner_id.is_(None))
                    .order_by(SystemSetting.updated_at.desc())
                    .limit(1)
                )
                .scalars()
                .first()
            )
            if existing is None:
                session.add(
                    SystemSetting(
                        key=key,
                        value=value,
                        category=category,
                        description=description,
                        is_active=True,
                        updated_at=now,
                    )
                )
                return
            existing.value = value
            existing.category = category
            existing.description = description
            existing.is_active = True
            existing.updated_at = now
            session.execute(
                update(SystemSetting)
                .where(
                    SystemSetting.key == key,
                    SystemSetting.owner_id.is_(None),
                    SystemSetting.id != existing.id,
                )
                .values(is_active=False, updated_at=now)
                .execution_options(synchronize_session=False)
            )


__all__ = [
    "ORDER_WORKER_ENABLED_KEY",
    "ORDER_WORKER_HEARTBEAT_KEY",
    "WorkerSettingsStore",
    "compute_health",
    "parse_boolean_setting",
    "parse_heartbeat",
]
