"""Per-order mutual exclusion scoped to a database transaction.

A lock acquired through :class:`DistributedLock` is held until the root
transaction of the session that acquired it ends, whether by commit or
rollback. A crashed worker therefore never leaves an order locked: PostgreSQL
drops transaction-level advisory locks with the connection, and the redis
variant expires its key after ``ttl_ms``.
"""

from __future__ import annotations

import logging
import threading
import zlib
from typing import Callable, List, Protocol, Set, runtime_checkable
from uuid import uuid4

import redis
from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, SessionTransaction

from .config import Settings

LOGGER = logging.getLogger("order_execution.locks")

ORDER_EXECUTION_LOCK_NAMESPACE = 910_001

_RELEASES_KEY = "order_execution.lock_releases"

_REDIS_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def advisory_lock_key(order_id: str, namespace: int = ORDER_EXECUTION_LOCK_NAMESPACE) -> int:
    """Derive a signed 64-bit lock key from ``namespace`` and ``order_id``."""

    digest = zlib.crc32(order_id.encode("utf-8")) & 0xFFFFFFFF
    key = ((namespace & 0xFFFFFFFF) << 32) | digest
    if key >= 1 << 63:
        key -= 1 << 64
    return key


@runtime_checkable
class DistributedLock(Protocol):
    """Try-lock held for the remainder of the session's current transaction."""

    def try_acquire(self, session: Session, order_id: str) -> bool:
        ...


def _require_transaction(session: Session) -> None:
    if not session.in_transaction():
        raise RuntimeError("Order locks must be acquired inside an open transaction")


def _release_on_transaction_end(session: Session, release: Callable[[], None]) -> None:
    releases: List[Callable[[], None]] | None = session.info.get(_RELEASES_KEY)
    if releases is None:
        releases = []
        session.info[_RELEASES_KEY] = releases
        event.listen(session, "after_transaction_end", _run_releases)
    releases.append(release)


def _run_releases(session: Session, transaction: SessionTransaction) -> None:
    if transaction.parent is not None:
        return
    releases: List[Callable[[], None]] = session.info.get(_RELEASES_KEY) or []
    while releases:
        release = releases.pop()
        try:
            release()
        except Exception:  # pragma: no cover - backend outage
            LOGGER.exception("Failed to release order lock")


class PostgresAdvisoryLock:
    """``pg_try_advisory_xact_lock`` keyed by :func:`advisory_lock_key`."""

    def __init__(self, namespace: int = ORDER_EXECUTION_LOCK_NAMESPACE) -> None:
        self._namespace = namespace

    def try_acquire(self, session: Session, order_id: str) -> bool:
        _require_transaction(session)
        key = advisory_lock_key(order_id, self._namespace)
        locked = session.execute(
            text("SELECT pg_try_advisory_xact_lock(:key) AS locked"), {"key": key}
        ).scalar()
        return locked is True


class RedisOrderLock:
    """``SET NX PX`` lock released with compare-and-delete at transaction end."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        ttl_ms: int = 30_000,
        prefix: str = "order-execution:lock:",
    ) -> None:
        self._client = client
        self._ttl_ms = ttl_ms
        self._prefix = prefix

    def try_acquire(self, session: Session, order_id: str) -> bool:
        _require_transaction(session)
        key = f"{self._prefix}{order_id}"
        token = uuid4().hex
        if not self._client.set(key, token, nx=True, px=self._ttl_ms):
            return False
        _release_on_transaction_end(session, lambda: self._release(key, token))
        return True

    def _release(self, key: str, token: str) -> None:
        self._client.eval(_REDIS_RELEASE_SCRIPT, 1, key, token)


class LocalAdvisoryLock:
    """In-process lock table for single-process deployments and SQLite."""

    def __init__(self, namespace: int = ORDER_EXECUTION_LOCK_NAMESPACE) -> None:
        self._namespace = namespace
        self._held: Set[int] = set()
        self._mutex = threading.Lock()

    def try_acquire(self, session: Session, order_id: str) -> bool:
        _require_transaction(session)
        key = advisory_lock_key(order_id, self._namespace)
        with self._mutex:
            if key in self._held:
                return False
            self._held.add(key)
        _release_on_transaction_end(session, lambda: self._release(key))
        return True

    def is_held(self, order_id: str) -> bool:
        with self._mutex:
            return advisory_lock_key(order_id, self._namespace) in self._held

    def _release(self, key: int) -> None:
        with self._mutex:
            self._held.discard(key)


def build_lock(
    settings: Settings,
    engine: Engine,
    *,
    redis_client: redis.Redis | None = None,
) -> DistributedLock:
    backend = settings.lock_backend
    if backend == "auto":
        backend = "postgres" if engine.dialect.name == "postgresql" else "local"
    if backend == "postgres":
        return PostgresAdvisoryLock()
    if backend == "redis":
        client = redis_client or redis.Redis.from_url(settings.redis_url)
        return RedisOrderLock(client, ttl_ms=settings.lock_ttl_ms)
    if engine.dialect.name == "postgresql":
        LOGGER.warning("Local order lock does not coordinate across worker processes")
    return LocalAdvisoryLock()


__all__ = [
    "DistributedLock",
    "LocalAdvisoryLock",
    "ORDER_EXECUTION_LOCK_NAMESPACE",
    "PostgresAdvisoryLock",
    "RedisOrderLock",
    "advisory_lock_key",
    "build_lock",
]
