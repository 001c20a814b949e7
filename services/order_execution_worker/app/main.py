"""FastAPI application exposing the order execution worker."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from libs.observability.logging import RequestContextMiddleware, configure_logging
from libs.schemas.order_execution import (
    CronRunResponse,
    OrderExecutionResponse,
    QuoteIngestRequest,
    QuoteIngestResponse,
    QuoteTick,
    WorkerSnapshot,
    WorkerToggleRequest,
)

from .config import Settings, get_settings
from .dependencies import (
    get_quote_cache,
    get_settings_store,
    get_worker,
    require_service_secret,
)
from .quotes import InMemoryQuoteCache
from .registry import WorkerSettingsStore
from .worker import OrderExecutionWorker

LOGGER = logging.getLogger("order_execution.api")

configure_logging("order-execution-worker", get_settings().log_level)

app = FastAPI(title="Order Execution Worker", version="0.1.0")
app.add_middleware(RequestContextMiddleware, service_name="order-execution-worker")


@app.get("/health")
def healthcheck() -> dict[str, str]:
    """Simple health endpoint."""

    return {"status": "ok"}


@app.api_route(
    "/cron/order-worker",
    methods=["GET", "POST"],
    response_model=CronRunResponse,
    dependencies=[Depends(require_service_secret)],
)
def run_order_worker(
    limit: int | None = Query(default=None),
    max_age_ms: int = Query(default=0, alias="maxAgeMs"),
    worker: OrderExecutionWorker = Depends(get_worker),
    settings: Settings = Depends(get_settings),
):
    """Process one batch of pending orders for an external scheduler."""

    try:
        result = worker.process_pending_orders(
            limit=limit if limit is not None else settings.cron_limit,
            max_age_ms=max(0, max_age_ms),
        )
    except Exception as exc:
        LOGGER.exception("Cron order worker run failed")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": str(exc) or "Failed to run order worker",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
    return CronRunResponse(success=True, timestamp=datetime.now(timezone.utc), result=result)


@app.post("/orders/{order_id}/execute", response_model=OrderExecutionResponse)
def execute_order(
    order_id: str,
    worker: OrderExecutionWorker = Depends(get_worker),
) -> OrderExecutionResponse:
    """Fast-path execution right after an order has been placed."""

    outcome = worker.process_order_by_id(order_id)
    return OrderExecutionResponse(order_id=order_id, outcome=outcome)


@app.post(
    "/quotes",
    response_model=QuoteIngestResponse,
    status_code=202,
    dependencies=[Depends(require_service_secret)],
)
def ingest_quotes(
    payload: QuoteIngestRequest,
    quotes: InMemoryQuoteCache = Depends(get_quote_cache),
) -> QuoteIngestResponse:
    """Feed last traded prices used to fill market orders."""

    accepted = 0
    for tick in payload.quotes:
        quote = quotes.update(tick.instrument_token, tick.last_trade_price, tick.previous_close)
        if quote is not None:
            accepted += 1
    ignored = len(payload.quotes) - accepted
    if ignored:
        LOGGER.debug("Ignored %d quotes without a usable price or token", ignored)
    return QuoteIngestResponse(accepted=accepted, ignored=ignored)


@app.get("/quotes/{instrument_token}", response_model=QuoteTick)
def get_quote(
    instrument_token: int,
    quotes: InMemoryQuoteCache = Depends(get_quote_cache),
) -> QuoteTick:
    quote = quotes.get_quote(instrument_token)
    if quote is None:
        raise HTTPException(status_code=404, detail="Quote not found")
    return QuoteTick(
        instrument_token=quote.instrument_token,
        last_trade_price=quote.last_trade_price,
        previous_close=quote.previous_close,
    )


@app.get("/workers/order-execution", response_model=WorkerSnapshot)
def get_worker_status(
    store: WorkerSettingsStore = Depends(get_settings_store),
    settings: Settings = Depends(get_settings),
) -> WorkerSnapshot:
    return store.snapshot(ttl_ms=settings.heartbeat_ttl_ms)


@app.put("/workers/order-execution", response_model=WorkerSnapshot)
def toggle_worker(
    payload: WorkerToggleRequest,
    store: WorkerSettingsStore = Depends(get_settings_store),
    settings: Settings = Depends(get_settings),
) -> WorkerSnapshot:
    try:
        store.set_order_worker_enabled(payload.enabled)
    except Exception as exc:
        LOGGER.exception("Failed to toggle the order execution worker")
        raise HTTPException(status_code=503, detail="Worker settings unavailable") from exc
    return store.snapshot(ttl_ms=settings.heartbeat_ttl_ms)


__all__ = ["app"]
