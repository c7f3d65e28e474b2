"""
Broker Status API Module

FastAPI endpoints for inspecting the quota broker: credential and binding
health, per-model quota, exclusions, an on-demand reconciliation sweep and
Prometheus metrics.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response

from quota_broker import QuotaBroker, ReconciliationSweep
from quota_broker.metrics import CONTENT_TYPE_LATEST, metrics_payload

logger = logging.getLogger(__name__)

# Create router for broker status endpoints
router = APIRouter(prefix="/api/broker", tags=["broker-status"])


def get_broker(request: Request) -> QuotaBroker:
    """Dependency to get the broker from app state."""
    if not hasattr(request.app.state, "broker"):
        raise HTTPException(status_code=500, detail="Quota broker not initialized")
    return request.app.state.broker


def get_sweep(request: Request) -> ReconciliationSweep:
    if not hasattr(request.app.state, "sweep"):
        raise HTTPException(status_code=500, detail="Reconciliation sweep not initialized")
    return request.app.state.sweep


@router.get("/status")
async def get_broker_status(broker: QuotaBroker = Depends(get_broker)) -> Dict[str, Any]:
    """
    Current health snapshot of every credential and binding.

    Returns:
        JSON with timestamp, aggregate counts and per-credential details
    """
    return await broker.get_status()


@router.get("/quota/{model_name:path}")
async def get_model_quota(
    model_name: str,
    tenant_id: Optional[str] = None,
    broker: QuotaBroker = Depends(get_broker),
) -> Dict[str, Any]:
    summary = await broker.get_quota_summary(model_name, tenant_id=tenant_id)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"No active binding for model '{model_name}'")
    return summary


@router.get("/exclusions")
async def get_exclusions(
    include_expired: bool = False,
    broker: QuotaBroker = Depends(get_broker),
) -> List[Dict[str, Any]]:
    return await broker.list_exclusions(active_only=not include_expired)


@router.post("/sweep")
async def run_sweep(sweep: ReconciliationSweep = Depends(get_sweep)) -> Dict[str, Any]:
    """Run one reconciliation pass now and return its report."""
    report = await sweep.run_once()
    return report.to_dict()


metrics_router = APIRouter(tags=["metrics"])


@metrics_router.get("/metrics")
async def get_metrics() -> Response:
    payload = metrics_payload()
    if payload is None:
        raise HTTPException(status_code=404, detail="Metrics are disabled")
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


def create_app(broker: QuotaBroker, run_sweep_in_background: bool = True) -> FastAPI:
    """
    Build the status application around a broker.

    The reconciliation sweep runs in the background for the lifetime of the
    app; the broker's store is closed (flushed) on shutdown.
    """
    sweep = ReconciliationSweep(broker)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage the broker's lifecycle with the app's lifespan."""
        await broker.initialize()
        if run_sweep_in_background:
            sweep.start()
        try:
            yield
        finally:
            await sweep.stop()
            await broker.close()
            logger.info("Quota broker shut down.")

    app = FastAPI(title="Quota Broker Status", lifespan=lifespan)
    app.state.broker = broker
    app.state.sweep = sweep
    app.include_router(router)
    app.include_router(metrics_router)
    return app
