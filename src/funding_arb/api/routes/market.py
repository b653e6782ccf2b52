"""JSON endpoints for funding rates, opportunities and monitor status."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from funding_arb.data.opportunity_store import OpportunityStore
from funding_arb.logging import get_logger
from funding_arb.models import OpportunityStatus
from funding_arb.serialization import to_payload

logger = get_logger(__name__)

router = APIRouter()


def _opportunity_store(request: Request) -> OpportunityStore:
    return request.app.state.opportunity_store


@router.get("/funding-rates")
async def get_funding_rates(request: Request) -> JSONResponse:
    """Latest rates per symbol across venues, best spread first."""
    feed = request.app.state.feed
    return JSONResponse(content={"pairs": to_payload(feed.get_all_pairs())})


@router.get("/funding-rates/{symbol}")
async def get_funding_rate(symbol: str, request: Request) -> JSONResponse:
    pair = request.app.state.feed.get_pair(symbol.upper())
    if pair is None:
        return JSONResponse(content={"error": f"No rates for {symbol}"}, status_code=404)
    return JSONResponse(content=to_payload(pair))


@router.get("/opportunities")
async def list_opportunities(
    request: Request, status: str | None = None, limit: int = 100
) -> JSONResponse:
    parsed = None
    if status is not None:
        try:
            parsed = OpportunityStatus(status.upper())
        except ValueError:
            return JSONResponse(content={"error": f"Unknown status: {status}"}, status_code=400)
    opportunities = await _opportunity_store(request).list_opportunities(parsed, limit)
    return JSONResponse(content={"opportunities": to_payload(opportunities)})


@router.get("/opportunities/history")
async def opportunity_history(
    request: Request, symbol: str | None = None, limit: int = 100
) -> JSONResponse:
    history = await _opportunity_store(request).get_history(symbol, limit)
    return JSONResponse(content={"history": to_payload(history)})


@router.get("/notifications")
async def list_notifications(
    request: Request, symbol: str | None = None, limit: int = 100
) -> JSONResponse:
    entries = await _opportunity_store(request).list_notifications(symbol, limit)
    return JSONResponse(content={"notifications": to_payload(entries)})


@router.get("/validations")
async def list_validations(
    request: Request, exchange: str | None = None, limit: int = 100
) -> JSONResponse:
    rows = await _opportunity_store(request).list_validations(exchange, limit)
    return JSONResponse(content={"validations": to_payload(rows)})


@router.get("/status")
async def get_status(request: Request) -> JSONResponse:
    """Monitor handles, detector counters and connected venues."""
    state = request.app.state
    connectors = state.connectors
    return JSONResponse(
        content={
            "conditional_monitor": to_payload(state.conditional_monitor.status()),
            "exit_monitor": state.exit_monitor.stats,
            "detector": {
                "threshold_apy": str(state.detector.threshold_apy),
                "end_threshold_apy": str(state.detector.end_threshold_apy),
                "snapshots_processed": state.detector.snapshots_processed,
            },
            "notifier": state.notifier.stats,
            "feed": {
                "symbols": state.feed.symbols,
                "published": state.feed.published_count,
            },
            "exchanges": {
                name: connector.is_connected for name, connector in connectors.items()
            },
            "ws_connections": state.hub.connection_count,
        }
    )
