"""JSON endpoints for the position lifecycle: open, close, batch close, reconcile."""

from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from funding_arb.exceptions import (
    ArbitrageError,
    InvalidPositionStatusError,
    PositionCloseError,
    PositionLockedError,
    PositionNotFoundError,
    ValidationError,
)
from funding_arb.logging import get_logger
from funding_arb.models import CloseOutcome, OpenPositionRequest, PositionStatus
from funding_arb.position.lifecycle import PositionLifecycleManager
from funding_arb.serialization import to_payload

logger = get_logger(__name__)

router = APIRouter()

DEFAULT_USER = "default"


class OpenPositionBody(BaseModel):
    """Request body for opening one or more split positions."""

    symbol: str
    long_exchange: str
    short_exchange: str
    quantity: Decimal = Field(gt=0)
    leverage: int | None = Field(default=None, ge=1)
    split_count: int = Field(default=1, ge=1)
    stop_loss_percent: Decimal | None = Field(default=None, gt=0)
    take_profit_percent: Decimal | None = Field(default=None, gt=0)


def _lifecycle(request: Request) -> PositionLifecycleManager:
    return request.app.state.lifecycle


def error_response(exc: ArbitrageError) -> JSONResponse:
    """Map an engine error to an HTTP status and JSON error body."""
    if isinstance(exc, PositionNotFoundError):
        return JSONResponse(content={"error": str(exc)}, status_code=404)
    if isinstance(exc, (InvalidPositionStatusError, PositionLockedError)):
        return JSONResponse(content={"error": str(exc)}, status_code=409)
    if isinstance(exc, ValidationError):
        return JSONResponse(content={"error": str(exc)}, status_code=400)
    if isinstance(exc, PositionCloseError):
        return JSONResponse(
            content={"error": str(exc), "retryable": exc.retryable}, status_code=502
        )
    return JSONResponse(content={"error": str(exc)}, status_code=502)


@router.post("/positions")
async def open_positions(
    body: OpenPositionBody, request: Request, x_user_id: str = Header(DEFAULT_USER)
) -> JSONResponse:
    """Open a position, or split_count positions linked by a group id."""
    open_request = OpenPositionRequest(user_id=x_user_id, **body.model_dump())
    try:
        positions = await _lifecycle(request).open_positions(open_request)
    except ArbitrageError as exc:
        log_fn = logger.warning if isinstance(exc, ValidationError) else logger.error
        log_fn("open_positions_rejected", error=str(exc))
        return error_response(exc)
    status_code = 201 if any(p.status == PositionStatus.OPEN for p in positions) else 207
    return JSONResponse(content={"positions": to_payload(positions)}, status_code=status_code)


@router.get("/positions")
async def list_positions(request: Request, x_user_id: str = Header(DEFAULT_USER)) -> JSONResponse:
    positions = await _lifecycle(request).list_positions(x_user_id)
    return JSONResponse(content={"positions": to_payload(positions)})


@router.get("/positions/groups")
async def list_groups(request: Request, x_user_id: str = Header(DEFAULT_USER)) -> JSONResponse:
    groups = await _lifecycle(request).get_groups(x_user_id)
    return JSONResponse(
        content={
            "groups": [
                {**to_payload(group), "position_count": group.position_count}
                for group in groups
            ]
        }
    )


@router.get("/positions/{position_id}")
async def get_position(
    position_id: str, request: Request, x_user_id: str = Header(DEFAULT_USER)
) -> JSONResponse:
    try:
        position = await _lifecycle(request).get_position(position_id, x_user_id)
    except ArbitrageError as exc:
        return error_response(exc)
    return JSONResponse(content=to_payload(position))


@router.get("/positions/{position_id}/close-estimate")
async def close_estimate(
    position_id: str, request: Request, x_user_id: str = Header(DEFAULT_USER)
) -> JSONResponse:
    """Worst-case preview shown before the user confirms a close."""
    try:
        estimate = await _lifecycle(request).estimate_close(position_id, x_user_id)
    except ArbitrageError as exc:
        return error_response(exc)
    return JSONResponse(content=to_payload(estimate))


@router.post("/positions/{position_id}/close")
async def close_position(
    position_id: str, request: Request, x_user_id: str = Header(DEFAULT_USER)
) -> JSONResponse:
    """Close both legs. A partial close answers 207 with the failed side."""
    try:
        result = await _lifecycle(request).close_position(position_id, x_user_id)
    except ArbitrageError as exc:
        logger.warning("close_position_rejected", position_id=position_id, error=str(exc))
        return error_response(exc)
    status_code = 200 if result.outcome == CloseOutcome.SUCCESS else 207
    return JSONResponse(content=to_payload(result), status_code=status_code)


@router.post("/positions/{position_id}/mark-closed")
async def mark_closed(
    position_id: str, request: Request, x_user_id: str = Header(DEFAULT_USER)
) -> JSONResponse:
    try:
        position = await _lifecycle(request).mark_closed(position_id, x_user_id)
    except ArbitrageError as exc:
        return error_response(exc)
    return JSONResponse(content={"position_id": position.id, "status": position.status.value})


@router.post("/groups/{group_id}/close")
async def batch_close(
    group_id: str, request: Request, x_user_id: str = Header(DEFAULT_USER)
) -> JSONResponse:
    """Close every OPEN member of a group. Progress streams over the group room."""
    try:
        result = await _lifecycle(request).batch_close(group_id, x_user_id)
    except ArbitrageError as exc:
        return error_response(exc)
    return JSONResponse(content=to_payload(result))


@router.post("/groups/{group_id}/mark-closed")
async def mark_group_closed(
    group_id: str, request: Request, x_user_id: str = Header(DEFAULT_USER)
) -> JSONResponse:
    try:
        positions = await _lifecycle(request).mark_group_closed(group_id, x_user_id)
    except ArbitrageError as exc:
        return error_response(exc)
    return JSONResponse(
        content={
            "group_id": group_id,
            "positions": [{"position_id": p.id, "status": p.status.value} for p in positions],
        }
    )


@router.get("/trades")
async def list_trades(
    request: Request, limit: int = 100, x_user_id: str = Header(DEFAULT_USER)
) -> JSONResponse:
    trades = await _lifecycle(request).store.list_trades(user_id=x_user_id, limit=limit)
    return JSONResponse(content={"trades": to_payload(trades)})
