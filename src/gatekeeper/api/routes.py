"""API routes: usage reporting and admin operations."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from gatekeeper.admission import AdmissionController
from gatekeeper.api.dependencies import get_controller, require_admin
from gatekeeper.errors import InvalidIdentity, StoreUnavailable
from gatekeeper.quota.gate import Severity
from gatekeeper.retention import WindowPruner
from gatekeeper.security import client_identity

logger = logging.getLogger(__name__)
router = APIRouter()
admin_router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


# --- Request/Response Models ---


class SignalRequest(BaseModel):
    """Suspicious activity signal reported by another service."""

    identifier: str = Field(..., description="User id or network address")
    severity: Severity = Field(..., description="low, medium or high")


class SignalResponse(BaseModel):
    identifier: str
    consecutive_violations: int
    blocked_until: str | None = None


def _unavailable(e: StoreUnavailable) -> HTTPException:
    logger.error(f"Store unavailable: {e}")
    return HTTPException(status_code=503, detail="Service temporarily unavailable, please try again")


# --- Caller routes ---


@router.get("/usage")
async def get_usage(
    request: Request,
    identity: str | None = Query(None, description="Identity to report (admin only, defaults to caller)"),
    controller: AdmissionController = Depends(get_controller),
) -> dict[str, Any]:
    """Daily quota usage of the caller, or of any identity for admins."""
    caller, _ = client_identity(request)
    if identity is None:
        identity = caller
    elif identity != caller:
        require_admin(request)
    try:
        stats = await controller.usage(identity)
    except InvalidIdentity as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except StoreUnavailable as e:
        raise _unavailable(e) from e

    if stats is None:
        raise HTTPException(status_code=404, detail="No usage recorded for this identity")
    return stats


@router.get("/admission")
async def preview_admission(
    request: Request,
    response: Response,
    endpoint: str = Query("default", description="Endpoint to evaluate"),
    controller: AdmissionController = Depends(get_controller),
) -> dict[str, Any]:
    """Evaluate admission for the caller without recording anything."""
    identity, kind = client_identity(request)
    try:
        result = await controller.evaluate_admission(identity, kind, endpoint)
    except InvalidIdentity as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except StoreUnavailable as e:
        raise _unavailable(e) from e

    response.headers.update(result.headers())
    return result.to_dict()


# --- Admin routes ---


@admin_router.get("/windows")
async def list_windows(
    identifier: str | None = Query(None, description="Restrict to one identifier"),
    blocked_only: bool = Query(False, description="Only blocked windows"),
    limit: int = Query(100, ge=1, le=1000),
    controller: AdmissionController = Depends(get_controller),
) -> dict[str, Any]:
    """Recent window records, newest first."""
    try:
        records = await controller.list_windows(identifier, blocked_only=blocked_only, limit=limit)
    except StoreUnavailable as e:
        raise _unavailable(e) from e
    return {"count": len(records), "windows": [r.to_dict() for r in records]}


@admin_router.get("/blocks/{identifier}")
async def get_block_status(
    identifier: str,
    endpoint: str | None = Query(None, description="Endpoint state to include"),
    controller: AdmissionController = Depends(get_controller),
) -> dict[str, Any]:
    """Escalation state of an identifier."""
    try:
        return await controller.block_status(identifier, endpoint)
    except InvalidIdentity as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except StoreUnavailable as e:
        raise _unavailable(e) from e


@admin_router.post("/signals", response_model=SignalResponse)
async def report_signal(
    signal: SignalRequest,
    controller: AdmissionController = Depends(get_controller),
) -> SignalResponse:
    """Feed a suspicious activity signal into the gate."""
    try:
        state = await controller.report_suspicious_signal(signal.identifier, signal.severity)
    except InvalidIdentity as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    if state is None:
        raise HTTPException(status_code=503, detail="Service temporarily unavailable, please try again")

    return SignalResponse(
        identifier=state.identifier,
        consecutive_violations=state.consecutive_violations,
        blocked_until=state.blocked_until.isoformat() if state.blocked_until else None,
    )


@admin_router.post("/prune")
async def prune_windows(request: Request) -> dict[str, Any]:
    """Delete window records and quiet block states past the retention period now."""
    cfg = request.app.state.settings
    pruner = WindowPruner(request.app.state.store, request.app.state.clock, cfg.window_retention_days)
    result = await pruner.prune()
    return {
        "deleted": result.windows,
        "blocks_deleted": result.blocks,
        "retention_days": pruner.retention_days,
    }


router.include_router(admin_router)
