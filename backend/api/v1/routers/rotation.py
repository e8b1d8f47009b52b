"""
Rotation Cron Ingress — external scheduler trigger for the rotation sweep.

Authorized by the shared cron secret (Bearer). The hosting platform's cron
header is accepted only when no secret is configured. No body; the response
is the per-test sweep summary.

Endpoints:
  GET  /api/v1/rotation/cron
  POST /api/v1/rotation/cron
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from api.deps import get_adapter_factory, get_session_factory
from core.security import is_authorized_cron_request
from experiments.rotation import AdapterFactory
from workers.rotation import run_due_rotations

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/rotation", tags=["rotation"])


@router.api_route("/cron", methods=["GET", "POST"])
async def rotation_cron(
    request: Request,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> dict[str, Any]:
    if not is_authorized_cron_request(request.headers):
        logger.warning("rotation.cron_unauthorized", client=request.client.host if request.client else None)
        raise HTTPException(status_code=401, detail="Unauthorized")

    summary = await run_due_rotations(session_factory, adapter_factory)
    summary["success"] = summary["failed"] == 0
    return summary
