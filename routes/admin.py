# routes/admin.py
from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from app.container import Services
from deps.admin import require_admin
from deps.auth import CurrentUser
from deps.services import get_services
from schemas import InterventionListResponse, InterventionOut, RecoveryResetResponse

logger = logging.getLogger("gigpay.admin")
router = APIRouter(prefix="/v1/admin", tags=["admin"])


@router.get("/interventions", response_model=InterventionListResponse)
def list_interventions(
    include_resolved: bool = Query(default=False),
    admin: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    items = services.store.list_interventions(include_resolved=include_resolved)
    return InterventionListResponse(
        items=[
            InterventionOut(
                id=i.id,
                kind=i.kind,
                reference=i.reference,
                created_at=i.created_at,
                resolved_at=i.resolved_at,
                payload=dict(i.payload or {}),
            )
            for i in items
        ]
    )


@router.post("/interventions/{intervention_id}/resolve")
def resolve_intervention(
    intervention_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    if not services.store.resolve_intervention(intervention_id):
        raise HTTPException(status_code=404, detail="INTERVENTION_NOT_FOUND")
    logger.info("intervention_resolved id=%s admin_id=%s", intervention_id, admin.user_id)
    return {"ok": True, "id": str(intervention_id)}


@router.post("/payouts/{worker_id}/recovery/reset", response_model=RecoveryResetResponse)
def reset_recovery(
    worker_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    removed = services.recovery.reset(worker_id)
    logger.info("recovery_reset worker_id=%s admin_id=%s removed=%s", worker_id, admin.user_id, removed)
    return RecoveryResetResponse(worker_id=worker_id, reset=removed)
