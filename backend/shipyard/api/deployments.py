from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from shipyard.db.session import get_db_session
from shipyard.services.deploy_event_log import list_deployment_events
from shipyard.services.release_registry import get_deployment, list_deployments

router = APIRouter(prefix="/api/deployments", tags=["deployments"])


class DeploymentEventResponse(BaseModel):
    id: int
    event_type: str
    status_from: str | None
    status_to: str | None
    payload: dict[str, Any] | None
    created_at: datetime


class DeploymentResponse(BaseModel):
    id: str
    mode: str
    revision: str
    migration_policy: str
    status: str
    release_id: str | None
    previous_release_id: str | None
    live_release_id: str | None
    switched: bool
    failure_reason: str | None
    detail: str | None
    trace_id: str | None
    started_at: datetime
    ended_at: datetime | None


class DeploymentDetailResponse(DeploymentResponse):
    events: list[DeploymentEventResponse]


def _deployment_fields(item) -> dict[str, Any]:
    return {
        "id": item.id,
        "mode": item.mode,
        "revision": item.revision,
        "migration_policy": item.migration_policy,
        "status": item.status,
        "release_id": item.release_id,
        "previous_release_id": item.previous_release_id,
        "live_release_id": item.live_release_id,
        "switched": item.switched,
        "failure_reason": item.failure_reason,
        "detail": item.detail,
        "trace_id": item.trace_id,
        "started_at": item.started_at,
        "ended_at": item.ended_at,
    }


@router.get("", response_model=list[DeploymentResponse])
def get_deployments(
    limit: int = Query(default=50, ge=1, le=500),
    status: str | None = Query(default=None),
    db: Session = Depends(get_db_session),
) -> list[DeploymentResponse]:
    records = list_deployments(db=db, limit=limit, status=status)
    return [DeploymentResponse(**_deployment_fields(item)) for item in records]


@router.get("/{deployment_id}", response_model=DeploymentDetailResponse)
def get_deployment_detail(deployment_id: str, db: Session = Depends(get_db_session)) -> DeploymentDetailResponse:
    record = get_deployment(db=db, deployment_id=deployment_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Deployment not found")
    events = [
        DeploymentEventResponse(
            id=event.id,
            event_type=event.event_type,
            status_from=event.status_from,
            status_to=event.status_to,
            payload=event.payload,
            created_at=event.created_at,
        )
        for event in list_deployment_events(db, deployment_id=deployment_id)
    ]
    return DeploymentDetailResponse(**_deployment_fields(record), events=events)
