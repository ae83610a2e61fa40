from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from shipyard.core.layout import AppLayout, get_app_layout
from shipyard.db.session import get_db_session
from shipyard.services import switch_controller
from shipyard.services.release_registry import get_release_by_id, list_releases

router = APIRouter(prefix="/api/releases", tags=["releases"])


class ReleaseResponse(BaseModel):
    id: int
    release_id: str
    mode: str
    path: str
    revision: str
    commit_sha: str | None
    migration_marker: str | None
    status: str
    failure_reason: str | None
    created_at: datetime
    live_at: datetime | None
    retired_at: datetime | None
    pruned_at: datetime | None


class CurrentReleaseResponse(BaseModel):
    current_target: str | None
    release_id: str | None
    release: ReleaseResponse | None


def _to_release_response(item) -> ReleaseResponse:
    return ReleaseResponse(
        id=item.id,
        release_id=item.release_id,
        mode=item.mode,
        path=item.path,
        revision=item.revision,
        commit_sha=item.commit_sha,
        migration_marker=item.migration_marker,
        status=item.status,
        failure_reason=item.failure_reason,
        created_at=item.created_at,
        live_at=item.live_at,
        retired_at=item.retired_at,
        pruned_at=item.pruned_at,
    )


@router.get("", response_model=list[ReleaseResponse])
def get_releases(
    limit: int = Query(default=100, ge=1, le=500),
    status: str | None = Query(default=None),
    include_pruned: bool = Query(default=False),
    db: Session = Depends(get_db_session),
) -> list[ReleaseResponse]:
    records = list_releases(db=db, limit=limit, status=status, include_pruned=include_pruned)
    return [_to_release_response(item) for item in records]


@router.get("/current", response_model=CurrentReleaseResponse)
def get_current_release(
    db: Session = Depends(get_db_session),
    layout: AppLayout = Depends(get_app_layout),
) -> CurrentReleaseResponse:
    target = switch_controller.capture_pointer(layout)
    release_id = switch_controller.pointer_release_id(target)
    record = get_release_by_id(db=db, release_id=release_id) if release_id else None
    return CurrentReleaseResponse(
        current_target=target,
        release_id=release_id,
        release=_to_release_response(record) if record is not None else None,
    )


@router.get("/{release_id}", response_model=ReleaseResponse)
def get_release(release_id: str, db: Session = Depends(get_db_session)) -> ReleaseResponse:
    record = get_release_by_id(db=db, release_id=release_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Release not found")
    return _to_release_response(record)
