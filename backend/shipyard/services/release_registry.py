from __future__ import annotations

from sqlalchemy.orm import Session

from shipyard.domain.release_state_machine import (
    FailureReasonCode,
    ReleaseState,
    ensure_transition_allowed,
)
from shipyard.models import BackupSnapshot, Deployment, Release
from shipyard.models.common import utcnow

DEPLOYMENT_RUNNING = "running"
DEPLOYMENT_SUCCEEDED = "succeeded"
DEPLOYMENT_FAILED = "failed"
DEPLOYMENT_ROLLBACK_FAILED = "rollback_failed"

BACKUP_CREATED = "created"
BACKUP_RESTORED = "restored"
BACKUP_PRUNED = "pruned"


def list_releases(
    *,
    db: Session,
    limit: int = 100,
    status: str | None = None,
    include_pruned: bool = False,
) -> list[Release]:
    query = db.query(Release)
    if not include_pruned:
        query = query.filter(Release.pruned_at.is_(None))
    if status:
        query = query.filter(Release.status == status)
    return query.order_by(Release.release_id.desc()).limit(limit).all()


def get_release_by_id(*, db: Session, release_id: str) -> Release | None:
    return db.query(Release).filter(Release.release_id == release_id).first()


def get_live_release(*, db: Session) -> Release | None:
    return (
        db.query(Release)
        .filter(Release.status == ReleaseState.LIVE.value)
        .order_by(Release.release_id.desc())
        .first()
    )


def create_release(
    *,
    db: Session,
    release_id: str,
    mode: str,
    path: str,
    revision: str,
    commit_sha: str | None = None,
) -> Release:
    release = Release(
        release_id=release_id,
        mode=mode,
        path=path,
        revision=revision,
        commit_sha=commit_sha,
        status=ReleaseState.STAGED.value,
    )
    db.add(release)
    db.commit()
    db.refresh(release)
    return release


def transition_release(
    *,
    db: Session,
    release: Release,
    target: ReleaseState,
    failure_reason: FailureReasonCode | None = None,
) -> Release:
    ensure_transition_allowed(ReleaseState(release.status), target, failure_reason)
    release.status = target.value
    now = utcnow()
    if target == ReleaseState.LIVE:
        release.live_at = now
    elif target == ReleaseState.RETIRED:
        release.retired_at = now
    elif target == ReleaseState.FAILED and failure_reason is not None:
        release.failure_reason = failure_reason.value
    db.commit()
    db.refresh(release)
    return release


def mark_release_pruned(*, db: Session, release_id: str) -> Release | None:
    release = get_release_by_id(db=db, release_id=release_id)
    if release is None:
        return None
    release.pruned_at = utcnow()
    db.commit()
    return release


def start_deployment(
    *,
    db: Session,
    mode: str,
    revision: str,
    migration_policy: str,
    previous_release_id: str | None,
    trace_id: str | None,
) -> Deployment:
    deployment = Deployment(
        mode=mode,
        revision=revision,
        migration_policy=migration_policy,
        status=DEPLOYMENT_RUNNING,
        previous_release_id=previous_release_id,
        live_release_id=previous_release_id,
        switched=False,
        trace_id=trace_id,
    )
    db.add(deployment)
    db.commit()
    db.refresh(deployment)
    return deployment


def finish_deployment(
    *,
    db: Session,
    deployment: Deployment,
    status: str,
    live_release_id: str | None,
    failure_reason: FailureReasonCode | None = None,
    detail: str | None = None,
) -> Deployment:
    deployment.status = status
    deployment.live_release_id = live_release_id
    deployment.failure_reason = failure_reason.value if failure_reason else None
    deployment.detail = detail
    deployment.ended_at = utcnow()
    db.commit()
    db.refresh(deployment)
    return deployment


def get_deployment(*, db: Session, deployment_id: str) -> Deployment | None:
    return db.query(Deployment).filter(Deployment.id == deployment_id).first()


def list_deployments(*, db: Session, limit: int = 50, status: str | None = None) -> list[Deployment]:
    query = db.query(Deployment)
    if status:
        query = query.filter(Deployment.status == status)
    return query.order_by(Deployment.started_at.desc()).limit(limit).all()


def record_backup(
    *,
    db: Session,
    release_id: str,
    source_release_id: str | None,
    path: str,
    database_dump_path: str | None,
) -> BackupSnapshot:
    snapshot = BackupSnapshot(
        release_id=release_id,
        source_release_id=source_release_id,
        path=path,
        database_dump_path=database_dump_path,
        status=BACKUP_CREATED,
    )
    db.add(snapshot)
    db.commit()
    db.refresh(snapshot)
    return snapshot


def get_backup(*, db: Session, release_id: str) -> BackupSnapshot | None:
    return db.query(BackupSnapshot).filter(BackupSnapshot.release_id == release_id).first()


def mark_backup(*, db: Session, release_id: str, status: str) -> BackupSnapshot | None:
    snapshot = get_backup(db=db, release_id=release_id)
    if snapshot is None:
        return None
    snapshot.status = status
    if status == BACKUP_RESTORED:
        snapshot.restored_at = utcnow()
    elif status == BACKUP_PRUNED:
        snapshot.pruned_at = utcnow()
    db.commit()
    return snapshot


def list_ledger_release_ids(*, db: Session) -> list[str]:
    return [row[0] for row in db.query(Release.release_id).all()]
