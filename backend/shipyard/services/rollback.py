from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import shutil

from sqlalchemy.orm import Session

from shipyard.core.config import Settings
from shipyard.core.layout import RELEASES_DIRNAME, AppLayout
from shipyard.domain.errors import RollbackRestoreFailure
from shipyard.domain.release_state_machine import FailureReasonCode, ReleaseState
from shipyard.models import Release
from shipyard.services import commands, switch_controller
from shipyard.services.observability import emit_structured_log
from shipyard.services.release_registry import (
    BACKUP_PRUNED,
    BACKUP_RESTORED,
    get_release_by_id,
    mark_backup,
    mark_release_pruned,
    transition_release,
)


@dataclass(frozen=True)
class RollbackOutcome:
    restored: bool
    live_release_id: str | None
    detail: str | None = None
    warnings: tuple[str, ...] = ()
    database_dump_path: str | None = None


def _mark_failed(db: Session, release: Release | None, reason: FailureReasonCode) -> None:
    if release is None or release.status == ReleaseState.FAILED.value:
        return
    transition_release(db=db, release=release, target=ReleaseState.FAILED, failure_reason=reason)


def _restore_live(db: Session, release_id: str | None) -> None:
    if release_id is None:
        return
    release = get_release_by_id(db=db, release_id=release_id)
    if release is None:
        return
    if release.status == ReleaseState.RETIRED.value:
        transition_release(db=db, release=release, target=ReleaseState.ROLLED_BACK_TARGET)
        transition_release(db=db, release=release, target=ReleaseState.LIVE)


def _reload_cwd(layout: AppLayout) -> Path:
    return layout.current_link if layout.current_link.is_dir() else layout.base_path


def rollback_release(
    *,
    db: Session,
    layout: AppLayout,
    settings: Settings,
    release: Release | None,
    release_id: str | None,
    switched: bool,
    previous_target: str | None,
    failure_reason: FailureReasonCode,
    log_path: Path | None = None,
) -> RollbackOutcome:
    """Undo a failed symlinked-release deployment.

    After the switch the captured pointer is restored exactly (or removed when
    there was none) and the new release is kept as history. Before the switch
    the half-built release directory is deleted and the pointer is untouched.
    """
    warnings: list[str] = []
    if switched:
        try:
            switch_controller.write_pointer(layout, previous_target)
        except OSError as exc:
            raise RollbackRestoreFailure(f"pointer_restore_failed:{exc}") from exc
        warnings.extend(
            switch_controller.reload_services(settings=settings, cwd=_reload_cwd(layout), log_path=log_path)
        )
        _mark_failed(db, release, failure_reason)
        previous_release_id = switch_controller.pointer_release_id(previous_target)
        if previous_release_id != release_id:
            _restore_live(db, previous_release_id)
        emit_structured_log(
            component="rollback",
            event="pointer_restored",
            level=logging.WARNING,
            release_id=release_id,
            previous_target=previous_target,
        )
        return RollbackOutcome(restored=True, live_release_id=previous_release_id, warnings=tuple(warnings))

    if release_id is not None:
        release_path = layout.release_path(release_id)
        if release_path.exists():
            try:
                shutil.rmtree(release_path)
            except OSError as exc:
                raise RollbackRestoreFailure(f"release_cleanup_failed:{exc}") from exc
    _mark_failed(db, release, failure_reason)
    if release is not None:
        mark_release_pruned(db=db, release_id=release.release_id)
    emit_structured_log(
        component="rollback",
        event="unswitched_release_removed",
        level=logging.WARNING,
        release_id=release_id,
    )
    return RollbackOutcome(restored=True, live_release_id=switch_controller.current_release_id(layout))


def restore_tree(*, app_dir: Path, tree_path: Path) -> None:
    """Swap the backed up tree into ``app_dir`` via rename."""
    staging = app_dir.with_name(f".{app_dir.name}.shipyard-restore")
    aside = app_dir.with_name(f".{app_dir.name}.shipyard-failed")
    try:
        for leftover in (staging, aside):
            if leftover.exists():
                shutil.rmtree(leftover)
        shutil.copytree(tree_path, staging, symlinks=True)
        os.rename(app_dir, aside)
        os.rename(staging, app_dir)
    except OSError as exc:
        raise RollbackRestoreFailure(f"tree_restore_failed:{exc}") from exc

    try:
        shutil.rmtree(aside)
    except OSError as exc:
        emit_structured_log(
            component="rollback",
            event="failed_tree_cleanup_failed",
            level=logging.WARNING,
            path=str(aside),
            error=str(exc),
        )


def _run_best_effort(command: list[str], *, cwd: Path, settings: Settings, log_path: Path | None) -> str | None:
    if not command:
        return None
    result = commands.run_command(
        command,
        cwd=cwd,
        timeout_seconds=settings.command_timeout_seconds,
        log_path=log_path,
    )
    return None if result.ok else result.describe()


def rollback_inplace(
    *,
    db: Session,
    layout: AppLayout,
    settings: Settings,
    release: Release | None,
    release_id: str | None,
    switched: bool,
    tree_path: Path | None,
    database_dump_path: Path | None,
    previous_release_id: str | None,
    failure_reason: FailureReasonCode,
    log_path: Path | None = None,
) -> RollbackOutcome:
    """Undo a failed in-place deployment.

    Once the live directory has been mutated the backed up tree is swapped
    back in. Before that point only the partial backup is discarded.
    """
    app_dir = layout.app_dir.resolve()
    warnings: list[str] = []

    if switched:
        if tree_path is None or not tree_path.is_dir():
            raise RollbackRestoreFailure(f"missing_backup:{tree_path}")
        restore_tree(app_dir=app_dir, tree_path=tree_path)
        if release_id is not None:
            mark_backup(db=db, release_id=release_id, status=BACKUP_RESTORED)

        if not (app_dir / settings.vendor_dir).is_dir():
            warning = _run_best_effort(settings.dependency_install, cwd=app_dir, settings=settings, log_path=log_path)
            if warning:
                warnings.append(f"vendor_reinstall_failed:{warning}")
        warnings.extend(switch_controller.reload_services(settings=settings, cwd=app_dir, log_path=log_path))
        if previous_release_id != release_id:
            _restore_live(db, previous_release_id)
    elif release_id is not None:
        backup_dir = layout.backup_path(release_id)
        if backup_dir.exists():
            try:
                shutil.rmtree(backup_dir)
            except OSError as exc:
                raise RollbackRestoreFailure(f"backup_cleanup_failed:{exc}") from exc
            mark_backup(db=db, release_id=release_id, status=BACKUP_PRUNED)

    warning = _run_best_effort(settings.maintenance_up, cwd=app_dir, settings=settings, log_path=log_path)
    if warning:
        warnings.append(f"maintenance_up_failed:{warning}")

    _mark_failed(db, release, failure_reason)
    dump = str(database_dump_path) if database_dump_path is not None else None
    emit_structured_log(
        component="rollback",
        event="inplace_restored" if switched else "inplace_untouched",
        level=logging.WARNING,
        release_id=release_id,
        database_dump_path=dump,
        warnings=warnings,
    )
    return RollbackOutcome(
        restored=True,
        live_release_id=previous_release_id,
        warnings=tuple(warnings),
        database_dump_path=dump,
    )


def rollback_to_previous(*, db: Session, layout: AppLayout, settings: Settings) -> RollbackOutcome:
    """Manually re-point ``current`` at the newest retained release older than the live one."""
    current_id = switch_controller.current_release_id(layout)
    candidates = []
    for item in layout.list_release_ids():
        if current_id is not None and item >= current_id:
            continue
        record = get_release_by_id(db=db, release_id=item)
        if record is not None and (record.status == ReleaseState.FAILED.value or record.pruned_at is not None):
            continue
        candidates.append(item)
    if not candidates:
        return RollbackOutcome(restored=False, live_release_id=current_id, detail="no_previous_release")

    target_id = candidates[-1]
    try:
        switch_controller.write_pointer(layout, f"{RELEASES_DIRNAME}/{target_id}")
    except OSError as exc:
        raise RollbackRestoreFailure(f"pointer_restore_failed:{exc}") from exc

    if current_id is not None:
        current = get_release_by_id(db=db, release_id=current_id)
        if current is not None and current.status == ReleaseState.LIVE.value:
            transition_release(db=db, release=current, target=ReleaseState.RETIRED)
    _restore_live(db, target_id)
    warnings = switch_controller.reload_services(settings=settings, cwd=_reload_cwd(layout))
    emit_structured_log(
        component="rollback",
        event="manual_rollback",
        level=logging.WARNING,
        release_id=target_id,
        previous_release_id=current_id,
    )
    return RollbackOutcome(restored=True, live_release_id=target_id, warnings=tuple(warnings))
