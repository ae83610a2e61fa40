from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
import logging
from pathlib import Path
import signal
import threading
import time
from typing import Any, Callable, Iterator

from sqlalchemy.orm import Session

from shipyard.core.config import Settings
from shipyard.core.layout import RELEASES_DIRNAME, AppLayout
from shipyard.domain.errors import DeploymentError, ReleaseIdCollision, RollbackRestoreFailure
from shipyard.domain.release_state_machine import DeployMode, FailureReasonCode, MigrationPolicy, ReleaseState
from shipyard.models import Deployment, Release
from shipyard.models.common import utcnow
from shipyard.services import (
    builder,
    commands,
    health_gate,
    materializer,
    migrations,
    preflight,
    retention,
    rollback,
    shared_state,
    switch_controller,
)
from shipyard.services.deploy_event_log import append_deployment_event
from shipyard.services.observability import (
    bind_deployment,
    emit_structured_log,
    ensure_trace_id,
    reset_current_trace_id,
    set_current_trace_id,
    unbind_deployment,
)
from shipyard.services.release_registry import (
    DEPLOYMENT_FAILED,
    DEPLOYMENT_ROLLBACK_FAILED,
    DEPLOYMENT_SUCCEEDED,
    create_release,
    finish_deployment,
    get_live_release,
    get_release_by_id,
    list_ledger_release_ids,
    record_backup,
    start_deployment,
    transition_release,
)

EXIT_OK = 0
EXIT_DEPLOY_FAILED = 1
EXIT_ROLLBACK_FAILED = 3
EXIT_LOCKED = 4


@dataclass(frozen=True)
class DeploymentRequest:
    mode: DeployMode
    ref: str
    migration_policy: MigrationPolicy
    health_url: str
    trace_id: str | None = None


@dataclass(frozen=True)
class DeploymentResult:
    succeeded: bool
    deployment_id: str
    release_id: str | None
    live_release_id: str | None
    switched: bool
    failure_reason: FailureReasonCode | None = None
    detail: str | None = None
    rollback_failed: bool = False
    warnings: tuple[str, ...] = ()
    pruned: tuple[str, ...] = ()
    database_dump_path: str | None = None

    @property
    def exit_code(self) -> int:
        if self.succeeded:
            return EXIT_OK
        if self.rollback_failed:
            return EXIT_ROLLBACK_FAILED
        return EXIT_DEPLOY_FAILED

    @property
    def live_target(self) -> str | None:
        if self.live_release_id is None:
            return None
        return f"{RELEASES_DIRNAME}/{self.live_release_id}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "deployment_id": self.deployment_id,
            "release_id": self.release_id,
            "live_release_id": self.live_release_id,
            "live_target": self.live_target,
            "switched": self.switched,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "detail": self.detail,
            "rollback_failed": self.rollback_failed,
            "warnings": list(self.warnings),
            "pruned": list(self.pruned),
            "database_dump_path": self.database_dump_path,
        }


@dataclass
class _Attempt:
    deployment: Deployment
    previous_target: str | None
    previous_release_id: str | None
    release_id: str | None = None
    release: Release | None = None
    switched: bool = False
    tree_path: Path | None = None
    database_dump_path: Path | None = None
    warnings: list[str] = field(default_factory=list)


@contextmanager
def deferred_interrupts(*, reraise: bool) -> Iterator[list[int]]:
    """Hold SIGINT/SIGTERM until the block finishes.

    With ``reraise`` a signal received inside the block surfaces as
    ``KeyboardInterrupt`` once it exits; otherwise it is only recorded.
    """
    if threading.current_thread() is not threading.main_thread():
        yield []
        return

    received: list[int] = []

    def _record(signum, frame) -> None:
        received.append(signum)

    previous = {sig: signal.signal(sig, _record) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield received
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
    if received and reraise:
        raise KeyboardInterrupt


class DeploymentPipeline:
    """One deployment attempt, from preflight to pruning, with a single failure path."""

    def __init__(
        self,
        *,
        db: Session,
        layout: AppLayout,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.layout = layout
        self.settings = settings
        self.sleep = sleep
        self.clock = clock

    def run(self, request: DeploymentRequest) -> DeploymentResult:
        trace_id = ensure_trace_id(request.trace_id)
        token = set_current_trace_id(trace_id)
        try:
            attempt = self._start(request, trace_id)
            deployment_token = bind_deployment(attempt.deployment.id)
            try:
                if request.mode == DeployMode.INPLACE:
                    pruned = self._deploy_inplace(request, attempt)
                else:
                    pruned = self._deploy_release(request, attempt)
            except KeyboardInterrupt:
                return self._fail(request, attempt, FailureReasonCode.OPERATOR_ABORT, "interrupted")
            except ReleaseIdCollision as exc:
                # The colliding id belongs to someone else; never clean it up.
                attempt.release_id = None
                return self._fail(request, attempt, exc.reason, exc.detail)
            except DeploymentError as exc:
                return self._fail(request, attempt, exc.reason, exc.detail)
            except Exception as exc:
                logging.getLogger("deploy_pipeline").exception("unexpected deployment error")
                return self._fail(request, attempt, FailureReasonCode.UNKNOWN_ERROR, repr(exc))
            else:
                return self._succeed(attempt, pruned)
            finally:
                unbind_deployment(deployment_token)
        finally:
            reset_current_trace_id(token)

    def _start(self, request: DeploymentRequest, trace_id: str) -> _Attempt:
        if request.mode == DeployMode.INPLACE:
            live = get_live_release(db=self.db)
            previous_target = None
            previous_release_id = live.release_id if live is not None else None
        else:
            previous_target = switch_controller.capture_pointer(self.layout)
            previous_release_id = switch_controller.pointer_release_id(previous_target)

        deployment = start_deployment(
            db=self.db,
            mode=request.mode.value,
            revision=request.ref,
            migration_policy=request.migration_policy.value,
            previous_release_id=previous_release_id,
            trace_id=trace_id,
        )
        emit_structured_log(
            component="deploy_pipeline",
            event="deployment_started",
            deployment_id=deployment.id,
            mode=request.mode.value,
            ref=request.ref,
            migration_policy=request.migration_policy.value,
            previous_target=previous_target,
        )
        self._event(deployment, "deployment_started", {"ref": request.ref, "previous_target": previous_target})
        return _Attempt(
            deployment=deployment,
            previous_target=previous_target,
            previous_release_id=previous_release_id,
        )

    def _event(self, deployment: Deployment, event_type: str, payload: dict[str, Any] | None = None, **kwargs) -> None:
        append_deployment_event(
            self.db,
            deployment_id=deployment.id,
            event_type=event_type,
            payload=payload,
            **kwargs,
        )
        self.db.commit()

    def _stage(self, attempt: _Attempt, name: str) -> None:
        emit_structured_log(
            component="deploy_pipeline",
            event="stage_started",
            deployment_id=attempt.deployment.id,
            release_id=attempt.release_id,
            stage=name,
        )
        self._event(attempt.deployment, "stage_started", {"stage": name})

    def _advance(self, attempt: _Attempt, target: ReleaseState) -> None:
        release = attempt.release
        if release is None:
            return
        status_from = release.status
        transition_release(db=self.db, release=release, target=target)
        self._event(
            attempt.deployment,
            "release_status_changed",
            {"release_id": release.release_id},
            status_from=status_from,
            status_to=target.value,
        )

    def _log_path(self, attempt: _Attempt, stage: str) -> Path | None:
        if attempt.release_id is None:
            return None
        return self.layout.log_dir(attempt.release_id) / f"{stage}.log"

    def _next_release_id(self, existing: list[str]) -> str:
        ids = sorted(set(existing) | set(list_ledger_release_ids(db=self.db)))
        return materializer.new_release_id(ids, now=self.clock())

    def _retire_previous(self, attempt: _Attempt) -> None:
        if attempt.previous_release_id is None or attempt.previous_release_id == attempt.release_id:
            return
        previous = get_release_by_id(db=self.db, release_id=attempt.previous_release_id)
        if previous is not None and previous.status == ReleaseState.LIVE.value:
            transition_release(db=self.db, release=previous, target=ReleaseState.RETIRED)

    def _migrate(self, attempt: _Attempt, release_path: Path) -> None:
        self._stage(attempt, "migrate")
        migrations.run_migrations(
            db=self.db,
            release=attempt.release,
            release_path=release_path,
            settings=self.settings,
            log_path=self._log_path(attempt, "migrate"),
        )

    def _probe(self, request: DeploymentRequest, attempt: _Attempt) -> None:
        self._stage(attempt, "probe")
        result = health_gate.require_healthy(
            settings=self.settings,
            url=request.health_url,
            sleep=self.sleep,
            release_id=attempt.release_id,
        )
        self._event(
            attempt.deployment,
            "probe_passed",
            {"url": result.url, "attempts": [item.to_dict() for item in result.attempts]},
        )

    def _deploy_release(self, request: DeploymentRequest, attempt: _Attempt) -> list[str]:
        settings = self.settings
        layout = self.layout

        self._stage(attempt, "preflight")
        preflight.run_preflight(required_tools=settings.required_tools, required_paths=[layout.base_path])
        shared_state.ensure_shared_config(shared_dir=layout.shared_dir, config_file=settings.shared_config_file)

        release_id = self._next_release_id(layout.list_release_ids())
        attempt.release_id = release_id
        attempt.deployment.release_id = release_id
        self.db.commit()

        self._stage(attempt, "materialize")
        materialized = materializer.materialize_release(
            layout=layout,
            settings=settings,
            release_id=release_id,
            ref=request.ref,
            previous_release_id=attempt.previous_release_id,
            log_path=self._log_path(attempt, "materialize"),
        )
        attempt.release = create_release(
            db=self.db,
            release_id=release_id,
            mode=DeployMode.RELEASE.value,
            path=str(materialized.path),
            revision=request.ref,
            commit_sha=materialized.commit_sha,
        )

        self._stage(attempt, "link_shared")
        shared_state.link_release(
            release_path=materialized.path,
            shared_dir=layout.shared_dir,
            config_file=settings.shared_config_file,
            shared_dirs=settings.shared_dirs,
        )

        self._stage(attempt, "build")
        builder.build_release(
            release_path=materialized.path,
            settings=settings,
            log_path=self._log_path(attempt, "build"),
            release_id=release_id,
        )
        self._advance(attempt, ReleaseState.BUILT)

        migrations.warn_policy(request.migration_policy, release_id=release_id)
        if request.migration_policy == MigrationPolicy.BEFORE_SWITCH:
            self._migrate(attempt, materialized.path)
            self._advance(attempt, ReleaseState.MIGRATED)

        self._stage(attempt, "self_check")
        health_gate.run_self_check(
            release_path=materialized.path,
            settings=settings,
            log_path=self._log_path(attempt, "self_check"),
        )
        self._advance(attempt, ReleaseState.HEALTH_CHECKED)

        self._stage(attempt, "switch")
        with deferred_interrupts(reraise=True):
            attempt.previous_target = switch_controller.switch_to(layout, release_id)
            attempt.switched = True
            attempt.deployment.switched = True
            self.db.commit()
        self._advance(attempt, ReleaseState.LIVE)
        self._retire_previous(attempt)
        attempt.warnings.extend(
            switch_controller.reload_services(
                settings=settings,
                cwd=materialized.path,
                log_path=self._log_path(attempt, "reload"),
            )
        )

        if request.migration_policy == MigrationPolicy.AFTER_SWITCH:
            self._migrate(attempt, materialized.path)

        self._probe(request, attempt)

        self._stage(attempt, "prune")
        protected = {release_id}
        if attempt.previous_release_id:
            protected.add(attempt.previous_release_id)
        report = retention.prune_releases(
            db=self.db,
            layout=layout,
            retention=settings.retention_count,
            protected=protected,
        )
        attempt.warnings.extend(report.errors)
        return report.removed

    def _deploy_inplace(self, request: DeploymentRequest, attempt: _Attempt) -> list[str]:
        settings = self.settings
        layout = self.layout
        app_dir = layout.app_dir

        self._stage(attempt, "preflight")
        preflight.run_preflight(required_tools=settings.required_tools, required_paths=[app_dir])
        shared_state.ensure_shared_config(shared_dir=app_dir, config_file=settings.shared_config_file)

        release_id = self._next_release_id(layout.list_backup_ids())
        attempt.release_id = release_id
        attempt.deployment.release_id = release_id
        self.db.commit()

        self._stage(attempt, "maintenance_down")
        self._best_effort(attempt, settings.maintenance_down, cwd=app_dir, label="maintenance_down_failed")

        self._stage(attempt, "backup")
        backup = materializer.snapshot_app(
            layout=layout,
            settings=settings,
            release_id=release_id,
            log_path=self._log_path(attempt, "backup"),
        )
        attempt.tree_path = backup.tree_path
        attempt.database_dump_path = backup.database_dump_path
        record_backup(
            db=self.db,
            release_id=release_id,
            source_release_id=attempt.previous_release_id,
            path=str(backup.path),
            database_dump_path=str(backup.database_dump_path) if backup.database_dump_path else None,
        )
        attempt.release = create_release(
            db=self.db,
            release_id=release_id,
            mode=DeployMode.INPLACE.value,
            path=str(app_dir),
            revision=request.ref,
        )

        self._stage(attempt, "update_in_place")
        with deferred_interrupts(reraise=True):
            attempt.switched = True
            attempt.deployment.switched = True
            self.db.commit()
        materialized = materializer.update_in_place(
            layout=layout,
            settings=settings,
            release_id=release_id,
            ref=request.ref,
            log_path=self._log_path(attempt, "update_in_place"),
        )
        attempt.release.commit_sha = materialized.commit_sha
        self.db.commit()

        self._stage(attempt, "build")
        builder.build_release(
            release_path=app_dir,
            settings=settings,
            log_path=self._log_path(attempt, "build"),
            release_id=release_id,
        )
        self._advance(attempt, ReleaseState.BUILT)

        migrations.warn_policy(request.migration_policy, release_id=release_id)
        if request.migration_policy == MigrationPolicy.BEFORE_SWITCH:
            self._migrate(attempt, app_dir)
            self._advance(attempt, ReleaseState.MIGRATED)

        self._stage(attempt, "self_check")
        health_gate.run_self_check(
            release_path=app_dir,
            settings=settings,
            log_path=self._log_path(attempt, "self_check"),
        )
        self._advance(attempt, ReleaseState.HEALTH_CHECKED)
        self._advance(attempt, ReleaseState.LIVE)
        self._retire_previous(attempt)

        attempt.warnings.extend(
            switch_controller.reload_services(
                settings=settings,
                cwd=app_dir,
                log_path=self._log_path(attempt, "reload"),
            )
        )
        self._best_effort(attempt, settings.maintenance_up, cwd=app_dir, label="maintenance_up_failed")

        if request.migration_policy == MigrationPolicy.AFTER_SWITCH:
            self._migrate(attempt, app_dir)

        self._probe(request, attempt)

        self._stage(attempt, "prune")
        protected = {release_id}
        if attempt.previous_release_id:
            protected.add(attempt.previous_release_id)
        report = retention.prune_backups(
            db=self.db,
            layout=layout,
            retention=settings.retention_count,
            protected=protected,
        )
        attempt.warnings.extend(report.errors)
        return report.removed

    def _best_effort(self, attempt: _Attempt, command: list[str], *, cwd: Path, label: str) -> None:
        if not command:
            return
        result = commands.run_command(
            command,
            cwd=cwd,
            timeout_seconds=self.settings.command_timeout_seconds,
            log_path=self._log_path(attempt, "maintenance"),
        )
        if not result.ok:
            attempt.warnings.append(f"{label}:{result.describe()}")
            emit_structured_log(
                component="deploy_pipeline",
                event=label,
                level=logging.WARNING,
                release_id=attempt.release_id,
                exit_code=result.exit_code,
            )

    def _succeed(self, attempt: _Attempt, pruned: list[str]) -> DeploymentResult:
        deployment = finish_deployment(
            db=self.db,
            deployment=attempt.deployment,
            status=DEPLOYMENT_SUCCEEDED,
            live_release_id=attempt.release_id,
        )
        self._event(deployment, "deployment_succeeded", {"release_id": attempt.release_id, "pruned": pruned})
        emit_structured_log(
            component="deploy_pipeline",
            event="deployment_succeeded",
            deployment_id=deployment.id,
            release_id=attempt.release_id,
            commit_sha=attempt.release.commit_sha if attempt.release is not None else None,
            pruned=pruned,
            warnings=attempt.warnings,
        )
        return DeploymentResult(
            succeeded=True,
            deployment_id=deployment.id,
            release_id=attempt.release_id,
            live_release_id=attempt.release_id,
            switched=attempt.switched,
            warnings=tuple(attempt.warnings),
            pruned=tuple(pruned),
        )

    def _fail(
        self,
        request: DeploymentRequest,
        attempt: _Attempt,
        reason: FailureReasonCode,
        detail: str | None,
    ) -> DeploymentResult:
        # Interrupts are held for the whole failure path so nothing can skip the rollback.
        with deferred_interrupts(reraise=False) as received:
            self._record_failure(attempt, reason, detail)
            try:
                outcome = self._rollback(request, attempt, reason)
            except Exception as exc:
                return self._rollback_failed(request, attempt, reason, detail, exc)
            if received:
                emit_structured_log(
                    component="deploy_pipeline",
                    event="interrupt_deferred_during_rollback",
                    level=logging.WARNING,
                    deployment_id=attempt.deployment.id,
                    signals=received,
                )

            warnings = [*attempt.warnings, *outcome.warnings]
            finish_deployment(
                db=self.db,
                deployment=attempt.deployment,
                status=DEPLOYMENT_FAILED,
                live_release_id=outcome.live_release_id,
                failure_reason=reason,
                detail=detail,
            )
            self._event(
                attempt.deployment,
                "rollback_completed",
                {"live_release_id": outcome.live_release_id, "warnings": warnings},
            )
        return DeploymentResult(
            succeeded=False,
            deployment_id=attempt.deployment.id,
            release_id=attempt.release_id,
            live_release_id=outcome.live_release_id,
            switched=attempt.switched,
            failure_reason=reason,
            detail=detail,
            warnings=tuple(warnings),
            database_dump_path=outcome.database_dump_path,
        )

    def _record_failure(self, attempt: _Attempt, reason: FailureReasonCode, detail: str | None) -> None:
        emit_structured_log(
            component="deploy_pipeline",
            event="deployment_failed",
            level=logging.ERROR,
            deployment_id=attempt.deployment.id,
            release_id=attempt.release_id,
            failure_reason=reason.value,
            detail=detail,
            switched=attempt.switched,
        )
        try:
            self.db.rollback()
            self._event(
                attempt.deployment,
                "deployment_failed",
                {"failure_reason": reason.value, "detail": detail, "switched": attempt.switched},
            )
        except Exception as exc:
            # The rollback still runs; the ledger catches up in finish_deployment.
            self.db.rollback()
            emit_structured_log(
                component="deploy_pipeline",
                event="failure_event_write_failed",
                level=logging.ERROR,
                deployment_id=attempt.deployment.id,
                error=repr(exc),
            )

    def _rollback_failed(
        self,
        request: DeploymentRequest,
        attempt: _Attempt,
        reason: FailureReasonCode,
        detail: str | None,
        exc: Exception,
    ) -> DeploymentResult:
        error = str(exc) if isinstance(exc, RollbackRestoreFailure) else f"rollback_error:{exc!r}"
        combined = "; ".join(item for item in (detail, error) if item)
        live_release_id = (
            switch_controller.current_release_id(self.layout) if request.mode == DeployMode.RELEASE else None
        )
        emit_structured_log(
            component="deploy_pipeline",
            event="rollback_failed",
            level=logging.CRITICAL,
            deployment_id=attempt.deployment.id,
            release_id=attempt.release_id,
            error=error,
            live_release_id=live_release_id,
        )
        self.db.rollback()
        finish_deployment(
            db=self.db,
            deployment=attempt.deployment,
            status=DEPLOYMENT_ROLLBACK_FAILED,
            live_release_id=live_release_id,
            failure_reason=reason,
            detail=combined,
        )
        self._event(attempt.deployment, "rollback_failed", {"error": error})
        return DeploymentResult(
            succeeded=False,
            deployment_id=attempt.deployment.id,
            release_id=attempt.release_id,
            live_release_id=live_release_id,
            switched=attempt.switched,
            failure_reason=reason,
            detail=combined,
            rollback_failed=True,
            warnings=tuple(attempt.warnings),
        )

    def _rollback(
        self,
        request: DeploymentRequest,
        attempt: _Attempt,
        reason: FailureReasonCode,
    ) -> rollback.RollbackOutcome:
        log_path = self._log_path(attempt, "rollback")
        if request.mode == DeployMode.INPLACE:
            return rollback.rollback_inplace(
                db=self.db,
                layout=self.layout,
                settings=self.settings,
                release=attempt.release,
                release_id=attempt.release_id,
                switched=attempt.switched,
                tree_path=attempt.tree_path,
                database_dump_path=attempt.database_dump_path,
                previous_release_id=attempt.previous_release_id,
                failure_reason=reason,
                log_path=log_path,
            )
        return rollback.rollback_release(
            db=self.db,
            layout=self.layout,
            settings=self.settings,
            release=attempt.release,
            release_id=attempt.release_id,
            switched=attempt.switched,
            previous_target=attempt.previous_target,
            failure_reason=reason,
            log_path=log_path,
        )
