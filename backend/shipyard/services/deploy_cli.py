from __future__ import annotations

import argparse
import json
import signal
from typing import Any

from sqlalchemy.orm import Session

from shipyard.core.config import Settings, get_settings
from shipyard.core.layout import AppLayout, resolve_database_url
from shipyard.db.ledger import upgrade_ledger
from shipyard.db.session import build_engine, create_session_factory
from shipyard.domain.errors import DeploymentLocked, RollbackRestoreFailure
from shipyard.domain.release_state_machine import DeployMode, MigrationPolicy
from shipyard.services import switch_controller
from shipyard.services.deploy_lock import deployment_lock
from shipyard.services.deploy_pipeline import (
    EXIT_DEPLOY_FAILED,
    EXIT_LOCKED,
    EXIT_OK,
    EXIT_ROLLBACK_FAILED,
    DeploymentPipeline,
    DeploymentRequest,
)
from shipyard.services.observability import configure_logging
from shipyard.services.release_registry import list_deployments, list_releases
from shipyard.services.rollback import rollback_to_previous


def _release_payload(item) -> dict[str, Any]:
    return {
        "release_id": item.release_id,
        "mode": item.mode,
        "path": item.path,
        "revision": item.revision,
        "commit_sha": item.commit_sha,
        "status": item.status,
        "migration_marker": item.migration_marker,
        "failure_reason": item.failure_reason,
        "created_at": item.created_at.isoformat() if item.created_at else None,
        "live_at": item.live_at.isoformat() if item.live_at else None,
        "pruned_at": item.pruned_at.isoformat() if item.pruned_at else None,
    }


def _deployment_payload(item) -> dict[str, Any]:
    return {
        "id": item.id,
        "mode": item.mode,
        "revision": item.revision,
        "status": item.status,
        "release_id": item.release_id,
        "previous_release_id": item.previous_release_id,
        "live_release_id": item.live_release_id,
        "switched": item.switched,
        "failure_reason": item.failure_reason,
        "started_at": item.started_at.isoformat() if item.started_at else None,
        "ended_at": item.ended_at.isoformat() if item.ended_at else None,
    }


def _add_deploy_arguments(parser: argparse.ArgumentParser, settings: Settings) -> None:
    parser.add_argument("--ref", default=settings.default_ref)
    parser.add_argument("--health-url", default=None)
    parser.add_argument("--retention", type=int, default=None)
    parser.add_argument(
        "--migrate",
        choices=["before-switch", "after-switch"],
        default=None,
        help="Run migrations before the switch (expand-only changes) or after it",
    )
    parser.add_argument("--trace-id", default=None)


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--base-path", default=None)

    parser = argparse.ArgumentParser(prog="shipyard", description="Release-based deployment orchestrator")
    subparsers = parser.add_subparsers(dest="command", required=True)

    release_parser = subparsers.add_parser(
        "deploy-release", parents=[common], help="Deploy into a new symlinked release"
    )
    _add_deploy_arguments(release_parser, settings)
    release_parser.add_argument("--repo-url", default=None)

    inplace_parser = subparsers.add_parser(
        "deploy-inplace", parents=[common], help="Deploy in place with a backup snapshot"
    )
    _add_deploy_arguments(inplace_parser, settings)
    inplace_parser.add_argument("--app-path", default=None)

    subparsers.add_parser("rollback", parents=[common], help="Re-point current at the previous retained release")
    subparsers.add_parser("status", parents=[common], help="Show the current pointer and recent deployments")

    releases_parser = subparsers.add_parser(
        "releases", parents=[common], help="List releases recorded in the ledger"
    )
    releases_parser.add_argument("--limit", type=int, default=20)
    releases_parser.add_argument("--status", default=None)
    releases_parser.add_argument(
        "--all", dest="include_pruned", action="store_true", help="Include releases whose directory was removed"
    )
    return parser


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    update: dict[str, Any] = {}
    if args.base_path:
        update["app_base_path"] = args.base_path
    if getattr(args, "health_url", None):
        update["health_url"] = args.health_url
    if getattr(args, "retention", None) is not None:
        update["retention_count"] = args.retention
    if getattr(args, "migrate", None):
        update["migration_policy"] = args.migrate
    if getattr(args, "repo_url", None):
        update["repo_url"] = args.repo_url
    if getattr(args, "app_path", None):
        update["app_path"] = args.app_path
    return settings.model_copy(update=update) if update else settings


def _raise_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt


def _deploy(db: Session, layout: AppLayout, settings: Settings, args: argparse.Namespace) -> int:
    if settings.retention_count < 1:
        print(json.dumps({"error": "invalid_retention", "retention": settings.retention_count}))
        return EXIT_DEPLOY_FAILED
    try:
        policy = MigrationPolicy.parse(settings.migration_policy)
    except ValueError as exc:
        print(json.dumps({"error": str(exc)}))
        return EXIT_DEPLOY_FAILED

    mode = DeployMode.INPLACE if args.command == "deploy-inplace" else DeployMode.RELEASE
    request = DeploymentRequest(
        mode=mode,
        ref=args.ref,
        migration_policy=policy,
        health_url=settings.health_url,
        trace_id=args.trace_id,
    )
    signal.signal(signal.SIGTERM, _raise_interrupt)
    with deployment_lock(layout.lock_path):
        result = DeploymentPipeline(db=db, layout=layout, settings=settings).run(request)
    print(json.dumps(result.to_payload()))
    return result.exit_code


def _rollback(db: Session, layout: AppLayout, settings: Settings) -> int:
    with deployment_lock(layout.lock_path):
        try:
            outcome = rollback_to_previous(db=db, layout=layout, settings=settings)
        except RollbackRestoreFailure as exc:
            print(
                json.dumps(
                    {
                        "error": str(exc),
                        "live_release_id": switch_controller.current_release_id(layout),
                    }
                )
            )
            return EXIT_ROLLBACK_FAILED
    print(
        json.dumps(
            {
                "restored": outcome.restored,
                "live_release_id": outcome.live_release_id,
                "detail": outcome.detail,
                "warnings": list(outcome.warnings),
            }
        )
    )
    return EXIT_OK if outcome.restored else EXIT_DEPLOY_FAILED


def _status(db: Session, layout: AppLayout) -> int:
    payload = {
        "base_path": str(layout.base_path),
        "current_target": switch_controller.capture_pointer(layout),
        "current_release_id": switch_controller.current_release_id(layout),
        "release_dirs": layout.list_release_ids(),
        "backups": layout.list_backup_ids(),
        "recent_deployments": [_deployment_payload(item) for item in list_deployments(db=db, limit=5)],
    }
    print(json.dumps(payload))
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)
    settings = _apply_overrides(settings, args)
    layout = AppLayout.from_settings(settings)

    engine = build_engine(resolve_database_url(settings, layout))
    upgrade_ledger(engine)
    session_factory = create_session_factory(engine)

    db = session_factory()
    try:
        if args.command in ("deploy-release", "deploy-inplace"):
            return _deploy(db, layout, settings, args)

        if args.command == "rollback":
            return _rollback(db, layout, settings)

        if args.command == "status":
            return _status(db, layout)

        if args.command == "releases":
            records = list_releases(
                db=db, limit=args.limit, status=args.status, include_pruned=args.include_pruned
            )
            print(json.dumps([_release_payload(item) for item in records]))
            return EXIT_OK

        print(json.dumps({"error": "unsupported_command"}))
        return EXIT_DEPLOY_FAILED
    except DeploymentLocked as exc:
        print(json.dumps({"error": str(exc), "live_release_id": switch_controller.current_release_id(layout)}))
        return EXIT_LOCKED
    finally:
        db.close()
        engine.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
