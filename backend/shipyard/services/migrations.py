from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy.orm import Session

from shipyard.core.config import Settings
from shipyard.domain.errors import MigrationFailure
from shipyard.domain.release_state_machine import MigrationPolicy
from shipyard.models import Release
from shipyard.services import commands
from shipyard.services.observability import emit_structured_log


def warn_policy(policy: MigrationPolicy, *, release_id: str | None = None) -> None:
    if policy == MigrationPolicy.BEFORE_SWITCH:
        emit_structured_log(
            component="migrations",
            event="expand_contract_required",
            level=logging.WARNING,
            release_id=release_id,
            detail="migrations run while the previous release still serves traffic; only expand-only changes are safe",
        )


def run_migrations(
    *,
    db: Session,
    release: Release,
    release_path: Path,
    settings: Settings,
    log_path: Path | None = None,
) -> bool:
    """Run the application's migrations once per release.

    Returns False when the release already carries a migration marker.
    """
    if release.migration_marker:
        emit_structured_log(
            component="migrations",
            event="migrations_already_applied",
            release_id=release.release_id,
            marker=release.migration_marker,
        )
        return False

    result = commands.run_command(
        settings.migrate,
        cwd=release_path,
        timeout_seconds=settings.command_timeout_seconds,
        log_path=log_path,
    )
    if not result.ok:
        raise MigrationFailure(result.describe())

    release.migration_marker = f"applied:{release.commit_sha or release.revision}"[:128]
    db.commit()
    emit_structured_log(
        component="migrations",
        event="migrations_applied",
        release_id=release.release_id,
        commit_sha=release.commit_sha,
    )
    return True
