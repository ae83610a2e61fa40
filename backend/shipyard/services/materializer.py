from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
import shutil

from shipyard.core.config import Settings
from shipyard.core.layout import AppLayout
from shipyard.domain.errors import ReleaseIdCollision, SourceSyncFailure
from shipyard.models.common import format_release_id, utcnow
from shipyard.services import commands, source_sync

BACKUP_TREE_DIRNAME = "tree"
DATABASE_DUMP_FILENAME = "database.sql"


@dataclass(frozen=True)
class MaterializedRelease:
    release_id: str
    path: Path
    commit_sha: str | None
    source: str


@dataclass(frozen=True)
class BackupResult:
    release_id: str
    path: Path
    tree_path: Path
    database_dump_path: Path | None


def new_release_id(existing_ids: list[str], now: datetime | None = None) -> str:
    value = format_release_id(now or utcnow())
    if value in existing_ids or (existing_ids and value <= max(existing_ids)):
        raise ReleaseIdCollision(value)
    return value


def _copy_ignore(root: Path, top_level: set[str], excludes: set[str]):
    def _ignore(directory: str, names: list[str]) -> set[str]:
        ignored = {name for name in names if name in excludes}
        if Path(directory) == root:
            ignored.update(name for name in names if name in top_level)
        return ignored

    return _ignore


def _shared_top_level(settings: Settings) -> set[str]:
    names = [settings.shared_config_file, *settings.shared_dirs]
    return {Path(name).parts[0] for name in names if name}


def materialize_release(
    *,
    layout: AppLayout,
    settings: Settings,
    release_id: str,
    ref: str,
    previous_release_id: str | None,
    log_path: Path | None = None,
) -> MaterializedRelease:
    target = layout.release_path(release_id)
    layout.releases_dir.mkdir(parents=True, exist_ok=True)
    if target.exists() or target.is_symlink():
        raise ReleaseIdCollision(release_id)

    timeout = settings.command_timeout_seconds
    previous_path = layout.release_path(previous_release_id) if previous_release_id else None
    if previous_path is not None and previous_path.is_dir():
        source = "copy"
        try:
            shutil.copytree(
                previous_path,
                target,
                symlinks=True,
                ignore=_copy_ignore(previous_path, _shared_top_level(settings), set(settings.copy_excludes)),
            )
        except OSError as exc:
            raise SourceSyncFailure(f"copy_failed:{exc}") from exc
        source_sync.fast_forward(path=target, ref=ref, timeout_seconds=timeout, log_path=log_path)
    else:
        source = "clone"
        source_sync.clone_revision(
            repo_url=settings.repo_url,
            ref=ref,
            target=target,
            timeout_seconds=timeout,
            log_path=log_path,
        )

    commit_sha = source_sync.resolve_head(path=target, timeout_seconds=timeout)
    return MaterializedRelease(release_id=release_id, path=target, commit_sha=commit_sha, source=source)


def snapshot_app(
    *,
    layout: AppLayout,
    settings: Settings,
    release_id: str,
    log_path: Path | None = None,
) -> BackupResult:
    """Copy the live in-place directory into ``backups/<release_id>`` before it is mutated."""
    backup_dir = layout.backup_path(release_id)
    if backup_dir.exists():
        raise ReleaseIdCollision(release_id)
    backup_dir.mkdir(parents=True)
    tree = backup_dir / BACKUP_TREE_DIRNAME
    app_dir = layout.app_dir
    try:
        shutil.copytree(
            app_dir,
            tree,
            symlinks=True,
            ignore=_copy_ignore(app_dir, set(), set(settings.copy_excludes)),
        )
    except OSError as exc:
        raise SourceSyncFailure(f"backup_failed:{exc}") from exc

    dump_path: Path | None = None
    dump_command = settings.database_dump
    if dump_command:
        dump_path = backup_dir / DATABASE_DUMP_FILENAME
        command = [part.replace("{dump_path}", str(dump_path)) for part in dump_command]
        result = commands.run_command(
            command,
            cwd=app_dir,
            timeout_seconds=settings.command_timeout_seconds,
            log_path=log_path,
        )
        if not result.ok:
            raise SourceSyncFailure(f"database_dump_failed:{result.describe()}")

    return BackupResult(release_id=release_id, path=backup_dir, tree_path=tree, database_dump_path=dump_path)


def update_in_place(
    *,
    layout: AppLayout,
    settings: Settings,
    release_id: str,
    ref: str,
    log_path: Path | None = None,
) -> MaterializedRelease:
    app_dir = layout.app_dir
    timeout = settings.command_timeout_seconds
    source_sync.fast_forward(path=app_dir, ref=ref, timeout_seconds=timeout, log_path=log_path)
    commit_sha = source_sync.resolve_head(path=app_dir, timeout_seconds=timeout)
    return MaterializedRelease(release_id=release_id, path=app_dir, commit_sha=commit_sha, source="inplace")
