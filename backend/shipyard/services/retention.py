from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import shutil

from sqlalchemy.orm import Session

from shipyard.core.layout import AppLayout
from shipyard.services.observability import emit_structured_log
from shipyard.services.release_registry import BACKUP_PRUNED, mark_backup, mark_release_pruned


@dataclass(frozen=True)
class PruneReport:
    removed: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def select_prunable(ids: list[str], *, retention: int, protected: set[str]) -> list[str]:
    """Ids beyond the newest ``retention`` entries, never including protected ids."""
    keep = set(sorted(ids, reverse=True)[: max(1, retention)])
    return sorted(item for item in ids if item not in keep and item not in protected)


def _prune(
    *,
    kind: str,
    ids: list[str],
    path_for,
    retention: int,
    protected: set[str],
    on_removed,
) -> PruneReport:
    prunable = select_prunable(ids, retention=retention, protected=protected)
    removed: list[str] = []
    errors: list[str] = []
    for item in prunable:
        path: Path = path_for(item)
        try:
            shutil.rmtree(path)
        except OSError as exc:
            errors.append(f"{item}:{exc}")
            emit_structured_log(
                component="retention",
                event=f"{kind}_prune_failed",
                level=logging.WARNING,
                release_id=item,
                error=str(exc),
            )
            continue
        removed.append(item)
        on_removed(item)
        emit_structured_log(component="retention", event=f"{kind}_pruned", release_id=item)
    kept = [item for item in ids if item not in removed]
    return PruneReport(removed=removed, kept=kept, errors=errors)


def prune_releases(*, db: Session, layout: AppLayout, retention: int, protected: set[str]) -> PruneReport:
    return _prune(
        kind="release",
        ids=layout.list_release_ids(),
        path_for=layout.release_path,
        retention=retention,
        protected=protected,
        on_removed=lambda item: mark_release_pruned(db=db, release_id=item),
    )


def prune_backups(*, db: Session, layout: AppLayout, retention: int, protected: set[str]) -> PruneReport:
    return _prune(
        kind="backup",
        ids=layout.list_backup_ids(),
        path_for=layout.backup_path,
        retention=retention,
        protected=protected,
        on_removed=lambda item: mark_backup(db=db, release_id=item, status=BACKUP_PRUNED),
    )
