from __future__ import annotations

from pathlib import Path

from shipyard.domain.errors import SourceSyncFailure
from shipyard.services import commands


def _git(path: Path, *args: str) -> list[str]:
    return ["git", "-c", f"safe.directory={path}", "-C", str(path), *args]


def _resolve_local(path: Path, ref: str, *, timeout_seconds: int) -> str | None:
    result = commands.run_command(
        _git(path, "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"),
        cwd=path,
        timeout_seconds=timeout_seconds,
    )
    lines = result.output.strip().splitlines() if result.ok else []
    return lines[0].strip() if lines else None


def _reset_hard(path: Path, target: str, *, timeout_seconds: int, log_path: Path | None) -> None:
    result = commands.run_command(
        _git(path, "reset", "--hard", target),
        cwd=path,
        timeout_seconds=timeout_seconds,
        log_path=log_path,
    )
    if not result.ok:
        raise SourceSyncFailure(f"git_checkout_failed:{result.describe()}")


def clone_revision(
    *,
    repo_url: str,
    ref: str,
    target: Path,
    timeout_seconds: int,
    log_path: Path | None = None,
) -> None:
    """Clone ``repo_url`` into ``target`` and check out ``ref``.

    ``ref`` may be a branch, a tag or a commit sha, so the clone itself stays on
    the default branch and the revision is selected afterwards.
    """
    if not repo_url.strip():
        raise SourceSyncFailure("missing_repo_url")
    result = commands.run_command(
        ["git", "clone", "--no-checkout", repo_url, str(target)],
        cwd=target.parent,
        timeout_seconds=timeout_seconds,
        log_path=log_path,
    )
    if not result.ok:
        raise SourceSyncFailure(f"git_clone_failed:{result.describe()}")

    # Commits and tags already arrived with the clone; other branches are fetched.
    local = _resolve_local(target, ref, timeout_seconds=timeout_seconds)
    if local is None:
        fast_forward(path=target, ref=ref, timeout_seconds=timeout_seconds, log_path=log_path)
        return
    _reset_hard(target, local, timeout_seconds=timeout_seconds, log_path=log_path)


def fast_forward(*, path: Path, ref: str, timeout_seconds: int, log_path: Path | None = None) -> None:
    """Fetch ``ref`` from origin and hard reset the working tree onto it.

    Servers that refuse to hand out a bare commit sha get a full fetch instead,
    after which the sha is resolved locally.
    """
    fetched = commands.run_command(
        _git(path, "fetch", "origin", ref),
        cwd=path,
        timeout_seconds=timeout_seconds,
        log_path=log_path,
    )
    if fetched.ok:
        _reset_hard(path, "FETCH_HEAD", timeout_seconds=timeout_seconds, log_path=log_path)
        return

    full = commands.run_command(
        _git(path, "fetch", "--tags", "origin"),
        cwd=path,
        timeout_seconds=timeout_seconds,
        log_path=log_path,
    )
    local = _resolve_local(path, ref, timeout_seconds=timeout_seconds) if full.ok else None
    if local is None:
        raise SourceSyncFailure(f"git_sync_failed:{fetched.describe()}")
    _reset_hard(path, local, timeout_seconds=timeout_seconds, log_path=log_path)


def resolve_head(*, path: Path, timeout_seconds: int) -> str | None:
    result = commands.run_command(_git(path, "rev-parse", "HEAD"), cwd=path, timeout_seconds=timeout_seconds)
    if not result.ok:
        return None
    value = result.output.strip()
    return value or None
