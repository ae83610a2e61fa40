from __future__ import annotations

import logging
import os
from pathlib import Path

from shipyard.core.config import Settings
from shipyard.core.layout import RELEASES_DIRNAME, AppLayout, is_release_id
from shipyard.domain.errors import SwitchFailure
from shipyard.services import commands
from shipyard.services.observability import emit_structured_log

TEMP_LINK_SUFFIX = ".shipyard-tmp"


def capture_pointer(layout: AppLayout) -> str | None:
    """Return the raw target of the current pointer, or None when it does not exist."""
    link = layout.current_link
    if not link.is_symlink():
        return None
    return os.readlink(link)


def pointer_release_id(raw_target: str | None) -> str | None:
    if not raw_target:
        return None
    name = Path(raw_target).name
    return name if is_release_id(name) else None


def current_release_id(layout: AppLayout) -> str | None:
    return pointer_release_id(capture_pointer(layout))


def write_pointer(layout: AppLayout, raw_target: str | None) -> None:
    link = layout.current_link
    if raw_target is None:
        if link.is_symlink():
            link.unlink()
        return

    temp_link = link.with_name(f"{link.name}{TEMP_LINK_SUFFIX}")
    if temp_link.exists() or temp_link.is_symlink():
        temp_link.unlink()
    os.symlink(raw_target, temp_link, target_is_directory=True)
    os.replace(temp_link, link)


def switch_to(layout: AppLayout, release_id: str) -> str | None:
    """Atomically re-point ``current`` at the release and return the captured previous target."""
    release_path = layout.release_path(release_id)
    if not release_path.is_dir():
        raise SwitchFailure(f"missing_release_dir:{release_path}")

    previous = capture_pointer(layout)
    try:
        write_pointer(layout, f"{RELEASES_DIRNAME}/{release_id}")
    except OSError as exc:
        raise SwitchFailure(str(exc)) from exc
    emit_structured_log(
        component="switch_controller",
        event="pointer_switched",
        release_id=release_id,
        previous_target=previous,
    )
    return previous


def reload_services(*, settings: Settings, cwd: Path, log_path: Path | None = None) -> list[str]:
    """Run every reload command; failures are reported and never raised."""
    warnings: list[str] = []
    for command in settings.reloads:
        result = commands.run_command(
            command,
            cwd=cwd,
            timeout_seconds=settings.command_timeout_seconds,
            log_path=log_path,
        )
        if result.ok:
            continue
        warnings.append(result.describe())
        emit_structured_log(
            component="switch_controller",
            event="service_reload_failed",
            level=logging.WARNING,
            command=commands.shell_command(command),
            exit_code=result.exit_code,
            timed_out=result.timed_out,
        )
    return warnings
