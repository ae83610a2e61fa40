from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

from shipyard.core.config import Settings
from shipyard.domain.errors import BuildFailure
from shipyard.services import commands
from shipyard.services.observability import emit_structured_log


@dataclass(frozen=True)
class BuildStep:
    name: str
    command: list[str]


def plan_build(*, release_path: Path, settings: Settings) -> list[BuildStep]:
    steps = [BuildStep(name="dependencies", command=settings.dependency_install)]
    if (release_path / settings.asset_lockfile).is_file():
        steps.append(BuildStep(name="asset_install", command=settings.asset_install))
        steps.append(BuildStep(name="asset_build", command=settings.asset_build))
    steps.extend(BuildStep(name="optimize", command=command) for command in settings.optimize)
    steps.extend(BuildStep(name="permissions", command=command) for command in settings.permissions)
    return [step for step in steps if step.command]


def build_release(
    *,
    release_path: Path,
    settings: Settings,
    log_path: Path | None = None,
    release_id: str | None = None,
) -> list[str]:
    completed: list[str] = []
    for step in plan_build(release_path=release_path, settings=settings):
        result = commands.run_command(
            step.command,
            cwd=release_path,
            timeout_seconds=settings.command_timeout_seconds,
            log_path=log_path,
        )
        if not result.ok:
            emit_structured_log(
                component="builder",
                event="build_step_failed",
                level=logging.ERROR,
                release_id=release_id,
                step=step.name,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
            )
            raise BuildFailure(f"{step.name}:{result.describe()}")
        completed.append(step.name)
        emit_structured_log(component="builder", event="build_step_passed", release_id=release_id, step=step.name)
    return completed
