from __future__ import annotations

from pathlib import Path
import shutil

from shipyard.domain.errors import PreflightMissingTool


def find_missing_tools(tools: list[str]) -> list[str]:
    return [tool for tool in tools if shutil.which(tool) is None]


def run_preflight(*, required_tools: list[str], required_paths: list[Path]) -> None:
    missing = find_missing_tools(required_tools)
    if missing:
        raise PreflightMissingTool(",".join(missing))
    for path in required_paths:
        if not path.is_dir():
            raise PreflightMissingTool(f"missing_directory:{path}")
