from __future__ import annotations

from pathlib import Path
import shutil

from shipyard.domain.errors import MissingSharedConfig


def ensure_shared_config(*, shared_dir: Path, config_file: str) -> Path:
    config_path = shared_dir / config_file
    if not config_path.is_file():
        raise MissingSharedConfig(str(config_path))
    return config_path


def _is_linked(entry: Path, target: Path) -> bool:
    if not entry.is_symlink():
        return False
    return Path(entry.readlink()) == target


def _remove_entry(entry: Path) -> None:
    if entry.is_symlink() or entry.is_file():
        entry.unlink()
    elif entry.is_dir():
        shutil.rmtree(entry)


def _seed_shared_dir(release_entry: Path, shared_entry: Path) -> None:
    shared_entry.parent.mkdir(parents=True, exist_ok=True)
    if release_entry.is_dir() and not release_entry.is_symlink():
        shutil.move(str(release_entry), str(shared_entry))
    else:
        shared_entry.mkdir(parents=True, exist_ok=True)


def link_release(
    *,
    release_path: Path,
    shared_dir: Path,
    config_file: str,
    shared_dirs: list[str],
) -> list[str]:
    """Point the release's configuration file and durable directories at shared state.

    Returns the relative entries that changed. Running it again against an
    already linked release changes nothing and returns an empty list.
    """
    ensure_shared_config(shared_dir=shared_dir, config_file=config_file)

    changed: list[str] = []
    for name in [config_file, *shared_dirs]:
        shared_entry = shared_dir / name
        release_entry = release_path / name
        if name != config_file and not shared_entry.exists():
            _seed_shared_dir(release_entry, shared_entry)

        if _is_linked(release_entry, shared_entry):
            continue

        if release_entry.exists() or release_entry.is_symlink():
            _remove_entry(release_entry)
        release_entry.parent.mkdir(parents=True, exist_ok=True)
        release_entry.symlink_to(shared_entry, target_is_directory=shared_entry.is_dir())
        changed.append(name)
    return changed
