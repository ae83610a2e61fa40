from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re

from shipyard.core.config import Settings, get_settings

RELEASES_DIRNAME = "releases"
SHARED_DIRNAME = "shared"
BACKUPS_DIRNAME = "backups"
CURRENT_LINKNAME = "current"
STATE_DIRNAME = ".shipyard"
LEDGER_FILENAME = "ledger.sqlite3"
LOCK_FILENAME = "deploy.lock"

_RELEASE_ID_PATTERN = re.compile(r"^\d{14}$")


def is_release_id(value: str) -> bool:
    return bool(_RELEASE_ID_PATTERN.fullmatch(value or ""))


@dataclass(frozen=True)
class AppLayout:
    """Persisted layout of one application instance, rooted at the base path."""

    base_path: Path
    inplace_app_path: Path | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppLayout":
        base = Path(settings.app_base_path).expanduser().resolve()
        app_path = Path(settings.app_path).expanduser().resolve() if settings.app_path.strip() else None
        return cls(base_path=base, inplace_app_path=app_path)

    @property
    def releases_dir(self) -> Path:
        return self.base_path / RELEASES_DIRNAME

    @property
    def shared_dir(self) -> Path:
        return self.base_path / SHARED_DIRNAME

    @property
    def backups_dir(self) -> Path:
        return self.base_path / BACKUPS_DIRNAME

    @property
    def current_link(self) -> Path:
        return self.base_path / CURRENT_LINKNAME

    @property
    def state_dir(self) -> Path:
        return self.base_path / STATE_DIRNAME

    @property
    def ledger_path(self) -> Path:
        return self.state_dir / LEDGER_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.state_dir / LOCK_FILENAME

    @property
    def app_dir(self) -> Path:
        # In-place deployments mutate a single directory; default to <base>/current.
        return self.inplace_app_path or self.current_link

    def release_path(self, release_id: str) -> Path:
        if not is_release_id(release_id):
            raise ValueError(f"invalid_release_id:{release_id}")
        return self.releases_dir / release_id

    def backup_path(self, release_id: str) -> Path:
        if not is_release_id(release_id):
            raise ValueError(f"invalid_release_id:{release_id}")
        return self.backups_dir / release_id

    def log_dir(self, release_id: str) -> Path:
        return self.state_dir / "logs" / release_id

    def ledger_url(self) -> str:
        return f"sqlite+pysqlite:///{self.ledger_path}"

    def list_release_ids(self) -> list[str]:
        if not self.releases_dir.is_dir():
            return []
        return sorted(
            item.name
            for item in self.releases_dir.iterdir()
            if item.is_dir() and not item.is_symlink() and is_release_id(item.name)
        )

    def list_backup_ids(self) -> list[str]:
        if not self.backups_dir.is_dir():
            return []
        return sorted(item.name for item in self.backups_dir.iterdir() if item.is_dir() and is_release_id(item.name))


def resolve_database_url(settings: Settings, layout: AppLayout) -> str:
    return settings.database_url.strip() or layout.ledger_url()


def get_app_layout() -> AppLayout:
    return AppLayout.from_settings(get_settings())
