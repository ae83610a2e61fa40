from functools import lru_cache
import shlex

from pydantic_settings import BaseSettings, SettingsConfigDict


def _csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _command_list(raw: str) -> list[list[str]]:
    commands: list[list[str]] = []
    for chunk in raw.split(";"):
        parsed = shlex.split(chunk)
        if parsed:
            commands.append(parsed)
    return commands


def _command(raw: str) -> list[str]:
    return shlex.split(raw)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Shipyard"
    database_url: str = ""
    app_base_path: str = "/var/www/html/studendy"
    app_path: str = ""
    repo_url: str = ""
    default_ref: str = "main"
    health_url: str = "http://127.0.0.1/"
    retention_count: int = 5
    migration_policy: str = "before_switch"

    probe_attempts: int = 5
    probe_delay_seconds: float = 3.0
    probe_timeout_seconds: float = 10.0
    command_timeout_seconds: int = 900

    required_tools_csv: str = "git,composer,npm,php"
    shared_config_file: str = ".env"
    shared_dirs_csv: str = "storage"
    copy_excludes_csv: str = "node_modules"
    vendor_dir: str = "vendor"

    dependency_install_command: str = (
        "composer install --no-dev --prefer-dist --no-ansi --no-progress --no-interaction --optimize-autoloader"
    )
    asset_lockfile: str = "package-lock.json"
    asset_install_command: str = "npm ci --silent --no-progress"
    asset_build_command: str = "npm run build --silent"
    optimize_commands: str = "php artisan optimize:clear;php artisan optimize"
    permission_commands: str = ""
    migrate_command: str = "php artisan migrate --force --no-interaction"
    self_check_command: str = "php artisan about"
    reload_commands: str = (
        "systemctl reload php8.2-fpm;systemctl reload nginx;php artisan queue:restart;"
        "supervisorctl restart studendy-worker:*"
    )
    maintenance_down_command: str = "php artisan down --render=errors::503 --retry=60"
    maintenance_up_command: str = "php artisan up"
    database_dump_command: str = ""

    @property
    def required_tools(self) -> list[str]:
        return _csv(self.required_tools_csv)

    @property
    def shared_dirs(self) -> list[str]:
        return _csv(self.shared_dirs_csv)

    @property
    def copy_excludes(self) -> list[str]:
        return _csv(self.copy_excludes_csv)

    @property
    def dependency_install(self) -> list[str]:
        return _command(self.dependency_install_command)

    @property
    def asset_install(self) -> list[str]:
        return _command(self.asset_install_command)

    @property
    def asset_build(self) -> list[str]:
        return _command(self.asset_build_command)

    @property
    def optimize(self) -> list[list[str]]:
        return _command_list(self.optimize_commands)

    @property
    def permissions(self) -> list[list[str]]:
        return _command_list(self.permission_commands)

    @property
    def migrate(self) -> list[str]:
        return _command(self.migrate_command)

    @property
    def self_check(self) -> list[str]:
        return _command(self.self_check_command)

    @property
    def reloads(self) -> list[list[str]]:
        return _command_list(self.reload_commands)

    @property
    def maintenance_down(self) -> list[str]:
        return _command(self.maintenance_down_command)

    @property
    def maintenance_up(self) -> list[str]:
        return _command(self.maintenance_up_command)

    @property
    def database_dump(self) -> list[str]:
        return _command(self.database_dump_command)


@lru_cache
def get_settings() -> Settings:
    return Settings()
