from __future__ import annotations

from datetime import datetime, timedelta, timezone
import os
from pathlib import Path
import signal
import sys
import tempfile
import threading
import unittest
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from shipyard.core.config import Settings
from shipyard.core.layout import AppLayout
from shipyard.db.base import Base
from shipyard.domain.errors import DeploymentLocked
from shipyard.domain.release_state_machine import DeployMode, FailureReasonCode, MigrationPolicy, ReleaseState
from shipyard.models import BackupSnapshot, Deployment, DeploymentEvent, Release
from shipyard.services import commands, deploy_pipeline, health_gate, rollback, source_sync, switch_controller
from shipyard.services.commands import CommandResult
from shipyard.services.deploy_lock import deployment_lock
from shipyard.services.deploy_pipeline import DeploymentPipeline, DeploymentRequest
from shipyard.services.health_gate import ProbeAttempt
from shipyard.services.release_registry import list_releases


class FakeHost:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_on: str | None = None
        self.interrupt_on: str | None = None

    def run_command(self, command, *, cwd, timeout_seconds, log_path=None):
        text = " ".join(command)
        self.calls.append(text)
        if self.interrupt_on and self.interrupt_on in text:
            self.interrupt_on = None
            raise KeyboardInterrupt
        exit_code = 1 if self.fail_on and self.fail_on in text else 0
        return CommandResult(command=list(command), exit_code=exit_code, timed_out=False, output="")

    def count(self, fragment: str) -> int:
        return sum(1 for call in self.calls if fragment in call)


class FakeProbe:
    def __init__(self) -> None:
        self.healthy = True
        self.calls = 0

    def __call__(self, url, *, attempt, timeout_seconds):
        self.calls += 1
        if self.healthy:
            return ProbeAttempt(
                attempt=attempt, status_code=200, passed=True, classification=None, error=None, latency_ms=1.0
            )
        return ProbeAttempt(
            attempt=attempt,
            status_code=503,
            passed=False,
            classification=health_gate.HTTP_5XX,
            error="http_error:503",
            latency_ms=1.0,
        )


def fake_clone_revision(*, repo_url, ref, target, timeout_seconds, log_path=None):
    (target / "storage" / "logs").mkdir(parents=True)
    (target / "composer.json").write_text("{}", encoding="utf-8")
    (target / "REVISION").write_text(ref, encoding="utf-8")


def fake_fast_forward(*, path, ref, timeout_seconds, log_path=None):
    (path / "REVISION").write_text(ref, encoding="utf-8")


def fake_resolve_head(*, path, timeout_seconds):
    return (path / "REVISION").read_text(encoding="utf-8").strip()


class _PipelineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name).resolve()
        self.engine = create_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)

        self.host = FakeHost()
        self.probe = FakeProbe()
        self.sleeps: list[float] = []
        self._tick = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
        self.patchers = [
            patch.object(commands, "run_command", self.host.run_command),
            patch.object(health_gate, "probe_once", self.probe),
            patch.object(source_sync, "clone_revision", fake_clone_revision),
            patch.object(source_sync, "fast_forward", fake_fast_forward),
            patch.object(source_sync, "resolve_head", fake_resolve_head),
        ]
        for patcher in self.patchers:
            patcher.start()

    def tearDown(self) -> None:
        for patcher in reversed(self.patchers):
            patcher.stop()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()
        self.tmp.cleanup()

    def _clock(self) -> datetime:
        self._tick += timedelta(seconds=1)
        return self._tick

    def _deploy(
        self,
        *,
        ref: str,
        mode: DeployMode = DeployMode.RELEASE,
        policy: MigrationPolicy = MigrationPolicy.BEFORE_SWITCH,
    ):
        with self.session_factory() as db:
            pipeline = DeploymentPipeline(
                db=db,
                layout=self.layout,
                settings=self.settings,
                sleep=self.sleeps.append,
                clock=self._clock,
            )
            return pipeline.run(
                DeploymentRequest(
                    mode=mode,
                    ref=ref,
                    migration_policy=policy,
                    health_url="http://127.0.0.1/health",
                )
            )

    def _release(self, release_id: str) -> Release:
        with self.session_factory() as db:
            return db.query(Release).filter(Release.release_id == release_id).one()


class SymlinkedReleasePipelineTests(_PipelineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.base = self.root / "app"
        (self.base / "shared").mkdir(parents=True)
        (self.base / "shared" / ".env").write_text("APP_KEY=base64:test\n", encoding="utf-8")
        self.settings = Settings(
            app_base_path=str(self.base),
            repo_url="https://git.example.test/app.git",
            required_tools_csv="",
            retention_count=5,
            probe_delay_seconds=3.0,
            reload_commands="systemctl reload nginx",
        )
        self.layout = AppLayout.from_settings(self.settings)

    def test_fresh_host_deploy_creates_single_live_release(self) -> None:
        result = self._deploy(ref="abc123")

        self.assertTrue(result.succeeded)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(self.layout.list_release_ids(), [result.release_id])
        self.assertEqual(os.readlink(self.layout.current_link), f"releases/{result.release_id}")
        self.assertEqual(result.live_target, f"releases/{result.release_id}")

        release_path = self.layout.release_path(result.release_id)
        self.assertTrue((release_path / ".env").is_symlink())
        self.assertTrue((release_path / "storage").is_symlink())
        self.assertTrue((self.base / "shared" / "storage" / "logs").is_dir())

        release = self._release(result.release_id)
        self.assertEqual(release.status, ReleaseState.LIVE.value)
        self.assertEqual(release.commit_sha, "abc123")
        self.assertTrue(release.migration_marker.startswith("applied:"))
        self.assertEqual(self.host.count("artisan migrate"), 1)
        self.assertEqual(self.host.count("systemctl reload nginx"), 1)
        self.assertEqual(self.probe.calls, 1)

        with self.session_factory() as db:
            deployment = db.query(Deployment).filter(Deployment.id == result.deployment_id).one()
            self.assertEqual(deployment.status, "succeeded")
            self.assertTrue(deployment.switched)
            self.assertEqual(deployment.live_release_id, result.release_id)
            event_types = [
                row.event_type
                for row in db.query(DeploymentEvent)
                .filter(DeploymentEvent.deployment_id == deployment.id)
                .order_by(DeploymentEvent.id.asc())
                .all()
            ]
            self.assertEqual(event_types[0], "deployment_started")
            self.assertEqual(event_types[-1], "deployment_succeeded")
            self.assertIn("release_status_changed", event_types)

    def test_build_failure_keeps_previous_release_live(self) -> None:
        first = self._deploy(ref="abc123")
        pointer_before = os.readlink(self.layout.current_link)

        self.host.fail_on = "composer install"
        second = self._deploy(ref="def456")

        self.assertFalse(second.succeeded)
        self.assertEqual(second.exit_code, 1)
        self.assertEqual(second.failure_reason, FailureReasonCode.BUILD_FAILED)
        self.assertFalse(second.switched)
        self.assertEqual(second.live_release_id, first.release_id)
        self.assertEqual(os.readlink(self.layout.current_link), pointer_before)
        self.assertEqual(self.layout.list_release_ids(), [first.release_id])

        self.assertEqual(self._release(first.release_id).status, ReleaseState.LIVE.value)
        failed = self._release(second.release_id)
        self.assertEqual(failed.status, ReleaseState.FAILED.value)
        self.assertEqual(failed.failure_reason, FailureReasonCode.BUILD_FAILED.value)
        with self.session_factory() as db:
            live = db.query(Release).filter(Release.status == ReleaseState.LIVE.value).all()
            self.assertEqual([item.release_id for item in live], [first.release_id])

    def test_copy_sync_starts_from_live_tree_without_shared_paths(self) -> None:
        first = self._deploy(ref="abc123")
        first_path = self.layout.release_path(first.release_id)
        (first_path / "node_modules").mkdir()
        (first_path / "app.php").write_text("<?php", encoding="utf-8")

        second = self._deploy(ref="def456")

        self.assertTrue(second.succeeded)
        second_path = self.layout.release_path(second.release_id)
        self.assertTrue((second_path / "app.php").is_file())
        self.assertFalse((second_path / "node_modules").exists())
        self.assertEqual((second_path / "REVISION").read_text(encoding="utf-8"), "def456")
        self.assertEqual((first_path / "REVISION").read_text(encoding="utf-8"), "abc123")
        self.assertEqual(self._release(first.release_id).status, ReleaseState.RETIRED.value)
        self.assertEqual(os.readlink(self.layout.current_link), f"releases/{second.release_id}")

    def test_probe_exhaustion_restores_pointer_and_keeps_failed_release(self) -> None:
        first = self._deploy(ref="abc123")
        pointer_before = os.readlink(self.layout.current_link)

        self.probe.healthy = False
        second = self._deploy(ref="def456")

        self.assertFalse(second.succeeded)
        self.assertEqual(second.exit_code, 1)
        self.assertTrue(second.switched)
        self.assertEqual(second.failure_reason, FailureReasonCode.PROBE_EXHAUSTED)
        self.assertEqual(second.live_release_id, first.release_id)
        self.assertEqual(os.readlink(self.layout.current_link), pointer_before)
        self.assertEqual(self.layout.list_release_ids(), [first.release_id, second.release_id])

        self.assertEqual(self.probe.calls, 1 + 5)
        self.assertEqual(self.sleeps, [3.0, 3.0, 3.0, 3.0])
        self.assertEqual(self._release(second.release_id).status, ReleaseState.FAILED.value)
        self.assertEqual(self._release(first.release_id).status, ReleaseState.LIVE.value)
        # initial deploy, the failed switch, and the rollback each reload once
        self.assertEqual(self.host.count("systemctl reload nginx"), 3)

    def test_retention_keeps_newest_five_after_success(self) -> None:
        ids = [f"2026010100000{index}" for index in range(1, 8)]
        with self.session_factory() as db:
            for release_id in ids:
                path = self.layout.release_path(release_id)
                path.mkdir(parents=True)
                (path / "composer.json").write_text("{}", encoding="utf-8")
                (path / "REVISION").write_text(f"old-{release_id}", encoding="utf-8")
                db.add(
                    Release(
                        release_id=release_id,
                        mode=DeployMode.RELEASE.value,
                        path=str(path),
                        revision="main",
                        status=ReleaseState.LIVE.value if release_id == ids[-1] else ReleaseState.RETIRED.value,
                    )
                )
            db.commit()
        os.symlink(f"releases/{ids[-1]}", self.layout.current_link)

        result = self._deploy(ref="abc123")

        self.assertTrue(result.succeeded)
        self.assertEqual(list(result.pruned), ids[:3])
        self.assertEqual(self.layout.list_release_ids(), [*ids[3:], result.release_id])
        for release_id in ids[:3]:
            self.assertIsNotNone(self._release(release_id).pruned_at)
        self.assertIsNone(self._release(ids[-1]).pruned_at)

    def test_after_switch_migration_failure_rolls_pointer_back(self) -> None:
        first = self._deploy(ref="abc123", policy=MigrationPolicy.AFTER_SWITCH)
        self.assertTrue(first.succeeded)
        pointer_before = os.readlink(self.layout.current_link)

        self.host.fail_on = "artisan migrate"
        second = self._deploy(ref="def456", policy=MigrationPolicy.AFTER_SWITCH)

        self.assertTrue(second.switched)
        self.assertEqual(second.failure_reason, FailureReasonCode.MIGRATION_FAILED)
        self.assertEqual(os.readlink(self.layout.current_link), pointer_before)
        self.assertEqual(self._release(second.release_id).status, ReleaseState.FAILED.value)
        self.assertEqual(self._release(first.release_id).status, ReleaseState.LIVE.value)

    def test_operator_abort_before_switch_discards_release(self) -> None:
        first = self._deploy(ref="abc123")
        pointer_before = os.readlink(self.layout.current_link)

        self.host.interrupt_on = "artisan migrate"
        second = self._deploy(ref="def456")

        self.assertEqual(second.failure_reason, FailureReasonCode.OPERATOR_ABORT)
        self.assertFalse(second.switched)
        self.assertEqual(os.readlink(self.layout.current_link), pointer_before)
        self.assertEqual(self.layout.list_release_ids(), [first.release_id])

    def test_missing_shared_config_fails_before_release_creation(self) -> None:
        (self.base / "shared" / ".env").unlink()

        result = self._deploy(ref="abc123")

        self.assertFalse(result.succeeded)
        self.assertEqual(result.failure_reason, FailureReasonCode.MISSING_SHARED_CONFIG)
        self.assertIsNone(result.release_id)
        self.assertIsNone(result.live_release_id)
        self.assertFalse(self.layout.current_link.is_symlink())
        self.assertEqual(self.layout.list_release_ids(), [])
        self.assertEqual(self.host.calls, [])

    def test_failed_pointer_restore_reports_rollback_failure(self) -> None:
        first = self._deploy(ref="abc123")
        self.probe.healthy = False
        real_write_pointer = switch_controller.write_pointer
        calls = {"count": 0}

        def flaky_write_pointer(layout, raw_target):
            calls["count"] += 1
            if calls["count"] > 1:
                raise OSError("read-only file system")
            real_write_pointer(layout, raw_target)

        with patch.object(switch_controller, "write_pointer", flaky_write_pointer):
            second = self._deploy(ref="def456")

        self.assertTrue(second.rollback_failed)
        self.assertEqual(second.exit_code, 3)
        self.assertEqual(second.live_release_id, second.release_id)
        self.assertNotEqual(second.live_release_id, first.release_id)
        with self.session_factory() as db:
            deployment = db.query(Deployment).filter(Deployment.id == second.deployment_id).one()
            self.assertEqual(deployment.status, "rollback_failed")

    def test_self_check_failure_discards_release_and_hides_it(self) -> None:
        first = self._deploy(ref="abc123")
        pointer_before = os.readlink(self.layout.current_link)

        self.host.fail_on = "artisan about"
        second = self._deploy(ref="def456")

        self.assertEqual(second.failure_reason, FailureReasonCode.SELF_CHECK_FAILED)
        self.assertFalse(second.switched)
        self.assertEqual(os.readlink(self.layout.current_link), pointer_before)
        self.assertEqual(self.layout.list_release_ids(), [first.release_id])

        failed = self._release(second.release_id)
        self.assertEqual(failed.status, ReleaseState.FAILED.value)
        self.assertIsNotNone(failed.pruned_at)
        with self.session_factory() as db:
            listed = [item.release_id for item in list_releases(db=db)]
            history = [item.release_id for item in list_releases(db=db, include_pruned=True)]
        self.assertEqual(listed, [first.release_id])
        self.assertEqual(history, [second.release_id, first.release_id])

    def test_before_switch_migration_failure_keeps_pointer(self) -> None:
        first = self._deploy(ref="abc123")
        pointer_before = os.readlink(self.layout.current_link)

        self.host.fail_on = "artisan migrate"
        second = self._deploy(ref="def456")

        self.assertEqual(second.exit_code, 1)
        self.assertEqual(second.failure_reason, FailureReasonCode.MIGRATION_FAILED)
        self.assertFalse(second.switched)
        self.assertEqual(os.readlink(self.layout.current_link), pointer_before)
        self.assertEqual(self.layout.list_release_ids(), [first.release_id])
        self.assertIsNone(self._release(second.release_id).migration_marker)
        self.assertEqual(self._release(first.release_id).status, ReleaseState.LIVE.value)

    def test_failed_reload_after_switch_is_only_a_warning(self) -> None:
        self.host.fail_on = "systemctl reload nginx"

        result = self._deploy(ref="abc123")

        self.assertTrue(result.succeeded)
        self.assertEqual(len(result.warnings), 1)
        self.assertIn("systemctl reload nginx", result.warnings[0])
        self.assertEqual(self._release(result.release_id).status, ReleaseState.LIVE.value)

    @unittest.skipUnless(threading.current_thread() is threading.main_thread(), "signals need the main thread")
    def test_interrupt_during_switch_takes_post_switch_rollback(self) -> None:
        first = self._deploy(ref="abc123")
        pointer_before = os.readlink(self.layout.current_link)
        real_switch_to = switch_controller.switch_to

        def interrupted_switch_to(layout, release_id):
            previous = real_switch_to(layout, release_id)
            os.kill(os.getpid(), signal.SIGINT)
            return previous

        with patch.object(switch_controller, "switch_to", interrupted_switch_to):
            second = self._deploy(ref="def456")

        self.assertEqual(second.failure_reason, FailureReasonCode.OPERATOR_ABORT)
        self.assertTrue(second.switched)
        self.assertEqual(second.exit_code, 1)
        self.assertEqual(second.live_release_id, first.release_id)
        self.assertEqual(os.readlink(self.layout.current_link), pointer_before)
        self.assertEqual(self._release(second.release_id).status, ReleaseState.FAILED.value)
        self.assertEqual(self._release(first.release_id).status, ReleaseState.LIVE.value)

    def test_interrupt_after_switch_restores_pointer(self) -> None:
        first = self._deploy(ref="abc123")
        pointer_before = os.readlink(self.layout.current_link)

        self.host.interrupt_on = "systemctl reload nginx"
        second = self._deploy(ref="def456")

        self.assertEqual(second.failure_reason, FailureReasonCode.OPERATOR_ABORT)
        self.assertTrue(second.switched)
        self.assertEqual(os.readlink(self.layout.current_link), pointer_before)
        self.assertEqual(self.layout.list_release_ids(), [first.release_id, second.release_id])
        self.assertEqual(self._release(first.release_id).status, ReleaseState.LIVE.value)
        # first deploy, the interrupted reload, and the rollback reload
        self.assertEqual(self.host.count("systemctl reload nginx"), 3)

    @unittest.skipUnless(threading.current_thread() is threading.main_thread(), "signals need the main thread")
    def test_signal_during_rollback_does_not_stop_it(self) -> None:
        first = self._deploy(ref="abc123")
        pointer_before = os.readlink(self.layout.current_link)
        self.probe.healthy = False
        real_rollback_release = rollback.rollback_release

        def signalled_rollback_release(**kwargs):
            os.kill(os.getpid(), signal.SIGTERM)
            return real_rollback_release(**kwargs)

        with patch.object(rollback, "rollback_release", signalled_rollback_release):
            second = self._deploy(ref="def456")

        self.assertEqual(second.failure_reason, FailureReasonCode.PROBE_EXHAUSTED)
        self.assertEqual(second.exit_code, 1)
        self.assertEqual(os.readlink(self.layout.current_link), pointer_before)
        self.assertEqual(second.live_release_id, first.release_id)

    def test_ledger_error_before_rollback_does_not_skip_it(self) -> None:
        first = self._deploy(ref="abc123")
        pointer_before = os.readlink(self.layout.current_link)
        self.probe.healthy = False
        real_append = deploy_pipeline.append_deployment_event

        def flaky_append(db, *, deployment_id, event_type, **kwargs):
            if event_type == "deployment_failed":
                raise RuntimeError("database is locked")
            return real_append(db, deployment_id=deployment_id, event_type=event_type, **kwargs)

        with patch.object(deploy_pipeline, "append_deployment_event", flaky_append):
            second = self._deploy(ref="def456")

        self.assertEqual(second.exit_code, 1)
        self.assertEqual(os.readlink(self.layout.current_link), pointer_before)
        with self.session_factory() as db:
            deployment = db.query(Deployment).filter(Deployment.id == second.deployment_id).one()
            self.assertEqual(deployment.status, "failed")
            self.assertEqual(deployment.live_release_id, first.release_id)

    def test_unexpected_rollback_error_reports_rollback_failure(self) -> None:
        self._deploy(ref="abc123")
        self.probe.healthy = False

        with patch.object(rollback, "rollback_release", side_effect=PermissionError(13, "Permission denied")):
            second = self._deploy(ref="def456")

        self.assertTrue(second.rollback_failed)
        self.assertEqual(second.exit_code, 3)
        self.assertEqual(second.live_release_id, second.release_id)
        self.assertEqual(second.live_target, f"releases/{second.release_id}")
        self.assertIn("rollback_error", second.detail)
        with self.session_factory() as db:
            deployment = db.query(Deployment).filter(Deployment.id == second.deployment_id).one()
            self.assertEqual(deployment.status, "rollback_failed")
            self.assertEqual(deployment.live_release_id, second.release_id)

    def test_second_concurrent_invocation_is_rejected(self) -> None:
        with deployment_lock(self.layout.lock_path):
            with self.assertRaises(DeploymentLocked):
                with deployment_lock(self.layout.lock_path):
                    pass
        with deployment_lock(self.layout.lock_path):
            pass


class InPlacePipelineTests(_PipelineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.base = self.root / "base"
        self.base.mkdir()
        self.app = self.root / "site"
        (self.app / "vendor").mkdir(parents=True)
        (self.app / "vendor" / "autoload.php").write_text("<?php", encoding="utf-8")
        (self.app / ".env").write_text("APP_KEY=base64:test\n", encoding="utf-8")
        (self.app / "REVISION").write_text("v1", encoding="utf-8")
        self.settings = Settings(
            app_base_path=str(self.base),
            app_path=str(self.app),
            required_tools_csv="",
            copy_excludes_csv="node_modules,vendor",
            probe_delay_seconds=0.0,
            reload_commands="systemctl reload nginx",
        )
        self.layout = AppLayout.from_settings(self.settings)

    def test_inplace_deploy_backs_up_then_updates(self) -> None:
        result = self._deploy(ref="v2", mode=DeployMode.INPLACE)

        self.assertTrue(result.succeeded)
        self.assertEqual((self.app / "REVISION").read_text(encoding="utf-8"), "v2")
        self.assertEqual(self.layout.list_backup_ids(), [result.release_id])
        tree = self.layout.backup_path(result.release_id) / "tree"
        self.assertEqual((tree / "REVISION").read_text(encoding="utf-8"), "v1")
        self.assertFalse((tree / "vendor").exists())
        self.assertEqual(self.host.count("artisan down"), 1)
        self.assertEqual(self.host.count("artisan up"), 1)
        self.assertEqual(self._release(result.release_id).status, ReleaseState.LIVE.value)

    def test_inplace_probe_failure_restores_backup_and_reinstalls_vendor(self) -> None:
        self.probe.healthy = False

        result = self._deploy(ref="v2", mode=DeployMode.INPLACE)

        self.assertFalse(result.succeeded)
        self.assertTrue(result.switched)
        self.assertEqual(result.failure_reason, FailureReasonCode.PROBE_EXHAUSTED)
        self.assertEqual((self.app / "REVISION").read_text(encoding="utf-8"), "v1")
        self.assertEqual(self.host.count("composer install"), 2)
        self.assertEqual(self.host.count("artisan up"), 2)
        with self.session_factory() as db:
            snapshot = db.query(BackupSnapshot).filter(BackupSnapshot.release_id == result.release_id).one()
            self.assertEqual(snapshot.status, "restored")
        self.assertEqual(self._release(result.release_id).status, ReleaseState.FAILED.value)

    def test_inplace_backup_failure_discards_partial_backup(self) -> None:
        self.settings = self.settings.model_copy(
            update={"database_dump_command": "mysqldump app --result-file={dump_path}"}
        )
        self.host.fail_on = "mysqldump"

        result = self._deploy(ref="v2", mode=DeployMode.INPLACE)

        self.assertFalse(result.switched)
        self.assertEqual(result.failure_reason, FailureReasonCode.SOURCE_SYNC_FAILED)
        self.assertEqual((self.app / "REVISION").read_text(encoding="utf-8"), "v1")
        self.assertEqual(self.layout.list_backup_ids(), [])
        self.assertEqual(self.host.count("artisan up"), 1)


if __name__ == "__main__":
    unittest.main()
