from __future__ import annotations

from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
import socket
import sys
import threading
import unittest
from unittest.mock import patch
from urllib.error import HTTPError, URLError

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from shipyard.core.config import Settings
from shipyard.domain.errors import ProbeExhausted, SelfCheckFailure
from shipyard.services import commands, health_gate
from shipyard.services.commands import CommandResult
from shipyard.services.health_gate import ProbeAttempt


class _FakeResponse:
    def __init__(self, status: int) -> None:
        self.status = status

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        return None


def _attempt(attempt: int, passed: bool) -> ProbeAttempt:
    return ProbeAttempt(
        attempt=attempt,
        status_code=200 if passed else None,
        passed=passed,
        classification=None if passed else health_gate.CONNECTION_REFUSED,
        error=None if passed else "url_error:refused",
        latency_ms=0.5,
    )


class ProbeClassificationTests(unittest.TestCase):
    def test_success_status(self) -> None:
        with patch.object(health_gate, "urlopen", return_value=_FakeResponse(200)):
            outcome = health_gate.probe_once("http://127.0.0.1/", attempt=1, timeout_seconds=1.0)
        self.assertTrue(outcome.passed)
        self.assertEqual(outcome.status_code, 200)
        self.assertIsNone(outcome.classification)

    def test_server_error_is_classified_as_5xx(self) -> None:
        error = HTTPError("http://127.0.0.1/", 503, "Service Unavailable", None, None)
        with patch.object(health_gate, "urlopen", side_effect=error):
            outcome = health_gate.probe_once("http://127.0.0.1/", attempt=1, timeout_seconds=1.0)
        self.assertFalse(outcome.passed)
        self.assertEqual(outcome.status_code, 503)
        self.assertEqual(outcome.classification, health_gate.HTTP_5XX)

    def test_connection_refused_is_distinguished(self) -> None:
        error = URLError(ConnectionRefusedError(111, "Connection refused"))
        with patch.object(health_gate, "urlopen", side_effect=error):
            outcome = health_gate.probe_once("http://127.0.0.1/", attempt=2, timeout_seconds=1.0)
        self.assertFalse(outcome.passed)
        self.assertEqual(outcome.classification, health_gate.CONNECTION_REFUSED)

    def test_timeout_is_classified(self) -> None:
        with patch.object(health_gate, "urlopen", side_effect=TimeoutError("timed out")):
            outcome = health_gate.probe_once("http://127.0.0.1/", attempt=1, timeout_seconds=1.0)
        self.assertEqual(outcome.classification, health_gate.TIMEOUT)


class ProbeRetryTests(unittest.TestCase):
    def test_warm_up_passes_on_third_attempt(self) -> None:
        sleeps: list[float] = []
        plan = iter([False, False, True])

        def fake_probe_once(url, *, attempt, timeout_seconds):
            return _attempt(attempt, next(plan))

        with patch.object(health_gate, "probe_once", fake_probe_once):
            result = health_gate.probe_health(
                url="http://127.0.0.1/",
                attempts=5,
                delay_seconds=4.0,
                timeout_seconds=1.0,
                sleep=sleeps.append,
            )

        self.assertTrue(result.passed)
        self.assertEqual(len(result.attempts), 3)
        self.assertEqual(sleeps, [4.0, 4.0])

    def test_exhaustion_raises_after_bound(self) -> None:
        sleeps: list[float] = []
        settings = Settings(probe_attempts=5, probe_delay_seconds=3.0)

        with patch.object(health_gate, "probe_once", lambda url, *, attempt, timeout_seconds: _attempt(attempt, False)):
            with self.assertRaises(ProbeExhausted) as ctx:
                health_gate.require_healthy(settings=settings, url="http://127.0.0.1/", sleep=sleeps.append)

        self.assertEqual(str(ctx.exception), "PROBE_EXHAUSTED:5_attempts:connection_refused")
        self.assertEqual(len(sleeps), 4)


class SelfCheckTests(unittest.TestCase):
    def test_non_zero_self_check_fails_without_retry(self) -> None:
        calls: list[list[str]] = []

        def fake_run_command(command, *, cwd, timeout_seconds, log_path=None):
            calls.append(list(command))
            return CommandResult(command=list(command), exit_code=1, timed_out=False, output="broken")

        with patch.object(commands, "run_command", fake_run_command):
            with self.assertRaises(SelfCheckFailure):
                health_gate.run_self_check(release_path=Path("/tmp"), settings=Settings())

        self.assertEqual(calls, [["php", "artisan", "about"]])


class _ClosingServer:
    """Accepts each connection and closes it without answering."""

    def __init__(self) -> None:
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(8)
        self.sock.settimeout(0.2)
        self.accepted = 0
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)

    @property
    def url(self) -> str:
        host, port = self.sock.getsockname()
        return f"http://{host}:{port}/health"

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            self.accepted += 1
            conn.close()

    def __enter__(self) -> "_ClosingServer":
        self._thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._stop.set()
        self._thread.join(timeout=2)
        self.sock.close()


class _StatusHandler(BaseHTTPRequestHandler):
    statuses: list[int] = []

    def do_GET(self) -> None:
        status = self.statuses.pop(0) if self.statuses else 200
        self.send_response(status)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, format, *args) -> None:
        return None


class ProbeSocketTests(unittest.TestCase):
    def test_dropped_connections_are_retried_up_to_bound(self) -> None:
        sleeps: list[float] = []
        with _ClosingServer() as server:
            result = health_gate.probe_health(
                url=server.url,
                attempts=5,
                delay_seconds=3.0,
                timeout_seconds=2.0,
                sleep=sleeps.append,
            )

        self.assertFalse(result.passed)
        self.assertEqual(len(result.attempts), 5)
        self.assertEqual({item.classification for item in result.attempts}, {health_gate.CONNECTION_RESET})
        self.assertEqual(sleeps, [3.0, 3.0, 3.0, 3.0])

    def test_refused_port_is_classified(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        host, port = sock.getsockname()
        sock.close()

        outcome = health_gate.probe_once(f"http://{host}:{port}/", attempt=1, timeout_seconds=2.0)

        self.assertFalse(outcome.passed)
        self.assertEqual(outcome.classification, health_gate.CONNECTION_REFUSED)

    def test_warming_server_passes_after_server_errors(self) -> None:
        handler = type("WarmingHandler", (_StatusHandler,), {"statuses": [503, 502]})
        server = HTTPServer(("127.0.0.1", 0), handler)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        try:
            host, port = server.server_address[:2]
            result = health_gate.probe_health(
                url=f"http://{host}:{port}/health",
                attempts=5,
                delay_seconds=0.0,
                timeout_seconds=2.0,
                sleep=lambda _: None,
            )
        finally:
            server.shutdown()
            server.server_close()
            thread.join(timeout=2)

        self.assertTrue(result.passed)
        self.assertEqual([item.status_code for item in result.attempts], [503, 502, 200])
        self.assertEqual(result.attempts[0].classification, health_gate.HTTP_5XX)


if __name__ == "__main__":
    unittest.main()
