from __future__ import annotations

from dataclasses import asdict, dataclass
from http.client import HTTPException
import logging
from pathlib import Path
import socket
import time
from typing import Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from shipyard.core.config import Settings
from shipyard.domain.errors import ProbeExhausted, SelfCheckFailure
from shipyard.services import commands
from shipyard.services.observability import emit_structured_log

CONNECTION_REFUSED = "connection_refused"
TIMEOUT = "timeout"
HTTP_5XX = "http_5xx"
HTTP_4XX = "http_4xx"
URL_ERROR = "url_error"
CONNECTION_RESET = "connection_reset"


@dataclass(frozen=True)
class ProbeAttempt:
    attempt: int
    status_code: int | None
    passed: bool
    classification: str | None
    error: str | None
    latency_ms: float

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class ProbeResult:
    url: str
    passed: bool
    attempts: tuple[ProbeAttempt, ...]

    @property
    def last_classification(self) -> str | None:
        if not self.attempts:
            return None
        return self.attempts[-1].classification


def _classify_reason(reason: object) -> str:
    if isinstance(reason, ConnectionRefusedError):
        return CONNECTION_REFUSED
    if isinstance(reason, (socket.timeout, TimeoutError)):
        return TIMEOUT
    if isinstance(reason, (ConnectionError, HTTPException)):
        return CONNECTION_RESET
    return URL_ERROR


def probe_once(url: str, *, attempt: int, timeout_seconds: float) -> ProbeAttempt:
    request = Request(url, method="GET")
    start = time.perf_counter()
    status_code: int | None = None
    classification: str | None = None
    error: str | None = None

    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status_code = int(response.status)
            passed = 200 <= status_code < 400
            if not passed:
                classification = URL_ERROR
                error = f"unexpected_status:{status_code}"
    except HTTPError as exc:
        status_code = int(exc.code)
        passed = False
        classification = HTTP_5XX if status_code >= 500 else HTTP_4XX
        error = f"http_error:{exc.code}"
    except URLError as exc:
        passed = False
        classification = _classify_reason(exc.reason)
        error = f"url_error:{exc.reason}"
    except (socket.timeout, TimeoutError) as exc:
        passed = False
        classification = TIMEOUT
        error = f"timeout:{exc}"
    except ConnectionRefusedError as exc:
        passed = False
        classification = CONNECTION_REFUSED
        error = f"connection_refused:{exc}"
    except (HTTPException, OSError) as exc:
        # Dropped connections surface from getresponse() without a URLError wrapper.
        passed = False
        classification = CONNECTION_RESET
        error = f"connection_reset:{type(exc).__name__}:{exc}"

    latency_ms = round((time.perf_counter() - start) * 1000, 2)
    return ProbeAttempt(
        attempt=attempt,
        status_code=status_code,
        passed=passed,
        classification=classification,
        error=error,
        latency_ms=latency_ms,
    )


def probe_health(
    *,
    url: str,
    attempts: int,
    delay_seconds: float,
    timeout_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
    release_id: str | None = None,
) -> ProbeResult:
    """Probe ``url`` up to ``attempts`` times with a fixed delay between attempts.

    Every failure class is retried; the first passing attempt ends the loop.
    """
    results: list[ProbeAttempt] = []
    total = max(1, attempts)
    for attempt in range(1, total + 1):
        outcome = probe_once(url, attempt=attempt, timeout_seconds=timeout_seconds)
        results.append(outcome)
        if outcome.passed:
            emit_structured_log(
                component="health_gate",
                event="probe_passed",
                release_id=release_id,
                url=url,
                attempt=attempt,
                status_code=outcome.status_code,
            )
            return ProbeResult(url=url, passed=True, attempts=tuple(results))

        emit_structured_log(
            component="health_gate",
            event="probe_failed",
            level=logging.WARNING,
            release_id=release_id,
            url=url,
            attempt=attempt,
            attempts=total,
            classification=outcome.classification,
            status_code=outcome.status_code,
            error=outcome.error,
        )
        if attempt < total:
            sleep(delay_seconds)

    return ProbeResult(url=url, passed=False, attempts=tuple(results))


def require_healthy(
    *,
    settings: Settings,
    url: str,
    sleep: Callable[[float], None] = time.sleep,
    release_id: str | None = None,
) -> ProbeResult:
    result = probe_health(
        url=url,
        attempts=settings.probe_attempts,
        delay_seconds=settings.probe_delay_seconds,
        timeout_seconds=settings.probe_timeout_seconds,
        sleep=sleep,
        release_id=release_id,
    )
    if not result.passed:
        raise ProbeExhausted(f"{len(result.attempts)}_attempts:{result.last_classification}")
    return result


def run_self_check(*, release_path: Path, settings: Settings, log_path: Path | None = None) -> None:
    command = settings.self_check
    if not command:
        return
    result = commands.run_command(
        command,
        cwd=release_path,
        timeout_seconds=settings.command_timeout_seconds,
        log_path=log_path,
    )
    if not result.ok:
        raise SelfCheckFailure(result.describe())
