from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import shlex
import subprocess


@dataclass(frozen=True)
class CommandResult:
    command: list[str]
    exit_code: int | None
    timed_out: bool
    output: str

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    def describe(self) -> str:
        if self.timed_out:
            return f"timeout:{shell_command(self.command)}"
        return f"exit_code={self.exit_code}:{shell_command(self.command)}"


def shell_command(parts: list[str]) -> str:
    return " ".join(shlex.quote(part) for part in parts)


def _write_log(log_path: Path, command: list[str], exit_code: int | None, timed_out: bool, output: str) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    status = "timeout" if timed_out else f"exit_code={exit_code}"
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"$ {shell_command(command)}\n")
        handle.write(output)
        if output and not output.endswith("\n"):
            handle.write("\n")
        handle.write(f"[{status}]\n")


def run_command(
    command: list[str],
    *,
    cwd: Path,
    timeout_seconds: int,
    log_path: Path | None = None,
) -> CommandResult:
    try:
        proc = subprocess.run(
            command,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout_seconds,
        )
        exit_code: int | None = proc.returncode
        timed_out = False
        output = f"{proc.stdout}{proc.stderr}"
    except subprocess.TimeoutExpired as exc:
        exit_code = None
        timed_out = True
        stdout = exc.stdout.decode("utf-8", "replace") if isinstance(exc.stdout, bytes) else (exc.stdout or "")
        stderr = exc.stderr.decode("utf-8", "replace") if isinstance(exc.stderr, bytes) else (exc.stderr or "")
        output = f"{stdout}{stderr}"
    except FileNotFoundError as exc:
        exit_code = 127
        timed_out = False
        output = f"{exc}\n"
    except OSError as exc:
        # Not executable, or the exec itself failed.
        exit_code = 126
        timed_out = False
        output = f"{exc}\n"

    if log_path is not None:
        _write_log(log_path, command, exit_code, timed_out, output)
    return CommandResult(command=list(command), exit_code=exit_code, timed_out=timed_out, output=output)
