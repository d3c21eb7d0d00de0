"""Subprocess runner for external commands (git, ilab) with shutdown support."""

from __future__ import annotations

import os
import re
import shlex
import subprocess
import tempfile
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO

_SECRET_FLAGS = frozenset({"--api-key"})
_URL_CREDENTIALS = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/@\s]+@")


class CommandNotFoundError(RuntimeError):
    """Executable for an external command does not exist."""


@dataclass(slots=True)
class CommandResult:
    """Outcome of one external command invocation."""

    argv: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False
    canceled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.canceled

    def describe(self) -> str:
        return redact_command(self.argv)


class CommandRunner:
    """Run child processes that can be terminated when shutdown is requested."""

    def __init__(
        self,
        *,
        shutdown_requested: Callable[[], bool] | None = None,
        graceful_shutdown_seconds: float = 5.0,
        poll_seconds: float = 0.1,
    ) -> None:
        self._shutdown_requested = shutdown_requested
        self._graceful_shutdown_seconds = graceful_shutdown_seconds
        self._poll_seconds = poll_seconds

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout_seconds: float | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        args = [str(part) for part in argv]
        if not args:
            raise ValueError("Command must not be empty.")
        run_env = os.environ.copy()
        if env:
            run_env.update(env)

        with (
            tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stdout_handle,
            tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stderr_handle,
        ):
            try:
                process = subprocess.Popen(  # noqa: S603
                    args,
                    cwd=str(cwd) if cwd is not None else None,
                    env=run_env,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                )
            except FileNotFoundError as error:
                raise CommandNotFoundError(f"Command not found: {args[0]}") from error
            exit_code, timed_out, canceled = self._wait(process, timeout_seconds)
            return CommandResult(
                argv=tuple(args),
                exit_code=exit_code,
                stdout=_read_back(stdout_handle),
                stderr=_read_back(stderr_handle),
                timed_out=timed_out,
                canceled=canceled,
            )

    def _wait(
        self,
        process: subprocess.Popen[str],
        timeout_seconds: float | None,
    ) -> tuple[int, bool, bool]:
        start_monotonic = time.monotonic()
        shutdown_deadline: float | None = None

        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode, False, False

            now = time.monotonic()
            if timeout_seconds is not None and now - start_monotonic >= timeout_seconds:
                _terminate_process(process)
                return 124, True, False

            if self._shutdown_requested is not None and self._shutdown_requested():
                if shutdown_deadline is None:
                    shutdown_deadline = now + max(0.0, self._graceful_shutdown_seconds)
                if now >= shutdown_deadline:
                    _terminate_process(process)
                    return 130, False, True

            time.sleep(self._poll_seconds)


def redact_command(argv: Sequence[str]) -> str:
    """Render argv for logs and audit records with secrets masked."""

    return shlex.join(redact_argv(argv))


def redact_argv(argv: Sequence[str]) -> list[str]:
    redacted: list[str] = []
    mask_next = False
    for part in argv:
        text = str(part)
        if mask_next:
            redacted.append("***")
            mask_next = False
            continue
        if text in _SECRET_FLAGS:
            mask_next = True
        redacted.append(redact_url(text))
    return redacted


def redact_url(text: str) -> str:
    return _URL_CREDENTIALS.sub(r"\g<scheme>***@", text)


def _read_back(handle: IO[str]) -> str:
    handle.flush()
    handle.seek(0)
    return handle.read()


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
