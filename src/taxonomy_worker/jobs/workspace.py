"""Isolated taxonomy checkouts for pull-request jobs."""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

from taxonomy_worker.config import GitSettings
from taxonomy_worker.jobs.commands import (
    CommandNotFoundError,
    CommandResult,
    CommandRunner,
    redact_url,
)
from taxonomy_worker.jobs.models import WorkspaceError

logger = logging.getLogger(__name__)

_TRANSIENT_GIT_PATTERNS: tuple[str, ...] = (
    "could not resolve host",
    "could not read from remote repository",
    "connection timed out",
    "connection reset",
    "connection refused",
    "operation timed out",
    "failed to connect",
    "unable to access",
    "early eof",
    "rpc failed",
    "the remote end hung up",
    "temporary failure",
    "index.lock",
    "shallow.lock",
    "unable to create",
    "another git process",
)


class GitWorkspaceManager:
    """Checks out a pull request head commit into a fresh directory."""

    def __init__(
        self,
        *,
        settings: GitSettings,
        runner: CommandRunner,
        sleep: Callable[[float], None] = time.sleep,
        timeout_seconds: float = 900.0,
    ) -> None:
        self._settings = settings
        self._runner = runner
        self._sleep = sleep
        self._timeout_seconds = timeout_seconds

    def checkout(self, pr_number: str, destination: Path) -> str:
        """Materialize the PR head at ``destination`` and return its commit hash."""

        max_attempts = max(1, self._settings.max_retries)
        last_error: WorkspaceError | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                commit = self._attempt(pr_number, destination)
            except WorkspaceError as error:
                remove_checkout(destination)
                last_error = error
                if not error.transient:
                    raise
                logger.warning(
                    "git checkout of PR %s failed (attempt %d/%d): %s",
                    pr_number,
                    attempt,
                    max_attempts,
                    error,
                )
                if attempt < max_attempts:
                    self._sleep(self._settings.retry_delay_seconds)
                continue
            logger.info("Checked out PR %s at %s into %s", pr_number, commit, destination)
            return commit

        raise WorkspaceError(
            f"git checkout of PR {pr_number} failed after {max_attempts} attempts: {last_error}",
            transient=True,
        )

    def _attempt(self, pr_number: str, destination: Path) -> str:
        if destination.exists():
            remove_checkout(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        branch = f"pr-{pr_number}"
        self._git(["clone", "--quiet", self._authenticated_remote(), str(destination)])
        self._git(
            [
                "-C",
                str(destination),
                "fetch",
                "--quiet",
                self._settings.origin,
                f"pull/{pr_number}/head:{branch}",
            ],
        )
        self._git(["-C", str(destination), "checkout", "--quiet", branch])
        result = self._git(["-C", str(destination), "rev-parse", "HEAD"])
        commit = result.stdout.strip()
        if not commit:
            raise WorkspaceError("git rev-parse returned an empty commit hash")
        return commit

    def _git(self, args: list[str]) -> CommandResult:
        argv = ["git", *args]
        try:
            result = self._runner.run(
                argv,
                timeout_seconds=self._timeout_seconds,
                env={"GIT_TERMINAL_PROMPT": "0"},
            )
        except CommandNotFoundError as error:
            raise WorkspaceError(str(error), transient=False) from error
        except OSError as error:
            raise WorkspaceError(f"git failed to start: {error}", transient=True) from error
        if result.ok:
            return result
        stderr = redact_url(result.stderr.strip())
        if result.canceled:
            raise WorkspaceError(f"{result.describe()} canceled by shutdown", transient=False)
        if result.timed_out:
            raise WorkspaceError(f"{result.describe()} timed out", transient=True)
        raise WorkspaceError(
            f"{result.describe()} exited with {result.exit_code}: {stderr}",
            transient=is_transient_git_failure(stderr),
        )

    def _authenticated_remote(self) -> str:
        token = self._settings.token.strip()
        if not token:
            return self._settings.remote
        parts = urlsplit(self._settings.remote)
        if parts.scheme not in {"http", "https"}:
            return self._settings.remote
        username = quote(self._settings.username or "x-access-token", safe="")
        netloc = f"{username}:{quote(token, safe='')}@{parts.hostname or ''}"
        if parts.port is not None:
            netloc = f"{netloc}:{parts.port}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def is_transient_git_failure(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(pattern in lowered for pattern in _TRANSIENT_GIT_PATTERNS)


def remove_checkout(path: Path) -> bool:
    """Delete a checkout directory; returns False when deletion failed."""

    if not path.exists():
        return True
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except OSError as error:
        logger.error("could not delete taxonomy directory %s: %s", path, error)
        return False
    return True
