"""Shared test fixtures and in-process doubles for the worker's collaborators."""

from __future__ import annotations

import itertools
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from botocore.exceptions import ClientError

from taxonomy_worker.config import GitSettings, IlabConfig, RuntimeSettings, Settings
from taxonomy_worker.jobs.commands import CommandResult
from taxonomy_worker.jobs.models import JobField, QueueError
from taxonomy_worker.jobs.queue import job_key


class InMemoryJobQueue:
    """Queue contract over plain dicts; LPUSH/RPOP order like Redis."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.counter = 0
        self.fail_pops = 0
        self.closed = False

    def ping(self) -> None:
        return None

    def pop(self, list_name: str) -> str | None:
        if self.fail_pops:
            self.fail_pops -= 1
            raise QueueError("Could not pop from redis queue: connection reset")
        items = self.lists.get(list_name)
        if not items:
            return None
        return items.pop()

    def push(self, list_name: str, token: str) -> None:
        self.lists.setdefault(list_name, []).insert(0, token)

    def set_field(self, token: str, job_field: JobField, value: str | int | float) -> None:
        self.values[job_key(token, job_field)] = str(value)

    def get_field(self, token: str, job_field: JobField) -> str | None:
        return self.values.get(job_key(token, job_field))

    def allocate_token(self) -> str:
        self.counter += 1
        return str(self.counter)

    def close(self) -> None:
        self.closed = True

    def field(self, token: str, job_field: JobField) -> str | None:
        return self.get_field(token, job_field)

    def enqueue(self, *, pr_number: str | None, job_type: str, work_list: str = "generate") -> str:
        token = self.allocate_token()
        if pr_number is not None:
            self.set_field(token, JobField.PR_NUMBER, pr_number)
        self.set_field(token, JobField.JOB_TYPE, job_type)
        self.set_field(token, JobField.STATUS, "pending")
        self.push(work_list, token)
        return token


class RecordingS3Client:
    """Stands in for the boto3 S3 client; keeps every uploaded object."""

    def __init__(self, *, fail_keys: Sequence[str] = ()) -> None:
        self.objects: dict[str, dict[str, Any]] = {}
        self.fail_keys = set(fail_keys)

    def put_object(self, **kwargs: Any) -> dict[str, Any]:
        key = kwargs["Key"]
        if any(key.endswith(suffix) for suffix in self.fail_keys):
            raise ClientError(
                {"Error": {"Code": "InternalError", "Message": "upload failed"}},
                "PutObject",
            )
        self.objects[key] = kwargs
        return {"ETag": '"etag"'}

    def names(self) -> set[str]:
        return {key.rsplit("/", 1)[-1] for key in self.objects}


class FakeCommandRunner:
    """Scripted replacement for ``CommandRunner``.

    Rules match when every word is present in argv; the last matching rule
    registered wins. Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self._rules: list[tuple[tuple[str, ...], dict[str, Any]]] = []

    def on(
        self,
        *words: str,
        exit_code: int = 0,
        stdout: str | Callable[[list[str]], str] = "",
        stderr: str = "",
        action: Callable[[list[str]], None] | None = None,
    ) -> None:
        self._rules.append(
            (
                words,
                {"exit_code": exit_code, "stdout": stdout, "stderr": stderr, "action": action},
            ),
        )

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout_seconds: float | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        args = [str(part) for part in argv]
        self.calls.append(args)
        for words, rule in reversed(self._rules):
            if not all(word in args for word in words):
                continue
            if rule["action"] is not None:
                rule["action"](args)
            stdout = rule["stdout"]
            return CommandResult(
                argv=tuple(args),
                exit_code=rule["exit_code"],
                stdout=stdout(args) if callable(stdout) else stdout,
                stderr=rule["stderr"],
            )
        return CommandResult(argv=tuple(args), exit_code=0, stdout="", stderr="")

    def calls_with(self, *words: str) -> list[list[str]]:
        return [call for call in self.calls if all(word in call for word in words)]


def install_git_checkout(
    runner: FakeCommandRunner,
    files: dict[str, str],
    *,
    commit: str = "abc123",
) -> None:
    """Make ``git clone`` materialize ``files`` and ``rev-parse`` report ``commit``."""

    def _clone(args: list[str]) -> None:
        destination = Path(args[-1])
        destination.mkdir(parents=True, exist_ok=True)
        for relative_path, content in files.items():
            target = destination / relative_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, "utf-8")

    runner.on("git", "clone", action=_clone)
    runner.on("git", "rev-parse", stdout=f"{commit}\n")


def install_diff(runner: FakeCommandRunner, paths: Sequence[str]) -> None:
    runner.on("taxonomy", "diff", stdout="".join(f"{path}\n" for path in paths))


def stepping_clock(start: datetime | None = None) -> Callable[[], datetime]:
    """Clock that advances one second per call."""

    base = start or datetime(2024, 5, 1, 12, 0, 0)
    counter = itertools.count()
    return lambda: base + timedelta(seconds=next(counter))


@pytest.fixture()
def job_queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture()
def s3_client() -> RecordingS3Client:
    return RecordingS3Client()


@pytest.fixture()
def runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        git=GitSettings(token="ghp_secret", retry_delay_seconds=0.0),
        runtime=RuntimeSettings(work_dir=tmp_path / "work", poll_interval_seconds=0.01),
    )


@pytest.fixture()
def ilab_config() -> IlabConfig:
    return IlabConfig(
        chat_logs_dir=Path("data/chatlogs"),
        chat_model="models/merlinite-7b-lab-Q4_K_M.gguf",
        generate_model="models/granite-7b-lab-Q4_K_M.gguf",
        taxonomy_path=Path("taxonomy"),
    )
