"""Domain models for queued taxonomy jobs."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


class JobKind(str, Enum):
    """Pipelines a queued job can request."""

    GENERATE_LOCAL = "generate-local"
    PRECHECK = "precheck"
    SDG_SVC = "sdg-svc"

    @classmethod
    def parse(cls, value: str | None) -> JobKind:
        normalized = (value or "").strip()
        # Older producers enqueue local generation as plain "generate".
        if normalized == "generate":
            return cls.GENERATE_LOCAL
        try:
            return cls(normalized)
        except ValueError as error:
            raise UnknownJobKindError(f"Unknown job type: {value!r}") from error


class JobStatus(str, Enum):
    """Job lifecycle states stored in the job record."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class JobField(str, Enum):
    """Scalar fields stored under ``jobs:<token>:<field>``."""

    STATUS = "status"
    PR_NUMBER = "pr_number"
    JOB_TYPE = "job_type"
    DURATION = "duration"
    ERRORS = "errors"
    S3_URL = "s3_url"
    CMD = "cmd"
    MODEL_NAME = "model_name"


@dataclass(slots=True)
class JobRun:
    """Execution context of one popped job, owned by a single processor."""

    token: str
    started_at: float = field(default_factory=time.time)
    pr_number: str | None = None
    kind: JobKind | None = None
    last_command: str = ""

    def record_command(self, command: str) -> None:
        self.last_command = command

    def elapsed_seconds(self, now: float | None = None) -> float:
        current = time.time() if now is None else now
        return max(0.0, current - self.started_at)


class JobError(RuntimeError):
    """Job-fatal failure routed to the error-reporting path."""


class UnknownJobKindError(JobError):
    """Job record names a pipeline this worker does not run."""


class QueueError(JobError):
    """Shared queue operation failed."""


class WorkspaceError(JobError):
    """Taxonomy checkout could not be prepared."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class GenerationError(JobError):
    """Local generation command failed."""


class PrecheckError(JobError):
    """Precheck pipeline failed."""


class TaxonomyFormatError(JobError):
    """Taxonomy document is malformed."""


class SdgError(JobError):
    """Synthetic-data-generation request failed."""


class PublishError(JobError):
    """No artifacts could be published."""
