"""Per-job state machine: checkout, run the requested pipeline, publish, report."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from taxonomy_worker.config import IlabConfig, Settings
from taxonomy_worker.jobs.commands import CommandNotFoundError, CommandRunner, redact_command
from taxonomy_worker.jobs.models import (
    GenerationError,
    JobError,
    JobField,
    JobKind,
    JobRun,
    JobStatus,
    PublishError,
    QueueError,
    WorkspaceError,
)
from taxonomy_worker.jobs.notifier import ResultNotifier
from taxonomy_worker.jobs.queue import JobQueue
from taxonomy_worker.jobs.workspace import GitWorkspaceManager, remove_checkout
from taxonomy_worker.pipelines.models_endpoint import ModelNameResolver
from taxonomy_worker.pipelines.precheck import PrecheckEngine
from taxonomy_worker.pipelines.sdg import SdgPipeline
from taxonomy_worker.publish.publisher import ArtifactPublisher, PublishRequest

logger = logging.getLogger(__name__)

TEST_MODE_URL = "https://example.com"


class JobProcessor:
    """Runs one popped job to a terminal status.

    Every job that reaches ``running`` gets exactly one terminal write
    through the notifier, whatever goes wrong in between.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        ilab_config: IlabConfig,
        queue: JobQueue,
        workspace: GitWorkspaceManager,
        runner: CommandRunner,
        precheck: PrecheckEngine,
        sdg: SdgPipeline,
        publisher: ArtifactPublisher,
        notifier: ResultNotifier,
        models: ModelNameResolver,
        slot: int = 0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.ilab_config = ilab_config
        self.queue = queue
        self.workspace = workspace
        self.runner = runner
        self.precheck = precheck
        self.sdg = sdg
        self.publisher = publisher
        self.notifier = notifier
        self.models = models
        self.slot = slot
        self._sleep = sleep
        self._clock = clock

    def checkout_path(self, work_dir: Path) -> Path:
        base = self.ilab_config.resolve_taxonomy_path(work_dir)
        if self.slot == 0:
            return base
        return base.with_name(f"{base.name}-{self.slot}")

    def process(self, token: str) -> JobStatus | None:
        """Run the job and return its terminal status, or None if it never started."""

        job = JobRun(token=token, started_at=self._clock())
        try:
            self.queue.set_field(token, JobField.STATUS, JobStatus.RUNNING.value)
        except QueueError as error:
            logger.error("job=%s could not mark job as running: %s", token, error)
            return None

        try:
            job.kind = JobKind.parse(self.queue.get_field(token, JobField.JOB_TYPE))
            job.pr_number = self.queue.get_field(token, JobField.PR_NUMBER)
            logger.info("job=%s kind=%s pr=%s started", token, job.kind.value, job.pr_number)

            if self.settings.runtime.test_mode:
                self._sleep(self.settings.runtime.test_mode_delay_seconds)
                self.notifier.report_success(
                    job,
                    url=TEST_MODE_URL,
                    model_name=self.models.for_report(job.kind),
                )
                logger.info("job=%s done (test mode)", token)
                return JobStatus.SUCCESS

            if not job.pr_number:
                raise JobError(f"Could not get pr_number for job {token}")
            url = self._run(job, kind=job.kind, pr_number=job.pr_number)
        except JobError as error:
            self.notifier.report_error(job, error)
            return JobStatus.ERROR
        except Exception as error:  # noqa: BLE001
            logger.exception("job=%s unexpected failure", token)
            self.notifier.report_error(job, f"unexpected error: {error}")
            return JobStatus.ERROR

        self.notifier.report_success(job, url=url, model_name=self.models.for_report(job.kind))
        logger.info("job=%s done", token)
        return JobStatus.SUCCESS

    def _run(self, job: JobRun, *, kind: JobKind, pr_number: str) -> str:
        work_dir = self.settings.runtime.resolve_work_dir()
        checkout = self.checkout_path(work_dir)
        if checkout.exists():
            logger.warning("job=%s taxonomy directory exists, deleting %s", job.token, checkout)
            remove_checkout(checkout)

        try:
            try:
                commit = self.workspace.checkout(pr_number, checkout)
            except WorkspaceError as error:
                raise WorkspaceError(
                    f"git operations error: {error}",
                    transient=error.transient,
                ) from error

            output_dir_name = f"{kind.value}-pr-{pr_number}-{commit}"
            # Jobs for the same PR and commit can run side by side in the pool.
            output_dir = work_dir / f"{output_dir_name}-job-{job.token}"
            output_dir.mkdir(parents=True, exist_ok=True)
            model_name = self.models.for_command(kind)

            if kind is JobKind.GENERATE_LOCAL:
                self._generate_local(job, checkout=checkout, output_dir=output_dir)
            elif kind is JobKind.PRECHECK:
                chat_logs_dir = self.ilab_config.resolve_chat_logs_dir(work_dir)
                self.precheck.run(
                    job=job,
                    checkout=checkout,
                    output_dir=output_dir,
                    staging_dir=chat_logs_dir / f"job-{job.token}",
                    model_name=model_name,
                )
            else:
                self.sdg.run(job=job, checkout=checkout, output_dir=output_dir)

            index_key = self.publisher.publish(
                PublishRequest(
                    output_dir=output_dir,
                    output_dir_name=output_dir_name,
                    job_token=job.token,
                    pr_number=pr_number,
                    started_at=job.started_at,
                ),
            )
            if index_key is None:
                raise PublishError("Failed to handle output files correctly: no artifacts")
            return self.publisher.public_url(index_key)
        finally:
            remove_checkout(checkout)

    def _generate_local(self, job: JobRun, *, checkout: Path, output_dir: Path) -> None:
        runtime = self.settings.runtime
        argv = [
            runtime.ilab_executable(),
            "data",
            "generate",
            "--num-instructions",
            str(runtime.num_instructions),
            "--output-dir",
            str(output_dir),
            "--taxonomy-path",
            str(checkout),
        ]
        command = redact_command(argv)
        job.record_command(command)
        logger.info("job=%s running the generate command: %s", job.token, command)
        try:
            result = self.runner.run(
                argv,
                cwd=runtime.resolve_work_dir(),
                timeout_seconds=runtime.command_timeout_seconds,
            )
        except CommandNotFoundError as error:
            raise GenerationError(str(error)) from error
        if not result.ok:
            raise GenerationError(
                f"Error running command ({command}): exit code {result.exit_code}. "
                f"\nDetails: {result.stdout.strip()}\n{result.stderr.strip()}",
            )
