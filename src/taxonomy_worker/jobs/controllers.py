"""Controllers for worker CLI commands."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import boto3
import rich_click as click
from botocore.exceptions import BotoCoreError

from taxonomy_worker.config import ConfigError, IlabConfig, Settings, load_ilab_config
from taxonomy_worker.jobs.commands import CommandRunner
from taxonomy_worker.jobs.dispatcher import JobDispatcher
from taxonomy_worker.jobs.models import JobField, JobKind, JobStatus, QueueError
from taxonomy_worker.jobs.notifier import ResultNotifier
from taxonomy_worker.jobs.processor import JobProcessor
from taxonomy_worker.jobs.queue import JobQueue, RedisJobQueue
from taxonomy_worker.jobs.workspace import GitWorkspaceManager
from taxonomy_worker.pipelines.models_endpoint import ModelNameResolver
from taxonomy_worker.pipelines.precheck import PrecheckEngine
from taxonomy_worker.pipelines.sdg import SdgClient, SdgPipeline
from taxonomy_worker.publish.publisher import ArtifactPublisher, ObjectStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GenerateWorkerCommand:
    """CLI input for the long-running worker.

    ``None`` means "keep the value loaded from the environment".
    """

    github_token: str | None = None
    github_username: str | None = None
    redis_url: str | None = None
    s3_bucket: str | None = None
    aws_region: str | None = None
    precheck_endpoint_url: str | None = None
    precheck_api_key: str | None = None
    sdg_endpoint_url: str | None = None
    tls_client_cert: Path | None = None
    tls_client_key: Path | None = None
    tls_server_ca_cert: Path | None = None
    tls_insecure: bool | None = None
    num_instructions: int | None = None
    max_seed: int | None = None
    ilab_config_file: Path | None = None
    work_dir: Path | None = None
    venv_dir: Path | None = None
    git_remote: str | None = None
    git_origin: str | None = None
    concurrency: int | None = None
    poll_interval_seconds: float | None = None
    test_mode: bool | None = None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class EnqueueTestCommand:
    """CLI input for pushing a job the way the producer does."""

    pr_number: str
    job_type: str
    redis_url: str | None = None


def apply_overrides(settings: Settings, command: GenerateWorkerCommand) -> Settings:
    """Return ``settings`` with every flag the user passed applied on top."""

    def _pick(current: Any, override: Any) -> Any:
        return current if override is None else override

    git = replace(
        settings.git,
        token=_pick(settings.git.token, command.github_token),
        username=_pick(settings.git.username, command.github_username),
        remote=_pick(settings.git.remote, command.git_remote),
        origin=_pick(settings.git.origin, command.git_origin),
    )
    tls_insecure_precheck = _pick(settings.precheck.tls_insecure, command.tls_insecure)
    tls_insecure_sdg = _pick(settings.sdg.tls_insecure, command.tls_insecure)
    return replace(
        settings,
        ilab_config_file=_pick(settings.ilab_config_file, command.ilab_config_file),
        queue=replace(settings.queue, redis_url=_pick(settings.queue.redis_url, command.redis_url)),
        git=git,
        storage=replace(
            settings.storage,
            s3_bucket=_pick(settings.storage.s3_bucket, command.s3_bucket),
            aws_region=_pick(settings.storage.aws_region, command.aws_region),
        ),
        precheck=replace(
            settings.precheck,
            endpoint_url=_pick(settings.precheck.endpoint_url, command.precheck_endpoint_url),
            api_key=_pick(settings.precheck.api_key, command.precheck_api_key),
            tls_insecure=tls_insecure_precheck,
        ),
        sdg=replace(
            settings.sdg,
            endpoint_url=_pick(settings.sdg.endpoint_url, command.sdg_endpoint_url),
            tls_client_cert=_pick(settings.sdg.tls_client_cert, command.tls_client_cert),
            tls_client_key=_pick(settings.sdg.tls_client_key, command.tls_client_key),
            tls_server_ca_cert=_pick(
                settings.sdg.tls_server_ca_cert,
                command.tls_server_ca_cert,
            ),
            tls_insecure=tls_insecure_sdg,
            max_seed=_pick(settings.sdg.max_seed, command.max_seed),
        ),
        runtime=replace(
            settings.runtime,
            work_dir=_pick(settings.runtime.work_dir, command.work_dir),
            venv_dir=_pick(settings.runtime.venv_dir, command.venv_dir),
            num_instructions=_pick(settings.runtime.num_instructions, command.num_instructions),
            concurrency=_pick(settings.runtime.concurrency, command.concurrency),
            poll_interval_seconds=_pick(
                settings.runtime.poll_interval_seconds,
                command.poll_interval_seconds,
            ),
            test_mode=_pick(settings.runtime.test_mode, command.test_mode),
        ),
    )


def create_s3_client(region: str) -> ObjectStore:
    """S3 client from the default AWS credential chain; missing credentials are fatal."""

    try:
        session = boto3.session.Session(region_name=region)
        credentials = session.get_credentials()
    except BotoCoreError as error:
        raise ConfigError(f"Could not create AWS session: {error}") from error
    if credentials is None:
        raise ConfigError("No AWS credentials found; configure the default credential chain.")
    return session.client("s3")


class WorkerCliController:
    """Builds the worker from settings and runs CLI operations."""

    def __init__(
        self,
        *,
        queue_factory: Callable[[str], RedisJobQueue] = RedisJobQueue.from_url,
        s3_factory: Callable[[str], ObjectStore] = create_s3_client,
    ) -> None:
        self.queue_factory = queue_factory
        self.s3_factory = s3_factory

    def run_worker(self, command: GenerateWorkerCommand) -> list[str]:
        settings = self._load_settings(command)
        ilab_config = self._fatal(load_ilab_config, settings.ilab_config_file)
        job_queue = self._connect(settings.queue.redis_url)
        s3_client = self._fatal(self.s3_factory, settings.storage.aws_region)

        stop_event = threading.Event()
        runner = CommandRunner(shutdown_requested=stop_event.is_set)
        models = ModelNameResolver(settings=settings.precheck, ilab_config=ilab_config)
        sdg_clients: list[SdgClient] = []

        def _processor(slot: int) -> JobProcessor:
            sdg_client = SdgClient(settings=settings.sdg)
            sdg_clients.append(sdg_client)
            return build_processor(
                settings=settings,
                ilab_config=ilab_config,
                queue=job_queue,
                runner=runner,
                s3_client=s3_client,
                models=models,
                sdg_client=sdg_client,
                slot=slot,
            )

        dispatcher = JobDispatcher(
            queue_client=job_queue,
            processor_factory=_processor,
            work_list=settings.queue.work_list,
            concurrency=settings.runtime.concurrency,
            poll_interval_seconds=settings.runtime.poll_interval_seconds,
            stop_event=stop_event,
        )
        logger.info(
            "Worker started: queue=%s concurrency=%d test_mode=%s",
            settings.queue.work_list,
            settings.runtime.concurrency,
            settings.runtime.test_mode,
        )
        try:
            summary = dispatcher.run_loop(max_idle_polls=command.max_idle_polls)
        finally:
            for sdg_client in sdg_clients:
                sdg_client.close()
            models.close()
            job_queue.close()

        return [
            "Worker summary: "
            f"dispatched={summary.dispatched} idle_polls={summary.idle_polls} "
            f"pop_errors={summary.pop_errors}",
        ]

    def enqueue_test(self, command: EnqueueTestCommand) -> list[str]:
        settings = self._env_settings()
        if command.redis_url is not None:
            settings = replace(settings, queue=replace(settings.queue, redis_url=command.redis_url))
        kind = self._fatal(JobKind.parse, command.job_type)
        job_queue = self._connect(settings.queue.redis_url)
        try:
            token = enqueue_job(
                job_queue,
                pr_number=command.pr_number,
                kind=kind,
                work_list=settings.queue.work_list,
            )
        except QueueError as error:
            logger.error("Could not enqueue job: %s", error)
            raise click.ClickException(str(error)) from error
        finally:
            job_queue.close()
        return [
            f"Job enqueued: token={token} kind={kind.value} pr={command.pr_number} "
            f"list={settings.queue.work_list}",
        ]

    def _load_settings(self, command: GenerateWorkerCommand) -> Settings:
        settings = apply_overrides(self._env_settings(), command)
        try:
            settings.validate()
        except ValueError as error:
            logger.error("Invalid configuration: %s", error)
            raise click.ClickException(str(error)) from error
        return settings

    @staticmethod
    def _env_settings() -> Settings:
        try:
            return Settings.from_env()
        except ValueError as error:
            logger.error("Invalid configuration: %s", error)
            raise click.ClickException(str(error)) from error

    def _connect(self, redis_url: str) -> RedisJobQueue:
        job_queue = self.queue_factory(redis_url)
        try:
            job_queue.ping()
        except QueueError as error:
            logger.error("%s", error)
            raise click.ClickException(str(error)) from error
        return job_queue

    @staticmethod
    def _fatal(factory: Callable[[Any], Any], argument: Any) -> Any:
        try:
            return factory(argument)
        except (ConfigError, ValueError) as error:
            logger.error("%s", error)
            raise click.ClickException(str(error)) from error


def build_processor(  # noqa: PLR0913
    *,
    settings: Settings,
    ilab_config: IlabConfig,
    queue: JobQueue,
    runner: CommandRunner,
    s3_client: ObjectStore,
    models: ModelNameResolver,
    sdg_client: SdgClient,
    slot: int = 0,
) -> JobProcessor:
    return JobProcessor(
        settings=settings,
        ilab_config=ilab_config,
        queue=queue,
        workspace=GitWorkspaceManager(settings=settings.git, runner=runner),
        runner=runner,
        precheck=PrecheckEngine(
            settings=settings.precheck,
            runtime=settings.runtime,
            runner=runner,
        ),
        sdg=SdgPipeline(
            settings=settings.sdg,
            runtime=settings.runtime,
            runner=runner,
            client=sdg_client,
        ),
        publisher=ArtifactPublisher(s3_client=s3_client, settings=settings.storage),
        notifier=ResultNotifier(queue=queue, results_list=settings.queue.results_list),
        models=models,
        slot=slot,
    )


def enqueue_job(job_queue: JobQueue, *, pr_number: str, kind: JobKind, work_list: str) -> str:
    """Create a pending job record and push its token onto the work list."""

    token = job_queue.allocate_token()
    job_queue.set_field(token, JobField.PR_NUMBER, pr_number)
    job_queue.set_field(token, JobField.JOB_TYPE, kind.value)
    job_queue.set_field(token, JobField.STATUS, JobStatus.PENDING.value)
    job_queue.push(work_list, token)
    return token
