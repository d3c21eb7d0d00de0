"""CLI entrypoint for taxonomy-worker."""

import logging
from pathlib import Path

import rich_click as click

from taxonomy_worker import __version__
from taxonomy_worker.jobs.controllers import (
    EnqueueTestCommand,
    GenerateWorkerCommand,
    WorkerCliController,
)

click.rich_click.USE_MARKDOWN = True
WORKER_CONTROLLER = WorkerCliController()

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="taxonomy-worker")
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging.")
def taxonomy_worker(debug: bool) -> None:
    """Taxonomy pull-request job worker."""

    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO, format=_LOG_FORMAT)


@taxonomy_worker.command("generate")
@click.option("--github-token", default=None, help="GitHub token used to fetch pull requests.")
@click.option("--github-username", default=None, help="GitHub username for the checkout remote.")
@click.option("--redis", "redis_url", default=None, help="Redis URL of the shared job queue.")
@click.option("--s3-bucket", default=None, help="S3 bucket for published artifacts.")
@click.option("--aws-region", default=None, help="AWS region of the S3 bucket.")
@click.option("--precheck-endpoint-url", default=None, help="OpenAI-compatible chat endpoint.")
@click.option("--precheck-api-key", default=None, help="API key for the precheck endpoint.")
@click.option("--sdg-endpoint-url", default=None, help="SDG service endpoint.")
@click.option(
    "--tls-client-cert",
    type=click.Path(path_type=Path),
    default=None,
    help="Client certificate for the SDG service.",
)
@click.option(
    "--tls-client-key",
    type=click.Path(path_type=Path),
    default=None,
    help="Client private key for the SDG service.",
)
@click.option(
    "--tls-server-ca-cert",
    type=click.Path(path_type=Path),
    default=None,
    help="CA bundle that signs the SDG server certificate.",
)
@click.option(
    "--tls-insecure/--tls-verify",
    default=None,
    help="Skip server certificate verification for outbound HTTPS.",
)
@click.option(
    "--num-instructions",
    type=click.IntRange(min=1),
    default=None,
    help="Number of instructions to generate per job.",
)
@click.option(
    "--max-seed",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum seed examples sent to the SDG service per file.",
)
@click.option(
    "--ilab-config-file",
    type=click.Path(path_type=Path),
    default=None,
    help="instructlab config file.",
)
@click.option(
    "--work-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working directory for checkouts and outputs (default: current directory).",
)
@click.option(
    "--venv-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Virtualenv that provides the ilab executable.",
)
@click.option("--git-remote", default=None, help="Taxonomy repository URL.")
@click.option("--origin", "git_origin", default=None, help="Remote name pull requests live on.")
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Number of jobs processed in parallel.",
)
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0.01),
    default=None,
    help="Seconds between queue polls.",
)
@click.option(
    "--test-mode/--no-test-mode",
    default=None,
    help="Skip real work and report a placeholder result for every job.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls.",
)
def generate(  # noqa: PLR0913
    github_token: str | None,
    github_username: str | None,
    redis_url: str | None,
    s3_bucket: str | None,
    aws_region: str | None,
    precheck_endpoint_url: str | None,
    precheck_api_key: str | None,
    sdg_endpoint_url: str | None,
    tls_client_cert: Path | None,
    tls_client_key: Path | None,
    tls_server_ca_cert: Path | None,
    tls_insecure: bool | None,
    num_instructions: int | None,
    max_seed: int | None,
    ilab_config_file: Path | None,
    work_dir: Path | None,
    venv_dir: Path | None,
    git_remote: str | None,
    git_origin: str | None,
    concurrency: int | None,
    poll_interval: float | None,
    test_mode: bool | None,
    max_idle_polls: int | None,
) -> None:
    """Pop jobs from the queue and run them until stopped."""

    _emit_lines(
        WORKER_CONTROLLER.run_worker(
            GenerateWorkerCommand(
                github_token=github_token,
                github_username=github_username,
                redis_url=redis_url,
                s3_bucket=s3_bucket,
                aws_region=aws_region,
                precheck_endpoint_url=precheck_endpoint_url,
                precheck_api_key=precheck_api_key,
                sdg_endpoint_url=sdg_endpoint_url,
                tls_client_cert=tls_client_cert,
                tls_client_key=tls_client_key,
                tls_server_ca_cert=tls_server_ca_cert,
                tls_insecure=tls_insecure,
                num_instructions=num_instructions,
                max_seed=max_seed,
                ilab_config_file=ilab_config_file,
                work_dir=work_dir,
                venv_dir=venv_dir,
                git_remote=git_remote,
                git_origin=git_origin,
                concurrency=concurrency,
                poll_interval_seconds=poll_interval,
                test_mode=test_mode,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@taxonomy_worker.command("enqueue-test")
@click.option("--pr-number", required=True, help="Pull request number.")
@click.option(
    "--job-type",
    type=click.Choice(["generate-local", "precheck", "sdg-svc", "generate"]),
    default="precheck",
    show_default=True,
    help="Pipeline the job requests.",
)
@click.option("--redis", "redis_url", default=None, help="Redis URL of the shared job queue.")
def enqueue_test(pr_number: str, job_type: str, redis_url: str | None) -> None:
    """Enqueue a job the way the bot producer does."""

    _emit_lines(
        WORKER_CONTROLLER.enqueue_test(
            EnqueueTestCommand(pr_number=pr_number, job_type=job_type, redis_url=redis_url),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taxonomy_worker()
