"""Changed taxonomy files of a checkout, as reported by ``ilab taxonomy diff``."""

from __future__ import annotations

import logging
from pathlib import Path

from taxonomy_worker.jobs.commands import CommandNotFoundError, CommandRunner
from taxonomy_worker.jobs.models import JobError
from taxonomy_worker.pipelines.taxonomy import changed_taxonomy_files

logger = logging.getLogger(__name__)


class TaxonomyDiffError(JobError):
    """Diff command could not list the changed taxonomy files."""


def list_changed_files(
    runner: CommandRunner,
    *,
    ilab: str,
    checkout: Path,
    work_dir: Path,
    timeout_seconds: float | None = None,
) -> list[str]:
    """Return changed ``.yaml`` paths relative to the taxonomy root."""

    argv = [ilab, "taxonomy", "diff", "--taxonomy-path", str(checkout)]
    try:
        result = runner.run(argv, cwd=work_dir, timeout_seconds=timeout_seconds)
    except CommandNotFoundError as error:
        raise TaxonomyDiffError(f"Failed to execute 'ilab taxonomy diff': {error}") from error
    if not result.ok:
        raise TaxonomyDiffError(
            f"Failed to execute 'ilab taxonomy diff': exit code {result.exit_code}. "
            f"\nDetails: {result.stderr.strip()}",
        )
    logger.debug("ilab taxonomy diff output: %s", result.stdout)
    return changed_taxonomy_files(result.stdout)
