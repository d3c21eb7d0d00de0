"""Terminal status writes for finished jobs."""

from __future__ import annotations

import logging
import math

from taxonomy_worker.jobs.models import JobField, JobRun, JobStatus, QueueError
from taxonomy_worker.jobs.queue import JobQueue

logger = logging.getLogger(__name__)


class ResultNotifier:
    """Writes the outcome into the job record and pushes the token onto the results list.

    Each write is attempted independently so one failing key does not keep the
    others, or the results push, from happening.
    """

    def __init__(self, *, queue: JobQueue, results_list: str = "results") -> None:
        self._queue = queue
        self._results_list = results_list

    def report_success(self, job: JobRun, *, url: str, model_name: str) -> None:
        duration = math.ceil(job.elapsed_seconds())
        logger.info("job=%s took %ds to run", job.token, duration)
        self._set(job, JobField.DURATION, duration)
        self._set(job, JobField.STATUS, JobStatus.SUCCESS.value)
        self._set(job, JobField.S3_URL, url)
        self._set(job, JobField.CMD, job.last_command)
        self._set(job, JobField.MODEL_NAME, model_name)
        self._push(job)

    def report_error(self, job: JobRun, error: BaseException | str) -> None:
        message = str(error)
        logger.error("job=%s failed: %s", job.token, message)
        self._set(job, JobField.ERRORS, message)
        self._set(job, JobField.STATUS, JobStatus.ERROR.value)
        self._push(job)

    def _set(self, job: JobRun, job_field: JobField, value: str | int | float) -> None:
        try:
            self._queue.set_field(job.token, job_field, value)
        except QueueError as error:
            logger.error("job=%s %s", job.token, error)

    def _push(self, job: JobRun) -> None:
        try:
            self._queue.push(self._results_list, job.token)
        except QueueError as error:
            logger.error("job=%s %s", job.token, error)
