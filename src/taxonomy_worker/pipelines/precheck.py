"""Precheck pipeline: replay seed-example questions through a chat model."""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import yaml

from taxonomy_worker.config import PrecheckSettings, RuntimeSettings
from taxonomy_worker.jobs.commands import CommandNotFoundError, CommandRunner, redact_command
from taxonomy_worker.jobs.models import JobRun, PrecheckError, TaxonomyFormatError
from taxonomy_worker.pipelines.diff import list_changed_files
from taxonomy_worker.pipelines.taxonomy import (
    KnowledgeExample,
    SkillExample,
    TaxonomyDomain,
    classify_domain,
    compose_question,
    decode_taxonomy,
)
from taxonomy_worker.publish.viewers import render_chatlogs

logger = logging.getLogger(__name__)

COMBINED_YAML_NAME = "combined_chatlogs.yaml"
COMBINED_LOG_NAME = "combined_chatlogs.log"
COMBINED_HTML_NAME = "combined_chatlogs.html"
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H_%M_%S"


@dataclass(slots=True)
class PrecheckSummary:
    """Counters for one precheck run."""

    files: int = 0
    answered: int = 0
    failed: int = 0


@dataclass(frozen=True, slots=True)
class _Question:
    asked: str
    original: str
    answer: str
    context: str | None
    domain: TaxonomyDomain


class PrecheckEngine:
    """Runs ``ilab model chat`` for every seed example of the changed files."""

    def __init__(
        self,
        *,
        settings: PrecheckSettings,
        runtime: RuntimeSettings,
        runner: CommandRunner,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._settings = settings
        self._runtime = runtime
        self._runner = runner
        self._sleep = sleep
        self._clock = clock

    def run(
        self,
        *,
        job: JobRun,
        checkout: Path,
        output_dir: Path,
        staging_dir: Path,
        model_name: str,
    ) -> PrecheckSummary:
        work_dir = self._runtime.resolve_work_dir()
        files = list_changed_files(
            self._runner,
            ilab=self._runtime.ilab_executable(),
            checkout=checkout,
            work_dir=work_dir,
            timeout_seconds=self._runtime.command_timeout_seconds,
        )
        if not files:
            raise PrecheckError("No modified YAML files detected in the PR for precheck")

        summary = PrecheckSummary()
        staging_dir.mkdir(parents=True, exist_ok=True)
        try:
            for relative_path in files:
                self._check_file(
                    job=job,
                    checkout=checkout,
                    relative_path=relative_path,
                    staging_dir=staging_dir,
                    model_name=model_name,
                    work_dir=work_dir,
                    summary=summary,
                )
                summary.files += 1
        finally:
            combine_chatlogs(staging_dir, output_dir)
        logger.info(
            "job=%s precheck finished: files=%d answered=%d failed=%d",
            job.token,
            summary.files,
            summary.answered,
            summary.failed,
        )
        return summary

    def _check_file(  # noqa: PLR0913
        self,
        *,
        job: JobRun,
        checkout: Path,
        relative_path: str,
        staging_dir: Path,
        model_name: str,
        work_dir: Path,
        summary: PrecheckSummary,
    ) -> None:
        path = checkout / relative_path
        try:
            raw = path.read_bytes()
        except OSError as error:
            raise PrecheckError(
                f"Could not open taxonomy yaml file {relative_path}: {error}",
            ) from error
        domain = classify_domain(relative_path)
        logger.info("job=%s precheck of %s contribution %s", job.token, domain.value, relative_path)
        try:
            document = decode_taxonomy(raw, relative_path, domain)
        except TaxonomyFormatError as error:
            raise PrecheckError(str(error)) from error

        for question in _questions(document.examples, domain):
            if self._ask(
                job=job,
                question=question,
                staging_dir=staging_dir,
                model_name=model_name,
                work_dir=work_dir,
            ):
                summary.answered += 1
                # Chat log names have one-second resolution.
                self._sleep(1.0)
            else:
                summary.failed += 1

    def _ask(
        self,
        *,
        job: JobRun,
        question: _Question,
        staging_dir: Path,
        model_name: str,
        work_dir: Path,
    ) -> bool:
        argv = self.chat_command(question.asked, model_name)
        command = redact_command(argv)
        job.record_command(command)
        logger.info("job=%s running the precheck command: %s", job.token, command)
        try:
            result = self._runner.run(
                argv,
                cwd=work_dir,
                timeout_seconds=self._runtime.command_timeout_seconds,
            )
        except CommandNotFoundError as error:
            raise PrecheckError(str(error)) from error
        if not result.ok:
            logger.error(
                "job=%s precheck command failed with exit code %d; stderr: %s",
                job.token,
                result.exit_code,
                result.stderr.strip(),
            )
            return False

        model_answer = result.stdout
        timestamp = self._clock().strftime(_TIMESTAMP_FORMAT)
        record: dict[str, str] = {
            "question": question.original,
            "original-answer": question.answer,
            "model-answer": model_answer,
        }
        if question.context is not None:
            record["context"] = question.context
        (staging_dir / f"chat_{timestamp}.yaml").write_text(
            yaml.safe_dump(record, sort_keys=False, allow_unicode=True),
            "utf-8",
        )
        (staging_dir / f"chat_{timestamp}.log").write_text(
            _transcript(question, model_answer),
            "utf-8",
        )
        return True

    def chat_command(self, question: str, model_name: str) -> list[str]:
        argv = [self._runtime.ilab_executable(), "model", "chat", "--quick-question", question]
        if self._settings.tls_insecure:
            argv.append("--tls-insecure")
        if not self._settings.is_local and model_name != "unknown":
            argv.extend(["--endpoint-url", self._settings.endpoint_url, "--model", model_name])
        if self._settings.api_key:
            argv.extend(["--api-key", self._settings.api_key])
        return argv


def combine_chatlogs(staging_dir: Path, output_dir: Path) -> list[Path]:
    """Move per-example chat logs into ``output_dir`` and write the combined files."""

    if not staging_dir.is_dir():
        return []
    output_dir.mkdir(parents=True, exist_ok=True)
    combined_records: list[object] = []
    record_names: list[str] = []
    combined_text: list[str] = []
    moved: list[Path] = []

    for path in sorted(staging_dir.iterdir()):
        if not path.is_file():
            continue
        if path.suffix == ".yaml":
            try:
                combined_records.append(yaml.safe_load(path.read_text("utf-8")))
                record_names.append(path.name)
            except (OSError, yaml.YAMLError) as error:
                logger.error("Could not read chat log %s: %s", path.name, error)
        elif path.suffix == ".log":
            try:
                combined_text.append(f"\n\n----- {path.name} -----\n\n\n{path.read_text('utf-8')}")
            except OSError as error:
                logger.error("Could not read chat log %s: %s", path.name, error)
        target = output_dir / path.name
        try:
            shutil.move(str(path), str(target))
        except OSError as error:
            logger.error("Could not move file %s: %s", path.name, error)
            continue
        moved.append(target)

    if combined_text:
        (output_dir / COMBINED_LOG_NAME).write_text("".join(combined_text), "utf-8")
    if combined_records:
        (output_dir / COMBINED_YAML_NAME).write_text(
            yaml.safe_dump(combined_records, sort_keys=False, allow_unicode=True),
            "utf-8",
        )
        entries = [
            yaml.safe_dump(record, sort_keys=False, allow_unicode=True)
            for record in combined_records
        ]
        (output_dir / COMBINED_HTML_NAME).write_text(
            render_chatlogs(entries, record_names),
            "utf-8",
        )
    try:
        staging_dir.rmdir()
    except OSError:
        logger.debug("Staging directory %s not removed", staging_dir)
    return moved


def _questions(
    examples: list[SkillExample | KnowledgeExample],
    domain: TaxonomyDomain,
) -> list[_Question]:
    questions: list[_Question] = []
    for example in examples:
        if isinstance(example, SkillExample):
            questions.append(
                _Question(
                    asked=compose_question(example.question, example.context),
                    original=example.question,
                    answer=example.answer,
                    context=example.context,
                    domain=domain,
                ),
            )
            continue
        for pair in example.questions_and_answers:
            # Knowledge context is recorded but never appended to the question.
            questions.append(
                _Question(
                    asked=compose_question(pair.question),
                    original=pair.question,
                    answer=pair.answer,
                    context=example.context,
                    domain=domain,
                ),
            )
    return questions


def _transcript(question: _Question, model_answer: str) -> str:
    if question.domain is TaxonomyDomain.KNOWLEDGE:
        return (
            f"Context:\n{question.context}\n"
            f"Question:\n{question.original}\n"
            f"OriginalAnswer:\n{question.answer}\n"
            f"ModelAnswer:\n{model_answer}\n"
        )
    return f"Input: {question.original}\n\nOutput:\n{model_answer}\n"
