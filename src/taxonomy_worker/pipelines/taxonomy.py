"""Typed decoding of taxonomy seed-example documents."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any

import yaml

from taxonomy_worker.jobs.models import TaxonomyFormatError

logger = logging.getLogger(__name__)

TAXONOMY_EXTENSION = ".yaml"
KNOWLEDGE_FOLDER = "knowledge"
CONTEXT_PROMPT = "Answer this based on the following context:"

_HYPHEN_RUN = re.compile(r"-{2,}")


class TaxonomyDomain(str, Enum):
    SKILL = "skill"
    KNOWLEDGE = "knowledge"


@dataclass(frozen=True, slots=True)
class QuestionAnswer:
    question: str
    answer: str


@dataclass(frozen=True, slots=True)
class SkillExample:
    question: str
    answer: str
    context: str | None = None


@dataclass(frozen=True, slots=True)
class KnowledgeExample:
    context: str
    questions_and_answers: tuple[QuestionAnswer, ...]


SeedExample = SkillExample | KnowledgeExample


@dataclass(slots=True)
class TaxonomyDocument:
    """Decoded taxonomy file with the raw mapping kept for request payloads."""

    path: str
    domain: TaxonomyDomain
    examples: list[SeedExample]
    data: dict[str, Any]
    rejected: list[str] = field(default_factory=list)


def classify_domain(relative_path: str, knowledge_folder: str = KNOWLEDGE_FOLDER) -> TaxonomyDomain:
    """Knowledge files live under the knowledge folder; everything else is a skill."""

    parts = PurePosixPath(relative_path.strip().replace("\\", "/")).parts
    if parts and parts[0] == knowledge_folder:
        return TaxonomyDomain.KNOWLEDGE
    return TaxonomyDomain.SKILL


def changed_taxonomy_files(diff_output: str) -> list[str]:
    """Pick the taxonomy file paths out of ``ilab taxonomy diff`` output."""

    files: list[str] = []
    for line in diff_output.splitlines():
        candidate = line.strip()
        if candidate.endswith(TAXONOMY_EXTENSION) and candidate not in files:
            files.append(candidate)
    return files


def escape_hyphens(text: str) -> str:
    """Escape runs of two or more hyphens so the chat CLI does not read them as flags."""

    return _HYPHEN_RUN.sub(lambda match: "\\-" * len(match.group(0)), text)


def compose_question(question: str, context: str | None = None) -> str:
    composed = escape_hyphens(question)
    if context is None:
        return composed
    return f"{composed} {CONTEXT_PROMPT} {escape_hyphens(context)}."


def load_mapping(raw: bytes | str, path: str) -> dict[str, Any]:
    try:
        payload = yaml.safe_load(raw)
    except yaml.YAMLError as error:
        raise TaxonomyFormatError(
            f"the original taxonomy YAML {path} likely did not pass yaml-linting, "
            f"here is the unmarshalling error: {error}",
        ) from error
    if not isinstance(payload, dict):
        raise TaxonomyFormatError(f"taxonomy file {path} is not a YAML mapping")
    return {str(key): value for key, value in payload.items()}


def decode_taxonomy(raw: bytes | str, path: str, domain: TaxonomyDomain) -> TaxonomyDocument:
    """Decode and validate a taxonomy file into typed seed examples.

    A missing or non-list ``seed_examples`` rejects the whole document.
    Individual examples with absent or non-string required fields are
    skipped and listed in ``rejected``.
    """

    data = load_mapping(raw, path)
    seed_examples = data.get("seed_examples")
    if not isinstance(seed_examples, list):
        raise TaxonomyFormatError(
            f"seed_examples not found or not a list in {domain.value} file: {path}",
        )

    document = TaxonomyDocument(path=path, domain=domain, examples=[], data=data)
    for index, item in enumerate(seed_examples):
        if domain is TaxonomyDomain.KNOWLEDGE:
            example, problems = _knowledge_example(item, index)
        else:
            example, problems = _skill_example(item, index)
        for problem in problems:
            logger.error("%s: %s", path, problem)
        document.rejected.extend(problems)
        if example is not None:
            document.examples.append(example)
    return document


def cap_seed_examples(raw: bytes, max_seed: int, path: str) -> tuple[bytes, int, bool]:
    """Trim ``seed_examples`` to ``max_seed`` items.

    Returns the (possibly re-serialized) document, the original example count
    and whether trimming happened. Input bytes are returned untouched when no
    trimming is needed.
    """

    data = load_mapping(raw, path)
    seed_examples = data.get("seed_examples")
    if not isinstance(seed_examples, list):
        return raw, 0, False
    original_count = len(seed_examples)
    if original_count <= max_seed:
        return raw, original_count, False
    data["seed_examples"] = seed_examples[:max_seed]
    trimmed = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    return trimmed.encode("utf-8"), original_count, True


def _skill_example(item: object, index: int) -> tuple[SkillExample | None, list[str]]:
    if not isinstance(item, dict):
        return None, [f"Invalid seed example format in skill seed example {index}"]
    question = item.get("question")
    if not isinstance(question, str):
        return None, [f"Question not found or not a string in skill seed example {index}"]
    answer = item.get("answer")
    if not isinstance(answer, str):
        return None, [f"Answer not found or not a string in skill seed example {index}"]
    context = item.get("context")
    return SkillExample(
        question=question,
        answer=answer,
        context=context if isinstance(context, str) else None,
    ), []


def _knowledge_example(item: object, index: int) -> tuple[KnowledgeExample | None, list[str]]:
    if not isinstance(item, dict):
        return None, [f"Invalid seed example format in knowledge seed example {index}"]
    context = item.get("context")
    if not isinstance(context, str):
        return None, [f"Context not found or not a string in knowledge seed example {index}"]
    pairs = item.get("questions_and_answers")
    if not isinstance(pairs, list):
        return None, [
            f"Questions and answers not found or not a list in knowledge seed example {index}",
        ]

    problems: list[str] = []
    accepted: list[QuestionAnswer] = []
    for pair in pairs:
        if not isinstance(pair, dict):
            problems.append(f"Invalid question and answer format in knowledge seed example {index}")
            continue
        question = pair.get("question")
        if not isinstance(question, str):
            problems.append(f"Question not found or not a string in knowledge seed example {index}")
            continue
        answer = pair.get("answer")
        if not isinstance(answer, str):
            problems.append(f"Answer not found or not a string in knowledge seed example {index}")
            continue
        accepted.append(QuestionAnswer(question=question, answer=answer))
    return KnowledgeExample(context=context, questions_and_answers=tuple(accepted)), problems
