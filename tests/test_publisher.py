from __future__ import annotations

import os
import time
from pathlib import Path

import allure
from conftest import RecordingS3Client

from taxonomy_worker.config import StorageSettings
from taxonomy_worker.pipelines.taxonomy import CONTEXT_PROMPT
from taxonomy_worker.publish import ArtifactPublisher, PublishRequest
from taxonomy_worker.publish.publisher import content_type_for, strip_context_prompt

pytestmark = [
    allure.epic("Taxonomy Jobs"),
    allure.feature("Artifact Publishing"),
]

STORAGE = StorageSettings(s3_bucket="bot-artifacts", aws_region="eu-west-1")
PREFIX = "precheck-pr-42-abc123-job-5"


def _request(output_dir: Path, started_at: float) -> PublishRequest:
    return PublishRequest(
        output_dir=output_dir,
        output_dir_name="precheck-pr-42-abc123",
        job_token="5",
        pr_number="42",
        started_at=started_at,
    )


def _write_stale(path: Path, content: str) -> None:
    path.write_text(content, "utf-8")
    os.utime(path, (1_000_000, 1_000_000))


def test_strip_context_prompt_removes_marker_paragraph() -> None:
    transcript = f"Input: Why? {CONTEXT_PROMPT} secret context.\n\nOutput:\nBecause.\n"

    assert strip_context_prompt(transcript) == "Input: Why?\n\nOutput:\nBecause.\n"


def test_strip_context_prompt_removes_every_line_of_a_multiline_context() -> None:
    combined = (
        "\n\n----- chat_1.log -----\n\n\n"
        f"Input: What is the capital? {CONTEXT_PROMPT} France is a country.\n"
        "Its capital is Paris.\nSECRET LINE.\n\nOutput:\nParis\n"
        "\n\n----- chat_2.log -----\n\n\n"
        "Input: And Spain?\n\nOutput:\nMadrid\n"
    )

    stripped = strip_context_prompt(combined)

    assert "SECRET LINE" not in stripped
    assert "Its capital" not in stripped
    assert "Input: What is the capital?\n\nOutput:\nParis\n" in stripped
    assert stripped.endswith("Input: And Spain?\n\nOutput:\nMadrid\n")


def test_content_type_follows_extension() -> None:
    assert content_type_for("a.json") == "application/json"
    assert content_type_for("a.jsonl") == "application/jsonl"
    assert content_type_for("index.html") == "text/html"
    assert content_type_for("chat.log") == "text/plain"
    assert content_type_for("qna.yaml") == "text/plain"


def test_publish_uploads_fresh_files_viewers_and_index(tmp_path: Path) -> None:
    started_at = time.time() - 60
    (tmp_path / "result.json").write_text('{"samples": [1, 2]}', "utf-8")
    (tmp_path / "chat_1.log").write_text(
        f"Input: Why? {CONTEXT_PROMPT} hidden.\n\nOutput:\nBecause.\n",
        "utf-8",
    )
    (tmp_path / "notes.txt").write_text("plain words", "utf-8")
    _write_stale(tmp_path / "old.json", '{"stale": true}')
    s3_client = RecordingS3Client()
    publisher = ArtifactPublisher(s3_client=s3_client, settings=STORAGE)

    index_key = publisher.publish(_request(tmp_path, started_at))

    assert index_key == f"{PREFIX}/index.html"
    names = s3_client.names()
    assert {
        "result.json",
        "result.json-viewer.html",
        "result.json.yaml-viewer.html",
        "chat_1.log",
        "notes.txt",
        "index.html",
    } <= names
    assert "old.json" not in names
    assert "notes.txt.yaml-viewer.html" not in names
    assert s3_client.objects[f"{PREFIX}/result.json"]["ContentType"] == "application/json"
    assert s3_client.objects[f"{PREFIX}/notes.txt"]["ContentType"] == "text/plain"
    assert s3_client.objects[index_key]["Bucket"] == "bot-artifacts"
    assert s3_client.objects[index_key]["ContentType"] == "text/html"

    log_body = s3_client.objects[f"{PREFIX}/chat_1.log"]["Body"].decode("utf-8")
    assert CONTEXT_PROMPT not in log_body
    assert "hidden" not in (tmp_path / "chat_1.log").read_text("utf-8")

    index_html = (tmp_path / "index.html").read_text("utf-8")
    assert "Results for PR 42" in index_html
    assert f"https://bot-artifacts.s3.eu-west-1.amazonaws.com/{PREFIX}/result.json" in index_html
    assert "old.json" not in index_html


def test_publish_omits_artifacts_whose_upload_fails(tmp_path: Path) -> None:
    started_at = time.time() - 60
    (tmp_path / "keep.txt").write_text("kept", "utf-8")
    (tmp_path / "broken.txt").write_text("lost", "utf-8")
    s3_client = RecordingS3Client(fail_keys=["broken.txt"])
    publisher = ArtifactPublisher(s3_client=s3_client, settings=STORAGE)

    index_key = publisher.publish(_request(tmp_path, started_at))

    assert index_key is not None
    index_html = (tmp_path / "index.html").read_text("utf-8")
    assert "keep.txt" in index_html
    assert "broken.txt" not in index_html


def test_publish_returns_none_when_only_stale_files_exist(tmp_path: Path) -> None:
    _write_stale(tmp_path / "old.log", "leftover")
    s3_client = RecordingS3Client()
    publisher = ArtifactPublisher(s3_client=s3_client, settings=STORAGE)

    assert publisher.publish(_request(tmp_path, time.time() - 60)) is None
    assert s3_client.objects == {}
    assert not (tmp_path / "index.html").exists()


def test_public_url_uses_bucket_and_region() -> None:
    publisher = ArtifactPublisher(s3_client=RecordingS3Client(), settings=STORAGE)

    assert publisher.public_url("a/index.html") == (
        "https://bot-artifacts.s3.eu-west-1.amazonaws.com/a/index.html"
    )
