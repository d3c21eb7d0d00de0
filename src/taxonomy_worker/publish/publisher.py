"""Upload job artifacts to S3 and build the index page that links them."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from taxonomy_worker.config import StorageSettings
from taxonomy_worker.pipelines.taxonomy import CONTEXT_PROMPT
from taxonomy_worker.publish.viewers import (
    PublishedItem,
    ViewerError,
    json_viewer_name,
    render_index,
    render_json_viewer,
    render_yaml_viewer,
    yaml_viewer_name,
)

logger = logging.getLogger(__name__)

INDEX_NAME = "index.html"
_JSON_SUFFIXES = frozenset({".json", ".jsonl"})
_CONTEXT_PROMPT_PARAGRAPH = re.compile(
    rf"[ \t]*{re.escape(CONTEXT_PROMPT)}.*?(?=\n\nOutput:|\Z)",
    re.DOTALL,
)


class ObjectStore(Protocol):
    """Subset of the boto3 S3 client used for publishing."""

    def put_object(self, **kwargs: Any) -> Any: ...


@dataclass(frozen=True, slots=True)
class PublishRequest:
    """What to publish and how to name it."""

    output_dir: Path
    output_dir_name: str
    job_token: str
    pr_number: str
    started_at: float

    @property
    def key_prefix(self) -> str:
        return f"{self.output_dir_name}-job-{self.job_token}"


def content_type_for(filename: str) -> str:
    suffix = Path(filename).suffix
    if suffix == ".json":
        return "application/json"
    if suffix == ".jsonl":
        return "application/jsonl"
    if suffix == ".html":
        return "text/html"
    return "text/plain"


def strip_context_prompt(content: str) -> str:
    """Drop every injected context paragraph from a precheck transcript.

    The paragraph runs from the marker up to the next ``Output:`` section, so
    multi-line contexts are removed whole.
    """

    return _CONTEXT_PROMPT_PARAGRAPH.sub("", content)


class ArtifactPublisher:
    """Publishes the files a job produced, plus viewer pages and an index."""

    def __init__(self, *, s3_client: ObjectStore, settings: StorageSettings) -> None:
        self._s3 = s3_client
        self._settings = settings

    def public_url(self, key: str) -> str:
        return (
            f"https://{self._settings.s3_bucket}.s3."
            f"{self._settings.aws_region}.amazonaws.com/{key}"
        )

    def publish(self, request: PublishRequest) -> str | None:
        """Upload fresh artifacts and return the index key, or None when nothing was published."""

        try:
            entries = sorted(request.output_dir.iterdir())
        except OSError as error:
            logger.error("Could not read output directory %s: %s", request.output_dir, error)
            return None

        items: list[PublishedItem] = []
        for path in entries:
            if not self._is_fresh(path, request.started_at):
                continue
            items.extend(self._publish_file(path, request))

        if not items:
            return None

        index_html = render_index(request.pr_number, items)
        index_path = request.output_dir / INDEX_NAME
        try:
            index_path.write_text(index_html, "utf-8")
        except OSError as error:
            logger.error("Could not write %s: %s", index_path, error)
            return None
        index_key = f"{request.key_prefix}/{INDEX_NAME}"
        if not self._upload(index_key, index_html.encode("utf-8"), "text/html"):
            return None
        return index_key

    def _is_fresh(self, path: Path, started_at: float) -> bool:
        if path.name == INDEX_NAME:
            return False
        try:
            stat = path.stat()
        except OSError as error:
            logger.error("Could not get info for file %s: %s", path.name, error)
            return False
        return path.is_file() and stat.st_mtime > started_at

    def _publish_file(self, path: Path, request: PublishRequest) -> list[PublishedItem]:
        published: list[PublishedItem] = []
        if path.suffix == ".log":
            self._redact_transcript(path)

        if path.suffix in _JSON_SUFFIXES:
            item = self._publish_rendering(
                path,
                request,
                name=json_viewer_name(path.name),
                render=render_json_viewer,
            )
            if item is not None:
                published.append(item)

        item = self._publish_rendering(
            path,
            request,
            name=yaml_viewer_name(path.name),
            render=render_yaml_viewer,
        )
        if item is not None:
            published.append(item)

        try:
            body = path.read_bytes()
        except OSError as error:
            logger.error("Could not open file %s: %s", path.name, error)
            return published
        key = f"{request.key_prefix}/{path.name}"
        if self._upload(key, body, content_type_for(path.name)):
            published.append(PublishedItem(name=path.name, url=self.public_url(key)))
        return published

    def _publish_rendering(
        self,
        path: Path,
        request: PublishRequest,
        *,
        name: str,
        render: Callable[[Path], str],
    ) -> PublishedItem | None:
        try:
            page = render(path)
        except (ViewerError, OSError) as error:
            logger.debug("No viewer %s for %s: %s", name, path.name, error)
            return None
        key = f"{request.key_prefix}/{name}"
        if not self._upload(key, page.encode("utf-8"), "text/html"):
            return None
        return PublishedItem(name=name, url=self.public_url(key))

    def _redact_transcript(self, path: Path) -> None:
        try:
            content = path.read_text("utf-8")
        except OSError as error:
            logger.error("Could not read file %s: %s", path.name, error)
            return
        redacted = strip_context_prompt(content)
        if redacted == content:
            return
        try:
            path.write_text(redacted, "utf-8")
        except OSError as error:
            logger.error("Could not write modified content back to %s: %s", path.name, error)

    def _upload(self, key: str, body: bytes, content_type: str) -> bool:
        try:
            self._s3.put_object(
                Bucket=self._settings.s3_bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as error:
            logger.error("Could not upload %s to S3: %s", key, error)
            return False
        return True
