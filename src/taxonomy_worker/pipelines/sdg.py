"""Client and pipeline for the remote synthetic-data-generation service."""

from __future__ import annotations

import json
import logging
import ssl
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from taxonomy_worker.config import RuntimeSettings, SdgSettings
from taxonomy_worker.jobs.commands import CommandRunner
from taxonomy_worker.jobs.models import JobRun, SdgError, TaxonomyFormatError
from taxonomy_worker.pipelines.diff import list_changed_files
from taxonomy_worker.pipelines.taxonomy import (
    TaxonomyDomain,
    cap_seed_examples,
    classify_domain,
    decode_taxonomy,
)

logger = logging.getLogger(__name__)

SDG_MODEL_ID = "mistralai/mixtral-8x7b-instruct-v0-1"


def build_tls_context(settings: SdgSettings) -> ssl.SSLContext:
    """Client certificate plus trusted server CA for mutual TLS."""

    try:
        context = ssl.create_default_context(cafile=str(settings.tls_server_ca_cert))
        context.load_cert_chain(
            certfile=str(settings.tls_client_cert),
            keyfile=str(settings.tls_client_key),
        )
    except (OSError, ssl.SSLError) as error:
        raise SdgError(f"failed to load TLS client certificate/key or CA: {error}") from error
    if settings.tls_insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def build_payload(
    raw: bytes,
    *,
    path: str,
    domain: TaxonomyDomain,
    num_samples: int,
) -> dict[str, Any]:
    """Request body: every decoded taxonomy field plus model id and sample count."""

    try:
        document = decode_taxonomy(raw, path, domain)
    except TaxonomyFormatError as error:
        raise SdgError(str(error)) from error
    if document.rejected:
        logger.warning(
            "%s has %d malformed seed example(s); sending the document as-is",
            path,
            len(document.rejected),
        )

    payload: dict[str, Any] = dict(document.data)
    payload["mm_model_id"] = SDG_MODEL_ID
    payload["num_samples"] = num_samples
    if domain is TaxonomyDomain.KNOWLEDGE and isinstance(payload.get("document"), dict):
        payload["document"] = _normalize_document(payload["document"])
    return payload


def _normalize_document(document: dict[Any, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    repo = document.get("repo")
    if isinstance(repo, str):
        normalized["repo"] = repo
    commit = document.get("commit")
    if isinstance(commit, str):
        normalized["commit"] = commit
    patterns = document.get("patterns")
    if isinstance(patterns, list):
        normalized["patterns"] = [pattern for pattern in patterns if isinstance(pattern, str)]
    return normalized


class SdgClient:
    """Posts taxonomy payloads to the SDG service over mutual TLS."""

    def __init__(
        self,
        *,
        settings: SdgSettings,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._client = client
        self._clock = clock

    def endpoint_for(self, domain: TaxonomyDomain) -> str:
        if domain is TaxonomyDomain.KNOWLEDGE:
            return self._settings.endpoint_url.replace("skill", "knowledge")
        return self._settings.endpoint_url

    def submit(  # noqa: PLR0913
        self,
        raw: bytes,
        *,
        source_name: str,
        domain: TaxonomyDomain,
        num_samples: int,
        output_dir: Path,
        job: JobRun,
    ) -> Path:
        payload = build_payload(raw, path=source_name, domain=domain, num_samples=num_samples)
        body = json.dumps(payload, default=str)
        url = self.endpoint_for(domain)
        job.record_command(body)
        logger.info("job=%s SDG POST %s for %s", job.token, url, source_name)

        try:
            response = self._http().post(
                url,
                content=body.encode("utf-8"),
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            )
            content = response.read()
        except httpx.HTTPError as error:
            raise SdgError(f"failed to execute request: {error}") from error
        if response.status_code != httpx.codes.OK:
            raise SdgError(
                f"unexpected status code {response.status_code}: "
                f"{content.decode('utf-8', errors='replace')}",
            )

        stem = f"sdg_{int(self._clock())}_{Path(source_name).name}"
        output_path = output_dir / f"{stem}.json"
        duplicate = 0
        # Changed files usually share the name qna.yaml.
        while output_path.exists():
            duplicate += 1
            output_path = output_dir / f"{stem}-{duplicate}.json"
        try:
            output_path.write_bytes(content)
        except OSError as error:
            raise SdgError(f"failed to write output file: {error}") from error
        return output_path

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                verify=build_tls_context(self._settings),
                timeout=httpx.Timeout(self._settings.request_timeout_seconds, connect=10.0),
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


@dataclass(slots=True)
class SdgRunResult:
    """Files produced by one SDG job."""

    submitted: list[str] = field(default_factory=list)
    outputs: list[Path] = field(default_factory=list)
    trimmed: list[str] = field(default_factory=list)


class SdgPipeline:
    """Diff the checkout, cap seed examples and submit each changed file."""

    def __init__(
        self,
        *,
        settings: SdgSettings,
        runtime: RuntimeSettings,
        runner: CommandRunner,
        client: SdgClient,
    ) -> None:
        self._settings = settings
        self._runtime = runtime
        self._runner = runner
        self._client = client

    def run(self, *, job: JobRun, checkout: Path, output_dir: Path) -> SdgRunResult:
        files = list_changed_files(
            self._runner,
            ilab=self._runtime.ilab_executable(),
            checkout=checkout,
            work_dir=self._runtime.resolve_work_dir(),
            timeout_seconds=self._runtime.command_timeout_seconds,
        )
        result = SdgRunResult()
        if not files:
            logger.info("job=%s no taxonomy files were changed", job.token)
            return result

        with tempfile.TemporaryDirectory(prefix="filtered-") as trimmed_dir:
            for relative_path in files:
                payload_path = self._capped_copy(
                    checkout / relative_path,
                    Path(trimmed_dir),
                    result,
                )
                try:
                    raw = payload_path.read_bytes()
                except OSError as error:
                    raise SdgError(
                        f"failed to read taxonomy file '{relative_path}': {error}",
                    ) from error
                output = self._client.submit(
                    raw,
                    source_name=relative_path,
                    domain=classify_domain(relative_path),
                    num_samples=self._runtime.num_instructions,
                    output_dir=output_dir,
                    job=job,
                )
                result.submitted.append(relative_path)
                result.outputs.append(output)
        logger.info("job=%s generated data written to: %s", job.token, result.outputs)
        return result

    def _capped_copy(self, source: Path, trimmed_dir: Path, result: SdgRunResult) -> Path:
        try:
            raw = source.read_bytes()
        except OSError as error:
            raise SdgError(f"failed to read taxonomy file '{source}': {error}") from error
        try:
            capped, original_count, trimmed = cap_seed_examples(
                raw,
                self._settings.max_seed,
                str(source),
            )
        except TaxonomyFormatError as error:
            raise SdgError(str(error)) from error
        if not trimmed:
            return source
        target = trimmed_dir / f"{len(result.trimmed)}-{source.name}"
        target.write_bytes(capped)
        result.trimmed.append(str(source))
        logger.info(
            "Trimmed %s from %d to %d Q&A pairs",
            source,
            original_count,
            self._settings.max_seed,
        )
        return target
