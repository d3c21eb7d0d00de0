"""Model identity lookup through an OpenAI-compatible ``/models`` endpoint."""

from __future__ import annotations

import logging

import httpx

from taxonomy_worker.config import IlabConfig, PrecheckSettings
from taxonomy_worker.jobs.models import JobKind

logger = logging.getLogger(__name__)

SDG_REPORTED_MODEL_NAME = "sdg service backend"
UNKNOWN_MODEL_NAME = "unknown"


class ModelListingError(RuntimeError):
    """Model listing query failed or returned no model."""


def models_url(endpoint: str) -> str:
    if not endpoint.endswith("/"):
        endpoint += "/"
    return f"{endpoint}models"


def fetch_model_name(
    client: httpx.Client,
    *,
    endpoint: str,
    api_key: str = "",
    full_name: bool = True,
) -> str:
    """Return the first model id listed by the endpoint.

    With ``full_name=False`` the id is shortened to the part after the last
    ``--`` of the first path segment that contains one, for example
    ``models--ibm--granite-7b-lab`` becomes ``granite-7b-lab``.
    """

    headers: dict[str, str] = {}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    url = models_url(endpoint)
    try:
        response = client.get(url, headers=headers)
    except httpx.HTTPError as error:
        raise ModelListingError(f"failed to fetch model details: {error}") from error
    if response.status_code != httpx.codes.OK:
        raise ModelListingError(f"unexpected status code: {response.status_code}")
    try:
        payload = response.json()
    except ValueError as error:
        raise ModelListingError(f"failed to parse JSON response: {error}") from error
    if not isinstance(payload, dict):
        raise ModelListingError("expected a JSON object from the models endpoint")
    if payload.get("object") != "list":
        raise ModelListingError(f"expected object type 'list', got '{payload.get('object')}'")

    data = payload.get("data")
    for item in data if isinstance(data, list) else []:
        if not isinstance(item, dict) or item.get("object") != "model":
            continue
        model_id = item.get("id")
        if not isinstance(model_id, str) or not model_id:
            continue
        if full_name:
            return model_id
        return short_model_name(model_id)
    raise ModelListingError("model name not found in response")


def short_model_name(model_id: str) -> str:
    for part in model_id.split("/"):
        if "--" in part:
            return part.split("--")[-1]
    return model_id


class ModelNameResolver:
    """Decides which model name a job runs against and which it reports."""

    def __init__(
        self,
        *,
        settings: PrecheckSettings,
        ilab_config: IlabConfig,
        client: httpx.Client | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._settings = settings
        self._ilab_config = ilab_config
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            verify=not settings.tls_insecure,
        )

    def for_command(self, kind: JobKind) -> str:
        if kind is not JobKind.SDG_SVC and not self._settings.is_local:
            return self._remote_name(full_name=True)
        return self.config_model_name()

    def for_report(self, kind: JobKind) -> str:
        if kind is JobKind.SDG_SVC:
            return SDG_REPORTED_MODEL_NAME
        if kind is JobKind.PRECHECK and not self._settings.is_local:
            return self._remote_name(full_name=False)
        return self.config_model_name()

    def config_model_name(self) -> str:
        return self._ilab_config.model_name()

    def _remote_name(self, *, full_name: bool) -> str:
        try:
            return fetch_model_name(
                self._client,
                endpoint=self._settings.endpoint_url,
                api_key=self._settings.api_key,
                full_name=full_name,
            )
        except ModelListingError as error:
            logger.warning("Failed to fetch model name: %s", error)
            logger.warning("Using default model name: %s", self._settings.fallback_model_name)
            return self._settings.fallback_model_name

    def close(self) -> None:
        self._client.close()
