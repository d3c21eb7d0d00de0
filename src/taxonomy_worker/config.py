"""Runtime configuration for the taxonomy job worker."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

import yaml

LOCAL_ENDPOINT = "http://localhost:8000/v1"
DEFAULT_GIT_REMOTE = "https://github.com/instructlab/taxonomy"


class ConfigError(ValueError):
    """Startup configuration could not be loaded."""


@dataclass(frozen=True, slots=True)
class QueueSettings:
    """Shared queue connection and list names."""

    redis_url: str = "redis://localhost:6379/0"
    work_list: str = "generate"
    results_list: str = "results"


@dataclass(frozen=True, slots=True)
class GitSettings:
    """Taxonomy repository checkout settings."""

    remote: str = DEFAULT_GIT_REMOTE
    origin: str = "origin"
    username: str = "instructlab-bot"
    token: str = ""
    max_retries: int = 5
    retry_delay_seconds: float = 2.0


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Object storage destination for published artifacts."""

    s3_bucket: str = "instruct-lab-bot"
    aws_region: str = "us-east-2"


@dataclass(frozen=True, slots=True)
class PrecheckSettings:
    """Chat endpoint used by precheck jobs."""

    endpoint_url: str = LOCAL_ENDPOINT
    api_key: str = ""
    tls_insecure: bool = False
    fallback_model_name: str = "granite-7b-lab"

    @property
    def is_local(self) -> bool:
        return self.endpoint_url == LOCAL_ENDPOINT


@dataclass(frozen=True, slots=True)
class SdgSettings:
    """Remote synthetic-data-generation service settings."""

    endpoint_url: str = LOCAL_ENDPOINT
    tls_client_cert: Path = Path("client-tls-crt.pem2")
    tls_client_key: Path = Path("client-tls-key.pem2")
    tls_server_ca_cert: Path = Path("server-ca-crt.pem2")
    tls_insecure: bool = False
    max_seed: int = 40
    request_timeout_seconds: float = 600.0


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    """Worker process behavior."""

    work_dir: Path | None = None
    venv_dir: Path | None = None
    num_instructions: int = 10
    poll_interval_seconds: float = 1.0
    concurrency: int = 1
    command_timeout_seconds: int = 6 * 3600
    test_mode: bool = False
    test_mode_delay_seconds: float = 10.0

    def resolve_work_dir(self) -> Path:
        return self.work_dir if self.work_dir is not None else Path.cwd()

    def ilab_executable(self) -> str:
        if self.venv_dir is None:
            return "ilab"
        return str(self.venv_dir / "bin" / "ilab")


@dataclass(frozen=True, slots=True)
class Settings:
    """Worker settings grouped by concern; built once at startup."""

    ilab_config_file: Path = Path("config.yaml")
    queue: QueueSettings = field(default_factory=QueueSettings)
    git: GitSettings = field(default_factory=GitSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    precheck: PrecheckSettings = field(default_factory=PrecheckSettings)
    sdg: SdgSettings = field(default_factory=SdgSettings)
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        tls_insecure = _env_bool("TAXONOMY_WORKER_TLS_INSECURE", default=False)
        return cls(
            ilab_config_file=Path(os.getenv("TAXONOMY_WORKER_ILAB_CONFIG_FILE", "config.yaml")),
            queue=QueueSettings(
                redis_url=os.getenv("TAXONOMY_WORKER_REDIS_URL", "redis://localhost:6379/0"),
            ),
            git=GitSettings(
                remote=os.getenv("TAXONOMY_WORKER_GIT_REMOTE", DEFAULT_GIT_REMOTE),
                origin=os.getenv("TAXONOMY_WORKER_GIT_ORIGIN", "origin"),
                username=os.getenv(
                    "TAXONOMY_WORKER_GITHUB_USERNAME",
                    os.getenv("ILWORKER_GITHUB_USERNAME", "instructlab-bot"),
                ),
                token=os.getenv(
                    "TAXONOMY_WORKER_GITHUB_TOKEN",
                    os.getenv("ILWORKER_GITHUB_TOKEN", ""),
                ),
                max_retries=int(os.getenv("TAXONOMY_WORKER_GIT_MAX_RETRIES", "5")),
                retry_delay_seconds=float(os.getenv("TAXONOMY_WORKER_GIT_RETRY_DELAY", "2.0")),
            ),
            storage=StorageSettings(
                s3_bucket=os.getenv("TAXONOMY_WORKER_S3_BUCKET", "instruct-lab-bot"),
                aws_region=os.getenv("TAXONOMY_WORKER_AWS_REGION", "us-east-2"),
            ),
            precheck=PrecheckSettings(
                endpoint_url=os.getenv(
                    "TAXONOMY_WORKER_PRECHECK_ENDPOINT",
                    os.getenv("PRECHECK_ENDPOINT") or LOCAL_ENDPOINT,
                ),
                api_key=os.getenv("TAXONOMY_WORKER_PRECHECK_API_KEY", ""),
                tls_insecure=tls_insecure,
            ),
            sdg=SdgSettings(
                endpoint_url=os.getenv("TAXONOMY_WORKER_SDG_ENDPOINT", LOCAL_ENDPOINT),
                tls_client_cert=Path(
                    os.getenv("TAXONOMY_WORKER_TLS_CLIENT_CERT", "client-tls-crt.pem2"),
                ),
                tls_client_key=Path(
                    os.getenv("TAXONOMY_WORKER_TLS_CLIENT_KEY", "client-tls-key.pem2"),
                ),
                tls_server_ca_cert=Path(
                    os.getenv("TAXONOMY_WORKER_TLS_SERVER_CA_CERT", "server-ca-crt.pem2"),
                ),
                tls_insecure=tls_insecure,
                max_seed=int(os.getenv("TAXONOMY_WORKER_MAX_SEED", "40")),
            ),
            runtime=RuntimeSettings(
                work_dir=_env_path("TAXONOMY_WORKER_WORK_DIR"),
                venv_dir=_env_path("TAXONOMY_WORKER_VENV_DIR"),
                num_instructions=int(os.getenv("TAXONOMY_WORKER_NUM_INSTRUCTIONS", "10")),
                poll_interval_seconds=float(
                    os.getenv("TAXONOMY_WORKER_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                concurrency=int(os.getenv("TAXONOMY_WORKER_CONCURRENCY", "1")),
                test_mode=_env_bool("TAXONOMY_WORKER_TEST_MODE", default=False),
                test_mode_delay_seconds=float(
                    os.getenv("TAXONOMY_WORKER_TEST_MODE_DELAY_SECONDS", "10.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the worker cannot run with."""

        if not self.git.token.strip():
            raise ValueError(
                "A GitHub token is required. "
                "Set TAXONOMY_WORKER_GITHUB_TOKEN or pass --github-token.",
            )
        if self.git.max_retries <= 0:
            raise ValueError("TAXONOMY_WORKER_GIT_MAX_RETRIES must be > 0.")
        if self.git.retry_delay_seconds < 0:
            raise ValueError("TAXONOMY_WORKER_GIT_RETRY_DELAY must be >= 0.")
        if self.runtime.num_instructions <= 0:
            raise ValueError("TAXONOMY_WORKER_NUM_INSTRUCTIONS must be a positive integer.")
        if self.sdg.max_seed <= 0:
            raise ValueError("TAXONOMY_WORKER_MAX_SEED must be a positive integer.")
        if self.runtime.poll_interval_seconds <= 0:
            raise ValueError("TAXONOMY_WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.runtime.concurrency <= 0:
            raise ValueError("TAXONOMY_WORKER_CONCURRENCY must be a positive integer.")
        if self.runtime.test_mode_delay_seconds < 0:
            raise ValueError("TAXONOMY_WORKER_TEST_MODE_DELAY_SECONDS must be >= 0.")
        _validate_endpoint_url(self.precheck.endpoint_url, name="precheck endpoint")
        _validate_endpoint_url(self.sdg.endpoint_url, name="SDG endpoint")
        _validate_endpoint_url(self.git.remote, name="git remote")


@dataclass(frozen=True, slots=True)
class IlabConfig:
    """Subset of the instructlab config file the worker relies on."""

    chat_logs_dir: Path = Path("data/chatlogs")
    chat_model: str = ""
    generate_model: str = ""
    taxonomy_path: Path = Path("taxonomy")

    def model_name(self) -> str:
        """Return the configured generation model basename, or ``unknown``."""

        if not self.generate_model:
            return "unknown"
        return Path(self.generate_model).name

    def resolve_taxonomy_path(self, work_dir: Path) -> Path:
        if self.taxonomy_path.is_absolute():
            return self.taxonomy_path
        return work_dir / self.taxonomy_path

    def resolve_chat_logs_dir(self, work_dir: Path) -> Path:
        if self.chat_logs_dir.is_absolute():
            return self.chat_logs_dir
        return work_dir / self.chat_logs_dir


def load_ilab_config(path: Path) -> IlabConfig:
    """Read the instructlab config YAML file."""

    try:
        raw = path.read_text("utf-8")
    except OSError as error:
        raise ConfigError(f"failed to read config file {path}: {error}") from error
    try:
        payload = yaml.safe_load(raw) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"failed to unmarshal config file {path}: {error}") from error
    if not isinstance(payload, dict):
        raise ConfigError(f"config file {path} must contain a mapping at the top level")

    chat = _section(payload, "chat")
    generate = _section(payload, "generate")
    defaults = IlabConfig()
    return IlabConfig(
        chat_logs_dir=Path(_string(chat.get("logs_dir")) or defaults.chat_logs_dir),
        chat_model=_string(chat.get("model")),
        generate_model=_string(generate.get("model")),
        taxonomy_path=Path(_string(generate.get("taxonomy_path")) or defaults.taxonomy_path),
    )


def _section(payload: dict[object, object], name: str) -> dict[object, object]:
    value = payload.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"config section {name!r} must be a mapping")
    return value


def _string(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _validate_endpoint_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name} URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return Path(value)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
