"""Configuration for the orchestrator, loaded from a YAML file."""

import os
from collections.abc import Sequence
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError

DEFAULT_CONFIG_PATH = Path("ci-orchestrator.yaml")
CONFIG_ENV_VAR = "CI_ORCHESTRATOR_CONFIG"


class WebhookConfig(BaseModel):
    """Webhook listener configuration."""

    secret: SecretStr | None = None
    host: str = "127.0.0.1"
    port: int = 8080


class TriggerConfig(BaseModel):
    """Maps push events to a pipeline.

    ``branch`` is an fnmatch pattern; ``repository`` must match exactly when set.
    """

    pipeline: str
    branch: str = "*"
    repository: str | None = None


class ExecutorConfig(BaseModel):
    """Stage executor limits.

    Stages see only the ``inherit_env`` variables of the orchestrator's own
    environment, plus the pipeline environment and declared credentials.
    """

    output_limit: int = Field(default=64 * 1024, gt=0)
    default_timeout: float = Field(default=1800, gt=0)
    termination_grace: float = Field(default=10, ge=0)
    workdir: Path | None = None
    docker_binary: str = "docker"
    inherit_env: Sequence[str] = Field(
        default_factory=lambda: ["PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "TZ"]
    )


class EngineConfig(BaseModel):
    """Pipeline engine configuration."""

    max_concurrent_runs: int = Field(default=4, ge=1)
    cancel_poll_interval: float = Field(default=1.0, gt=0)


class RetentionConfig(BaseModel):
    """Run history retention."""

    max_runs: int | None = Field(default=None, ge=1)


class ClusterConfig(BaseModel):
    """Target cluster API configuration."""

    api_url: str = "https://127.0.0.1:6443"
    verify_ssl: bool = True
    field_manager: str = "ci-orchestrator"


class ImageConfig(BaseModel):
    """Container image naming."""

    registry: str = "registry.local"
    repository: str = "app"
    tag_template: str = "build-{run_number}"


class OrchestratorConfig(BaseModel):
    """Top-level orchestrator configuration."""

    state_path: Path = Path("ci-orchestrator.db")
    pipelines_dir: Path = Path("pipelines")
    credentials_file: Path | None = None
    triggers: Sequence[TriggerConfig] = Field(default_factory=list)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    image: ImageConfig = Field(default_factory=ImageConfig)


def resolve_config_path(path: Path | None) -> Path:
    """Pick the config path from the argument, the environment, or the default."""
    if path is not None:
        return path
    if env_path := os.environ.get(CONFIG_ENV_VAR):
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def load_config(path: Path) -> OrchestratorConfig:
    """Load and validate the orchestrator configuration.

    Relative paths in the file are resolved against the file's directory.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the YAML or its schema is invalid

    """
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    try:
        config = OrchestratorConfig.model_validate(data or {})
    except ValidationError as e:
        raise ValueError(f"Invalid config schema in {path}: {e}") from e

    base = path.parent
    return config.model_copy(
        update={
            "state_path": base / config.state_path,
            "pipelines_dir": base / config.pipelines_dir,
            "credentials_file": (
                base / config.credentials_file if config.credentials_file else None
            ),
        }
    )
