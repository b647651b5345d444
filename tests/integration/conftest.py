"""Fixtures for integration tests."""

import os
import stat
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from ci_orchestrator.config import ClusterConfig, ExecutorConfig
from ci_orchestrator.credentials import CredentialStore
from ci_orchestrator.deploy import DeploymentUpdater
from ci_orchestrator.executor import StageExecutor
from ci_orchestrator.models.context import StageContext
from ci_orchestrator.models.run import TriggerEvent
from ci_orchestrator.registry import RunRegistry

CLUSTER_URL = "https://cluster.test:6443"


@pytest.fixture
def write_script(tmp_path: Path) -> Callable[[str, str], Path]:
    """Return a function that writes executable shell scripts."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _write(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text(f"#!/bin/sh\n{body}\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _write


@pytest.fixture
def registry(tmp_path: Path) -> Generator[RunRegistry, None, None]:
    """Create a file-backed run registry."""
    registry = RunRegistry(tmp_path / "state" / "runs.db")
    yield registry
    registry.close()


@pytest.fixture
def credentials() -> CredentialStore:
    """Credential store with one credential of each common kind."""
    store = CredentialStore()
    store.put("api-token", "token", "tok-s3cret-value")
    store.put("registry", "username_password", "registry-pa55", username="ci-bot")
    store.put("kubeconfig", "file", "apiVersion: v1\nkind: Config\n")
    store.put("cluster-token", "token", "cluster-bearer-token")
    return store


@pytest.fixture
def executor_config() -> ExecutorConfig:
    return ExecutorConfig(output_limit=4096, default_timeout=30, termination_grace=1)


@pytest.fixture
def executor(executor_config: ExecutorConfig, credentials: CredentialStore) -> StageExecutor:
    """Executor with a minimal, explicit base environment."""
    return StageExecutor(
        config=executor_config,
        credentials=credentials,
        deployer=DeploymentUpdater(cluster=ClusterConfig(api_url=CLUSTER_URL)),
        base_env={"PATH": os.environ.get("PATH", os.defpath), "PYTHONUNBUFFERED": "1"},
    )


@pytest.fixture
def context(tmp_path: Path) -> StageContext:
    """Context of run #7."""
    workdir = tmp_path / "workspace"
    workdir.mkdir()
    return StageContext(
        run_number=7,
        pipeline="release",
        trigger=TriggerEvent(
            source="webhook", repository="org/app", branch="main", commit_sha="abc123"
        ),
        image_ref="registry.local/app:build-7",
        image_tag="build-7",
        environment={"DEPLOY_ENV": "staging"},
        workdir=workdir,
    )

