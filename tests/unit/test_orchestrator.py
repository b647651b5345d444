"""Tests for wiring the orchestrator from configuration."""

from pathlib import Path

import pytest

from ci_orchestrator.config import OrchestratorConfig, TriggerConfig
from ci_orchestrator.credentials import CredentialStore
from ci_orchestrator.orchestrator import Orchestrator

PIPELINE = """
name: app
stages:
  - name: build
    type: command
    run: ["true"]
"""


@pytest.fixture
def config(tmp_path: Path) -> OrchestratorConfig:
    pipelines = tmp_path / "pipelines"
    pipelines.mkdir()
    (pipelines / "app.yaml").write_text(PIPELINE)
    return OrchestratorConfig(
        state_path=tmp_path / "state.db",
        pipelines_dir=pipelines,
        triggers=[TriggerConfig(pipeline="app")],
    )


class TestFromConfig:
    """Tests for Orchestrator.from_config."""

    async def test_loads_definitions(self, config: OrchestratorConfig) -> None:
        async with Orchestrator.from_config(config) as orchestrator:
            assert list(orchestrator.definitions) == ["app"]
            assert orchestrator.registry.list() == []
            assert list(orchestrator.credentials.names()) == []

    async def test_loads_credentials_file(
        self, tmp_path: Path, config: OrchestratorConfig
    ) -> None:
        path = tmp_path / "credentials.yaml"
        path.write_text("credentials:\n  - {name: cluster-token, kind: token, value: t0k}\n")
        config = config.model_copy(update={"credentials_file": path})

        async with Orchestrator.from_config(config) as orchestrator:
            assert "cluster-token" in orchestrator.credentials

    async def test_explicit_store_wins(self, config: OrchestratorConfig) -> None:
        """A provided store is used instead of the configured file."""
        config = config.model_copy(update={"credentials_file": Path("/nonexistent.yaml")})
        store = CredentialStore()

        async with Orchestrator.from_config(config, credentials=store) as orchestrator:
            assert orchestrator.credentials is store

    async def test_missing_pipelines_dir(self, tmp_path: Path) -> None:
        config = OrchestratorConfig(
            state_path=tmp_path / "state.db", pipelines_dir=tmp_path / "missing"
        )

        with pytest.raises(FileNotFoundError):
            async with Orchestrator.from_config(config):
                pass

    async def test_state_survives_restart(self, config: OrchestratorConfig) -> None:
        async with Orchestrator.from_config(config) as orchestrator:
            run = orchestrator.intake.trigger("app", submit=False)

        async with Orchestrator.from_config(config) as orchestrator:
            assert orchestrator.registry.get(run.number).pipeline == "app"
            assert orchestrator.intake.trigger("app", submit=False).number == run.number + 1
