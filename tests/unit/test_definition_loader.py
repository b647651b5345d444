"""Tests for definition loader."""

from pathlib import Path

import pytest

from ci_orchestrator.definition_loader import (
    load_pipeline_definition,
    load_pipeline_definitions,
    parse_pipeline_definition,
)
from ci_orchestrator.errors import CyclicDependency, InvalidDefinition
from ci_orchestrator.models.definition import BuildStage, DeployStage

APP_PIPELINE = """
name: app
environment:
  DEPLOY_ENV: staging
stages:
  - name: checkout
    type: command
    run: ["git", "clone", "{repository}", "."]
  - name: build
    type: build
  - name: push
    type: push
    registry_credential: registry
  - name: deploy
    type: deploy
    manifest: k8s/deployment.yaml
    cluster_credential: cluster-token
"""


class TestLoadPipelineDefinition:
    """Tests for load_pipeline_definition function."""

    __test__ = True

    async def test_loads_valid_yaml(self, tmp_path: Path) -> None:
        """Loads and parses a valid pipeline file."""
        path = tmp_path / "app.yaml"
        path.write_text(APP_PIPELINE)

        definition = await load_pipeline_definition(path)

        assert definition.name == "app"
        assert definition.environment == {"DEPLOY_ENV": "staging"}
        assert [s.name for s in definition.stages] == ["checkout", "build", "push", "deploy"]
        assert isinstance(definition.stages[1], BuildStage)
        assert isinstance(definition.stages[3], DeployStage)
        assert definition.stages[3].cluster_credential == "cluster-token"

    async def test_raises_for_missing_file(self, tmp_path: Path) -> None:
        """Raises FileNotFoundError for a missing pipeline file."""
        with pytest.raises(FileNotFoundError, match="Pipeline file not found"):
            await load_pipeline_definition(tmp_path / "missing.yaml")

    async def test_raises_for_invalid_yaml(self, tmp_path: Path) -> None:
        """Raises InvalidDefinition for malformed YAML."""
        path = tmp_path / "app.yaml"
        path.write_text("invalid: yaml: content: [")

        with pytest.raises(InvalidDefinition, match="Invalid YAML"):
            await load_pipeline_definition(path)

    async def test_raises_for_empty_file(self, tmp_path: Path) -> None:
        """Raises InvalidDefinition for an empty file."""
        path = tmp_path / "app.yaml"
        path.write_text("")

        with pytest.raises(InvalidDefinition, match="Empty pipeline file"):
            await load_pipeline_definition(path)

    async def test_raises_for_schema_violation(self, tmp_path: Path) -> None:
        """Raises InvalidDefinition when the schema does not match."""
        path = tmp_path / "app.yaml"
        path.write_text("name: app\nstages:\n  - name: a\n    type: teleport\n")

        with pytest.raises(InvalidDefinition, match="Invalid pipeline definition schema"):
            await load_pipeline_definition(path)

    async def test_raises_for_cycle(self, tmp_path: Path) -> None:
        """A cyclic stage graph is rejected at load time."""
        path = tmp_path / "app.yaml"
        path.write_text(
            """
name: app
stages:
  - {name: a, type: command, run: ["true"], needs: [b]}
  - {name: b, type: command, run: ["true"], needs: [a]}
"""
        )

        with pytest.raises(CyclicDependency, match="Cyclic stage dependency"):
            await load_pipeline_definition(path)


class TestLoadPipelineDefinitions:
    """Tests for load_pipeline_definitions function."""

    __test__ = True

    async def test_loads_every_pipeline_in_directory(self, tmp_path: Path) -> None:
        """Both .yaml and .yml files are loaded and keyed by pipeline name."""
        (tmp_path / "app.yaml").write_text(APP_PIPELINE)
        (tmp_path / "docs.yml").write_text(
            "name: docs\nstages:\n  - {name: build, type: command, run: [make, html]}\n"
        )
        (tmp_path / "README.md").write_text("not a pipeline")

        definitions = await load_pipeline_definitions(tmp_path)

        assert sorted(definitions) == ["app", "docs"]

    async def test_rejects_duplicate_pipeline_names(self, tmp_path: Path) -> None:
        """Two files declaring the same pipeline name are rejected."""
        (tmp_path / "a.yaml").write_text(APP_PIPELINE)
        (tmp_path / "b.yaml").write_text(APP_PIPELINE)

        with pytest.raises(InvalidDefinition, match="defined more than once"):
            await load_pipeline_definitions(tmp_path)

    async def test_raises_for_missing_directory(self, tmp_path: Path) -> None:
        """Raises FileNotFoundError for a missing pipelines directory."""
        with pytest.raises(FileNotFoundError, match="Pipelines directory not found"):
            await load_pipeline_definitions(tmp_path / "nope")


def test_parse_reports_source_in_errors() -> None:
    """Parse errors name the source they came from."""
    with pytest.raises(InvalidDefinition, match="inline.yaml"):
        parse_pipeline_definition("name: app\n", source="inline.yaml")
