"""Tests for the CLI."""

import json
import logging
import sys
from collections.abc import Generator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from ci_orchestrator.cli import (
    ERROR_EXIT_CODE,
    build_parser,
    cancel_run,
    exit_code_for,
    format_error,
    format_run,
    log_run_summary,
    main,
    run_pipeline,
    show_history,
    show_status,
)
from ci_orchestrator.config import OrchestratorConfig
from ci_orchestrator.errors import RunNotFound
from ci_orchestrator.models.run import Run, RunStatus, StageResult, TriggerEvent
from ci_orchestrator.registry import RunRegistry
from ci_orchestrator.testing.factories import StageResultFactory, command, pipeline


def make_run(status: RunStatus = "failed", **kwargs: object) -> Run:
    return Run.model_validate(
        {
            "number": 3,
            "pipeline": "release",
            "trigger": TriggerEvent(source="manual"),
            "status": status,
            "created_at": datetime(2026, 1, 1, tzinfo=UTC),
            "stages": [
                StageResultFactory.build(name="build", output="building..."),
                StageResult(
                    name="push",
                    status="failed",
                    reason="tool_failure",
                    exit_code=1,
                    output="denied",
                    detail="Command exited with code 1",
                ),
                StageResult(name="deploy", status="skipped"),
            ],
            "image_ref": "registry.local/app:build-3",
            **kwargs,
        }
    )


@pytest.fixture
def config(tmp_path: Path) -> OrchestratorConfig:
    pipelines = tmp_path / "pipelines"
    pipelines.mkdir()
    return OrchestratorConfig(state_path=tmp_path / "state.db", pipelines_dir=pipelines)


class TestFormatting:
    """Tests for result formatting helpers."""

    __test__ = True

    @pytest.mark.parametrize(
        ("status", "expected"),
        [("succeeded", 0), ("failed", 1), ("aborted", 3), ("queued", 4), ("running", 4)],
    )
    def test_exit_code_for(self, status: RunStatus, expected: int) -> None:
        assert exit_code_for(make_run(status)) == expected

    def test_format_run_hides_output_by_default(self) -> None:
        data = format_run(make_run())

        assert all("output" not in stage for stage in data["stages"])
        assert data["first_failure"] == {"stage": "push", "reason": "tool_failure"}
        assert data["image_ref"] == "registry.local/app:build-3"

    def test_format_run_with_output(self) -> None:
        data = format_run(make_run(), include_output=True)

        assert data["stages"][1]["output"] == "denied"

    def test_format_run_without_failure(self) -> None:
        run = make_run(
            "succeeded", stages=[StageResultFactory.build(name="build")]
        )

        assert format_run(run)["first_failure"] is None

    def test_format_error(self) -> None:
        assert format_error(RunNotFound("Run #9 not found")) == {
            "error": "not_found",
            "message": "Run #9 not found",
        }
        assert format_error(FileNotFoundError("missing"))["error"] == "FileNotFoundError"

    def test_log_run_summary(self, caplog: pytest.LogCaptureFixture) -> None:
        log = logging.getLogger("test")

        with caplog.at_level(logging.INFO):
            log_run_summary(log, make_run())

        assert "Run #3 (release): failed" in caplog.text
        assert "push: failed (tool_failure)" in caplog.text
        assert "Detail: Command exited with code 1" in caplog.text
        assert "deploy: skipped" in caplog.text
        assert "Image: registry.local/app:build-3" in caplog.text


class TestCommands:
    """Tests for CLI commands against a real registry."""

    __test__ = True

    def test_show_status(
        self, config: OrchestratorConfig, capsys: pytest.CaptureFixture[str]
    ) -> None:
        registry = RunRegistry(config.state_path)
        run = registry.create_run(pipeline("ci", command("a")), TriggerEvent(source="manual"))
        registry.close()

        exit_code = show_status(config, run.number, include_output=False)

        assert exit_code == 4
        assert json.loads(capsys.readouterr().out)["status"] == "queued"

    def test_show_status_unknown_run(self, config: OrchestratorConfig) -> None:
        with pytest.raises(RunNotFound):
            show_status(config, 42, include_output=False)

    def test_show_history(
        self, config: OrchestratorConfig, capsys: pytest.CaptureFixture[str]
    ) -> None:
        registry = RunRegistry(config.state_path)
        for name in ("ci", "docs", "ci"):
            registry.create_run(pipeline(name, command("a")), TriggerEvent(source="manual"))
        registry.close()

        show_history(config, limit=None, pipeline="ci", status=None)

        runs = json.loads(capsys.readouterr().out)
        assert [r["number"] for r in runs] == [3, 1]

    async def test_run_pipeline(
        self, config: OrchestratorConfig, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """A manual run executes every stage and reports the exit code."""
        (config.pipelines_dir / "ci.yaml").write_text(
            f"""
name: ci
stages:
  - name: hello
    type: command
    run: ["{sys.executable}", "-c", "print('hello from run ' + '{{run_number}}')"]
  - name: fail
    type: command
    run: ["{sys.executable}", "-c", "import sys; sys.exit(3)"]
  - name: never
    type: command
    run: ["{sys.executable}", "-c", "pass"]
"""
        )

        exit_code = await run_pipeline(config, "ci", include_output=True)

        assert exit_code == 1
        data = json.loads(capsys.readouterr().out)
        assert data["status"] == "failed"
        assert data["stages"][0]["output"] == "hello from run 1\n"
        assert data["stages"][1]["exit_code"] == 3
        assert data["stages"][2]["status"] == "skipped"
        assert data["first_failure"] == {"stage": "fail", "reason": "tool_failure"}


class TestCancel:
    """Tests for the cancel command."""

    __test__ = True

    @pytest.fixture
    def registry(self, config: OrchestratorConfig) -> Generator[RunRegistry, None, None]:
        registry = RunRegistry(config.state_path)
        yield registry
        registry.close()

    async def test_cancel_queued_run(
        self,
        config: OrchestratorConfig,
        registry: RunRegistry,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        run = registry.create_run(pipeline("ci", command("a")), TriggerEvent(source="manual"))

        exit_code = await cancel_run(config, run.number)

        assert exit_code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["cancelled"] is True
        assert data["run"]["status"] == "aborted"
        assert registry.get(run.number).status == "aborted"

    async def test_cancel_unknown_run(
        self, config: OrchestratorConfig, capsys: pytest.CaptureFixture[str]
    ) -> None:
        exit_code = await cancel_run(config, 999)

        assert exit_code == 1
        assert json.loads(capsys.readouterr().out) == {"cancelled": False, "run": None}

    async def test_cancel_finished_run(
        self,
        config: OrchestratorConfig,
        registry: RunRegistry,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        run = registry.create_run(pipeline("ci", command("a")), TriggerEvent(source="manual"))
        registry.update_status(run.number, "running")
        registry.update_status(run.number, "succeeded")

        exit_code = await cancel_run(config, run.number)

        assert exit_code == 1
        data = json.loads(capsys.readouterr().out)
        assert data["cancelled"] is False
        assert data["run"]["status"] == "succeeded"

    async def test_run_driven_elsewhere_gets_a_persisted_request(
        self,
        config: OrchestratorConfig,
        registry: RunRegistry,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """A run owned by another process is not reported as stopped until it is."""
        run = registry.create_run(pipeline("ci", command("a")), TriggerEvent(source="manual"))
        registry.update_status(run.number, "running")

        exit_code = await cancel_run(config, run.number, wait=0.2)

        assert exit_code == 4
        data = json.loads(capsys.readouterr().out)
        assert data["cancelled"] is True
        assert data["run"]["status"] == "running"
        assert registry.cancel_requested(run.number)

    def test_main_unknown_run_exits_one(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        config_path = tmp_path / "ci-orchestrator.yaml"
        (tmp_path / "pipelines").mkdir()
        config_path.write_text("state_path: state.db\npipelines_dir: pipelines\n")

        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(config_path), "cancel", "999"])

        assert exc_info.value.code == 1
        assert json.loads(capsys.readouterr().out)["cancelled"] is False


class TestMain:
    """Tests for the main entry point."""

    __test__ = True

    def test_missing_config_exits_with_error_code(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(tmp_path / "missing.yaml"), "history"])

        assert exc_info.value.code == ERROR_EXIT_CODE
        assert json.loads(capsys.readouterr().out)["error"] == "FileNotFoundError"

    def test_unknown_run_exits_with_error_code(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        config_path = tmp_path / "ci-orchestrator.yaml"
        config_path.write_text("state_path: state.db\n")

        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(config_path), "status", "7"])

        assert exc_info.value.code == ERROR_EXIT_CODE
        assert json.loads(capsys.readouterr().out)["error"] == "not_found"

    def test_history_exits_zero(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        config_path = tmp_path / "ci-orchestrator.yaml"
        config_path.write_text("state_path: state.db\n")

        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(config_path), "history", "--limit", "5"])

        assert exc_info.value.code == 0
        assert json.loads(capsys.readouterr().out) == []

    def test_parser_requires_command(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
