"""Models for pipeline runs and their stage results."""

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Literal

from pydantic import Field
from typing_extensions import TypeAliasType

from ci_orchestrator.models.base import Model

RunStatus = TypeAliasType("RunStatus", Literal["queued", "running", "succeeded", "failed", "aborted"])
StageStatus = TypeAliasType("StageStatus", Literal["pending", "running", "succeeded", "failed", "skipped"])
FailureReason = TypeAliasType("FailureReason", Literal[
    "timeout",
    "tool_failure",
    "deploy_rejected",
    "missing_placeholder",
    "credential_error",
    "aborted",
])

TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset(
    ["succeeded", "failed", "aborted"]
)
TERMINAL_STAGE_STATUSES: frozenset[StageStatus] = frozenset(
    ["succeeded", "failed", "skipped"]
)

RUN_TRANSITIONS: Mapping[RunStatus, frozenset[RunStatus]] = {
    "queued": frozenset(["running", "aborted"]),
    "running": TERMINAL_RUN_STATUSES,
    "succeeded": frozenset(),
    "failed": frozenset(),
    "aborted": frozenset(),
}

STAGE_TRANSITIONS: Mapping[StageStatus, frozenset[StageStatus]] = {
    "pending": frozenset(["running", "skipped", "failed"]),
    "running": frozenset(["succeeded", "failed"]),
    "succeeded": frozenset(),
    "failed": frozenset(),
    "skipped": frozenset(),
}


class TriggerEvent(Model):
    """Reference to the event that triggered a run."""

    source: Literal["webhook", "manual"] = Field(..., description="Trigger origin")
    repository: str | None = Field(default=None, description="Repository identifier")
    branch: str | None = Field(default=None, description="Branch name")
    commit_sha: str | None = Field(default=None, description="Commit SHA")


class StageResult(Model):
    """Outcome of one stage within a run."""

    name: str
    status: StageStatus = "pending"
    reason: FailureReason | None = None
    exit_code: int | None = None
    output: str = ""
    detail: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the stage reached a final status."""
        return self.status in TERMINAL_STAGE_STATUSES


class Run(Model):
    """One execution of a pipeline definition."""

    number: int = Field(..., ge=1, description="Unique, increasing run number")
    pipeline: str
    trigger: TriggerEvent
    status: RunStatus = "queued"
    stages: Sequence[StageResult] = Field(default_factory=list)
    warnings: Sequence[str] = Field(
        default_factory=list,
        description="Stages that failed under a continue-on-failure policy",
    )
    image_ref: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the run reached a final status."""
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def first_failure(self) -> StageResult | None:
        """First stage that failed, in pipeline order."""
        return next((s for s in self.stages if s.status == "failed"), None)

    def stage_result(self, name: str) -> StageResult:
        """Return the result entry for a stage."""
        for result in self.stages:
            if result.name == name:
                return result
        raise KeyError(name)
