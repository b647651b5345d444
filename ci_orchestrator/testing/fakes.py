"""In-process stand-ins for the stage executor."""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field

from ci_orchestrator.models.context import StageContext
from ci_orchestrator.models.definition import StageSpec
from ci_orchestrator.models.run import FailureReason, StageResult


@dataclass(frozen=True, kw_only=True)
class Outcome:
    """Scripted behaviour of one stage."""

    fail: FailureReason | None = None
    delay: float = 0.0
    block_until_cancelled: bool = False


@dataclass(kw_only=True)
class ScriptedExecutor:
    """Executor that returns scripted results instead of running tools.

    Stages without a script succeed immediately.
    """

    outcomes: Mapping[str, Outcome] = field(default_factory=dict)
    started: list[str] = field(default_factory=list)
    contexts: list[StageContext] = field(default_factory=list)
    running: int = 0
    max_running: int = 0
    events: dict[str, asyncio.Event] = field(default_factory=dict)

    def started_event(self, name: str) -> asyncio.Event:
        """Event set once the named stage starts."""
        return self.events.setdefault(name, asyncio.Event())

    async def execute(
        self,
        stage: StageSpec,
        context: StageContext,
        cancel: asyncio.Event | None = None,
    ) -> StageResult:
        outcome = self.outcomes.get(stage.name, Outcome())
        self.started.append(stage.name)
        self.contexts.append(context)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.started_event(stage.name).set()
        try:
            if outcome.block_until_cancelled and cancel is not None:
                await cancel.wait()
                return StageResult(
                    name=stage.name, status="failed", reason="aborted", exit_code=-15
                )
            if outcome.delay:
                await asyncio.sleep(outcome.delay)
        finally:
            self.running -= 1

        if outcome.fail is not None:
            return StageResult(
                name=stage.name,
                status="failed",
                reason=outcome.fail,
                exit_code=1 if outcome.fail == "tool_failure" else None,
            )
        return StageResult(name=stage.name, status="succeeded", exit_code=0)
