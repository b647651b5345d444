"""Pipeline engine: drives runs through their stage graphs."""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path

from ci_orchestrator.config import ImageConfig
from ci_orchestrator.deploy import ImageRef
from ci_orchestrator.errors import InvalidTransition, NoMatchingPipeline, RunNotFound
from ci_orchestrator.executor import StageExecutor
from ci_orchestrator.models.context import StageContext
from ci_orchestrator.models.definition import PipelineDefinition
from ci_orchestrator.models.run import Run, RunStatus, StageResult
from ci_orchestrator.registry import RunRegistry

log = logging.getLogger(__name__)


class PipelineEngine:
    """Executes runs concurrently, each with its own dependency-ordered stages.

    Within a run, every stage whose dependencies have finished is started at
    once. A failed ``abort`` stage skips every stage not yet started and
    fails the run; a failed ``continue`` stage is recorded as a warning and
    its dependents still run. Across runs nothing is ordered: each run is
    its own task, bounded by ``max_concurrent_runs``.

    Registry access from the event loop goes through a worker thread, so a
    busy database shared with other processes does not stall other runs.
    """

    def __init__(
        self,
        *,
        registry: RunRegistry,
        executor: StageExecutor,
        definitions: Mapping[str, PipelineDefinition],
        image: ImageConfig,
        max_concurrent_runs: int = 4,
        workdir: Path | None = None,
        max_runs: int | None = None,
        cancel_poll_interval: float = 1.0,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.definitions = definitions
        self.image = image
        self.workdir = workdir
        self.max_runs = max_runs
        self.cancel_poll_interval = cancel_poll_interval
        self._slots = asyncio.Semaphore(max_concurrent_runs)
        self._tasks: dict[int, asyncio.Task[Run]] = {}
        self._cancel: dict[int, asyncio.Event] = {}

    def definition(self, pipeline: str) -> PipelineDefinition:
        try:
            return self.definitions[pipeline]
        except KeyError:
            raise NoMatchingPipeline(f"Pipeline '{pipeline}' is not defined") from None

    def submit(self, number: int) -> asyncio.Task[Run]:
        """Schedule a run without waiting for it."""
        if (task := self._tasks.get(number)) is not None:
            return task
        self._cancel.setdefault(number, asyncio.Event())
        task = asyncio.create_task(self._run_in_slot(number), name=f"run-{number}")
        self._tasks[number] = task
        task.add_done_callback(lambda t: self._forget(number, t))
        log.info("Run #%d queued", number)
        return task

    async def wait(self, number: int) -> Run:
        """Wait for a submitted run to finish and return its final state."""
        if (task := self._tasks.get(number)) is not None:
            await asyncio.wait([task])
        return await asyncio.to_thread(self.registry.get, number)

    async def join(self) -> None:
        """Wait for every submitted run."""
        if self._tasks:
            await asyncio.wait(list(self._tasks.values()))

    async def shutdown(self) -> None:
        """Cancel every active run and wait for them to stop."""
        for event in self._cancel.values():
            event.set()
        await self.join()

    def cancel(self, number: int) -> bool:
        """Request cancellation of a run.

        Runs driven by this engine are interrupted directly: in-flight stages
        are asked to terminate and pending stages are skipped. A queued run
        that no engine has started is aborted here. A run driven by another
        process gets a persisted request that its engine picks up.

        Returns False if the run is unknown or already finished.
        """
        try:
            run = self.registry.get(number)
        except RunNotFound:
            return False
        if run.is_terminal:
            return False

        log.info("Cancellation requested for run #%d", number)
        if (event := self._cancel.get(number)) is not None:
            event.set()
        elif run.status == "queued":
            self._abort_queued(run)
        else:
            self.registry.request_cancel(number)
        return True

    async def execute(self, number: int) -> Run:
        """Drive one run to a terminal status."""
        run = await asyncio.to_thread(self.registry.get, number)
        definition = self.definition(run.pipeline)
        cancel = self._cancel.setdefault(number, asyncio.Event())

        if run.is_terminal:
            return run
        if cancel.is_set():
            return await asyncio.to_thread(self._abort_queued, run)

        image = ImageRef.for_run(self.image, number)
        try:
            run = await asyncio.to_thread(
                self.registry.update_status, number, "running", image_ref=str(image)
            )
        except InvalidTransition:
            # Aborted by another process while waiting for a slot.
            return await asyncio.to_thread(self.registry.get, number)

        context = StageContext(
            run_number=number,
            pipeline=definition.name,
            trigger=run.trigger,
            image_ref=str(image),
            image_tag=image.tag,
            environment=definition.environment,
            workdir=self.workdir,
        )

        watcher = asyncio.create_task(self._watch_cancel_requests(number, cancel))
        try:
            status = await self._drive(definition, context, cancel)
        finally:
            watcher.cancel()
            await asyncio.wait([watcher])

        run = await asyncio.to_thread(self.registry.update_status, number, status)
        self._log_outcome(run)

        if self.max_runs is not None:
            await asyncio.to_thread(self.registry.prune, self.max_runs)
        return run

    async def _run_in_slot(self, number: int) -> Run:
        async with self._slots:
            return await self.execute(number)

    async def _watch_cancel_requests(self, number: int, cancel: asyncio.Event) -> None:
        while not cancel.is_set():
            if await asyncio.to_thread(self.registry.cancel_requested, number):
                log.info("Run #%d: cancellation requested by another process", number)
                cancel.set()
                return
            await asyncio.sleep(self.cancel_poll_interval)

    async def _drive(
        self,
        definition: PipelineDefinition,
        context: StageContext,
        cancel: asyncio.Event,
    ) -> RunStatus:
        number = context.run_number
        order = definition.topological_order()
        finished: dict[str, StageResult] = {}
        running: dict[asyncio.Task[StageResult], str] = {}
        halted = False
        failed = False

        try:
            while True:
                if not halted and not cancel.is_set():
                    for name in self._eligible(definition, order, finished, running):
                        stage = definition.stage(name)
                        await asyncio.to_thread(
                            self.registry.record_stage_result,
                            number,
                            StageResult(
                                name=name, status="running", started_at=datetime.now(UTC)
                            ),
                        )
                        task = asyncio.create_task(
                            self.executor.execute(stage, context, cancel)
                        )
                        running[task] = name

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    name = running.pop(task)
                    result = task.result()
                    finished[name] = result
                    tolerated = self._tolerated(definition, result)
                    await asyncio.to_thread(
                        self.registry.record_stage_result,
                        number,
                        result,
                        warning=result.status == "failed" and tolerated,
                    )
                    if result.status == "failed" and not tolerated:
                        halted = True
                        if result.reason != "aborted":
                            failed = True
                            log.warning(
                                "Run #%d: stage %s failed (%s), skipping remaining stages",
                                number,
                                name,
                                result.reason,
                            )
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.wait(running)

        for name in order:
            if name not in finished:
                await asyncio.to_thread(
                    self.registry.record_stage_result,
                    number,
                    StageResult(name=name, status="skipped"),
                )

        interrupted = any(r.reason == "aborted" for r in finished.values())
        if interrupted or (cancel.is_set() and len(finished) < len(order)):
            return "aborted"
        return "failed" if failed else "succeeded"

    def _eligible(
        self,
        definition: PipelineDefinition,
        order: Sequence[str],
        finished: Mapping[str, StageResult],
        running: Mapping[asyncio.Task[StageResult], str],
    ) -> Sequence[str]:
        started = set(finished) | set(running.values())
        eligible: list[str] = []
        for name in order:
            if name in started:
                continue
            dependencies = definition.dependencies(name)
            if all(
                dep in finished and self._satisfies(definition, finished[dep])
                for dep in dependencies
            ):
                eligible.append(name)
        return eligible

    def _satisfies(self, definition: PipelineDefinition, result: StageResult) -> bool:
        return result.status == "succeeded" or (
            result.status == "failed" and self._tolerated(definition, result)
        )

    def _tolerated(self, definition: PipelineDefinition, result: StageResult) -> bool:
        return (
            definition.stage(result.name).on_failure == "continue"
            and result.reason != "aborted"
        )

    def _abort_queued(self, run: Run) -> Run:
        for result in run.stages:
            if result.status == "pending":
                self.registry.record_stage_result(
                    run.number, StageResult(name=result.name, status="skipped")
                )
        run = self.registry.update_status(run.number, "aborted")
        self._log_outcome(run)
        return run

    def _forget(self, number: int, task: asyncio.Task[Run]) -> None:
        self._tasks.pop(number, None)
        self._cancel.pop(number, None)
        if task.cancelled():
            log.warning("Run #%d task was cancelled", number)
        elif (exc := task.exception()) is not None:
            log.error("Run #%d crashed: %s", number, exc, exc_info=exc)

    def _log_outcome(self, run: Run) -> None:
        if (failure := run.first_failure) is not None and run.status != "succeeded":
            log.info(
                "Run #%d %s: first failing stage %s (%s)",
                run.number,
                run.status,
                failure.name,
                failure.reason,
            )
        elif run.warnings:
            log.info(
                "Run #%d %s with warnings from: %s",
                run.number,
                run.status,
                ", ".join(run.warnings),
            )
        else:
            log.info("Run #%d %s", run.number, run.status)
