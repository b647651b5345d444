"""Stage executor: runs one stage against an external tool."""

import asyncio
import base64
import json
import logging
import os
import signal
import tempfile
from collections.abc import Coroutine, Mapping, Sequence
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ci_orchestrator.config import ExecutorConfig
from ci_orchestrator.credentials import CredentialHandle, CredentialStore, export_credential
from ci_orchestrator.deploy import DeploymentUpdater
from ci_orchestrator.errors import CredentialAccessError, NotFound
from ci_orchestrator.models.context import StageContext
from ci_orchestrator.models.definition import (
    BuildStage,
    CommandStage,
    DeployStage,
    PushStage,
    StageSpec,
)
from ci_orchestrator.models.run import FailureReason, StageResult

log = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
REDACTED = "****"


class OutputBuffer:
    """Size-capped capture of a stage's combined stdout/stderr.

    Secrets are redacted as output arrives, before the first ``limit`` bytes
    are kept and the rest counted. The last ``len(secret) - 1`` bytes are held
    back until more output shows whether they start a secret, so a secret
    crossing a chunk boundary or the cut-off is never partially kept.
    """

    def __init__(self, limit: int, redact: Sequence[str] = ()) -> None:
        self.limit = limit
        self.redact = [secret.encode() for secret in redact if secret]
        self._holdback = max((len(s) for s in self.redact), default=1) - 1
        self._data = bytearray()
        self._pending = b""
        self.dropped = 0

    def append(self, chunk: bytes) -> None:
        pending = self._pending + chunk
        for secret in self.redact:
            pending = pending.replace(secret, REDACTED.encode())
        if (cut := len(pending) - self._holdback) > 0:
            self._keep(pending[:cut])
            pending = pending[cut:]
        self._pending = pending

    def text(self) -> str:
        """Flush held-back output and return the captured text."""
        if self._pending:
            self._keep(self._pending)
            self._pending = b""
        output = self._data.decode("utf-8", errors="replace")
        if self.dropped:
            output += f"\n... [output truncated: {self.dropped} bytes dropped]\n"
        return output

    def _keep(self, data: bytes) -> None:
        room = self.limit - len(self._data)
        if room > 0:
            self._data += data[:room]
        self.dropped += max(0, len(data) - max(room, 0))


def inherited_env(names: Sequence[str]) -> dict[str, str]:
    """The allow-listed part of the orchestrator's own environment."""
    return {name: os.environ[name] for name in names if name in os.environ}


@dataclass(frozen=True, kw_only=True)
class ProcessOutcome:
    """How an external process ended."""

    exit_code: int | None
    reason: FailureReason | None


@dataclass(frozen=True, kw_only=True)
class StageExecutor:
    """Runs stages and encodes every failure in the returned ``StageResult``.

    ``base_env`` replaces the variables inherited through
    ``ExecutorConfig.inherit_env``.
    """

    config: ExecutorConfig
    credentials: CredentialStore
    deployer: DeploymentUpdater
    base_env: Mapping[str, str] | None = None

    async def execute(
        self,
        stage: StageSpec,
        context: StageContext,
        cancel: asyncio.Event | None = None,
    ) -> StageResult:
        """Run one stage to completion, timeout or cancellation.

        Never raises for stage failures. Task cancellation terminates the
        external process and propagates.
        """
        cancel = cancel or asyncio.Event()
        started_at = datetime.now(UTC)
        log.info("Run #%d: starting stage %s", context.run_number, stage.name)

        try:
            result = await self._execute(stage, context, cancel)
        except (NotFound, CredentialAccessError) as e:
            result = _failed(stage, "credential_error", detail=str(e))
        except Exception as e:
            log.error("Stage %s crashed: %s", stage.name, e, exc_info=e)
            result = _failed(stage, "tool_failure", detail=str(e))

        result = result.model_copy(
            update={"started_at": started_at, "finished_at": datetime.now(UTC)}
        )
        log.info(
            "Run #%d: stage %s finished status=%s reason=%s exit_code=%s",
            context.run_number,
            stage.name,
            result.status,
            result.reason,
            result.exit_code,
        )
        return result

    async def _execute(
        self, stage: StageSpec, context: StageContext, cancel: asyncio.Event
    ) -> StageResult:
        timeout = stage.timeout or self.config.default_timeout

        with (
            tempfile.TemporaryDirectory(prefix="ci-stage-") as scratch,
            ExitStack() as scope,
        ):
            base_env = self.base_env
            if base_env is None:
                base_env = inherited_env(self.config.inherit_env)
            env: dict[str, str] = {**base_env, **context.env()}
            redact: list[str] = []

            for env_var, credential_name in stage.credentials.items():
                secret = scope.enter_context(
                    self._acquire(credential_name, context, stage).acquire()
                )
                env.update(export_credential(env_var, secret, Path(scratch)))
                redact.extend(secret.secret_values())

            if isinstance(stage, DeployStage):
                return await self._run_cancellable(
                    self.deployer.run(stage, context, self.credentials),
                    stage,
                    cancel,
                    timeout,
                )

            try:
                argv = self._command(stage, context, Path(scratch), scope, redact)
            except (KeyError, IndexError, ValueError) as e:
                return _failed(stage, "tool_failure", detail=f"Invalid command template: {e}")

            buffer = OutputBuffer(self.config.output_limit, redact)
            outcome = await self._run_process(
                argv, env, context.workdir, buffer, cancel, timeout
            )

        if outcome.reason is None:
            return StageResult(
                name=stage.name,
                status="succeeded",
                exit_code=outcome.exit_code,
                output=buffer.text(),
            )
        return _failed(
            stage,
            outcome.reason,
            exit_code=outcome.exit_code,
            output=buffer.text(),
            detail=_describe(outcome, timeout),
        )

    def _acquire(
        self, credential_name: str, context: StageContext, stage: StageSpec
    ) -> CredentialHandle:
        return self.credentials.resolve(
            credential_name, run_number=context.run_number, stage=stage.name
        )

    def _command(
        self,
        stage: CommandStage | BuildStage | PushStage,
        context: StageContext,
        scratch: Path,
        scope: ExitStack,
        redact: list[str],
    ) -> Sequence[str]:
        docker = self.config.docker_binary
        match stage:
            case CommandStage():
                variables = context.variables()
                return [arg.format_map(variables) for arg in stage.run]
            case BuildStage():
                return [
                    docker,
                    "build",
                    "-f",
                    str(context.resolve_path(stage.dockerfile)),
                    "-t",
                    context.image_ref,
                    str(context.resolve_path(stage.context)),
                ]
            case PushStage():
                secret = scope.enter_context(
                    self._acquire(stage.registry_credential, context, stage).acquire()
                )
                redact.extend(secret.secret_values())
                config_dir = scratch / "docker"
                auth = write_registry_auth(
                    config_dir,
                    registry=context.image_ref.split("/", 1)[0],
                    username=secret.username(),
                    password=secret.password(),
                )
                redact.append(auth)
                return [docker, "--config", str(config_dir), "push", context.image_ref]

    async def _run_process(
        self,
        argv: Sequence[str],
        env: Mapping[str, str],
        cwd: Path | None,
        buffer: OutputBuffer,
        cancel: asyncio.Event,
        timeout: float,
    ) -> ProcessOutcome:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=dict(env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except FileNotFoundError:
            buffer.append(f"Command not found: {argv[0]}\n".encode())
            return ProcessOutcome(exit_code=127, reason="tool_failure")
        except PermissionError:
            buffer.append(f"Permission denied: {argv[0]}\n".encode())
            return ProcessOutcome(exit_code=126, reason="tool_failure")

        completion = asyncio.create_task(self._communicate(process, buffer))
        cancelled = asyncio.create_task(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {completion, cancelled},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if completion in done:
                exit_code = completion.result()
                return ProcessOutcome(
                    exit_code=exit_code,
                    reason=None if exit_code == 0 else "tool_failure",
                )

            reason: FailureReason = "aborted" if cancelled in done else "timeout"
            log.warning("Terminating process %s (%s)", process.pid, reason)
            await self._terminate(process)
            try:
                await asyncio.wait_for(completion, self.config.termination_grace + 1)
            except TimeoutError:
                completion.cancel()
            return ProcessOutcome(exit_code=process.returncode, reason=reason)
        finally:
            cancelled.cancel()
            if process.returncode is None:
                _signal_group(process, signal.SIGKILL)
                completion.cancel()

    async def _communicate(
        self, process: asyncio.subprocess.Process, buffer: OutputBuffer
    ) -> int:
        assert process.stdout is not None
        while chunk := await process.stdout.read(READ_CHUNK_SIZE):
            buffer.append(chunk)
        return await process.wait()

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Send SIGTERM to the process group, then SIGKILL after the grace period."""
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), self.config.termination_grace)
        except TimeoutError:
            _signal_group(process, signal.SIGKILL)
            await process.wait()

    async def _run_cancellable(
        self,
        coro: Coroutine[Any, Any, StageResult],
        stage: StageSpec,
        cancel: asyncio.Event,
        timeout: float,
    ) -> StageResult:
        task = asyncio.create_task(coro)
        cancelled = asyncio.create_task(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancelled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if task in done:
                return task.result()
            reason: FailureReason = "aborted" if cancelled in done else "timeout"
            return _failed(stage, reason, detail=f"Stage {reason}")
        finally:
            cancelled.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)


def write_registry_auth(
    config_dir: Path, *, registry: str, username: str, password: str
) -> str:
    """Write a docker client config for one registry and return the encoded auth."""
    config_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    auth = base64.b64encode(f"{username}:{password}".encode()).decode()
    path = config_dir / "config.json"
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump({"auths": {registry: {"auth": auth}}}, f)
    return auth


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass


def _failed(
    stage: StageSpec,
    reason: FailureReason,
    *,
    exit_code: int | None = None,
    output: str = "",
    detail: str | None = None,
) -> StageResult:
    return StageResult(
        name=stage.name,
        status="failed",
        reason=reason,
        exit_code=exit_code,
        output=output,
        detail=detail,
    )


def _describe(outcome: ProcessOutcome, timeout: float) -> str:
    match outcome.reason:
        case "timeout":
            return f"Stage timed out after {timeout:g}s"
        case "aborted":
            return "Stage terminated by run cancellation"
        case _:
            return f"Command exited with code {outcome.exit_code}"
