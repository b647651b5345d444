"""Wiring of the orchestrator components from configuration."""

import logging
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from ci_orchestrator.config import OrchestratorConfig
from ci_orchestrator.credentials import CredentialStore, load_credentials
from ci_orchestrator.definition_loader import load_pipeline_definitions
from ci_orchestrator.deploy import DeploymentUpdater
from ci_orchestrator.engine import PipelineEngine
from ci_orchestrator.executor import StageExecutor
from ci_orchestrator.intake import EventIntake
from ci_orchestrator.models.definition import PipelineDefinition
from ci_orchestrator.registry import RunRegistry

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class Orchestrator:
    """All components needed to accept events and execute runs."""

    config: OrchestratorConfig
    definitions: Mapping[str, PipelineDefinition]
    registry: RunRegistry = field(repr=False)
    credentials: CredentialStore = field(repr=False)
    engine: PipelineEngine = field(repr=False)
    intake: EventIntake = field(repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls,
        config: OrchestratorConfig,
        *,
        credentials: CredentialStore | None = None,
        deployer: DeploymentUpdater | None = None,
    ) -> AsyncGenerator["Orchestrator", None]:
        """Create the orchestrator with a managed registry lifecycle.

        Active runs are cancelled and awaited on exit.
        """
        definitions = await load_pipeline_definitions(config.pipelines_dir)
        if credentials is None:
            credentials = (
                load_credentials(config.credentials_file)
                if config.credentials_file is not None
                else CredentialStore()
            )

        executor = StageExecutor(
            config=config.executor,
            credentials=credentials,
            deployer=deployer or DeploymentUpdater(cluster=config.cluster),
        )
        registry = RunRegistry(config.state_path)
        engine = PipelineEngine(
            registry=registry,
            executor=executor,
            definitions=definitions,
            image=config.image,
            max_concurrent_runs=config.engine.max_concurrent_runs,
            workdir=config.executor.workdir,
            max_runs=config.retention.max_runs,
            cancel_poll_interval=config.engine.cancel_poll_interval,
        )
        intake = EventIntake(
            registry=registry,
            scheduler=engine,
            definitions=definitions,
            triggers=config.triggers,
            secret=config.webhook.secret,
        )

        try:
            yield cls(
                config=config,
                definitions=definitions,
                registry=registry,
                credentials=credentials,
                engine=engine,
                intake=intake,
            )
        finally:
            await engine.shutdown()
            registry.close()
