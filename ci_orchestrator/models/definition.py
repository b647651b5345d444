"""Models for pipeline definitions loaded from pipeline YAML files."""

from collections.abc import Mapping, Sequence
from typing import Annotated, Literal

from pydantic import Field, model_validator
from typing_extensions import TypeAliasType

from ci_orchestrator.errors import CyclicDependency, InvalidDefinition
from ci_orchestrator.models.base import StrictModel

FailurePolicy = TypeAliasType("FailurePolicy", Literal["abort", "continue"])


class BaseStage(StrictModel):
    """Fields shared by every stage type."""

    name: str = Field(..., min_length=1, description="Stage name, unique per pipeline")
    needs: Sequence[str] | None = Field(
        default=None,
        description="Stage dependencies (None means the previous stage in order)",
    )
    credentials: Mapping[str, str] = Field(
        default_factory=dict,
        description="Environment variable name mapped to credential name",
    )
    on_failure: FailurePolicy = Field(
        default="abort", description="Whether a failure aborts the run"
    )
    timeout: float | None = Field(
        default=None, gt=0, description="Stage timeout in seconds"
    )


class CommandStage(BaseStage):
    """Runs an arbitrary external command."""

    type: Literal["command"] = "command"
    run: Sequence[str] = Field(..., min_length=1, description="Command argv")


class BuildStage(BaseStage):
    """Builds the run's container image with the external build tool."""

    type: Literal["build"] = "build"
    dockerfile: str = Field(default="Dockerfile", description="Dockerfile path")
    context: str = Field(default=".", description="Build context directory")


class PushStage(BaseStage):
    """Pushes the run's container image to the registry."""

    type: Literal["push"] = "push"
    registry_credential: str = Field(
        ..., description="Name of a username_password credential for the registry"
    )


class DeployStage(BaseStage):
    """Renders a manifest with the run's image and applies it to a cluster."""

    type: Literal["deploy"] = "deploy"
    manifest: str = Field(..., description="Path to the manifest template")
    placeholder: str = Field(
        default="{{ image }}", min_length=1, description="Image placeholder token"
    )
    cluster_credential: str = Field(
        ..., description="Name of a token credential for the cluster API"
    )


StageSpec = Annotated[
    CommandStage | BuildStage | PushStage | DeployStage,
    Field(discriminator="type"),
]


class PipelineDefinition(StrictModel):
    """Complete pipeline definition: an ordered, DAG-shaped set of stages."""

    name: str = Field(..., min_length=1, description="Pipeline name")
    environment: Mapping[str, str] = Field(
        default_factory=dict,
        description="Plain (non-secret) variables bound into every stage",
    )
    stages: Sequence[StageSpec] = Field(..., min_length=1, description="Stages")

    @model_validator(mode="after")
    def validate_graph(self) -> "PipelineDefinition":
        names = [stage.name for stage in self.stages]
        seen: set[str] = set()
        for name in names:
            if name in seen:
                raise InvalidDefinition(f"Duplicate stage name '{name}'")
            seen.add(name)

        for stage in self.stages:
            for dependency in stage.needs or ():
                if dependency not in seen:
                    raise InvalidDefinition(
                        f"Stage '{stage.name}' needs unknown stage '{dependency}'"
                    )
                if dependency == stage.name:
                    raise CyclicDependency([stage.name, stage.name])

        if (cycle := self._find_cycle()) is not None:
            raise CyclicDependency(cycle)
        return self

    def stage(self, name: str) -> StageSpec:
        """Return the stage with the given name."""
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def dependencies(self, name: str) -> Sequence[str]:
        """Return the direct dependencies of a stage.

        A stage that does not declare ``needs`` depends on the stage listed
        before it, so a plain list of stages runs sequentially.
        """
        names = [stage.name for stage in self.stages]
        index = names.index(name)
        needs = self.stages[index].needs
        if needs is not None:
            return tuple(needs)
        return (names[index - 1],) if index > 0 else ()

    def downstream(self, name: str) -> Sequence[str]:
        """Return every stage that transitively depends on ``name``, in order."""
        affected = {name}
        for stage in self.topological_order():
            if any(dep in affected for dep in self.dependencies(stage)):
                affected.add(stage)
        return [s.name for s in self.stages if s.name in affected - {name}]

    def topological_order(self) -> Sequence[str]:
        """Return stage names so that every stage follows its dependencies."""
        order: list[str] = []
        done: set[str] = set()
        pending = [stage.name for stage in self.stages]
        while pending:
            for name in pending:
                if all(dep in done for dep in self.dependencies(name)):
                    order.append(name)
                    done.add(name)
                    pending.remove(name)
                    break
            else:  # pragma: no cover - excluded by cycle validation
                raise CyclicDependency(pending)
        return order

    def _find_cycle(self) -> Sequence[str] | None:
        visiting: list[str] = []
        visited: set[str] = set()

        def visit(name: str) -> Sequence[str] | None:
            if name in visiting:
                return [*visiting[visiting.index(name) :], name]
            if name in visited:
                return None
            visiting.append(name)
            for dependency in self.dependencies(name):
                if (cycle := visit(dependency)) is not None:
                    return cycle
            visiting.pop()
            visited.add(name)
            return None

        for stage in self.stages:
            if (cycle := visit(stage.name)) is not None:
                return cycle
        return None
