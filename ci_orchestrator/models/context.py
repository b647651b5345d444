"""Execution context handed to each stage."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from ci_orchestrator.models.run import TriggerEvent


@dataclass(frozen=True, kw_only=True)
class StageContext:
    """Per-run values available to every stage of the run."""

    run_number: int
    pipeline: str
    trigger: TriggerEvent
    image_ref: str
    image_tag: str
    environment: Mapping[str, str] = field(default_factory=dict)
    workdir: Path | None = None

    def variables(self) -> Mapping[str, str]:
        """Values for ``{placeholder}`` substitution in stage commands."""
        return {
            "run_number": str(self.run_number),
            "pipeline": self.pipeline,
            "repository": self.trigger.repository or "",
            "branch": self.trigger.branch or "",
            "commit_sha": self.trigger.commit_sha or "",
            "image_ref": self.image_ref,
            "image_tag": self.image_tag,
        }

    def env(self) -> Mapping[str, str]:
        """Environment variables describing the run."""
        return {
            **self.environment,
            **{f"CI_{key.upper()}": value for key, value in self.variables().items()},
        }

    def resolve_path(self, path: str) -> Path:
        resolved = Path(path)
        if not resolved.is_absolute() and self.workdir is not None:
            resolved = self.workdir / resolved
        return resolved
