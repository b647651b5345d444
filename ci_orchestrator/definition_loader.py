"""Load pipeline definitions from YAML files."""

import asyncio
import logging
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import ValidationError

from ci_orchestrator.errors import InvalidDefinition
from ci_orchestrator.models.definition import PipelineDefinition

log = logging.getLogger(__name__)


async def load_pipeline_definition(path: Path) -> PipelineDefinition:
    """Load and validate a single pipeline definition file.

    Raises:
        FileNotFoundError: If the file does not exist
        InvalidDefinition: If the YAML is malformed, empty, or fails validation
        CyclicDependency: If the stage graph contains a cycle

    """
    if not path.exists():
        raise FileNotFoundError(f"Pipeline file not found: {path}")

    content = await asyncio.to_thread(path.read_text)
    return parse_pipeline_definition(content, source=str(path))


def parse_pipeline_definition(content: str, source: str = "<string>") -> PipelineDefinition:
    """Parse a pipeline definition from YAML text."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise InvalidDefinition(f"Invalid YAML in {source}: {e}") from e

    if data is None:
        raise InvalidDefinition(f"Empty pipeline file: {source}")

    try:
        return PipelineDefinition.model_validate(data)
    except ValidationError as e:
        raise InvalidDefinition(f"Invalid pipeline definition schema in {source}: {e}") from e


async def load_pipeline_definitions(directory: Path) -> Mapping[str, PipelineDefinition]:
    """Load every ``*.yaml``/``*.yml`` pipeline in a directory, keyed by name."""
    if not directory.is_dir():
        raise FileNotFoundError(f"Pipelines directory not found: {directory}")

    definitions: dict[str, PipelineDefinition] = {}
    paths = sorted([*directory.glob("*.yaml"), *directory.glob("*.yml")])
    for path in paths:
        definition = await load_pipeline_definition(path)
        if definition.name in definitions:
            raise InvalidDefinition(
                f"Pipeline '{definition.name}' defined more than once ({path})"
            )
        definitions[definition.name] = definition

    log.info("Loaded %d pipeline definition(s) from %s", len(definitions), directory)
    return definitions
