"""Error taxonomy for the orchestrator.

Stage-level failures are never raised past the stage executor; they are
encoded in a ``StageResult``. The exceptions below cover everything that is
fatal to the current operation and must reach the caller.
"""

from collections.abc import Sequence


class OrchestratorError(Exception):
    """Base class for orchestrator errors carrying a stable error code."""

    code = "orchestrator_error"


class Unauthorized(OrchestratorError):
    """Raised when a webhook signature does not match."""

    code = "unauthorized"


class NoMatchingPipeline(OrchestratorError):
    """Raised when no pipeline is configured for an event or name."""

    code = "no_matching_pipeline"


class InvalidEvent(OrchestratorError):
    """Raised when a webhook payload cannot be parsed."""

    code = "invalid_event"


class NotFound(OrchestratorError):
    """Raised when a credential or run lookup fails."""

    code = "not_found"


class CredentialNotFound(NotFound):
    """Raised when resolving an unregistered credential name."""


class RunNotFound(NotFound):
    """Raised when a run number is not present in the registry."""


class DuplicateNameConflict(OrchestratorError):
    """Raised when a credential name is re-registered with a different kind."""

    code = "duplicate_name_conflict"


class CredentialAccessError(OrchestratorError):
    """Raised when a credential handle is used outside its scoped block."""

    code = "credential_access"


class MissingPlaceholder(OrchestratorError):
    """Raised when a manifest template has no image placeholder."""

    code = "missing_placeholder"


class InvalidDefinition(OrchestratorError):
    """Raised when a pipeline definition fails validation."""

    code = "invalid_definition"


class CyclicDependency(InvalidDefinition):
    """Raised when the stage dependency graph contains a cycle."""

    code = "cyclic_dependency"

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        super().__init__(f"Cyclic stage dependency: {' -> '.join(self.cycle)}")


class InvalidTransition(OrchestratorError):
    """Raised when a run or stage status would move backwards."""

    code = "invalid_transition"


class StorageError(OrchestratorError):
    """Raised when the run registry backing store is unavailable."""

    code = "storage_error"
