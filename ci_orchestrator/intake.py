"""Event intake: turns webhook payloads and manual triggers into queued runs."""

import asyncio
import hashlib
import hmac
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any, Literal, Protocol

from pydantic import ConfigDict, Field, SecretStr, ValidationError, field_validator

from ci_orchestrator.config import TriggerConfig
from ci_orchestrator.errors import InvalidEvent, NoMatchingPipeline, Unauthorized
from ci_orchestrator.models.base import Model
from ci_orchestrator.models.definition import PipelineDefinition
from ci_orchestrator.models.run import Run, TriggerEvent
from ci_orchestrator.registry import RunRegistry

log = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


class RunScheduler(Protocol):
    """Anything that can queue and cancel runs."""

    def submit(self, number: int) -> object: ...

    def cancel(self, number: int) -> bool: ...


class WebhookEvent(Model):
    """Push notification payload."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    repository: str = Field(..., min_length=1)
    branch: str = Field(..., min_length=1)
    commit_sha: str = Field(..., alias="commitSha", min_length=1)
    signature: str | None = None

    @field_validator("branch")
    @classmethod
    def strip_ref_prefix(cls, value: str) -> str:
        return value.removeprefix("refs/heads/")


class IntakeResponse(Model):
    """Acknowledgement returned to the webhook sender."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    run_id: int = Field(..., alias="runId")
    status: Literal["queued"] = "queued"


def sign(secret: str, body: bytes) -> str:
    """Compute the ``sha256=<hex>`` HMAC signature of a payload."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: SecretStr | None, body: bytes, signature: str | None) -> None:
    """Check a payload signature in constant time.

    Raises:
        Unauthorized: If no secret is configured, the signature is missing,
            or it does not match

    """
    if secret is None:
        raise Unauthorized("Webhook secret is not configured")
    if not signature:
        raise Unauthorized("Missing webhook signature")
    expected = sign(secret.get_secret_value(), body)
    if not hmac.compare_digest(expected, signature.strip()):
        raise Unauthorized("Webhook signature mismatch")


def canonical_body(payload: Mapping[str, Any]) -> bytes:
    """Bytes signed when the signature travels inside the payload itself."""
    unsigned = {k: v for k, v in payload.items() if k != "signature"}
    return json.dumps(unsigned, sort_keys=True, separators=(",", ":")).encode()


@dataclass(frozen=True, kw_only=True)
class EventIntake:
    """Validates events, selects a pipeline, creates and queues the run.

    Delivery retries are the sender's concern; nothing is retried here.
    """

    registry: RunRegistry
    scheduler: RunScheduler
    definitions: Mapping[str, PipelineDefinition]
    triggers: Sequence[TriggerConfig] = field(default_factory=list)
    secret: SecretStr | None = field(default=None, repr=False)

    async def ingest(self, body: bytes, signature: str | None = None) -> IntakeResponse:
        """Handle a raw webhook delivery.

        ``signature`` (from the transport header) covers the raw body. Without
        it, the payload's own ``signature`` field is checked against the
        canonical JSON of the remaining fields. The signature is always
        checked before the payload is validated.

        Raises:
            Unauthorized: On a missing or mismatched signature
            InvalidEvent: If the payload is malformed
            NoMatchingPipeline: If no trigger matches the event

        """
        if signature:
            verify_signature(self.secret, body, signature)
        else:
            payload = _json_object(body)
            embedded = payload.get("signature")
            verify_signature(
                self.secret,
                canonical_body(payload),
                embedded if isinstance(embedded, str) else None,
            )

        event = self._parse(body)
        definition = self.select_pipeline(event)
        trigger = TriggerEvent(
            source="webhook",
            repository=event.repository,
            branch=event.branch,
            commit_sha=event.commit_sha,
        )
        run = await asyncio.to_thread(self.registry.create_run, definition, trigger)
        self.scheduler.submit(run.number)
        log.info(
            "Queued run #%d of %s for %s@%s (%s)",
            run.number,
            definition.name,
            event.repository,
            event.branch,
            event.commit_sha,
        )
        return IntakeResponse(run_id=run.number)

    def trigger(
        self,
        pipeline: str,
        *,
        branch: str | None = None,
        commit_sha: str | None = None,
        submit: bool = True,
    ) -> Run:
        """Manually create a run of a named pipeline.

        Raises:
            NoMatchingPipeline: If the pipeline is not defined

        """
        if (definition := self.definitions.get(pipeline)) is None:
            raise NoMatchingPipeline(f"Pipeline '{pipeline}' is not defined")

        run = self.registry.create_run(
            definition,
            TriggerEvent(source="manual", branch=branch, commit_sha=commit_sha),
        )
        if submit:
            self.scheduler.submit(run.number)
        log.info("Manually triggered run #%d of %s", run.number, pipeline)
        return run

    def select_pipeline(self, event: WebhookEvent) -> PipelineDefinition:
        """Return the first configured pipeline matching the event.

        Raises:
            NoMatchingPipeline: If no trigger matches

        """
        for trigger in self.triggers:
            if trigger.repository is not None and trigger.repository != event.repository:
                continue
            if not fnmatchcase(event.branch, trigger.branch):
                continue
            if (definition := self.definitions.get(trigger.pipeline)) is None:
                log.warning(
                    "Trigger for %s@%s names undefined pipeline %s",
                    trigger.repository or "*",
                    trigger.branch,
                    trigger.pipeline,
                )
                continue
            return definition

        raise NoMatchingPipeline(
            f"No pipeline configured for {event.repository}@{event.branch}"
        )

    def _parse(self, body: bytes) -> WebhookEvent:
        try:
            return WebhookEvent.model_validate_json(body)
        except ValidationError as e:
            raise InvalidEvent(f"Invalid webhook payload: {e}") from e


def _json_object(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        raise Unauthorized("Missing webhook signature")
    return payload
