"""Deployment updater: renders manifests with the run's image and applies them."""

import asyncio
import logging
from collections.abc import AsyncGenerator, Callable, Mapping, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import aiohttp
import yaml

from ci_orchestrator.config import ClusterConfig, ImageConfig
from ci_orchestrator.credentials import CredentialStore
from ci_orchestrator.errors import CredentialAccessError, MissingPlaceholder, NotFound
from ci_orchestrator.models.context import StageContext
from ci_orchestrator.models.definition import DeployStage
from ci_orchestrator.models.run import StageResult

log = logging.getLogger(__name__)

CLUSTER_SCOPED_KINDS = frozenset(
    [
        "APIService",
        "CSIDriver",
        "CSINode",
        "CertificateSigningRequest",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "FlowSchema",
        "IngressClass",
        "MutatingWebhookConfiguration",
        "Namespace",
        "Node",
        "PersistentVolume",
        "PriorityClass",
        "PriorityLevelConfiguration",
        "RuntimeClass",
        "StorageClass",
        "ValidatingAdmissionPolicy",
        "ValidatingAdmissionPolicyBinding",
        "ValidatingWebhookConfiguration",
        "VolumeAttachment",
    ]
)

# Kinds whose resource name does not follow the regular plural rules.
IRREGULAR_PLURALS: Mapping[str, str] = {
    "Endpoints": "endpoints",
}


@dataclass(frozen=True, kw_only=True)
class ImageRef:
    """Registry path plus immutable tag identifying one image version."""

    registry: str
    repository: str
    tag: str

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"

    @classmethod
    def for_run(cls, config: ImageConfig, run_number: int) -> "ImageRef":
        """Image reference whose tag is derived from the run number."""
        return cls(
            registry=config.registry,
            repository=config.repository,
            tag=config.tag_template.format(run_number=run_number),
        )


def render(template: str, image_ref: ImageRef | str, placeholder: str = "{{ image }}") -> str:
    """Replace every image placeholder in a manifest template.

    Pure and deterministic: the same inputs always produce the same output.

    Raises:
        MissingPlaceholder: If the template contains no placeholder

    """
    if placeholder not in template:
        raise MissingPlaceholder(
            f"Manifest template has no image placeholder '{placeholder}'"
        )
    return template.replace(placeholder, str(image_ref))


@dataclass(frozen=True, kw_only=True)
class ManifestTarget:
    """API location of one manifest document."""

    api_version: str
    kind: str
    name: str
    namespace: str | None

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "ManifestTarget":
        try:
            metadata = document["metadata"]
            kind = document["kind"]
            return cls(
                api_version=document["apiVersion"],
                kind=kind,
                name=metadata["name"],
                namespace=(
                    None
                    if kind in CLUSTER_SCOPED_KINDS
                    else metadata.get("namespace", "default")
                ),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Manifest document is missing {e}") from e

    @property
    def plural(self) -> str:
        """Resource name of the kind, pluralized the way the API server does."""
        if self.kind in IRREGULAR_PLURALS:
            return IRREGULAR_PLURALS[self.kind]
        singular = self.kind.lower()
        if singular.endswith(("s", "x", "ch", "sh")):
            return f"{singular}es"
        if singular.endswith("y") and singular[-2:-1] not in ("a", "e", "i", "o", "u"):
            return f"{singular[:-1]}ies"
        return f"{singular}s"

    @property
    def path(self) -> str:
        """Server-side apply path for this object."""
        prefix = "/api/v1" if self.api_version == "v1" else f"/apis/{self.api_version}"
        if self.namespace is not None:
            prefix = f"{prefix}/namespaces/{self.namespace}"
        return f"{prefix}/{self.plural}/{self.name}"


def split_manifest(manifest: str) -> Sequence[tuple[ManifestTarget, str]]:
    """Split a multi-document manifest into targets with their YAML text."""
    try:
        documents = [d for d in yaml.safe_load_all(manifest) if d is not None]
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid manifest YAML: {e}") from e
    if not documents:
        raise ValueError("Manifest contains no documents")
    return [
        (ManifestTarget.from_document(d), yaml.safe_dump(d, sort_keys=False))
        for d in documents
    ]


@dataclass(frozen=True, kw_only=True)
class ApplyOutcome:
    """Result of submitting a manifest to the cluster API."""

    success: bool
    applied: Sequence[str] = ()
    detail: str | None = None


@dataclass(frozen=True, kw_only=True)
class ClusterClient:
    """Kubernetes-compatible cluster API client using server-side apply."""

    config: ClusterConfig
    session: aiohttp.ClientSession = field(repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: ClusterConfig
    ) -> AsyncGenerator["ClusterClient", None]:
        """Create client with managed session lifecycle."""
        connector = aiohttp.TCPConnector(ssl=config.verify_ssl)
        async with aiohttp.ClientSession(connector=connector) as session:
            yield cls(config=config, session=session)

    def url(self, target: ManifestTarget) -> str:
        return f"{self.config.api_url.rstrip('/')}{target.path}"

    async def apply(self, manifest: str, token: str) -> ApplyOutcome:
        """Apply every document of ``manifest``; stop at the first rejection.

        Rejections are reported in the outcome, never retried.
        """
        try:
            documents = split_manifest(manifest)
        except ValueError as e:
            return ApplyOutcome(success=False, detail=str(e))

        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/apply-patch+yaml",
            "Accept": "application/json",
        }
        params = {"fieldManager": self.config.field_manager, "force": "true"}
        applied: list[str] = []

        for target, body in documents:
            log.info(
                "Applying %s %s (namespace=%s)", target.kind, target.name, target.namespace
            )
            try:
                async with self.session.patch(
                    self.url(target), data=body, headers=headers, params=params
                ) as response:
                    if response.status >= 300:
                        detail = await self._error_detail(response)
                        log.warning(
                            "Cluster rejected %s %s: %s", target.kind, target.name, detail
                        )
                        return ApplyOutcome(
                            success=False,
                            applied=applied,
                            detail=f"{target.kind}/{target.name}: {detail}",
                        )
            except aiohttp.ClientError as e:
                return ApplyOutcome(
                    success=False,
                    applied=applied,
                    detail=f"{target.kind}/{target.name}: {e}",
                )
            applied.append(f"{target.kind}/{target.name}")

        return ApplyOutcome(success=True, applied=applied)

    async def _error_detail(self, response: aiohttp.ClientResponse) -> str:
        text = await response.text()
        try:
            data = await response.json(content_type=None)
        except ValueError:
            return f"{response.status} {text}".strip()
        if isinstance(data, dict) and data.get("message"):
            return f"{response.status} {data['message']}"
        return f"{response.status} {text}".strip()


@dataclass(frozen=True, kw_only=True)
class DeploymentUpdater:
    """Stage handler that renders a manifest and applies it to the cluster."""

    cluster: ClusterConfig
    cluster_factory: Callable[
        [ClusterConfig], AbstractAsyncContextManager[ClusterClient]
    ] = ClusterClient.from_config

    async def run(
        self, stage: DeployStage, context: StageContext, credentials: CredentialStore
    ) -> StageResult:
        """Render and apply the stage's manifest, returning the stage outcome."""
        path = context.resolve_path(stage.manifest)
        try:
            template = await asyncio.to_thread(path.read_text)
        except OSError as e:
            return StageResult(
                name=stage.name,
                status="failed",
                reason="tool_failure",
                detail=f"Cannot read manifest template {path}: {e.strerror}",
            )

        try:
            manifest = render(template, context.image_ref, stage.placeholder)
        except MissingPlaceholder as e:
            return StageResult(
                name=stage.name, status="failed", reason="missing_placeholder", detail=str(e)
            )

        try:
            handle = credentials.resolve(
                stage.cluster_credential, run_number=context.run_number, stage=stage.name
            )
        except NotFound as e:
            return StageResult(
                name=stage.name, status="failed", reason="credential_error", detail=str(e)
            )

        try:
            with handle.acquire() as secret:
                async with self.cluster_factory(self.cluster) as client:
                    outcome = await client.apply(manifest, secret.value())
        except CredentialAccessError as e:
            return StageResult(
                name=stage.name, status="failed", reason="credential_error", detail=str(e)
            )

        if not outcome.success:
            return StageResult(
                name=stage.name,
                status="failed",
                reason="deploy_rejected",
                output=manifest,
                detail=outcome.detail,
            )

        log.info("Deployed %s with image %s", ", ".join(outcome.applied), context.image_ref)
        return StageResult(
            name=stage.name,
            status="succeeded",
            output=manifest,
            detail=f"Applied {', '.join(outcome.applied)}",
        )
