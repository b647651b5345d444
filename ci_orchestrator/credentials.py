"""Credential store with scoped, per-stage acquisition of secret values."""

import logging
import os
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import SecretStr, ValidationError

from ci_orchestrator.errors import (
    CredentialAccessError,
    CredentialNotFound,
    DuplicateNameConflict,
)
from ci_orchestrator.models.credential import Credential, CredentialKind, CredentialRef

log = logging.getLogger(__name__)
audit_log = logging.getLogger("ci_orchestrator.audit")


class CredentialHandle:
    """One-shot capability giving access to a credential value.

    The value is reachable only inside ``acquire()``. Leaving the block, on
    any path, revokes the handle for good.
    """

    def __init__(self, credential: Credential, *, run_number: int, stage: str) -> None:
        self._credential: Credential | None = credential
        self._state: Literal["ready", "active", "revoked"] = "ready"
        self.ref = credential.ref
        self.run_number = run_number
        self.stage = stage

    def __repr__(self) -> str:
        return (
            f"CredentialHandle(name={self.ref.name!r}, kind={self.ref.kind!r}, "
            f"state={self._state!r})"
        )

    @contextmanager
    def acquire(self) -> Iterator["CredentialHandle"]:
        """Expose the credential value for the duration of the block."""
        if self._state != "ready":
            raise CredentialAccessError(
                f"Credential handle for '{self.ref.name}' was already used"
            )
        self._state = "active"
        try:
            yield self
        finally:
            self._credential = None
            self._state = "revoked"

    @property
    def revoked(self) -> bool:
        return self._state == "revoked"

    def value(self) -> str:
        """Secret value of a token, file or ssh_key credential."""
        credential = self._active()
        if credential.value is None:
            raise CredentialAccessError(f"Credential '{self.ref.name}' has no value")
        return credential.value.get_secret_value()

    def username(self) -> str:
        credential = self._active()
        if credential.username is None:
            raise CredentialAccessError(f"Credential '{self.ref.name}' has no username")
        return credential.username

    def password(self) -> str:
        credential = self._active()
        if credential.password is None:
            raise CredentialAccessError(f"Credential '{self.ref.name}' has no password")
        return credential.password.get_secret_value()

    def secret_values(self) -> tuple[str, ...]:
        return self._active().secret_values()

    def _active(self) -> Credential:
        if self._state != "active" or self._credential is None:
            raise CredentialAccessError(
                f"Credential '{self.ref.name}' accessed outside its acquisition scope"
            )
        return self._credential


class CredentialStore:
    """Holds named credentials and hands out scoped handles."""

    def __init__(self, credentials: Sequence[Credential] = ()) -> None:
        self._lock = threading.Lock()
        self._credentials: dict[str, Credential] = {}
        for credential in credentials:
            self._store(credential, overwrite=False)

    def put(
        self,
        name: str,
        kind: CredentialKind,
        value: str,
        *,
        username: str | None = None,
        overwrite: bool = False,
    ) -> CredentialRef:
        """Register or rotate a credential.

        For ``username_password`` credentials ``value`` is the password.

        Raises:
            DuplicateNameConflict: If ``name`` exists with a different kind
                and ``overwrite`` is not set

        """
        if kind == "username_password":
            credential = Credential(
                name=name, kind=kind, username=username, password=SecretStr(value)
            )
        else:
            credential = Credential(name=name, kind=kind, value=SecretStr(value))
        self._store(credential, overwrite=overwrite)
        log.info("Registered credential %s (kind=%s)", name, kind)
        return credential.ref

    def resolve(self, name: str, *, run_number: int, stage: str) -> CredentialHandle:
        """Return a scoped handle for the named credential.

        Raises:
            CredentialNotFound: If no credential with that name is registered

        """
        with self._lock:
            credential = self._credentials.get(name)
        if credential is None:
            audit_log.warning(
                "Credential lookup failed: name=%s run=%s stage=%s",
                name,
                run_number,
                stage,
            )
            raise CredentialNotFound(f"Credential '{name}' is not registered")
        audit_log.info(
            "Credential resolved: name=%s kind=%s run=%s stage=%s",
            name,
            credential.kind,
            run_number,
            stage,
        )
        return CredentialHandle(credential, run_number=run_number, stage=stage)

    def names(self) -> Sequence[CredentialRef]:
        with self._lock:
            return [c.ref for c in self._credentials.values()]

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._credentials

    def _store(self, credential: Credential, *, overwrite: bool) -> None:
        with self._lock:
            existing = self._credentials.get(credential.name)
            if existing is not None and existing.kind != credential.kind and not overwrite:
                raise DuplicateNameConflict(
                    f"Credential '{credential.name}' already registered as "
                    f"{existing.kind}, refusing to replace with {credential.kind}"
                )
            self._credentials[credential.name] = credential


def export_credential(
    env_var: str, handle: CredentialHandle, directory: Path
) -> Mapping[str, str]:
    """Translate an acquired credential into stage environment variables.

    Tokens are exported as-is, username/password pairs as ``<VAR>_USERNAME``
    and ``<VAR>_PASSWORD``, file and ssh_key credentials as the path of a
    0600 file written under ``directory``.
    """
    match handle.ref.kind:
        case "token":
            return {env_var: handle.value()}
        case "username_password":
            return {
                f"{env_var}_USERNAME": handle.username(),
                f"{env_var}_PASSWORD": handle.password(),
            }
        case "file" | "ssh_key":
            path = directory / f"{env_var.lower()}.secret"
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(handle.value())
                if handle.ref.kind == "ssh_key" and not handle.value().endswith("\n"):
                    f.write("\n")
            return {env_var: str(path)}


def load_credentials(path: Path) -> CredentialStore:
    """Load operator-managed credentials from a YAML file.

    Secret fields accept a literal, ``env:NAME`` to read an environment
    variable, or ``file:PATH`` to read a file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the YAML or its schema is invalid

    """
    if not path.exists():
        raise FileNotFoundError(f"Credentials file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e

    data = data or {}
    entries = data.get("credentials", []) if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise ValueError(f"Invalid credentials file {path}: expected a 'credentials' list")

    credentials: list[Credential] = []
    for entry in entries:
        try:
            credentials.append(Credential.model_validate(_resolve_sources(entry)))
        except ValidationError as e:
            raise ValueError(f"Invalid credential entry in {path}: {e}") from e

    log.info("Loaded %d credential(s) from %s", len(credentials), path)
    return CredentialStore(credentials)


def _resolve_sources(entry: Any) -> Any:
    if not isinstance(entry, dict):
        return entry
    resolved = dict(entry)
    for key in ("value", "password"):
        if isinstance(raw := resolved.get(key), str):
            resolved[key] = _read_source(raw)
    return resolved


def _read_source(raw: str) -> str:
    if raw.startswith("env:"):
        name = raw.removeprefix("env:")
        if name not in os.environ:
            raise ValueError(f"Environment variable {name} is not set")
        return os.environ[name]
    if raw.startswith("file:"):
        return Path(raw.removeprefix("file:")).read_text().strip()
    return raw
