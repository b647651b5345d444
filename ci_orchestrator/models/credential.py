"""Models for credentials held by the credential store."""

from typing import Literal

from pydantic import Field, SecretStr, model_validator
from typing_extensions import TypeAliasType

from ci_orchestrator.models.base import Model

CredentialKind = TypeAliasType("CredentialKind", Literal["username_password", "token", "file", "ssh_key"])


class CredentialRef(Model):
    """Redacted reference to a credential, safe to store in records."""

    name: str
    kind: CredentialKind


class Credential(Model):
    """A named secret.

    ``username_password`` credentials carry ``username`` and ``password``;
    every other kind carries ``value``.
    """

    name: str = Field(..., min_length=1)
    kind: CredentialKind
    value: SecretStr | None = None
    username: str | None = None
    password: SecretStr | None = None

    @model_validator(mode="after")
    def check_fields(self) -> "Credential":
        if self.kind == "username_password":
            if self.username is None or self.password is None:
                raise ValueError("username_password credentials need username and password")
        elif self.value is None:
            raise ValueError(f"{self.kind} credentials need a value")
        return self

    @property
    def ref(self) -> CredentialRef:
        """Redacted reference for records and logs."""
        return CredentialRef(name=self.name, kind=self.kind)

    def secret_values(self) -> tuple[str, ...]:
        """Every secret string this credential holds, for output redaction."""
        secrets = (self.value, self.password)
        return tuple(s.get_secret_value() for s in secrets if s is not None)
