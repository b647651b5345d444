"""Base model configuration for all data structures."""

from pydantic import BaseModel, ConfigDict


class Model(BaseModel):
    """Base model with standard configuration."""

    model_config = ConfigDict(frozen=True)


class StrictModel(Model):
    """Frozen model rejecting unknown keys, used for operator-written YAML."""

    model_config = ConfigDict(frozen=True, extra="forbid")
