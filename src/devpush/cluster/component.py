"""Component declaration consumed by reconciliation.

ComponentSpec is owned by the CLI layer; this package only reads it.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from devpush.core.errors import InvalidSpecError

# RFC 1123 label, the naming rule for most cluster objects
NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
MAX_NAME_LENGTH = 63
SIZE_PATTERN = re.compile(r"^[0-9]+(\.[0-9]+)?(Ki|Mi|Gi|Ti|Pi|K|M|G|T|P)?$")
ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")


def _check_name(value: str, what: str) -> str:
    if len(value) > MAX_NAME_LENGTH or not NAME_PATTERN.match(value):
        raise ValueError(
            f"{what} {value!r} must be lowercase alphanumerics or '-', "
            f"at most {MAX_NAME_LENGTH} characters"
        )
    return value


class PortSpec(BaseModel):
    """A container port exposed by the component."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    port: int = Field(ge=1, le=65535)
    protocol: Literal["TCP", "UDP"] = "TCP"

    @property
    def label(self) -> str:
        """Port name as used in resources, e.g. ``8080-tcp``."""
        return f"{self.port}-{self.protocol.lower()}"


class StorageMount(BaseModel):
    """A persistent volume mounted into the component."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    path: str
    size: str = "1Gi"

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        return _check_name(value, "Storage name")

    @field_validator("path")
    @classmethod
    def _absolute_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"Storage path must be absolute: {value!r}")
        return value.rstrip("/") or "/"

    @field_validator("size")
    @classmethod
    def _valid_size(cls, value: str) -> str:
        if not SIZE_PATTERN.match(value):
            raise ValueError(f"Invalid storage size: {value!r}")
        return value


class ComponentSpec(BaseModel):
    """User-declared description of a component.

    Attributes:
        name: Component name, used to name and label cluster resources.
        source_type: Where the source comes from.
        image: Builder/runtime image the component runs.
        ports: Exposed ports; a Service is created when non-empty.
        env: Environment variables.
        storage: Persistent volume mounts.
        build_command: Run on the target after files change.
        run_command: Run on the target after the build command.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    source_type: Literal["local", "binary", "git"] = "local"
    image: str
    ports: list[PortSpec] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    storage: list[StorageMount] = Field(default_factory=list)
    build_command: str | None = None
    run_command: str | None = None

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        return _check_name(value, "Component name")

    @field_validator("image")
    @classmethod
    def _valid_image(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Image must not be empty")
        return value.strip()

    @field_validator("env")
    @classmethod
    def _valid_env(cls, value: dict[str, str]) -> dict[str, str]:
        for key in value:
            if not ENV_NAME_PATTERN.match(key):
                raise ValueError(f"Invalid environment variable name: {key!r}")
        return value

    @model_validator(mode="after")
    def _no_duplicates(self) -> ComponentSpec:
        ports = [(p.port, p.protocol) for p in self.ports]
        if len(ports) != len(set(ports)):
            raise ValueError("Duplicate port declaration")
        names = [s.name for s in self.storage]
        if len(names) != len(set(names)):
            raise ValueError("Duplicate storage name")
        paths = [s.path for s in self.storage]
        if len(paths) != len(set(paths)):
            raise ValueError("Two storage mounts share a path")
        return self

    @classmethod
    def parse(cls, data: dict[str, Any]) -> ComponentSpec:
        """Validate raw data into a ComponentSpec.

        Raises:
            InvalidSpecError: If the data does not describe a valid component.
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidSpecError(f"Invalid component spec: {e}") from e

    def spec_hash(self) -> str:
        """Stable SHA-256 over the canonical JSON form of the declaration."""
        canonical = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
