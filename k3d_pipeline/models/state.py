"""Data models for infrastructure state and host toolchain status."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Minimums from the EC2 prerequisites checks
MIN_CPUS = 2
MIN_MEMORY_BYTES = 4 * 1024**3
MIN_DISK_BYTES = 20 * 1024**3


class InfrastructureState(BaseModel):
    """Identifiers of the provisioned cloud resources.

    Produced from the infrastructure engine's outputs; the engine's own state
    file stays opaque.
    """

    model_config = ConfigDict(frozen=True)

    instance_id: str
    public_ip: str
    private_ip: str = ""
    security_group_id: str = ""
    vpc_id: str = ""

    @field_validator("instance_id", "public_ip")
    @classmethod
    def validate_required(cls, v: str) -> str:
        """Validate identifiers needed by later stages are present."""
        if not v:
            raise ValueError("value cannot be empty")
        return v

    @classmethod
    def from_outputs(cls, outputs: dict) -> "InfrastructureState":
        """Build from `terraform output -json` data."""

        def value(key: str) -> str:
            entry = outputs.get(key) or {}
            return str(entry.get("value") or "")

        return cls(
            instance_id=value("instance_id"),
            public_ip=value("public_ip"),
            private_ip=value("private_ip"),
            security_group_id=value("security_group_id"),
            vpc_id=value("vpc_id"),
        )


class SessionMode(str, Enum):
    """Privilege state of a remote session with respect to the docker group."""

    UNPRIVILEGED = "unprivileged"
    PRIVILEGED_PENDING_RESTART = "privileged-pending-restart"
    PRIVILEGED = "privileged"


class ToolStatus(BaseModel):
    """Presence and version of one external tool."""

    name: str
    found: bool
    path: str | None = None
    version: str | None = None


class HostResources(BaseModel):
    """CPU, memory and free disk of a host; None where unreadable."""

    cpus: int | None = None
    memory_bytes: int | None = None
    disk_free_bytes: int | None = None

    def warnings(self) -> list[str]:
        """Return human-readable warnings for resources below recommendations."""
        result = []
        if self.cpus is not None and self.cpus < MIN_CPUS:
            result.append(f"Less than {MIN_CPUS} CPUs detected ({self.cpus})")
        if self.memory_bytes is not None and self.memory_bytes < MIN_MEMORY_BYTES:
            result.append(
                f"Less than 4GB RAM detected ({self.memory_bytes / 1024**3:.1f}GB), "
                "8GB recommended"
            )
        if self.disk_free_bytes is not None and self.disk_free_bytes < MIN_DISK_BYTES:
            result.append(
                f"Less than 20GB free disk ({self.disk_free_bytes / 1024**3:.1f}GB), "
                "50GB recommended"
            )
        return result


class ToolchainStatus(BaseModel):
    """Result of a probe. Recomputed on every probe and never persisted."""

    host: str = "localhost"
    tools: dict[str, ToolStatus] = Field(default_factory=dict)
    resources: HostResources = Field(default_factory=HostResources)
    session_mode: SessionMode | None = None

    @property
    def missing(self) -> list[str]:
        """Names of tools that were not found."""
        return [name for name, status in self.tools.items() if not status.found]

    def has(self, *names: str) -> bool:
        """Return True when every named tool was found."""
        return all(name in self.tools and self.tools[name].found for name in names)
