"""Data models for k3d cluster topology and lifecycle."""

import re
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from k3d_pipeline.exceptions import ClusterError


class ClusterLifecycle(str, Enum):
    """Lifecycle states of a named cluster."""

    ABSENT = "absent"
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    DELETING = "deleting"


ALLOWED_TRANSITIONS: dict[ClusterLifecycle, frozenset[ClusterLifecycle]] = {
    ClusterLifecycle.ABSENT: frozenset({ClusterLifecycle.CREATING}),
    ClusterLifecycle.CREATING: frozenset({ClusterLifecycle.RUNNING}),
    ClusterLifecycle.RUNNING: frozenset({ClusterLifecycle.STOPPED, ClusterLifecycle.DELETING}),
    ClusterLifecycle.STOPPED: frozenset({ClusterLifecycle.RUNNING, ClusterLifecycle.DELETING}),
    ClusterLifecycle.DELETING: frozenset({ClusterLifecycle.ABSENT}),
}


class PortMapping(BaseModel):
    """Host port forwarded into the cluster, e.g. 80:80@loadbalancer."""

    host_port: int = Field(ge=1, le=65535)
    container_port: int = Field(ge=1, le=65535)
    node_filter: str = "loadbalancer"

    def to_arg(self) -> str:
        return f"{self.host_port}:{self.container_port}@{self.node_filter}"


class VolumeMount(BaseModel):
    """Host path mounted into cluster nodes."""

    host_path: str
    container_path: str
    node_filter: str | None = None

    def to_arg(self) -> str:
        arg = f"{self.host_path}:{self.container_path}"
        if self.node_filter:
            arg += f"@{self.node_filter}"
        return arg


def _default_ports() -> list[PortMapping]:
    return [
        PortMapping(host_port=port, container_port=port)
        for port in (80, 443, 6379, 3306, 27017)
    ]


def _default_volumes() -> list[VolumeMount]:
    return [VolumeMount(host_path="/tmp/k3d-storage", container_path="/data")]


class ClusterTopology(BaseModel):
    """Declared shape of a cluster. The name is the natural key."""

    name: str = "local-k8s"
    servers: int = Field(default=1, ge=1)
    agents: int = Field(default=2, ge=0)
    api_port: int = Field(default=6443, ge=1, le=65535)
    ports: list[PortMapping] = Field(default_factory=_default_ports)
    volumes: list[VolumeMount] = Field(default_factory=_default_volumes)
    k3s_args: list[str] = Field(default_factory=lambda: ["--disable=traefik@server:0"])
    image: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the cluster name is usable as a k3d cluster name."""
        if not re.match(r"^[a-z0-9]([-a-z0-9]{0,30}[a-z0-9])?$", v):
            raise ValueError(
                f"cluster name '{v}' must be 1-32 lowercase alphanumeric characters or hyphens"
            )
        return v

    @property
    def node_count(self) -> int:
        return self.servers + self.agents

    @property
    def context(self) -> str:
        """Kubeconfig context name k3d generates for this cluster."""
        return f"k3d-{self.name}"


class NodeReadiness(BaseModel):
    """Readiness of one cluster node at snapshot time."""

    name: str
    role: str
    ready: bool


class ClusterHandle(BaseModel):
    """Reference to a named cluster and its last observed state."""

    name: str
    context: str
    lifecycle: ClusterLifecycle
    nodes: list[NodeReadiness] = Field(default_factory=list)

    @property
    def ready(self) -> bool:
        return bool(self.nodes) and all(n.ready for n in self.nodes)

    def can_transition(self, target: ClusterLifecycle) -> bool:
        return target in ALLOWED_TRANSITIONS[self.lifecycle]

    def transition(self, target: ClusterLifecycle, **updates) -> "ClusterHandle":
        """Return a copy in the target state, rejecting illegal moves."""
        if not self.can_transition(target):
            raise ClusterError(
                f"Cluster '{self.name}' cannot move from {self.lifecycle.value} "
                f"to {target.value}"
            )
        return self.model_copy(update={"lifecycle": target, **updates})
