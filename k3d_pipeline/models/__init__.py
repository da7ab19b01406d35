"""Data models for provisioning configuration, state and cluster layout."""

from k3d_pipeline.models.cluster import (
    ClusterHandle,
    ClusterLifecycle,
    ClusterTopology,
    NodeReadiness,
    PortMapping,
    VolumeMount,
)
from k3d_pipeline.models.config import (
    PipelineConfig,
    ProvisioningConfig,
    SshSettings,
    Timeouts,
)
from k3d_pipeline.models.manifest import (
    ApplyOutcome,
    ApplyStatus,
    HelmChart,
    ManifestEntry,
    ManifestSet,
    ManifestTier,
    default_manifest_set,
)
from k3d_pipeline.models.state import (
    HostResources,
    InfrastructureState,
    SessionMode,
    ToolchainStatus,
    ToolStatus,
)

__all__ = [
    "ApplyOutcome",
    "ApplyStatus",
    "ClusterHandle",
    "ClusterLifecycle",
    "ClusterTopology",
    "HelmChart",
    "HostResources",
    "InfrastructureState",
    "ManifestEntry",
    "ManifestSet",
    "ManifestTier",
    "NodeReadiness",
    "PipelineConfig",
    "PortMapping",
    "ProvisioningConfig",
    "SessionMode",
    "SshSettings",
    "Timeouts",
    "ToolchainStatus",
    "ToolStatus",
    "VolumeMount",
    "default_manifest_set",
]
