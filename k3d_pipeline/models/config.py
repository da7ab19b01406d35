"""Data models for provisioning and pipeline configuration."""

import ipaddress
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from k3d_pipeline.exceptions import ConfigurationError
from k3d_pipeline.models.cluster import ClusterTopology
from k3d_pipeline.models.manifest import ManifestSet, default_manifest_set

MIN_VOLUME_SIZE = 30

ALLOWED_INSTANCE_TYPES = (
    "t3.medium",
    "t3.large",
    "t3.xlarge",
    "t3.2xlarge",
    "m5.large",
    "m5.xlarge",
    "m5.2xlarge",
    "c5.xlarge",
    "c5.2xlarge",
)

ENVIRONMENTS = ("dev", "staging", "prod")

REGION_PATTERN = re.compile(r"^[a-z]{2}(-gov)?-[a-z]+-\d$")


class ProvisioningConfig(BaseModel):
    """Infrastructure settings. Immutable once a stage starts."""

    model_config = ConfigDict(frozen=True)

    region: str = "us-east-1"
    instance_type: str = "t3.large"
    volume_size: int = 50
    key_name: str
    allowed_cidrs: list[str] = Field(default_factory=lambda: ["0.0.0.0/0"])
    environment: str = "dev"
    enable_monitoring: bool = True
    project_name: str = "k3d-microservices"
    ami_id: str | None = None

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate region looks like an AWS region name."""
        if not REGION_PATTERN.match(v):
            raise ValueError(f"region '{v}' is not a valid region name (e.g., us-east-1)")
        return v

    @field_validator("instance_type")
    @classmethod
    def validate_instance_type(cls, v: str) -> str:
        """Validate instance type is one of the supported sizes."""
        if v not in ALLOWED_INSTANCE_TYPES:
            raise ValueError(f"instance_type must be one of {list(ALLOWED_INSTANCE_TYPES)}, got '{v}'")
        return v

    @field_validator("volume_size")
    @classmethod
    def validate_volume_size(cls, v: int) -> int:
        """Validate the root volume is large enough for images and data."""
        if v < MIN_VOLUME_SIZE:
            raise ValueError(f"volume_size must be at least {MIN_VOLUME_SIZE} GB, got {v}")
        return v

    @field_validator("key_name")
    @classmethod
    def validate_key_name(cls, v: str) -> str:
        if not v:
            raise ValueError("key_name cannot be empty")
        return v

    @field_validator("allowed_cidrs")
    @classmethod
    def validate_allowed_cidrs(cls, v: list[str]) -> list[str]:
        """Validate every allowed source is a CIDR block."""
        if not v:
            raise ValueError("allowed_cidrs cannot be empty")
        for cidr in v:
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError:
                raise ValueError(f"'{cidr}' is not a valid CIDR (e.g., 203.0.113.0/24)")
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ENVIRONMENTS:
            raise ValueError(f"environment must be one of {list(ENVIRONMENTS)}, got '{v}'")
        return v

    def to_tfvars(self) -> dict:
        """Render as Terraform input variables."""
        tfvars = {
            "aws_region": self.region,
            "instance_type": self.instance_type,
            "volume_size": self.volume_size,
            "key_name": self.key_name,
            "allowed_cidrs": list(self.allowed_cidrs),
            "environment": self.environment,
            "enable_monitoring": self.enable_monitoring,
            "project_name": self.project_name,
        }
        if self.ami_id:
            tfvars["ami_id"] = self.ami_id
        return tfvars


class SshSettings(BaseModel):
    """How to reach the provisioned host."""

    user: str = "ubuntu"
    private_key_path: Path = Path("~/.ssh/id_rsa")
    port: int = Field(default=22, ge=1, le=65535)
    connect_attempts: int = Field(default=10, ge=1)
    backoff_seconds: float = Field(default=5.0, ge=0)
    max_backoff_seconds: float = Field(default=60.0, ge=0)
    connect_timeout: float = Field(default=20.0, gt=0)

    @property
    def key_path(self) -> Path:
        return self.private_key_path.expanduser()


class Timeouts(BaseModel):
    """Caller-supplied deadlines, in seconds."""

    cluster_ready: int = Field(default=300, gt=0)
    rollout: int = Field(default=300, gt=0)
    remote_command: int = Field(default=900, gt=0)


class PipelineConfig(BaseModel):
    """Complete configuration surface accepted by the pipeline."""

    provisioning: ProvisioningConfig
    ssh: SshSettings = Field(default_factory=SshSettings)
    cluster: ClusterTopology = Field(default_factory=ClusterTopology)
    manifests: ManifestSet | None = None
    terraform_dir: Path = Path("terraform")
    kubeconfig: Path = Path("~/.kube/config.k3d")
    timeouts: Timeouts = Field(default_factory=Timeouts)

    def manifest_set(self) -> ManifestSet:
        """Configured manifests, or the default set for a fresh cluster."""
        if self.manifests is not None:
            return self.manifests
        return default_manifest_set(monitoring=self.provisioning.enable_monitoring)

    def save(self, path: str | Path) -> None:
        """Save configuration to YAML file."""
        with open(path, "w") as f:
            yaml.dump(self.model_dump(mode="json", exclude_none=True), f, default_flow_style=False)

    @classmethod
    def load(cls, path: str | Path) -> "PipelineConfig":
        """Load configuration from YAML file.

        Relative paths resolve against the directory holding the file.

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                f"Expected location: {path.absolute()}\n"
                "Create the file or specify a different path with --config",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse configuration file: {path}", str(e))

        try:
            config = cls(**data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration in {path}", format_validation_errors(e)
            )

        base = path.parent
        updates = {}
        if not config.terraform_dir.is_absolute():
            updates["terraform_dir"] = base / config.terraform_dir
        if not config.kubeconfig.expanduser().is_absolute():
            updates["kubeconfig"] = base / config.kubeconfig
        if not config.ssh.key_path.is_absolute():
            updates["ssh"] = config.ssh.model_copy(
                update={"private_key_path": base / config.ssh.private_key_path}
            )
        if config.manifests is not None and not config.manifests.base_dir.is_absolute():
            updates["manifests"] = config.manifests.model_copy(
                update={"base_dir": base / config.manifests.base_dir}
            )
        return config.model_copy(update=updates) if updates else config


def format_validation_errors(error: ValidationError) -> str:
    """Render pydantic errors as `field: message` lines."""
    lines = []
    for item in error.errors():
        field = ".".join(str(x) for x in item["loc"]) or "<root>"
        lines.append(f"{field}: {item['msg']}")
    return "\n".join(lines)
