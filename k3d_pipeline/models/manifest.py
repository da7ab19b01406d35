"""Data models for ordered manifest sets and their apply outcomes."""

from enum import Enum, IntEnum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator

from k3d_pipeline.exceptions import ManifestOrderError

# Namespaces every cluster starts with
BUILTIN_NAMESPACES = frozenset({"default", "kube-system", "kube-public", "kube-node-lease"})


class ManifestTier(IntEnum):
    """Dependency tier. Entries must appear in non-decreasing tier order."""

    NAMESPACE = 0
    STORAGE = 1
    DATABASE = 2
    SERVICE = 3
    INGRESS = 4
    MONITORING = 5


class HelmChart(BaseModel):
    """A chart release installed with `helm upgrade --install`."""

    release: str
    chart: str  # repo/chart reference, e.g. "ingress-nginx/ingress-nginx"
    namespace: str
    repo_name: str | None = None
    repo_url: str | None = None
    version: str | None = None
    values: dict = Field(default_factory=dict)


class ManifestEntry(BaseModel):
    """One ordered item of a manifest set.

    Exactly one source is set: a manifest file, a chart, or inline namespace
    declarations.
    """

    name: str
    tier: ManifestTier
    path: Path | None = None
    chart: HelmChart | None = None
    namespace: str | None = None  # target namespace; None for cluster-scoped
    declares_namespaces: list[str] = Field(default_factory=list)
    rollouts: list[str] = Field(default_factory=list)  # e.g. "deployment/user-service"

    @model_validator(mode="after")
    def validate_source(self) -> "ManifestEntry":
        """Validate the entry has exactly one source."""
        inline = self.path is None and self.chart is None
        if self.path is not None and self.chart is not None:
            raise ValueError(f"entry '{self.name}' cannot have both a path and a chart")
        if inline and not self.declares_namespaces:
            raise ValueError(
                f"entry '{self.name}' needs a path, a chart, or declared namespaces"
            )
        if self.chart is not None and self.namespace is None:
            self.namespace = self.chart.namespace
        return self

    @property
    def is_inline(self) -> bool:
        return self.path is None and self.chart is None


class ManifestSet(BaseModel):
    """Ordered manifest entries with a machine-checkable dependency order."""

    entries: list[ManifestEntry] = Field(default_factory=list)
    base_dir: Path = Path(".")

    @property
    def names(self) -> list[str]:
        return [e.name for e in self.entries]

    def resolve(self, entry: ManifestEntry) -> Path:
        """Return the absolute path of a file-backed entry."""
        if entry.path is None:
            raise ValueError(f"entry '{entry.name}' has no file")
        return entry.path if entry.path.is_absolute() else self.base_dir / entry.path

    def documents(self, entry: ManifestEntry) -> list[dict]:
        """Parsed documents of a file-backed entry; empty when it has no readable file.

        Raises:
            ManifestOrderError: If the file is not valid YAML
        """
        if entry.path is None:
            return []
        path = self.resolve(entry)
        if not path.exists():
            return []
        try:
            with open(path) as f:
                return [doc for doc in yaml.safe_load_all(f) if isinstance(doc, dict)]
        except yaml.YAMLError as e:
            raise ManifestOrderError(
                f"Manifest '{entry.name}' is not valid YAML", str(e), failed=entry.name
            )

    def declared_by(self, entry: ManifestEntry) -> set[str]:
        """Namespaces an entry creates.

        Explicit declarations plus `kind: Namespace` documents of a
        namespace-tier file.
        """
        names = set(entry.declares_namespaces)
        if entry.tier == ManifestTier.NAMESPACE:
            for doc in self.documents(entry):
                if doc.get("kind") == "Namespace":
                    name = (doc.get("metadata") or {}).get("name")
                    if name:
                        names.add(name)
        return names

    def targets_of(self, entry: ManifestEntry) -> set[str]:
        """Namespaces an entry's resources land in: its target plus each document's own."""
        targets = {entry.namespace} if entry.namespace else set()
        for doc in self.documents(entry):
            namespace = (doc.get("metadata") or {}).get("namespace")
            if namespace:
                targets.add(namespace)
        return targets

    def validate_order(self) -> None:
        """Check tier order and that namespaces exist before they are used.

        Raises:
            ManifestOrderError: On the first entry that breaks the order
        """
        declared = set(BUILTIN_NAMESPACES)
        seen_names = set()
        previous = None
        for index, entry in enumerate(self.entries):
            if entry.name in seen_names:
                raise ManifestOrderError(
                    f"Duplicate manifest entry name: {entry.name}", failed=entry.name
                )
            seen_names.add(entry.name)

            if previous is not None and entry.tier < previous.tier:
                raise ManifestOrderError(
                    f"Manifest '{entry.name}' ({entry.tier.name.lower()}) is listed after "
                    f"'{previous.name}' ({previous.tier.name.lower()})",
                    "Entries must be ordered: namespace, storage, database, service, "
                    "ingress, monitoring",
                    failed=entry.name,
                    not_attempted=self.names[index:],
                )

            own = self.declared_by(entry)
            missing = sorted(self.targets_of(entry) - declared - own)
            if missing:
                raise ManifestOrderError(
                    f"Manifest '{entry.name}' targets namespace '{missing[0]}' "
                    "which no earlier entry declares",
                    "Add a namespace entry before it or fix the target namespace",
                    failed=entry.name,
                    not_attempted=self.names[index:],
                )

            declared |= own
            previous = entry


class ApplyStatus(str, Enum):
    """Outcome of applying one manifest entry."""

    CREATED = "created"
    CONFIGURED = "configured"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    DRY_RUN = "dry-run"


class ApplyOutcome(BaseModel):
    """Result of one applied (or skipped) manifest entry."""

    name: str
    status: ApplyStatus
    resources: list[str] = Field(default_factory=list)
    rollouts: list[str] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.status in (ApplyStatus.CREATED, ApplyStatus.CONFIGURED)


def default_manifest_set(monitoring: bool = True) -> ManifestSet:
    """Namespaces and charts installed on a fresh cluster."""
    entries = [
        ManifestEntry(
            name="namespaces",
            tier=ManifestTier.NAMESPACE,
            declares_namespaces=["dev-microservices", "databases", "monitoring", "ingress-nginx"],
        ),
        ManifestEntry(
            name="ingress-nginx",
            tier=ManifestTier.INGRESS,
            chart=HelmChart(
                release="nginx-ingress",
                chart="ingress-nginx/ingress-nginx",
                namespace="ingress-nginx",
                repo_name="ingress-nginx",
                repo_url="https://kubernetes.github.io/ingress-nginx",
                values={
                    "controller": {
                        "service": {"type": "LoadBalancer"},
                        "metrics": {"enabled": True},
                    }
                },
            ),
        ),
    ]
    if monitoring:
        entries.append(
            ManifestEntry(
                name="kube-prometheus-stack",
                tier=ManifestTier.MONITORING,
                chart=HelmChart(
                    release="prometheus",
                    chart="prometheus-community/kube-prometheus-stack",
                    namespace="monitoring",
                    repo_name="prometheus-community",
                    repo_url="https://prometheus-community.github.io/helm-charts",
                    values={
                        "prometheus": {
                            "prometheusSpec": {
                                "retention": "7d",
                                "storageSpec": {
                                    "volumeClaimTemplate": {
                                        "spec": {"resources": {"requests": {"storage": "10Gi"}}}
                                    }
                                },
                            }
                        },
                        "grafana": {"persistence": {"enabled": True, "size": "5Gi"}},
                    },
                ),
            )
        )
    return ManifestSet(entries=entries)
