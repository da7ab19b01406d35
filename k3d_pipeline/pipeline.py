"""End-to-end provisioning pipeline.

Stages run strictly in order and each starts only after the previous one
succeeded. A failure stops the run; the report names the failing stage, what
it printed, and which stages had already succeeded. Every stage is idempotent,
so recovery is to fix the cause and run again, optionally starting at the
failed stage.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from k3d_pipeline.bootstrap import RemoteBootstrapper
from k3d_pipeline.cluster import ClusterBuilder
from k3d_pipeline.credentials import CredentialStore
from k3d_pipeline.exceptions import (
    ClusterError,
    PipelineError,
    StageCancelledError,
    ToolNotFoundError,
)
from k3d_pipeline.logging_config import get_logger
from k3d_pipeline.manifests import ManifestApplier
from k3d_pipeline.models.cluster import ClusterHandle
from k3d_pipeline.models.config import PipelineConfig
from k3d_pipeline.models.manifest import ApplyOutcome
from k3d_pipeline.models.state import InfrastructureState, SessionMode, ToolchainStatus
from k3d_pipeline.probe import EnvironmentProbe
from k3d_pipeline.remote import RemoteRunner, RemoteSession
from k3d_pipeline.runner import CommandRunner, LocalRunner
from k3d_pipeline.terraform import InfrastructureProvisioner

logger = get_logger(__name__)

STAGES = ("probe", "provision", "bootstrap", "cluster", "manifests")

# Tools the local host needs before the provision stage can run
REQUIRED_LOCAL_TOOLS = ("terraform",)


class StageStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    NOT_ATTEMPTED = "not-attempted"


@dataclass
class StageRecord:
    name: str
    status: StageStatus = StageStatus.NOT_ATTEMPTED
    detail: str = ""
    duration: float = 0.0


@dataclass
class PipelineReport:
    """Outcome of a pipeline run, including partial progress."""

    stages: list[StageRecord]
    toolchain: ToolchainStatus | None = None
    state: InfrastructureState | None = None
    remote_toolchain: ToolchainStatus | None = None
    cluster: ClusterHandle | None = None
    credentials: CredentialStore | None = None
    outcomes: list[ApplyOutcome] = field(default_factory=list)
    error: PipelineError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def failed_stage(self) -> str | None:
        for record in self.stages:
            if record.status in (StageStatus.FAILED, StageStatus.CANCELLED):
                return record.name
        return None

    @property
    def attempted(self) -> list[str]:
        return [
            r.name
            for r in self.stages
            if r.status in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.CANCELLED)
        ]

    def stage(self, name: str) -> StageRecord:
        return next(r for r in self.stages if r.name == name)


class ProvisioningPipeline:
    """Runs probe, provision, bootstrap, cluster and manifests in order."""

    def __init__(
        self,
        config: PipelineConfig,
        *,
        runner: CommandRunner | None = None,
        session_factory: Callable[..., RemoteSession] = RemoteSession,
        provisioner: InfrastructureProvisioner | None = None,
        bootstrapper: RemoteBootstrapper | None = None,
        builder_factory: Callable[[CommandRunner], ClusterBuilder] = ClusterBuilder,
        applier_factory: Callable[[CommandRunner], ManifestApplier] = ManifestApplier,
    ):
        self.config = config
        self.runner = runner or LocalRunner()
        self.probe = EnvironmentProbe(self.runner)
        self.provisioner = provisioner or InfrastructureProvisioner(
            config.terraform_dir, self.runner
        )
        self.bootstrapper = bootstrapper or RemoteBootstrapper(
            config.ssh, session_factory, command_timeout=config.timeouts.remote_command
        )
        self.builder_factory = builder_factory
        self.applier_factory = applier_factory
        self._cluster_runner: CommandRunner | None = None
        self._allow_replace = False
        self._dry_run = False

    def run(
        self,
        *,
        start_at: str = "probe",
        cancel: threading.Event | None = None,
        allow_replace: bool = False,
        dry_run: bool = False,
    ) -> PipelineReport:
        """Run the pipeline, starting at `start_at`.

        Stages before `start_at` are reported as skipped; the infrastructure
        state and cluster handle they would have produced are re-read.
        Cancellation stops before the next stage or step and never undoes
        completed work.
        """
        if start_at not in STAGES:
            raise ValueError(f"Unknown stage '{start_at}'. Stages: {', '.join(STAGES)}")

        self._allow_replace = allow_replace
        self._dry_run = dry_run
        report = PipelineReport(stages=[StageRecord(name) for name in STAGES])
        start_index = STAGES.index(start_at)
        for record in report.stages[:start_index]:
            record.status = StageStatus.SKIPPED

        handlers = {
            "probe": self._probe,
            "provision": self._provision,
            "bootstrap": self._bootstrap,
            "cluster": self._cluster,
            "manifests": self._manifests,
        }

        try:
            report.credentials = CredentialStore.load(self.config.kubeconfig)
        except PipelineError as e:
            report.stages[start_index].status = StageStatus.FAILED
            report.stages[start_index].detail = e.message
            report.error = e
            return report

        for index in range(start_index, len(STAGES)):
            record = report.stages[index]
            if cancel is not None and cancel.is_set():
                report.error = StageCancelledError(
                    "pipeline", report.attempted, list(STAGES[index:])
                )
                record.status = StageStatus.CANCELLED
                break

            logger.info(f"Stage {record.name}: starting")
            started = time.monotonic()
            try:
                record.detail = handlers[record.name](report, cancel)
                record.status = StageStatus.SUCCEEDED
                logger.info(f"Stage {record.name}: {record.detail}")
            except StageCancelledError as e:
                record.status = StageStatus.CANCELLED
                record.detail = e.format_message()
                report.error = e
            except PipelineError as e:
                record.status = StageStatus.FAILED
                record.detail = e.message
                report.error = e
                logger.error(f"Stage {record.name} failed: {e.message}")
            finally:
                record.duration = time.monotonic() - started

            if report.error is not None:
                break

        return report

    def _probe(self, report: PipelineReport, cancel) -> str:
        report.toolchain = self.probe.probe()
        missing = [t for t in REQUIRED_LOCAL_TOOLS if not report.toolchain.has(t)]
        if missing:
            raise ToolNotFoundError(
                f"Required tools not found: {', '.join(missing)}",
                "Install them locally before provisioning",
            )
        found = len(report.toolchain.tools) - len(report.toolchain.missing)
        return f"{found}/{len(report.toolchain.tools)} tools found"

    def _provision(self, report: PipelineReport, cancel) -> str:
        report.state = self.provisioner.apply(
            self.config.provisioning, allow_replace=self._allow_replace
        )
        return f"instance {report.state.instance_id} at {report.state.public_ip}"

    def _require_state(self, report: PipelineReport) -> InfrastructureState:
        if report.state is None:
            report.state = self.provisioner.outputs()
        return report.state

    def cluster_runner(self, state: InfrastructureState) -> CommandRunner:
        """Runner on the provisioned host, in a session with docker access."""
        if self._cluster_runner is None:
            session = self.bootstrapper.connect(state)
            if session.mode == SessionMode.PRIVILEGED_PENDING_RESTART:
                session = self.bootstrapper.reestablish()
            self._cluster_runner = RemoteRunner(session)
        return self._cluster_runner

    def _bootstrap(self, report: PipelineReport, cancel) -> str:
        state = self._require_state(report)
        report.remote_toolchain = self.bootstrapper.bootstrap(state, cancel=cancel)
        return f"{len(self.bootstrapper.completed)} steps completed on {state.public_ip}"

    def _cluster(self, report: PipelineReport, cancel) -> str:
        state = self._require_state(report)
        builder = self.builder_factory(self.cluster_runner(state))
        report.cluster, report.credentials = builder.create_cluster(
            self.config.cluster,
            report.credentials,
            timeout=self.config.timeouts.cluster_ready,
            api_host=state.public_ip,
        )
        report.credentials.save()
        ready = sum(1 for n in report.cluster.nodes if n.ready)
        return f"{report.cluster.name} {report.cluster.lifecycle.value}, {ready} nodes ready"

    def _manifests(self, report: PipelineReport, cancel) -> str:
        state = self._require_state(report)
        runner = self.cluster_runner(state)
        if report.cluster is None:
            report.cluster = self.builder_factory(runner).get(self.config.cluster.name)
            if report.cluster is None:
                raise ClusterError(
                    f"Cluster '{self.config.cluster.name}' does not exist",
                    "Run the cluster stage first",
                )

        applier = self.applier_factory(runner)
        report.outcomes = applier.apply(
            self.config.manifest_set(),
            report.cluster,
            report.credentials,
            rollout_timeout=self.config.timeouts.rollout,
            dry_run=self._dry_run,
            cancel=cancel,
        )
        changed = sum(1 for o in report.outcomes if o.changed)
        return f"{len(report.outcomes)} entries applied, {changed} changed"
