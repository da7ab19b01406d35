"""Reverse provisioning: stop or delete the cluster, then destroy infrastructure."""

from dataclasses import dataclass

from k3d_pipeline.cluster import ClusterBuilder
from k3d_pipeline.credentials import CredentialStore
from k3d_pipeline.exceptions import PipelineError, TeardownError
from k3d_pipeline.logging_config import get_logger
from k3d_pipeline.models.cluster import ClusterHandle
from k3d_pipeline.models.config import ProvisioningConfig
from k3d_pipeline.models.state import InfrastructureState
from k3d_pipeline.terraform import InfrastructureProvisioner

logger = get_logger(__name__)


@dataclass
class TeardownReport:
    cluster: ClusterHandle
    infrastructure_destroyed: bool
    credentials: CredentialStore | None = None


class TeardownController:
    """Tears down a deployment.

    The cluster is always deleted before the host is destroyed: destroying the
    host under a running cluster leaves nothing for k3d to clean up and any
    cloud resources the cluster created become orphans.
    """

    def __init__(self, builder: ClusterBuilder, provisioner: InfrastructureProvisioner):
        self.builder = builder
        self.provisioner = provisioner

    def teardown(
        self,
        handle: ClusterHandle,
        state: InfrastructureState,
        keep_data: bool,
        credentials: CredentialStore | None = None,
        config: ProvisioningConfig | None = None,
    ) -> TeardownReport:
        """Stop (keep_data) or delete everything.

        Raises:
            TeardownError: Tagged with the step that failed. If cluster
                deletion fails, infrastructure is left in place.
        """
        if keep_data:
            try:
                stopped = self.builder.stop(handle)
            except PipelineError as e:
                raise TeardownError("stop-cluster", e.message, e.details)
            logger.info(f"Cluster {handle.name} stopped; infrastructure {state.instance_id} kept")
            return TeardownReport(
                cluster=stopped, infrastructure_destroyed=False, credentials=credentials
            )

        try:
            deleted, credentials = self.builder.delete(handle, credentials)
        except PipelineError as e:
            raise TeardownError(
                "delete-cluster",
                e.message,
                f"{e.details or ''}\n\nInfrastructure {state.instance_id} was not destroyed. "
                "Delete the cluster, then run teardown again.".strip(),
            )

        try:
            self.provisioner.destroy(state, config)
        except PipelineError as e:
            raise TeardownError(
                "destroy-infrastructure",
                e.message,
                f"{e.details or ''}\n\nCluster {handle.name} is already deleted; "
                "re-run destroy once the cause is fixed.".strip(),
            )

        logger.info(f"Teardown complete: {handle.name} deleted, {state.instance_id} destroyed")
        return TeardownReport(cluster=deleted, infrastructure_destroyed=True, credentials=credentials)
