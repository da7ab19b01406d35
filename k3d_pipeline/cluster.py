"""k3d cluster lifecycle: create, start, stop and delete by name."""

import json
import time
from collections.abc import Callable

from k3d_pipeline.credentials import CredentialStore
from k3d_pipeline.exceptions import (
    ClusterCreationError,
    ClusterError,
    ClusterTimeoutError,
    CommandError,
    CommandTimeoutError,
)
from k3d_pipeline.logging_config import get_logger
from k3d_pipeline.models.cluster import (
    ClusterHandle,
    ClusterLifecycle,
    ClusterTopology,
    NodeReadiness,
)
from k3d_pipeline.runner import CommandRunner, LocalRunner

logger = get_logger(__name__)

CONTROL_PLANE_LABELS = ("node-role.kubernetes.io/control-plane", "node-role.kubernetes.io/master")


def context_name(cluster: str) -> str:
    return f"k3d-{cluster}"


class ClusterBuilder:
    """Creates and manages k3d clusters on the host a runner executes on.

    Every operation is idempotent: creating an existing cluster returns its
    handle, and stopping or deleting an already stopped or absent cluster
    succeeds.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        poll_interval: float = 5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner or LocalRunner()
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def _k3d(self, args: list[str], timeout: float | None = None):
        return self.runner.run(["k3d", *args], timeout=timeout)

    def _list(self) -> dict[str, dict]:
        try:
            result = self._k3d(["cluster", "list", "-o", "json"], timeout=60)
            clusters = json.loads(result.stdout or "[]")
        except CommandError as e:
            raise ClusterError("Failed to list k3d clusters", e.details or e.message)
        except json.JSONDecodeError as e:
            raise ClusterError("Failed to parse k3d cluster list", str(e))
        return {c["name"]: c for c in clusters}

    def get(self, name: str) -> ClusterHandle | None:
        """Return the handle of an existing cluster, or None if absent."""
        info = self._list().get(name)
        if info is None:
            return None
        running = int(info.get("serversRunning", 0)) > 0
        lifecycle = ClusterLifecycle.RUNNING if running else ClusterLifecycle.STOPPED
        nodes = self.snapshot(name) if running else []
        return ClusterHandle(name=name, context=context_name(name), lifecycle=lifecycle, nodes=nodes)

    def snapshot(self, name: str) -> list[NodeReadiness]:
        """Node readiness as reported by the API server; empty if unreachable."""
        result = self.runner.run(
            ["kubectl", "get", "nodes", "-o", "json", "--context", context_name(name)],
            timeout=30,
            check=False,
        )
        if not result.ok:
            logger.debug(f"Node query for {name} failed: {result.output()}")
            return []
        try:
            items = json.loads(result.stdout).get("items", [])
        except json.JSONDecodeError:
            return []

        nodes = []
        for item in items:
            labels = item.get("metadata", {}).get("labels") or {}
            role = "server" if any(label in labels for label in CONTROL_PLANE_LABELS) else "agent"
            conditions = item.get("status", {}).get("conditions") or []
            ready = any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)
            nodes.append(NodeReadiness(name=item["metadata"]["name"], role=role, ready=ready))
        return sorted(nodes, key=lambda n: n.name)

    def wait_ready(self, name: str, expected: int, timeout: float) -> list[NodeReadiness]:
        """Block until `expected` nodes report Ready.

        Raises:
            ClusterTimeoutError: The deadline passed; nodes may still come up
        """
        deadline = self._clock() + timeout
        nodes: list[NodeReadiness] = []
        while True:
            nodes = self.snapshot(name)
            ready = sum(1 for n in nodes if n.ready)
            logger.debug(f"{name}: {ready}/{expected} nodes ready")
            if ready >= expected:
                return nodes
            if self._clock() >= deadline:
                break
            self._sleep(self.poll_interval)

        not_ready = ", ".join(n.name for n in nodes if not n.ready) or "no nodes registered"
        raise ClusterTimeoutError(
            f"Cluster '{name}' not ready after {timeout}s",
            f"Not ready: {not_ready}\nThe cluster may still be starting; "
            "re-run the stage to keep waiting.",
        )

    def create_args(self, topology: ClusterTopology, timeout: float, api_host: str | None) -> list[str]:
        args = [
            "cluster",
            "create",
            topology.name,
            "--servers",
            str(topology.servers),
            "--agents",
            str(topology.agents),
        ]
        args += ["--api-port", f"0.0.0.0:{topology.api_port}"]
        for port in topology.ports:
            args += ["--port", port.to_arg()]
        for volume in topology.volumes:
            args += ["--volume", volume.to_arg()]
        k3s_args = list(topology.k3s_args)
        if api_host:
            k3s_args.append(f"--tls-san={api_host}@server:*")
        for k3s_arg in k3s_args:
            args += ["--k3s-arg", k3s_arg]
        if topology.image:
            args += ["--image", topology.image]
        args += ["--wait", "--timeout", f"{int(timeout)}s"]
        return args

    def create_cluster(
        self,
        topology: ClusterTopology,
        credentials: CredentialStore,
        *,
        timeout: float = 300,
        api_host: str | None = None,
    ) -> tuple[ClusterHandle, CredentialStore]:
        """Create the cluster unless one with the same name exists.

        An existing cluster is brought to running with ready nodes: a stopped
        one is started, a running one is waited on.

        Args:
            topology: Declared cluster shape
            credentials: Store the cluster's credentials are merged into
            timeout: Seconds to wait for creation and node readiness
            api_host: Address operators use to reach the API server

        Returns:
            The cluster handle and the updated credential store

        Raises:
            ClusterCreationError: k3d failed to create the cluster
            ClusterTimeoutError: Nodes were not ready in time
        """
        existing = self.get(topology.name)
        if existing is not None:
            logger.info(f"Cluster {topology.name} already exists; skipping creation")
            if existing.lifecycle == ClusterLifecycle.STOPPED:
                existing = self.start(existing, timeout=timeout)
            elif not existing.ready:
                expected = len(existing.nodes) or topology.node_count
                existing = existing.model_copy(
                    update={"nodes": self.wait_ready(topology.name, expected, timeout)}
                )
            credentials = self._merge_credentials(topology, credentials, api_host)
            return existing, credentials

        handle = ClusterHandle(
            name=topology.name, context=topology.context, lifecycle=ClusterLifecycle.ABSENT
        ).transition(ClusterLifecycle.CREATING)

        logger.info(
            f"Creating cluster {topology.name} "
            f"({topology.servers} servers, {topology.agents} agents)"
        )
        try:
            # k3d enforces --timeout itself; the extra minute covers image pulls finishing
            self._k3d(self.create_args(topology, timeout, api_host), timeout=timeout + 60)
        except CommandTimeoutError as e:
            raise ClusterTimeoutError(
                f"Cluster '{topology.name}' creation timed out", e.details or e.message
            )
        except CommandError as e:
            raise ClusterCreationError(
                f"Failed to create cluster '{topology.name}'", e.details or e.message
            )

        try:
            self._k3d(["kubeconfig", "merge", topology.name, "--kubeconfig-switch-context"], timeout=60)
        except CommandError as e:
            raise ClusterError("Failed to merge kubeconfig on the cluster host", e.details or e.message)

        nodes = self.wait_ready(topology.name, topology.node_count, timeout)
        handle = handle.transition(ClusterLifecycle.RUNNING, nodes=nodes)
        credentials = self._merge_credentials(topology, credentials, api_host)
        logger.info(f"Cluster {topology.name} ready with {len(nodes)} nodes")
        return handle, credentials

    def _merge_credentials(
        self, topology: ClusterTopology, credentials: CredentialStore, api_host: str | None
    ) -> CredentialStore:
        try:
            result = self._k3d(["kubeconfig", "get", topology.name], timeout=60)
        except CommandError as e:
            raise ClusterError(
                f"Failed to read kubeconfig for '{topology.name}'", e.details or e.message
            )
        return credentials.merge(
            result.stdout,
            switch_context=True,
            server=api_host,
            server_port=topology.api_port if api_host else None,
        )

    def start(self, handle: ClusterHandle, timeout: float = 300) -> ClusterHandle:
        """Start a stopped cluster. Starting a running cluster is a no-op.

        Raises:
            ClusterError: The cluster does not exist
        """
        info = self._list().get(handle.name)
        if info is None:
            raise ClusterError(
                f"Cluster '{handle.name}' does not exist", "Create it with create-cluster first"
            )
        current = self.get(handle.name)
        if current.lifecycle == ClusterLifecycle.RUNNING:
            logger.info(f"Cluster {handle.name} already running")
            return current

        logger.info(f"Starting cluster {handle.name}")
        try:
            self._k3d(
                ["cluster", "start", handle.name, "--wait", "--timeout", f"{int(timeout)}s"],
                timeout=timeout + 60,
            )
        except CommandTimeoutError as e:
            raise ClusterTimeoutError(f"Cluster '{handle.name}' start timed out", e.details)
        except CommandError as e:
            raise ClusterError(f"Failed to start cluster '{handle.name}'", e.details or e.message)

        expected = int(info.get("serversCount", 1)) + int(info.get("agentsCount", 0))
        nodes = self.wait_ready(handle.name, expected, timeout)
        return current.transition(ClusterLifecycle.RUNNING, nodes=nodes)

    def stop(self, handle: ClusterHandle) -> ClusterHandle:
        """Stop a cluster, keeping its volumes."""
        current = self.get(handle.name)
        if current is None:
            logger.info(f"Cluster {handle.name} does not exist; nothing to stop")
            return handle.model_copy(update={"lifecycle": ClusterLifecycle.ABSENT, "nodes": []})
        if current.lifecycle == ClusterLifecycle.STOPPED:
            logger.info(f"Cluster {handle.name} already stopped")
            return current

        logger.info(f"Stopping cluster {handle.name}")
        try:
            self._k3d(["cluster", "stop", handle.name], timeout=300)
        except CommandError as e:
            raise ClusterError(f"Failed to stop cluster '{handle.name}'", e.details or e.message)
        return current.transition(ClusterLifecycle.STOPPED, nodes=[])

    def delete(
        self, handle: ClusterHandle, credentials: CredentialStore | None = None
    ) -> tuple[ClusterHandle, CredentialStore | None]:
        """Delete a cluster and its volumes, dropping its context from the store."""
        current = self.get(handle.name)
        if current is None:
            logger.info(f"Cluster {handle.name} already deleted")
            handle = handle.model_copy(update={"lifecycle": ClusterLifecycle.ABSENT, "nodes": []})
        else:
            deleting = current.transition(ClusterLifecycle.DELETING)
            logger.info(f"Deleting cluster {handle.name}")
            try:
                self._k3d(["cluster", "delete", handle.name], timeout=300)
            except CommandError as e:
                raise ClusterError(f"Failed to delete cluster '{handle.name}'", e.details or e.message)
            handle = deleting.transition(ClusterLifecycle.ABSENT, nodes=[])

        if credentials is not None:
            credentials = credentials.remove(handle.context)
        return handle, credentials
