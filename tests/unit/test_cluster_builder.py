"""Unit tests for the k3d cluster builder."""

import pytest

from k3d_pipeline.cluster import ClusterBuilder
from k3d_pipeline.credentials import CredentialStore
from k3d_pipeline.exceptions import ClusterCreationError, ClusterError, ClusterTimeoutError
from k3d_pipeline.models import ClusterHandle, ClusterLifecycle, ClusterTopology


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def builder(fake_runner, clock):
    return ClusterBuilder(fake_runner, poll_interval=5, sleep=clock.sleep, clock=clock)


@pytest.fixture
def credentials(tmp_path):
    return CredentialStore.load(tmp_path / "config")


def test_create_cluster(builder, fake_runner, credentials):
    handle, credentials = builder.create_cluster(ClusterTopology(), credentials, api_host="54.12.34.56")

    assert handle.lifecycle == ClusterLifecycle.RUNNING
    assert handle.ready
    assert len(handle.nodes) == 3
    assert [n.role for n in handle.nodes].count("server") == 1
    assert credentials.has_context("k3d-local-k8s")
    assert credentials.current_context == "k3d-local-k8s"
    assert fake_runner.count("k3d", "kubeconfig", "merge") == 1


def test_create_args_follow_topology(builder):
    args = builder.create_args(ClusterTopology(agents=1, image="rancher/k3s:v1.27.4-k3s1"), 120, "54.12.34.56")

    assert args[:3] == ["cluster", "create", "local-k8s"]
    assert "80:80@loadbalancer" in args
    assert "/tmp/k3d-storage:/data" in args
    assert "--disable=traefik@server:0" in args
    assert "--tls-san=54.12.34.56@server:*" in args
    assert args[args.index("--api-port") + 1] == "0.0.0.0:6443"
    assert "6443:6443@loadbalancer" not in args
    assert args[args.index("--agents") + 1] == "1"
    assert args[args.index("--image") + 1] == "rancher/k3s:v1.27.4-k3s1"
    assert args[-3:] == ["--wait", "--timeout", "120s"]


def test_create_twice_returns_same_handle(builder, fake_runner, credentials):
    first, credentials = builder.create_cluster(ClusterTopology(), credentials)
    second, credentials = builder.create_cluster(ClusterTopology(), credentials)

    assert first == second
    assert fake_runner.count("k3d", "cluster", "create") == 1


def test_create_failure(builder, fake_runner, credentials):
    fake_runner.fail("k3d", "cluster", "create", stderr="docker: permission denied")

    with pytest.raises(ClusterCreationError) as exc_info:
        builder.create_cluster(ClusterTopology(), credentials)

    assert "permission denied" in exc_info.value.details


def test_create_times_out(builder, fake_runner, credentials):
    fake_runner.timeout("k3d", "cluster", "create")

    with pytest.raises(ClusterTimeoutError) as exc_info:
        builder.create_cluster(ClusterTopology(), credentials)

    assert exc_info.value.may_still_be_running


def test_nodes_not_ready_times_out(builder, fake_runner, clock, credentials):
    fake_runner.nodes_ready = False

    with pytest.raises(ClusterTimeoutError) as exc_info:
        builder.create_cluster(ClusterTopology(), credentials, timeout=30)

    assert "k3d-local-k8s-agent-0" in exc_info.value.details
    assert clock.now >= 30


def test_get_absent(builder):
    assert builder.get("local-k8s") is None


def test_stop_and_start(builder, fake_runner, credentials):
    handle, _ = builder.create_cluster(ClusterTopology(), credentials)

    stopped = builder.stop(handle)
    assert stopped.lifecycle == ClusterLifecycle.STOPPED
    assert builder.get("local-k8s").lifecycle == ClusterLifecycle.STOPPED

    started = builder.start(stopped)
    assert started.lifecycle == ClusterLifecycle.RUNNING
    assert started.ready


def test_stop_twice_is_a_no_op(builder, fake_runner, credentials):
    handle, _ = builder.create_cluster(ClusterTopology(), credentials)

    builder.stop(handle)
    builder.stop(handle)

    assert fake_runner.count("k3d", "cluster", "stop") == 1


def test_start_running_is_a_no_op(builder, fake_runner, credentials):
    handle, _ = builder.create_cluster(ClusterTopology(), credentials)

    builder.start(handle)

    assert fake_runner.count("k3d", "cluster", "start") == 0


def test_start_absent_cluster_fails(builder):
    handle = ClusterHandle(name="ghost", context="k3d-ghost", lifecycle=ClusterLifecycle.STOPPED)

    with pytest.raises(ClusterError, match="does not exist"):
        builder.start(handle)


def test_stop_absent_cluster(builder):
    handle = ClusterHandle(name="ghost", context="k3d-ghost", lifecycle=ClusterLifecycle.RUNNING)

    assert builder.stop(handle).lifecycle == ClusterLifecycle.ABSENT


def test_delete_removes_credentials(builder, fake_runner, credentials):
    handle, credentials = builder.create_cluster(ClusterTopology(), credentials)

    deleted, credentials = builder.delete(handle, credentials)

    assert deleted.lifecycle == ClusterLifecycle.ABSENT
    assert not credentials.has_context("k3d-local-k8s")
    assert builder.get("local-k8s") is None


def test_delete_twice_succeeds(builder, fake_runner, credentials):
    handle, credentials = builder.create_cluster(ClusterTopology(), credentials)

    builder.delete(handle, credentials)
    deleted, _ = builder.delete(handle)

    assert deleted.lifecycle == ClusterLifecycle.ABSENT
    assert fake_runner.count("k3d", "cluster", "delete") == 1


def test_delete_stopped_cluster(builder, credentials):
    handle, _ = builder.create_cluster(ClusterTopology(), credentials)
    stopped = builder.stop(handle)

    deleted, _ = builder.delete(stopped)

    assert deleted.lifecycle == ClusterLifecycle.ABSENT


def test_existing_stopped_cluster_is_started(builder, fake_runner, credentials):
    handle, _ = builder.create_cluster(ClusterTopology(), credentials)
    builder.stop(handle)

    again, credentials = builder.create_cluster(ClusterTopology(), credentials)

    assert again.lifecycle == ClusterLifecycle.RUNNING
    assert again.ready
    assert fake_runner.count("k3d", "cluster", "create") == 1
    assert fake_runner.count("k3d", "cluster", "start") == 1
    assert credentials.has_context("k3d-local-k8s")


def test_saved_server_uses_the_api_port(builder, credentials):
    _, credentials = builder.create_cluster(
        ClusterTopology(api_port=16443), credentials, api_host="54.12.34.56"
    )

    server = credentials.document["clusters"][0]["cluster"]["server"]
    assert server == "https://54.12.34.56:16443"
