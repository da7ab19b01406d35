"""Unit tests for the teardown controller."""

import pytest

from k3d_pipeline.cluster import ClusterBuilder
from k3d_pipeline.credentials import CredentialStore
from k3d_pipeline.exceptions import TeardownError
from k3d_pipeline.models import ClusterLifecycle, ClusterTopology
from k3d_pipeline.teardown import TeardownController
from k3d_pipeline.terraform import InfrastructureProvisioner
from tests.fakes import FakeRunner


@pytest.fixture
def cluster_runner():
    return FakeRunner(host="54.12.34.56", local=False)


@pytest.fixture
def deployment(tmp_path, terraform_dir, fake_runner, cluster_runner, provisioning_config):
    provisioner = InfrastructureProvisioner(terraform_dir, fake_runner)
    state = provisioner.apply(provisioning_config)
    builder = ClusterBuilder(cluster_runner, sleep=lambda s: None)
    handle, credentials = builder.create_cluster(
        ClusterTopology(), CredentialStore.load(tmp_path / "config")
    )
    controller = TeardownController(builder, provisioner)
    return controller, handle, state, credentials


def test_keep_data_stops_cluster(deployment, fake_runner, cluster_runner):
    controller, handle, state, credentials = deployment

    report = controller.teardown(handle, state, keep_data=True, credentials=credentials)

    assert report.cluster.lifecycle == ClusterLifecycle.STOPPED
    assert not report.infrastructure_destroyed
    assert "local-k8s" in cluster_runner.clusters
    assert fake_runner.count("terraform", "destroy") == 0
    assert report.credentials.has_context("k3d-local-k8s")


def test_full_teardown(deployment, fake_runner, cluster_runner):
    controller, handle, state, credentials = deployment

    report = controller.teardown(handle, state, keep_data=False, credentials=credentials)

    assert report.cluster.lifecycle == ClusterLifecycle.ABSENT
    assert report.infrastructure_destroyed
    assert cluster_runner.clusters == {}
    assert fake_runner.tf_resources == []
    assert not report.credentials.has_context("k3d-local-k8s")


def test_cluster_deleted_before_infrastructure(deployment, fake_runner, cluster_runner):
    controller, handle, state, _ = deployment
    order = []
    original_delete = controller.builder.delete
    original_destroy = controller.provisioner.destroy

    def delete(*args, **kwargs):
        order.append("cluster")
        return original_delete(*args, **kwargs)

    def destroy(*args, **kwargs):
        order.append("infrastructure")
        return original_destroy(*args, **kwargs)

    controller.builder.delete = delete
    controller.provisioner.destroy = destroy

    controller.teardown(handle, state, keep_data=False)

    assert order == ["cluster", "infrastructure"]


def test_cluster_delete_failure_keeps_infrastructure(deployment, fake_runner, cluster_runner):
    controller, handle, state, credentials = deployment
    cluster_runner.fail("k3d", "cluster", "delete", stderr="docker daemon not responding")

    with pytest.raises(TeardownError) as exc_info:
        controller.teardown(handle, state, keep_data=False, credentials=credentials)

    assert exc_info.value.step == "delete-cluster"
    assert "was not destroyed" in exc_info.value.details
    assert fake_runner.count("terraform", "destroy") == 0
    assert fake_runner.tf_resources


def test_destroy_failure_is_tagged(deployment, fake_runner):
    controller, handle, state, _ = deployment
    fake_runner.fail("terraform", "destroy", stderr="Error: DependencyViolation")

    with pytest.raises(TeardownError) as exc_info:
        controller.teardown(handle, state, keep_data=False)

    assert exc_info.value.step == "destroy-infrastructure"
    assert "DependencyViolation" in exc_info.value.details


def test_teardown_twice_succeeds(deployment, fake_runner):
    controller, handle, state, _ = deployment

    controller.teardown(handle, state, keep_data=False)
    report = controller.teardown(handle, state, keep_data=False)

    assert report.cluster.lifecycle == ClusterLifecycle.ABSENT
    assert fake_runner.count("terraform", "destroy") == 1


def test_keep_data_then_full_teardown(deployment, fake_runner, cluster_runner):
    controller, handle, state, _ = deployment

    stopped = controller.teardown(handle, state, keep_data=True).cluster
    report = controller.teardown(stopped, state, keep_data=False)

    assert report.cluster.lifecycle == ClusterLifecycle.ABSENT
    assert report.infrastructure_destroyed
