"""Unit tests for helm chart installation."""

import pytest

from k3d_pipeline.helm import ChartInstaller, HelmError, flatten_values
from k3d_pipeline.models import HelmChart

CHART = HelmChart(
    release="nginx-ingress",
    chart="ingress-nginx/ingress-nginx",
    namespace="ingress-nginx",
    repo_name="ingress-nginx",
    repo_url="https://kubernetes.github.io/ingress-nginx",
    version="4.9.1",
    values={"controller": {"service": {"type": "LoadBalancer"}, "metrics": {"enabled": True}}},
)


def test_flatten_values():
    values = {
        "controller": {"replicaCount": 2, "metrics": {"enabled": False}},
        "tolerations": ["a", "b"],
    }

    assert flatten_values(values) == [
        "controller.replicaCount=2",
        "controller.metrics.enabled=false",
        "tolerations={a,b}",
    ]


def test_upgrade_install_args(fake_runner):
    ChartInstaller(fake_runner).upgrade_install(
        CHART, context="k3d-local-k8s", timeout=120, kubeconfig="/tmp/kubeconfig"
    )

    args = fake_runner.calls[-1]
    assert args[:5] == ["helm", "upgrade", "--install", "nginx-ingress", "ingress-nginx/ingress-nginx"]
    assert args[args.index("--namespace") + 1] == "ingress-nginx"
    assert args[args.index("--timeout") + 1] == "120s"
    assert args[args.index("--version") + 1] == "4.9.1"
    assert args[args.index("--kube-context") + 1] == "k3d-local-k8s"
    assert args[args.index("--kubeconfig") + 1] == "/tmp/kubeconfig"
    assert "controller.service.type=LoadBalancer" in args
    assert "--wait" in args
    assert "--dry-run" not in args


def test_repo_added_once(fake_runner):
    installer = ChartInstaller(fake_runner)

    installer.upgrade_install(CHART)
    installer.upgrade_install(CHART)

    assert fake_runner.count("helm", "repo", "add") == 1
    assert fake_runner.count("helm", "upgrade") == 2


def test_update_all_repos(fake_runner):
    ChartInstaller(fake_runner).update_repos()

    assert fake_runner.calls[-1] == ["helm", "repo", "update"]


def test_second_install_upgrades(fake_runner):
    installer = ChartInstaller(fake_runner)

    first = installer.upgrade_install(CHART)
    second = installer.upgrade_install(CHART)

    assert "Installing it now" in first.stdout
    assert "has been upgraded" in second.stdout


def test_failure_raises_helm_error(fake_runner):
    fake_runner.fail("helm", "upgrade", stderr="Error: INSTALLATION FAILED: context deadline exceeded")

    with pytest.raises(HelmError) as exc_info:
        ChartInstaller(fake_runner).upgrade_install(CHART)

    assert "deadline exceeded" in exc_info.value.details
    assert not exc_info.value.timed_out


def test_timeout_flagged(fake_runner):
    fake_runner.timeout("helm", "upgrade")

    with pytest.raises(HelmError) as exc_info:
        ChartInstaller(fake_runner).upgrade_install(CHART)

    assert exc_info.value.timed_out


def test_is_current_after_install(fake_runner):
    installer = ChartInstaller(fake_runner)
    assert not installer.is_current(CHART, context="k3d-local-k8s")

    installer.upgrade_install(CHART, context="k3d-local-k8s")

    assert installer.is_current(CHART, context="k3d-local-k8s")
    status = next(c for c in fake_runner.calls if c[:2] == ["helm", "status"])
    assert status[status.index("--kube-context") + 1] == "k3d-local-k8s"


@pytest.mark.parametrize(
    "update",
    [
        {"version": "4.10.0"},
        {"values": {"controller": {"service": {"type": "NodePort"}, "metrics": {"enabled": True}}}},
    ],
)
def test_is_current_detects_drift(fake_runner, update):
    installer = ChartInstaller(fake_runner)
    installer.upgrade_install(CHART)

    assert not installer.is_current(CHART.model_copy(update=update))


def test_is_current_when_status_unreadable(fake_runner):
    installer = ChartInstaller(fake_runner)
    installer.upgrade_install(CHART)
    fake_runner.timeout("helm", "status")

    assert not installer.is_current(CHART)
