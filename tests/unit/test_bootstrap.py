"""Unit tests for the remote bootstrapper."""

import threading

import pytest

from k3d_pipeline.bootstrap import BootstrapStep, RemoteBootstrapper, default_steps
from k3d_pipeline.exceptions import (
    BootstrapError,
    BootstrapTimeoutError,
    StageCancelledError,
)
from k3d_pipeline.models import InfrastructureState, SessionMode, SshSettings
from tests.fakes import FakeHost

TARGET = InfrastructureState(instance_id="i-0abc123def4567890", public_ip="54.12.34.56")


@pytest.fixture
def bootstrapper(fake_host):
    return RemoteBootstrapper(SshSettings(), fake_host.session_factory)


def step_names():
    return [step.name for step in default_steps("ubuntu")]


def test_bootstrap_fresh_host(bootstrapper, fake_host):
    status = bootstrapper.bootstrap(TARGET)

    assert status.has("docker", "k3d", "kubectl", "helm")
    assert status.host == "54.12.34.56"
    assert status.session_mode == SessionMode.PRIVILEGED
    assert bootstrapper.completed == step_names()


def test_group_change_reestablishes_session(bootstrapper, fake_host):
    bootstrapper.bootstrap(TARGET)

    assert fake_host.connects == 2
    assert bootstrapper.session_mode == SessionMode.PRIVILEGED


def test_group_change_left_pending_without_reconnect(bootstrapper, fake_host):
    status = bootstrapper.bootstrap(TARGET, reconnect=False)

    assert status.session_mode == SessionMode.PRIVILEGED_PENDING_RESTART
    assert fake_host.connects == 1

    bootstrapper.reestablish()
    assert bootstrapper.session_mode == SessionMode.PRIVILEGED


def test_bootstrap_twice_skips_satisfied_steps(bootstrapper, fake_host):
    bootstrapper.bootstrap(TARGET)
    installs = fake_host.ran("install -y docker-ce")

    bootstrapper.bootstrap(TARGET)

    assert installs == 1
    assert fake_host.ran("install -y docker-ce") == 1
    assert fake_host.ran("usermod -aG docker") == 1
    assert fake_host.ran("get-helm-3") == 1


def test_second_run_on_prepared_host_is_privileged(fake_host):
    fake_host.docker_group = True
    bootstrapper = RemoteBootstrapper(SshSettings(), fake_host.session_factory)

    status = bootstrapper.bootstrap(TARGET)

    assert status.session_mode == SessionMode.PRIVILEGED
    assert fake_host.connects == 1


def test_failing_step_is_named(bootstrapper, fake_host):
    fake_host.fail_on["get-helm-3"] = (22, "curl: (22) The requested URL returned error: 404")

    with pytest.raises(BootstrapError) as exc_info:
        bootstrapper.bootstrap(TARGET)

    assert exc_info.value.stage == "helm"
    assert "404" in exc_info.value.details
    assert bootstrapper.completed == ["system-update", "docker", "docker-group", "kubectl", "k3d"]


def test_rerun_after_failure_completes(bootstrapper, fake_host):
    fake_host.fail_on["get-helm-3"] = (1, "network unreachable")
    with pytest.raises(BootstrapError):
        bootstrapper.bootstrap(TARGET)

    fake_host.fail_on.clear()
    status = bootstrapper.bootstrap(TARGET)

    assert status.has("helm")


def test_step_timeout(bootstrapper, fake_host):
    fake_host.timeout_on.add("apt-get upgrade")

    with pytest.raises(BootstrapTimeoutError) as exc_info:
        bootstrapper.bootstrap(TARGET)

    assert exc_info.value.stage == "system-update"
    assert exc_info.value.may_still_be_running


def test_unreachable_host(bootstrapper, fake_host):
    fake_host.connect_failures = 1

    with pytest.raises(BootstrapError) as exc_info:
        bootstrapper.bootstrap(TARGET)

    assert exc_info.value.stage == "connect"


def test_cancel_between_steps(bootstrapper, fake_host):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(StageCancelledError) as exc_info:
        bootstrapper.bootstrap(TARGET, cancel=cancel)

    assert exc_info.value.completed == []
    assert exc_info.value.remaining == step_names()
    assert fake_host.ran("apt-get") == 0


def test_missing_tool_after_bootstrap_fails_verification(fake_host):
    steps = [BootstrapStep("noop", ("true",))]
    bootstrapper = RemoteBootstrapper(SshSettings(), fake_host.session_factory, steps=steps)

    with pytest.raises(BootstrapError) as exc_info:
        bootstrapper.bootstrap(TARGET)

    assert exc_info.value.stage == "verify"
    assert "docker" in exc_info.value.message


def test_steps_run_with_sudo(bootstrapper, fake_host):
    bootstrapper.bootstrap(TARGET)

    install_commands = [c for c, sudo in fake_host.commands if "apt-get" in c]
    assert install_commands
    assert all(sudo for c, sudo in fake_host.commands if "apt-get" in c)


def test_reestablish_requires_session():
    bootstrapper = RemoteBootstrapper(SshSettings(), FakeHost().session_factory)

    with pytest.raises(BootstrapError):
        bootstrapper.reestablish()


def test_default_steps_use_login_user():
    steps = {step.name: step for step in default_steps("admin")}

    assert "usermod -aG docker admin" in steps["docker-group"].commands
    assert steps["docker-group"].group_change
    assert any("/home/admin/.kube" in c for c in steps["kubeconfig-dir"].commands)
