"""Remote installation of the cluster toolchain on a provisioned host.

Steps run in a fixed order and are each safe to repeat, so the recovery path
for any failure is to fix the cause and run the whole bootstrap again.

Adding the login user to the docker group only applies to new sessions. When
that step runs the session moves to PRIVILEGED_PENDING_RESTART; callers that
pass ``reconnect=False`` must call :meth:`RemoteBootstrapper.reestablish`
before any stage that runs docker or k3d without sudo.
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass

import paramiko

from k3d_pipeline.exceptions import (
    BootstrapError,
    BootstrapTimeoutError,
    CommandTimeoutError,
    PipelineError,
    StageCancelledError,
)
from k3d_pipeline.logging_config import get_logger
from k3d_pipeline.models.config import SshSettings
from k3d_pipeline.models.state import InfrastructureState, SessionMode, ToolchainStatus
from k3d_pipeline.probe import CLUSTER_TOOLS, EnvironmentProbe
from k3d_pipeline.remote import RemoteRunner, RemoteSession

logger = get_logger(__name__)

WORK_DIR = "/home/{user}/k3d-microservices"

DOCKER_DAEMON_CONFIG = """{
  "debug": false,
  "storage-driver": "overlay2",
  "log-driver": "json-file",
  "log-opts": {
    "max-size": "10m",
    "max-file": "3"
  },
  "insecure-registries": [],
  "registry-mirrors": []
}
"""


@dataclass(frozen=True)
class BootstrapStep:
    """One idempotent installation step.

    Attributes:
        name: Step name reported in errors
        commands: Shell commands run in order with sudo
        check: Optional command; exit 0 means the step is already satisfied
        group_change: The step grants the login user docker access
    """

    name: str
    commands: tuple[str, ...]
    check: str | None = None
    group_change: bool = False


def default_steps(user: str) -> list[BootstrapStep]:
    """Installation sequence for an Ubuntu EC2 host."""
    work_dir = WORK_DIR.format(user=user)
    apt = "DEBIAN_FRONTEND=noninteractive apt-get"
    return [
        BootstrapStep(
            "system-update",
            (f"{apt} update -y", f"{apt} upgrade -y"),
        ),
        BootstrapStep(
            "docker",
            (
                f"{apt} install -y apt-transport-https ca-certificates curl gnupg lsb-release",
                "install -m 0755 -d /usr/share/keyrings",
                "curl -fsSL https://download.docker.com/linux/ubuntu/gpg "
                "| gpg --batch --yes --dearmor -o /usr/share/keyrings/docker-archive-keyring.gpg",
                'echo "deb [arch=$(dpkg --print-architecture) '
                'signed-by=/usr/share/keyrings/docker-archive-keyring.gpg] '
                'https://download.docker.com/linux/ubuntu $(lsb_release -cs) stable" '
                "> /etc/apt/sources.list.d/docker.list",
                f"{apt} update -y",
                f"{apt} install -y docker-ce docker-ce-cli containerd.io docker-compose-plugin",
                "systemctl enable --now docker",
            ),
            check="command -v docker && systemctl is-active --quiet docker",
        ),
        BootstrapStep(
            "docker-group",
            ("groupadd -f docker", f"usermod -aG docker {user}"),
            check=f"id -nG {user} | grep -qw docker",
            group_change=True,
        ),
        BootstrapStep(
            "kubectl",
            (
                "curl -fsSLo /tmp/kubectl "
                '"https://dl.k8s.io/release/$(curl -fsSL https://dl.k8s.io/release/stable.txt)'
                '/bin/linux/$(dpkg --print-architecture)/kubectl"',
                "install -o root -g root -m 0755 /tmp/kubectl /usr/local/bin/kubectl",
                "rm -f /tmp/kubectl",
            ),
            check="command -v kubectl",
        ),
        BootstrapStep(
            "k3d",
            ("curl -fsSL https://raw.githubusercontent.com/k3d-io/k3d/main/install.sh | bash",),
            check="command -v k3d",
        ),
        BootstrapStep(
            "helm",
            ("curl -fsSL https://raw.githubusercontent.com/helm/helm/main/scripts/get-helm-3 | bash",),
            check="command -v helm",
        ),
        BootstrapStep(
            "aux-tools",
            (f"{apt} install -y jq git wget nano vim net-tools zip unzip",),
            check="command -v jq && command -v git && command -v unzip",
        ),
        BootstrapStep(
            "docker-daemon",
            (
                "mkdir -p /etc/docker",
                f"printf '%s' '{DOCKER_DAEMON_CONFIG}' > /tmp/daemon.json",
                "cmp -s /tmp/daemon.json /etc/docker/daemon.json "
                "|| (mv /tmp/daemon.json /etc/docker/daemon.json && systemctl restart docker)",
                "rm -f /tmp/daemon.json",
            ),
        ),
        BootstrapStep(
            "work-dirs",
            (
                f"mkdir -p {work_dir}/k8s/dev {work_dir}/k8s/staging {work_dir}/k8s/prod "
                f"{work_dir}/k8s/base {work_dir}/scripts {work_dir}/backups {work_dir}/logs",
                f"chown -R {user}:{user} {work_dir}",
            ),
        ),
        BootstrapStep(
            "kubeconfig-dir",
            (
                f"mkdir -p /home/{user}/.kube",
                f"touch /home/{user}/.kube/config",
                f"chown -R {user}:{user} /home/{user}/.kube",
                f"chmod 700 /home/{user}/.kube",
                f"chmod 600 /home/{user}/.kube/config",
            ),
        ),
    ]


class RemoteBootstrapper:
    """Installs docker, kubectl, k3d, helm and helpers on the target host."""

    def __init__(
        self,
        settings: SshSettings,
        session_factory: Callable[[str, SshSettings], RemoteSession] = RemoteSession,
        command_timeout: float = 900,
        steps: list[BootstrapStep] | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.command_timeout = command_timeout
        self.steps = steps if steps is not None else default_steps(settings.user)
        self.session: RemoteSession | None = None
        self.completed: list[str] = []

    @property
    def session_mode(self) -> SessionMode | None:
        return self.session.mode if self.session else None

    def connect(self, target: InfrastructureState) -> RemoteSession:
        """Open (or reuse) the session to the target's public address."""
        if self.session is not None and self.session.connected:
            return self.session
        self.session = self.session_factory(target.public_ip, self.settings)
        self.session.connect()
        return self.session

    def reestablish(self) -> RemoteSession:
        """Start a new session so a pending group change takes effect."""
        if self.session is None:
            raise BootstrapError("session", "bootstrap has not connected yet")
        return self.session.reconnect()

    def bootstrap(
        self,
        target: InfrastructureState,
        *,
        cancel: threading.Event | None = None,
        reconnect: bool = True,
    ) -> ToolchainStatus:
        """Run every installation step and report the remote toolchain.

        Args:
            target: Host to bootstrap
            cancel: When set, no further steps start; finished steps stay
            reconnect: Re-establish the session after a group change

        Raises:
            BootstrapError: Tagged with the failing step
            BootstrapTimeoutError: A step exceeded the command timeout
            StageCancelledError: Cancelled between steps
        """
        session = self.connect(target)
        self.completed = []
        logger.info(f"Bootstrapping {target.public_ip} ({target.instance_id})")

        for index, step in enumerate(self.steps):
            if cancel is not None and cancel.is_set():
                raise StageCancelledError(
                    "bootstrap", self.completed, [s.name for s in self.steps[index:]]
                )
            self._run_step(session, step)
            self.completed.append(step.name)

        if session.mode == SessionMode.PRIVILEGED_PENDING_RESTART:
            if reconnect:
                session = self.reestablish()
            else:
                logger.warning(
                    "docker group change is pending; re-establish the session "
                    "before running docker or k3d without sudo"
                )

        status = EnvironmentProbe(RemoteRunner(session)).probe(CLUSTER_TOOLS)
        status.session_mode = session.mode
        if status.missing:
            raise BootstrapError(
                "verify",
                f"tools missing after bootstrap: {', '.join(status.missing)}",
                "Re-run the bootstrap; every step is safe to repeat.",
            )
        logger.info(f"Bootstrap of {target.public_ip} complete")
        return status

    def _run_step(self, session: RemoteSession, step: BootstrapStep) -> None:
        try:
            if step.check:
                probe = session.run(step.check, timeout=60, sudo=True)
                if probe.ok:
                    logger.info(f"[{step.name}] already satisfied")
                    return

            logger.info(f"[{step.name}] running")
            for command in step.commands:
                result = session.run(command, timeout=self.command_timeout, sudo=True)
                if not result.ok:
                    raise BootstrapError(
                        step.name,
                        f"exit code {result.returncode}",
                        f"Command: {command}\n{result.output()}\n\n"
                        f"Completed steps: {', '.join(self.completed) or 'none'}",
                    )
        except CommandTimeoutError as e:
            raise BootstrapTimeoutError(
                step.name,
                e.message,
                "The step may still complete on the host. Re-run the bootstrap once it settles.",
            )
        except BootstrapError:
            raise
        except PipelineError as e:
            raise BootstrapError(step.name, e.message, e.details)
        except (paramiko.SSHException, OSError) as e:
            raise BootstrapError(step.name, e, "The session dropped. Re-run the bootstrap.")

        if step.group_change:
            session.mark_group_change()
