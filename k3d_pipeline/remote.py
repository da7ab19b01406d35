"""Remote command sessions to the provisioned host over SSH."""

import shlex
import socket
import threading
import time
from collections.abc import Callable
from pathlib import Path

import paramiko

from k3d_pipeline.exceptions import BootstrapError, CommandError, CommandTimeoutError
from k3d_pipeline.logging_config import get_logger
from k3d_pipeline.models.config import SshSettings
from k3d_pipeline.models.state import SessionMode
from k3d_pipeline.runner import CommandResult, CommandRunner

logger = get_logger(__name__)

KEY_CLASSES = (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey)


def load_private_key(path: Path) -> paramiko.PKey:
    """Load a private key, trying Ed25519, RSA and ECDSA in turn.

    Raises:
        BootstrapError: If the file is missing or no key type can parse it
    """
    if not path.exists():
        raise BootstrapError(
            "connect",
            f"private key not found: {path}",
            "Set ssh.private_key_path to the key matching provisioning.key_name",
        )
    for key_cls in KEY_CLASSES:
        try:
            return key_cls.from_private_key_file(str(path))
        except paramiko.SSHException:
            continue
    raise BootstrapError("connect", f"unsupported private key format: {path}")


class _StreamReader(threading.Thread):
    """Reads one channel stream to its end in the background."""

    def __init__(self, stream):
        super().__init__(daemon=True)
        self.stream = stream
        self.data = b""
        self.error: Exception | None = None

    def run(self) -> None:
        try:
            self.data = self.stream.read()
        except (paramiko.SSHException, OSError) as e:
            self.error = e

    def text(self) -> str:
        self.join()
        if self.error is not None:
            raise self.error
        return self.data.decode(errors="replace")


class RemoteSession:
    """An SSH session to one host.

    The session tracks whether its login has direct access to the container
    runtime. Adding the user to the docker group only takes effect for new
    logins, so after `mark_group_change()` the session stays in
    PRIVILEGED_PENDING_RESTART until `reconnect()`.
    """

    def __init__(
        self,
        host: str,
        settings: SshSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ):
        self.host = host
        self.settings = settings
        self.mode = SessionMode.UNPRIVILEGED
        self._sleep = sleep
        self._client_factory = client_factory
        self._client: paramiko.SSHClient | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    def connect(self) -> "RemoteSession":
        """Open the session, retrying while the host finishes booting.

        Connection refusals and timeouts are retried with exponential backoff
        up to `connect_attempts` times. Authentication failures are not.

        Raises:
            BootstrapError: With stage "connect" when no attempt succeeds
        """
        pkey = load_private_key(self.settings.key_path)
        delay = self.settings.backoff_seconds
        last_error: Exception | None = None

        for attempt in range(1, self.settings.connect_attempts + 1):
            client = self._client_factory()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                client.connect(
                    hostname=self.host,
                    port=self.settings.port,
                    username=self.settings.user,
                    pkey=pkey,
                    timeout=self.settings.connect_timeout,
                    banner_timeout=self.settings.connect_timeout,
                    look_for_keys=False,
                    allow_agent=False,
                )
            except paramiko.AuthenticationException as e:
                client.close()
                raise BootstrapError(
                    "connect",
                    e,
                    f"Authentication failed for {self.settings.user}@{self.host}. "
                    "Check the SSH user and private key.",
                )
            except (paramiko.SSHException, OSError) as e:
                client.close()
                last_error = e
                logger.warning(
                    f"SSH connect to {self.host} failed "
                    f"(attempt {attempt}/{self.settings.connect_attempts}): {e}"
                )
                if attempt < self.settings.connect_attempts:
                    self._sleep(delay)
                    delay = min(delay * 2, self.settings.max_backoff_seconds)
                continue

            self._client = client
            logger.info(f"Connected to {self.settings.user}@{self.host}:{self.settings.port}")
            self._refresh_mode()
            return self

        raise BootstrapError(
            "connect",
            last_error,
            f"Could not reach {self.host}:{self.settings.port} after "
            f"{self.settings.connect_attempts} attempts. The instance may still be booting; "
            "re-run the stage to try again.",
        )

    def reconnect(self) -> "RemoteSession":
        """Close and re-open the session so group changes take effect."""
        logger.info(f"Re-establishing session to {self.host}")
        self.close()
        return self.connect()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def mark_group_change(self) -> None:
        """Record that the login user was granted runtime access."""
        if self.mode != SessionMode.PRIVILEGED:
            self.mode = SessionMode.PRIVILEGED_PENDING_RESTART

    def _refresh_mode(self) -> None:
        result = self.run("id -nG")
        groups = result.stdout.split() if result.ok else []
        self.mode = SessionMode.PRIVILEGED if "docker" in groups else SessionMode.UNPRIVILEGED
        logger.debug(f"Session mode on {self.host}: {self.mode.value}")

    def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        input: str | None = None,
        sudo: bool = False,
    ) -> CommandResult:
        """Execute a shell command and capture stdout, stderr and exit code.

        Raises:
            BootstrapError: If the session is not connected
            CommandTimeoutError: If the command produced no result in time
            CommandError: If the SSH session fails mid-command
        """
        if self._client is None:
            raise BootstrapError("session", f"no open session to {self.host}")

        if sudo:
            command = f"sudo -n bash -c {shlex.quote(command)}"

        start_time = time.monotonic()
        try:
            stdin, stdout, stderr = self._client.exec_command(command, timeout=timeout)
            if input is not None:
                stdin.write(input)
                stdin.channel.shutdown_write()
            # stderr drains alongside stdout so neither fills the channel window
            err_reader = _StreamReader(stderr)
            err_reader.start()
            out = stdout.read().decode(errors="replace")
            err = err_reader.text()
            returncode = stdout.channel.recv_exit_status()
        except socket.timeout:
            raise CommandTimeoutError(
                f"Remote command timed out after {timeout}s on {self.host}",
                f"Command: {command}\nThe command may still be running on the host.",
            )
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise CommandError(
                f"SSH session to {self.host} failed: {e}",
                f"{e}\nCommand: {command}\nThe session was closed; re-run the stage to reconnect.",
            )

        return CommandResult(
            args=[command],
            returncode=returncode,
            stdout=out,
            stderr=err,
            duration=time.monotonic() - start_time,
            host=self.host,
        )

    def __enter__(self) -> "RemoteSession":
        if not self.connected:
            self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class RemoteRunner(CommandRunner):
    """Runs tool commands through a remote session."""

    local = False

    def __init__(self, session: RemoteSession):
        self.session = session
        self.host = session.host

    def which(self, name: str) -> str | None:
        result = self.session.run(f"command -v {shlex.quote(name)}")
        path = result.stdout.strip()
        return path if result.ok and path else None

    def _execute(self, args, *, timeout, input, cwd) -> CommandResult:
        command = shlex.join(args)
        if cwd is not None:
            command = f"cd {shlex.quote(str(cwd))} && {command}"
        result = self.session.run(command, timeout=timeout, input=input)
        result.args = list(args)
        return result
