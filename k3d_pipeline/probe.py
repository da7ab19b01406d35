"""Read-only inspection of a host's toolchain and resources."""

from k3d_pipeline.exceptions import CommandError
from k3d_pipeline.logging_config import get_logger
from k3d_pipeline.models.state import HostResources, ToolchainStatus, ToolStatus
from k3d_pipeline.runner import CommandRunner, LocalRunner

logger = get_logger(__name__)

# Tool name -> command printing its version
VERSION_COMMANDS: dict[str, list[str]] = {
    "terraform": ["terraform", "version"],
    "aws": ["aws", "--version"],
    "docker": ["docker", "--version"],
    "k3d": ["k3d", "version"],
    "kubectl": ["kubectl", "version", "--client"],
    "helm": ["helm", "version", "--short"],
}

DEFAULT_TOOLS = tuple(VERSION_COMMANDS)
CLUSTER_TOOLS = ("docker", "k3d", "kubectl", "helm")


class EnvironmentProbe:
    """Collects a ToolchainStatus for the host a runner executes on."""

    def __init__(self, runner: CommandRunner | None = None, timeout: float = 15):
        self.runner = runner or LocalRunner()
        self.timeout = timeout

    def probe(self, tools: tuple[str, ...] = DEFAULT_TOOLS) -> ToolchainStatus:
        """Probe tools and resources. Never raises; absence is recorded."""
        logger.info(f"Probing toolchain on {self.runner.host}")
        status = ToolchainStatus(host=self.runner.host)
        for name in tools:
            status.tools[name] = self.probe_tool(name)
        status.resources = self.resources()
        for warning in status.resources.warnings():
            logger.warning(f"{self.runner.host}: {warning}")
        return status

    def probe_tool(self, name: str) -> ToolStatus:
        try:
            path = self.runner.which(name)
        except CommandError as e:
            logger.debug(f"Could not resolve {name}: {e.message}")
            path = None
        if not path:
            logger.debug(f"{name} not found on {self.runner.host}")
            return ToolStatus(name=name, found=False)

        return ToolStatus(name=name, found=True, path=path, version=self._version(name))

    def _version(self, name: str) -> str | None:
        args = VERSION_COMMANDS.get(name, [name, "--version"])
        try:
            result = self.runner.run(args, timeout=self.timeout, check=False)
        except CommandError as e:
            logger.debug(f"Version query for {name} failed: {e.message}")
            return None
        if not result.ok:
            return None
        lines = (result.stdout or result.stderr).strip().splitlines()
        return lines[0].strip() if lines else None

    def resources(self) -> HostResources:
        """Read CPU count, total memory and free disk on /."""
        return HostResources(
            cpus=self._read_int(["nproc"], lambda out: out.split()[0]),
            memory_bytes=self._read_int(["free", "-b"], _parse_free),
            disk_free_bytes=self._read_int(["df", "-B1", "/"], _parse_df),
        )

    def _read_int(self, args: list[str], parse) -> int | None:
        try:
            result = self.runner.run(args, timeout=self.timeout, check=False)
        except CommandError as e:
            logger.debug(f"{args[0]} unavailable: {e.message}")
            return None
        if not result.ok:
            return None
        try:
            return int(parse(result.stdout))
        except (ValueError, IndexError):
            logger.debug(f"Unexpected {args[0]} output: {result.stdout!r}")
            return None


def _parse_free(output: str) -> str:
    for line in output.splitlines():
        if line.startswith("Mem:"):
            return line.split()[1]
    raise ValueError("no Mem: line")


def _parse_df(output: str) -> str:
    # Filesystem 1B-blocks Used Available Use% Mounted on
    return output.strip().splitlines()[1].split()[3]
