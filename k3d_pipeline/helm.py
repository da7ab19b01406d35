"""Chart releases installed with helm."""

import json

from k3d_pipeline.exceptions import CommandError, CommandTimeoutError, PipelineError
from k3d_pipeline.logging_config import get_logger
from k3d_pipeline.models.manifest import HelmChart
from k3d_pipeline.runner import CommandResult, CommandRunner, LocalRunner

logger = get_logger(__name__)


class HelmError(PipelineError):
    """Exception raised when a helm command fails."""

    def __init__(self, message: str, details: str = None, timed_out: bool = False):
        self.timed_out = timed_out
        super().__init__(message, details)


def flatten_values(values: dict, prefix: str = "") -> list[str]:
    """Flatten nested chart values into `--set` expressions."""
    expressions = []
    for key, value in values.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            expressions.extend(flatten_values(value, path))
        elif isinstance(value, bool):
            expressions.append(f"{path}={'true' if value else 'false'}")
        elif isinstance(value, (list, tuple)):
            expressions.append(f"{path}={{{','.join(str(v) for v in value)}}}")
        else:
            expressions.append(f"{path}={value}")
    return expressions


class ChartInstaller:
    """Adds chart repositories and installs or upgrades releases."""

    def __init__(self, runner: CommandRunner | None = None):
        self.runner = runner or LocalRunner()
        self._repos: set[str] = set()

    def _helm(self, args: list[str], timeout: float | None = None) -> CommandResult:
        try:
            return self.runner.run(["helm", *args], timeout=timeout)
        except CommandTimeoutError as e:
            raise HelmError(f"helm {args[0]} timed out", e.details or e.message, timed_out=True)
        except CommandError as e:
            raise HelmError(f"helm {args[0]} failed", e.details or e.message)

    def add_repo(self, name: str, url: str) -> None:
        if name in self._repos:
            return
        logger.info(f"Adding helm repository {name}")
        self._helm(["repo", "add", name, url, "--force-update"], timeout=120)
        self.update_repos(name)
        self._repos.add(name)

    def update_repos(self, *names: str) -> None:
        """Refresh chart indexes for the named repositories, or all of them."""
        self._helm(["repo", "update", *names], timeout=300)

    def upgrade_install(
        self,
        chart: HelmChart,
        context: str | None = None,
        timeout: float = 300,
        dry_run: bool = False,
        kubeconfig: str | None = None,
    ) -> CommandResult:
        """Install the release, or upgrade it in place if it exists."""
        if chart.repo_name and chart.repo_url:
            self.add_repo(chart.repo_name, chart.repo_url)

        args = [
            "upgrade",
            "--install",
            chart.release,
            chart.chart,
            "--namespace",
            chart.namespace,
            "--wait",
            "--timeout",
            f"{int(timeout)}s",
        ]
        if chart.version:
            args += ["--version", chart.version]
        for expression in flatten_values(chart.values):
            args += ["--set", expression]
        if context:
            args += ["--kube-context", context]
        if kubeconfig:
            args += ["--kubeconfig", kubeconfig]
        if dry_run:
            args.append("--dry-run")

        logger.info(f"Installing chart {chart.chart} as {chart.release} in {chart.namespace}")
        return self._helm(args, timeout=timeout + 60)

    def is_current(
        self, chart: HelmChart, context: str | None = None, kubeconfig: str | None = None
    ) -> bool:
        """True if the release is deployed with this chart's version and values.

        A chart without a pinned version matches any deployed version.
        """
        scope = [chart.release, "--namespace", chart.namespace, "-o", "json"]
        if context:
            scope += ["--kube-context", context]
        if kubeconfig:
            scope += ["--kubeconfig", kubeconfig]

        try:
            status = self.runner.run(["helm", "status", *scope], timeout=60, check=False)
            if not status.ok:
                return False
            release = json.loads(status.stdout)
            deployed = self.runner.run(["helm", "get", "values", *scope], timeout=60)
            values = json.loads(deployed.stdout) or {}
        except (CommandError, ValueError) as e:
            logger.debug(f"Cannot read release {chart.release}: {e}")
            return False

        if release.get("info", {}).get("status") != "deployed":
            return False
        version = release.get("chart", {}).get("metadata", {}).get("version")
        if chart.version and version != chart.version:
            return False
        return sorted(flatten_values(values)) == sorted(flatten_values(chart.values))
