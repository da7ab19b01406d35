"""Ordered application of manifests and charts to a running cluster."""

import re
import threading

import yaml

from k3d_pipeline.credentials import CredentialStore
from k3d_pipeline.exceptions import (
    ApplyError,
    CommandError,
    CommandTimeoutError,
    StageCancelledError,
)
from k3d_pipeline.helm import ChartInstaller, HelmError
from k3d_pipeline.logging_config import get_logger
from k3d_pipeline.models.cluster import ClusterHandle, ClusterLifecycle
from k3d_pipeline.models.manifest import (
    ApplyOutcome,
    ApplyStatus,
    ManifestEntry,
    ManifestSet,
    default_manifest_set,
)
from k3d_pipeline.runner import CommandRunner, LocalRunner

logger = get_logger(__name__)

__all__ = ["ManifestApplier", "default_manifest_set"]

# kubectl apply prints "<kind>/<name> <created|configured|unchanged>[ (dry run)]"
APPLY_LINE = re.compile(r"^(?P<resource>\S+/\S+)\s+(?P<verb>created|configured|unchanged)")


class _EntryFailed(Exception):
    def __init__(self, output: str, timed_out: bool = False):
        self.output = output
        self.timed_out = timed_out
        super().__init__(output)


def render_namespaces(names: list[str]) -> str:
    return yaml.safe_dump_all(
        [{"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": n}} for n in names],
        sort_keys=False,
    )


def parse_apply_output(output: str, dry_run: bool = False) -> tuple[ApplyStatus, list[str]]:
    resources = []
    verbs = set()
    for line in output.splitlines():
        match = APPLY_LINE.match(line.strip())
        if match:
            resources.append(match.group("resource"))
            verbs.add(match.group("verb"))
    if dry_run:
        return ApplyStatus.DRY_RUN, resources
    if "created" in verbs:
        return ApplyStatus.CREATED, resources
    if "configured" in verbs:
        return ApplyStatus.CONFIGURED, resources
    return ApplyStatus.UNCHANGED, resources


class ManifestApplier:
    """Applies a ManifestSet in declared order.

    The ordering invariant is checked before anything is applied. Rollouts are
    awaited per entry; the first failure stops the sequence and reports which
    entries were applied and which were never attempted, so the caller can
    resume from the failure point.
    """

    def __init__(self, runner: CommandRunner | None = None, charts: ChartInstaller | None = None):
        self.runner = runner or LocalRunner()
        self.charts = charts or ChartInstaller(self.runner)

    def apply(
        self,
        manifests: ManifestSet,
        target: ClusterHandle,
        credentials: CredentialStore | None = None,
        *,
        rollout_timeout: float = 300,
        dry_run: bool = False,
        resume_from: str | None = None,
        cancel: threading.Event | None = None,
    ) -> list[ApplyOutcome]:
        """Apply every entry, or the entries from `resume_from` onward.

        Raises:
            ManifestOrderError: The set violates its ordering invariant
            ApplyError: An entry failed; carries applied and not-attempted names
            StageCancelledError: Cancelled between entries
        """
        manifests.validate_order()
        names = manifests.names

        if target.lifecycle != ClusterLifecycle.RUNNING:
            raise ApplyError(
                f"Cluster '{target.name}' is {target.lifecycle.value}, not running",
                "Start or create the cluster before applying manifests",
                not_attempted=names,
            )

        start = 0
        if resume_from is not None:
            if resume_from not in names:
                raise ApplyError(
                    f"Unknown manifest entry: {resume_from}",
                    f"Entries: {', '.join(names)}",
                    not_attempted=names,
                )
            start = names.index(resume_from)

        outcomes = [ApplyOutcome(name=name, status=ApplyStatus.SKIPPED) for name in names[:start]]
        applied = list(names[:start])
        kubeconfig = str(credentials.path) if credentials and self.runner.local else None

        for index in range(start, len(manifests.entries)):
            entry = manifests.entries[index]
            if cancel is not None and cancel.is_set():
                raise StageCancelledError("manifests", applied, names[index:])

            logger.info(f"Applying {entry.name} ({entry.tier.name.lower()})")
            try:
                outcome = self._apply_entry(
                    manifests, entry, target.context, kubeconfig, rollout_timeout, dry_run
                )
            except _EntryFailed as failure:
                kind = "timed out" if failure.timed_out else "failed"
                raise ApplyError(
                    f"Manifest '{entry.name}' {kind}",
                    f"{failure.output}\n\n"
                    f"Applied: {', '.join(applied) or 'none'}\n"
                    f"Not attempted: {', '.join(names[index + 1:]) or 'none'}\n"
                    f"Resume with --resume-from {entry.name}",
                    failed=entry.name,
                    applied=applied,
                    not_attempted=names[index + 1:],
                    timed_out=failure.timed_out,
                )
            outcomes.append(outcome)
            applied.append(entry.name)
            logger.info(f"{entry.name}: {outcome.status.value}")

        return outcomes

    def _apply_entry(
        self,
        manifests: ManifestSet,
        entry: ManifestEntry,
        context: str,
        kubeconfig: str | None,
        rollout_timeout: float,
        dry_run: bool,
    ) -> ApplyOutcome:
        if entry.chart is not None:
            resources = [f"release/{entry.chart.release}"]
            if not dry_run and self.charts.is_current(entry.chart, context, kubeconfig):
                return ApplyOutcome(name=entry.name, status=ApplyStatus.UNCHANGED, resources=resources)
            try:
                result = self.charts.upgrade_install(
                    entry.chart,
                    context=context,
                    timeout=rollout_timeout,
                    dry_run=dry_run,
                    kubeconfig=kubeconfig,
                )
            except HelmError as e:
                raise _EntryFailed(e.format_message(), timed_out=e.timed_out)
            if dry_run:
                status = ApplyStatus.DRY_RUN
            elif "has been upgraded" in result.stdout:
                status = ApplyStatus.CONFIGURED
            else:
                status = ApplyStatus.CREATED
            return ApplyOutcome(name=entry.name, status=status, resources=resources)

        if entry.is_inline:
            document = render_namespaces(entry.declares_namespaces)
        else:
            path = manifests.resolve(entry)
            try:
                document = path.read_text()
            except OSError as e:
                raise _EntryFailed(f"Cannot read manifest file {path}: {e}")

        args = ["kubectl", "apply", "-f", "-", "--context", context]
        if kubeconfig:
            args += ["--kubeconfig", kubeconfig]
        if entry.namespace:
            args += ["--namespace", entry.namespace]
        if dry_run:
            args.append("--dry-run=client")

        try:
            result = self.runner.run(args, input=document, timeout=120)
        except CommandTimeoutError as e:
            raise _EntryFailed(e.format_message(), timed_out=True)
        except CommandError as e:
            raise _EntryFailed(e.details or e.message)

        status, resources = parse_apply_output(result.stdout, dry_run=dry_run)
        rollouts = [] if dry_run else self._wait_rollouts(entry, context, kubeconfig, rollout_timeout)
        return ApplyOutcome(name=entry.name, status=status, resources=resources, rollouts=rollouts)

    def _wait_rollouts(
        self, entry: ManifestEntry, context: str, kubeconfig: str | None, timeout: float
    ) -> list[str]:
        for resource in entry.rollouts:
            args = [
                "kubectl",
                "rollout",
                "status",
                resource,
                "--context",
                context,
                "--timeout",
                f"{int(timeout)}s",
            ]
            if kubeconfig:
                args += ["--kubeconfig", kubeconfig]
            if entry.namespace:
                args += ["--namespace", entry.namespace]

            logger.info(f"Waiting for rollout of {resource}")
            try:
                self.runner.run(args, timeout=timeout + 30)
            except CommandTimeoutError as e:
                raise _EntryFailed(e.format_message(), timed_out=True)
            except CommandError as e:
                output = e.details or e.message
                raise _EntryFailed(output, timed_out="timed out" in output)
        return list(entry.rollouts)
