"""Infrastructure provisioning through Terraform."""

import json
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from k3d_pipeline.exceptions import CommandError, InvalidConfigError, ProvisionError
from k3d_pipeline.logging_config import get_logger
from k3d_pipeline.models.config import ProvisioningConfig, format_validation_errors
from k3d_pipeline.models.state import InfrastructureState
from k3d_pipeline.runner import CommandRunner, LocalRunner

logger = get_logger(__name__)

TFVARS_FILE = "k3d-pipeline.auto.tfvars.json"
PLAN_FILE = "tfplan"


@dataclass
class ResourceChange:
    """Planned action on one resource address."""

    address: str
    actions: list[str]

    @property
    def destructive(self) -> bool:
        return "delete" in self.actions

    @property
    def kind(self) -> str:
        if self.destructive and "create" in self.actions:
            return "replace"
        if self.destructive:
            return "delete"
        if "create" in self.actions:
            return "create"
        if "update" in self.actions:
            return "update"
        return "no-op"


@dataclass
class PlanSummary:
    """Resource changes a plan would make."""

    changes: list[ResourceChange] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return any(c.kind != "no-op" for c in self.changes)

    @property
    def destructive(self) -> list[ResourceChange]:
        return [c for c in self.changes if c.destructive]

    def count(self, kind: str) -> int:
        return sum(1 for c in self.changes if c.kind == kind)

    def describe(self) -> str:
        lines = [f"  {c.kind:8} {c.address}" for c in self.changes if c.kind != "no-op"]
        return "\n".join(lines) or "  no changes"


class InfrastructureProvisioner:
    """Wraps the Terraform init/plan/apply/output/destroy cycle.

    The Terraform state file is treated as opaque; only typed outputs are read.
    Failed applies are never rolled back: Terraform tracks partial state, so
    the remedy is to fix the cause and apply again.
    """

    def __init__(self, terraform_dir: str | Path, runner: CommandRunner | None = None):
        self.terraform_dir = Path(terraform_dir)
        self.runner = runner or LocalRunner()
        self._initialized = False

    @staticmethod
    def validate(config: ProvisioningConfig | dict) -> ProvisioningConfig:
        """Validate provisioning settings without any external call.

        Raises:
            InvalidConfigError: Listing every invalid field
        """
        data = config.model_dump() if isinstance(config, ProvisioningConfig) else config
        try:
            return ProvisioningConfig.model_validate(data)
        except ValidationError as e:
            raise InvalidConfigError("Invalid provisioning configuration", format_validation_errors(e))

    def _terraform(self, args: list[str], action: str, timeout: float | None = None):
        try:
            return self.runner.run(["terraform", *args], cwd=self.terraform_dir, timeout=timeout)
        except CommandError as e:
            raise ProvisionError(f"Terraform {action} failed", e.details or e.message)

    def init(self) -> None:
        if self._initialized:
            return
        if not self.terraform_dir.is_dir():
            raise ProvisionError(
                f"Terraform directory not found: {self.terraform_dir}",
                "Set terraform_dir in the pipeline configuration",
            )
        logger.info(f"Initializing Terraform in {self.terraform_dir}")
        self._terraform(["init", "-input=false", "-no-color"], "init")
        self._initialized = True

    def write_tfvars(self, config: ProvisioningConfig) -> Path:
        path = self.terraform_dir / TFVARS_FILE
        path.write_text(json.dumps(config.to_tfvars(), indent=2, sort_keys=True) + "\n")
        logger.debug(f"Wrote {path}")
        return path

    def plan(self, config: ProvisioningConfig | dict, destroy: bool = False) -> PlanSummary:
        """Plan changes for the given configuration and summarize them."""
        config = self.validate(config)
        self.init()
        self.write_tfvars(config)

        args = ["plan", "-input=false", "-no-color", "-detailed-exitcode", f"-out={PLAN_FILE}"]
        if destroy:
            args.append("-destroy")
        result = self.runner.run(["terraform", *args], cwd=self.terraform_dir, check=False)
        # -detailed-exitcode: 0 no changes, 1 error, 2 changes present
        if result.returncode == 1:
            raise ProvisionError("Terraform plan failed", result.output())
        if result.returncode == 0:
            logger.info("Terraform plan: no changes")
            return PlanSummary()

        shown = self._terraform(["show", "-json", PLAN_FILE], "show")
        try:
            plan = json.loads(shown.stdout)
        except json.JSONDecodeError as e:
            raise ProvisionError("Failed to parse Terraform plan output", str(e))

        summary = PlanSummary(
            changes=[
                ResourceChange(address=rc["address"], actions=list(rc["change"]["actions"]))
                for rc in plan.get("resource_changes", [])
            ]
        )
        logger.info(
            f"Terraform plan: {summary.count('create')} to create, "
            f"{summary.count('update')} to update, {summary.count('replace')} to replace, "
            f"{summary.count('delete')} to delete"
        )
        return summary

    def apply(
        self, config: ProvisioningConfig | dict, allow_replace: bool = False
    ) -> InfrastructureState:
        """Converge infrastructure to the configuration.

        Re-applying an unchanged configuration issues no apply. Plans that
        would replace or delete resources are refused unless allow_replace.

        Raises:
            InvalidConfigError: Before any external call, on invalid settings
            ProvisionError: On engine failure or a refused destructive plan
        """
        summary = self.plan(config)
        if not summary.has_changes:
            return self.outputs()

        if summary.destructive and not allow_replace:
            raise ProvisionError(
                "Plan would replace or delete existing resources",
                summary.describe() + "\n\nReview the plan and re-run with --allow-replace",
                resources=[c.address for c in summary.destructive],
            )

        logger.info("Applying Terraform plan")
        try:
            self.runner.run(
                ["terraform", "apply", "-input=false", "-no-color", PLAN_FILE],
                cwd=self.terraform_dir,
            )
        except CommandError as e:
            present = self.resources()
            raise ProvisionError(
                "Terraform apply failed",
                f"{e.details or e.message}\n\nResources currently in state:\n"
                + ("\n".join(f"  {r}" for r in present) or "  none")
                + "\n\nFix the cause and apply again; Terraform resumes from partial state.",
                resources=present,
            )
        return self.outputs()

    def outputs(self) -> InfrastructureState:
        """Read the provisioned instance's identifiers from Terraform outputs."""
        result = self._terraform(["output", "-json"], "output")
        try:
            data = json.loads(result.stdout or "{}")
            return InfrastructureState.from_outputs(data)
        except json.JSONDecodeError as e:
            raise ProvisionError("Failed to parse Terraform outputs", str(e))
        except ValidationError as e:
            raise ProvisionError(
                "Terraform outputs are incomplete",
                format_validation_errors(e) + "\n\nHas the infrastructure been provisioned?",
            )

    def resources(self) -> list[str]:
        """Resource addresses currently tracked in Terraform state."""
        result = self.runner.run(
            ["terraform", "state", "list"], cwd=self.terraform_dir, check=False
        )
        if not result.ok:
            # No state file yet
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def destroy(
        self, state: InfrastructureState | None = None, config: ProvisioningConfig | dict | None = None
    ) -> None:
        """Destroy all managed resources. Succeeds if they are already gone."""
        if config is not None:
            config = self.validate(config)
        self.init()

        present = self.resources()
        if not present:
            logger.info("No resources in Terraform state; nothing to destroy")
            return

        if config is not None:
            self.write_tfvars(config)
        elif not (self.terraform_dir / TFVARS_FILE).exists():
            raise ProvisionError(
                "No variables available for destroy",
                f"{TFVARS_FILE} is missing from {self.terraform_dir}; pass the configuration",
            )

        target = f" for {state.instance_id}" if state else ""
        logger.info(f"Destroying {len(present)} resources{target}")
        self._terraform(["destroy", "-auto-approve", "-input=false", "-no-color"], "destroy")
