"""Custom exceptions for the provisioning pipeline."""


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class CommandError(PipelineError):
    """Exception raised when an external command exits non-zero."""

    def __init__(self, message: str, details: str = None, result=None):
        self.result = result
        super().__init__(message, details)


class CommandTimeoutError(CommandError):
    """Exception raised when an external command does not finish in time.

    The command may still be running on the host that executes it.
    """

    may_still_be_running = True


class ToolNotFoundError(CommandError):
    """Exception raised when an external tool is not on the execution path."""

    pass


class ConfigurationError(PipelineError):
    """Exception raised for configuration file errors."""

    pass


class InvalidConfigError(ConfigurationError):
    """Exception raised when provisioning configuration fails validation.

    Raised before any external call is made.
    """

    pass


class ProvisionError(PipelineError):
    """Exception raised for infrastructure engine failures."""

    def __init__(self, message: str, details: str = None, resources: list[str] | None = None):
        self.resources = list(resources or [])
        super().__init__(message, details)


class BootstrapError(PipelineError):
    """Exception raised when a remote bootstrap step fails."""

    def __init__(self, stage: str, underlying: Exception | str, details: str = None):
        self.stage = stage
        self.underlying = underlying
        super().__init__(f"Bootstrap step '{stage}' failed: {underlying}", details)


class BootstrapTimeoutError(BootstrapError):
    """Exception raised when a bootstrap step times out.

    The remote installation may complete after the caller gives up.
    """

    may_still_be_running = True


class ClusterError(PipelineError):
    """Exception raised for cluster lifecycle errors."""

    pass


class ClusterCreationError(ClusterError):
    """Exception raised when the cluster CLI fails to create a cluster."""

    pass


class ClusterTimeoutError(ClusterError):
    """Exception raised when cluster nodes are not ready before the deadline."""

    may_still_be_running = True


class ApplyError(PipelineError):
    """Exception raised when a manifest fails to apply.

    Attributes:
        failed: Name of the first failing manifest entry
        applied: Entries applied before the failure
        not_attempted: Entries that were never issued
        timed_out: True when the failure was a rollout wait timeout
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        failed: str | None = None,
        applied: list[str] | None = None,
        not_attempted: list[str] | None = None,
        timed_out: bool = False,
    ):
        self.failed = failed
        self.applied = list(applied or [])
        self.not_attempted = list(not_attempted or [])
        self.timed_out = timed_out
        super().__init__(message, details)


class ManifestOrderError(ApplyError):
    """Exception raised when a manifest set violates its ordering invariant."""

    pass


class TeardownError(PipelineError):
    """Exception raised when teardown cannot complete."""

    def __init__(self, step: str, message: str, details: str = None):
        self.step = step
        super().__init__(message, details)


class StageCancelledError(PipelineError):
    """Exception raised when a caller cancels a stage between steps."""

    def __init__(self, stage: str, completed: list[str], remaining: list[str]):
        self.stage = stage
        self.completed = list(completed)
        self.remaining = list(remaining)
        super().__init__(
            f"Stage '{stage}' cancelled",
            f"Completed: {', '.join(completed) or 'none'}\n"
            f"Not started: {', '.join(remaining) or 'none'}",
        )
