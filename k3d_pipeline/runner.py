"""Execution of external command-line tools."""

import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path

from k3d_pipeline.exceptions import CommandError, CommandTimeoutError, ToolNotFoundError
from k3d_pipeline.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class CommandResult:
    """Result of one command execution, local or remote."""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    host: str = field(default="localhost")

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command(self) -> str:
        return shlex.join(self.args)

    def output(self) -> str:
        """Combined output for error reports, stderr first."""
        return "\n".join(part for part in (self.stderr.strip(), self.stdout.strip()) if part)


class CommandRunner:
    """Runs commands and reports results.

    Subclasses implement `_execute`; `run` adds logging and failure handling.
    """

    host = "localhost"
    local = True

    def run(
        self,
        args: list[str],
        *,
        timeout: float | None = None,
        check: bool = True,
        input: str | None = None,
        cwd: Path | None = None,
    ) -> CommandResult:
        """Run a command.

        Args:
            args: Program and arguments
            timeout: Seconds before giving up; the command may keep running
            check: Raise CommandError on a non-zero exit code
            input: Text written to the command's stdin
            cwd: Working directory

        Returns:
            CommandResult

        Raises:
            ToolNotFoundError: If the program cannot be found
            CommandTimeoutError: If the command did not finish in time
            CommandError: If check is set and the command failed
        """
        logger.debug(f"[{self.host}] $ {shlex.join(args)}")
        result = self._execute(list(args), timeout=timeout, input=input, cwd=cwd)
        logger.debug(f"[{self.host}] exit {result.returncode} in {result.duration:.1f}s")

        if check and not result.ok:
            raise CommandError(
                f"Command failed on {self.host}: {result.command}",
                f"Exit code: {result.returncode}\n{result.output()}",
                result=result,
            )
        return result

    def which(self, name: str) -> str | None:
        """Resolve a program on the execution path."""
        raise NotImplementedError

    def _execute(
        self, args: list[str], *, timeout: float | None, input: str | None, cwd: Path | None
    ) -> CommandResult:
        raise NotImplementedError


class LocalRunner(CommandRunner):
    """Runs commands on this machine with subprocess."""

    def which(self, name: str) -> str | None:
        return shutil.which(name)

    def _execute(
        self, args: list[str], *, timeout: float | None, input: str | None, cwd: Path | None
    ) -> CommandResult:
        start_time = time.monotonic()
        try:
            proc = subprocess.run(
                args,
                capture_output=True,
                text=True,
                input=input,
                cwd=cwd,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError:
            raise ToolNotFoundError(
                f"{args[0]} is not installed or not in PATH",
                f"Install {args[0]} or run the bootstrap stage on the target host",
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeoutError(
                f"Command timed out after {timeout}s: {shlex.join(args)}",
                "The command may still be running. Check before re-running it.",
                result=CommandResult(
                    args=args,
                    returncode=-1,
                    stdout=_text(e.stdout),
                    stderr=_text(e.stderr),
                    duration=time.monotonic() - start_time,
                ),
            )

        return CommandResult(
            args=args,
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            duration=time.monotonic() - start_time,
        )


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value
