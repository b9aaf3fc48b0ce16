"""Exception hierarchy shared by the runner, host helpers and tasks."""

from typing import List, Optional


class VpskitError(Exception):
    """Base class for every error raised by vpskit."""


class CommandError(VpskitError):
    """A checked command exited non-zero, timed out or was not found."""

    def __init__(
        self,
        cmd: List[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        reason: Optional[str] = None,
    ):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        detail = reason or self.stderr.strip() or f"exit code {returncode}"
        super().__init__(f"{' '.join(self.cmd)}: {detail}")


class TaskError(VpskitError):
    """Fatal task failure; exit_code becomes the process exit status."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


class NotRootError(TaskError):
    def __init__(self, message: str = "This command must be run as root."):
        super().__init__(message, exit_code=1)
