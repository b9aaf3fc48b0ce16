"""
Command execution. Every system CLI call made by vpskit goes through a
Runner so it is logged, time-limited and skippable in dry-run mode.
"""

import logging
import os
import shutil
import subprocess
from typing import Dict, List, Optional

from vpskit import LOGGER_NAME
from vpskit.config import OPERATION_TIMEOUT
from vpskit.errors import CommandError

logger = logging.getLogger(LOGGER_NAME)


class Runner:
    """Runs system commands with captured text output."""

    def __init__(self, dry_run: bool = False, timeout: int = OPERATION_TIMEOUT):
        self.dry_run = dry_run
        self.timeout = timeout

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        input: Optional[str] = None,
        timeout: Optional[int] = None,
        env: Optional[Dict[str, str]] = None,
        query: bool = False,
    ) -> subprocess.CompletedProcess:
        """
        Run a command and return the completed process.

        Args:
            cmd: Command and arguments.
            check: Raise CommandError on a non-zero exit status.
            input: Text fed to the command's stdin.
            timeout: Seconds before the command is killed.
            env: Extra environment variables merged over os.environ.
            query: Read-only query; still executed in dry-run mode.

        Raises:
            CommandError: On timeout, missing executable, or (with check)
                a non-zero exit status.
        """
        cmd_str = " ".join(cmd)
        if self.dry_run and not query:
            logger.info(f"[dry-run] {cmd_str}")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        logger.debug(f"Executing: {cmd_str}")
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        limit = self.timeout if timeout is None else timeout
        try:
            result = subprocess.run(
                cmd,
                input=input,
                capture_output=True,
                text=True,
                timeout=limit,
                env=full_env,
            )
        except FileNotFoundError:
            raise CommandError(cmd, 127, reason="command not found")
        except subprocess.TimeoutExpired as e:
            logger.error(f"Command timed out after {limit} seconds: {cmd_str}")
            raise CommandError(
                cmd,
                124,
                stdout=_as_text(e.stdout),
                stderr=_as_text(e.stderr),
                reason=f"timed out after {limit} seconds",
            )

        if check and result.returncode != 0:
            logger.debug(f"Command failed: {cmd_str} with exit code {result.returncode}")
            logger.debug(f"Error: {result.stderr.strip()}")
            raise CommandError(cmd, result.returncode, result.stdout, result.stderr)
        return result

    def ok(self, cmd: List[str], **kwargs) -> bool:
        """Run a command and report whether it exited zero."""
        try:
            return self.run(cmd, check=False, **kwargs).returncode == 0
        except CommandError as e:
            logger.debug(f"{e}")
            return False

    def output(self, cmd: List[str], **kwargs) -> str:
        """Run a read-only command and return its stripped stdout, or ""."""
        kwargs.setdefault("query", True)
        try:
            result = self.run(cmd, check=False, **kwargs)
        except CommandError as e:
            logger.debug(f"{e}")
            return ""
        if result.returncode != 0:
            return ""
        return (result.stdout or "").strip()

    @staticmethod
    def exists(name: str) -> bool:
        return shutil.which(name) is not None


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
