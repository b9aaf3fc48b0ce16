"""Provisioning tasks. Each module exposes one or more run_* entry points."""

import shlex
import sys
from typing import List


def vpskit_invocation(args: List[str]) -> str:
    """Shell command line that re-enters vpskit with the current interpreter."""
    return " ".join(shlex.quote(a) for a in [sys.executable, "-m", "vpskit"] + args)
