"""
Thin wrappers over apt/dpkg and systemctl/journalctl.
"""

from typing import Iterable, List

from vpskit.runner import Runner

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class Apt:
    """Non-interactive apt-get and dpkg queries."""

    def __init__(self, runner: Runner):
        self.runner = runner

    def update(self, check: bool = True) -> bool:
        return self._run(["apt-get", "update", "-qq"], check)

    def upgrade(self, check: bool = True) -> bool:
        return self._run(["apt-get", "upgrade", "-y", "-qq"], check)

    def install(
        self, packages: Iterable[str], no_recommends: bool = False, check: bool = True
    ) -> bool:
        cmd = ["apt-get", "install", "-y"]
        if no_recommends:
            cmd.append("--no-install-recommends")
        return self._run(cmd + list(packages), check)

    def remove(self, packages: Iterable[str], purge: bool = False, check: bool = True) -> bool:
        cmd = ["apt-get", "remove", "-y"]
        if purge:
            cmd.insert(2, "--purge")
        return self._run(cmd + list(packages), check)

    def autoremove(self, purge: bool = False, check: bool = True) -> bool:
        cmd = ["apt-get", "autoremove", "-y"]
        if purge:
            cmd.append("--purge")
        return self._run(cmd, check)

    def is_installed(self, package: str) -> bool:
        status = self.runner.output(["dpkg-query", "-W", "-f=${Status}", package])
        return status.endswith("installed") and "not-installed" not in status

    def version(self, package: str) -> str:
        """Installed version of a package, or "unknown"."""
        version = self.runner.output(["dpkg-query", "-W", "-f=${Version}", package])
        return version or "unknown"

    def _run(self, cmd: List[str], check: bool) -> bool:
        if check:
            self.runner.run(cmd, env=APT_ENV)
            return True
        return self.runner.ok(cmd, env=APT_ENV)


class Systemd:
    """systemctl and journalctl helpers. Mutations never raise."""

    def __init__(self, runner: Runner):
        self.runner = runner

    def daemon_reload(self) -> bool:
        return self.runner.ok(["systemctl", "daemon-reload"])

    def enable(self, unit: str, now: bool = False) -> bool:
        cmd = ["systemctl", "enable"]
        if now:
            cmd.append("--now")
        return self.runner.ok(cmd + [unit])

    def start(self, unit: str) -> bool:
        return self.runner.ok(["systemctl", "start", unit])

    def stop(self, unit: str) -> bool:
        return self.runner.ok(["systemctl", "stop", unit])

    def restart(self, unit: str) -> bool:
        return self.runner.ok(["systemctl", "restart", unit])

    def is_active(self, unit: str) -> bool:
        return self.runner.ok(["systemctl", "is-active", "--quiet", unit], query=True)

    def is_enabled(self, unit: str) -> bool:
        return self.runner.ok(["systemctl", "is-enabled", "--quiet", unit], query=True)

    def journal(self, unit: str, lines: int = 40) -> str:
        return self.runner.output(
            ["journalctl", "-u", unit, "-n", str(lines), "-o", "cat", "--no-pager"]
        )
