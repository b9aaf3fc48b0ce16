"""
First-boot setup for a fresh VPS: system upgrade, timezone, base tools,
rsyslog/nftables, Fail2Ban and Docker, with a per-item summary.
"""

from typing import Iterable

from vpskit.errors import CommandError
from vpskit.host import Host
from vpskit.report import Report
from vpskit.tasks.docker import install_docker
from vpskit.tasks.fail2ban import fail2ban_version
from vpskit.ui import print_section, print_warning


def upgrade_system(host: Host, report: Report) -> None:
    try:
        host.apt.update()
        host.apt.upgrade()
    except CommandError as e:
        host.logger.debug(f"{e}")
        report.fail("System upgrade", "apt command failed")
        return
    report.ok("System upgrade")


def set_timezone(host: Host, report: Report) -> None:
    tz = host.settings.timezone
    try:
        outcome = host.set_timezone(tz)
    except CommandError as e:
        host.logger.warning(f"Timezone may not be set (timedatectl unsupported?): {e}")
    else:
        if outcome == "skipped":
            host.logger.warning(f"No zoneinfo for {tz}; timezone unchanged")
    report.ok("Timezone", tz)


def install_packages(
    host: Host, packages: Iterable[str], report: Report, enable: bool = False
) -> None:
    """Install packages one at a time so one failure does not block the rest."""
    for pkg in packages:
        if not host.apt.install([pkg], check=False):
            report.fail(pkg, "apt install failed")
            continue
        report.ok(pkg, host.apt.version(pkg))
        if enable:
            host.systemd.enable(pkg)
            host.systemd.start(pkg)


def install_fail2ban(host: Host, report: Report) -> None:
    if not host.apt.install(["fail2ban"], check=False):
        report.fail("Fail2Ban", "apt install failed")
        return
    report.ok("Fail2Ban", fail2ban_version(host))
    host.systemd.enable("fail2ban")
    host.systemd.start("fail2ban")


def run_bootstrap(host: Host, report: Report) -> Report:
    """Install or upgrade the baseline VPS environment."""
    print_section("System upgrade")
    upgrade_system(host, report)

    print_section("Timezone")
    set_timezone(host, report)

    print_section("Base tools")
    install_packages(host, host.settings.basic_packages, report)

    print_section("System services")
    install_packages(host, host.settings.service_packages, report, enable=True)

    print_section("Fail2Ban")
    install_fail2ban(host, report)

    print_section("Docker")
    install_docker(host, report)
    report.ok("Docker Compose", "bundled with docker-ce (v2 plugin)")
    return report


def finish_bootstrap() -> None:
    print_warning("Reboot to apply all changes: sudo reboot")
