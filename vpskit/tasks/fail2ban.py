"""
Fail2Ban installation: SSH jail, recidive jail for repeat offenders,
and banaction switching used when Docker goes back to iptables.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from vpskit.errors import CommandError, TaskError
from vpskit.files import set_ini_option
from vpskit.host import Host
from vpskit.report import Report
from vpskit.templates import (
    FAIL2BAN_RECIDIVE_FILTER,
    fail2ban_jail_local,
    fail2ban_recidive,
)
from vpskit.ui import display_panel, print_section, print_step

FAIL2BAN_DIR = "/etc/fail2ban"
JAIL_LOCAL = f"{FAIL2BAN_DIR}/jail.local"
RECIDIVE_LOCAL = f"{FAIL2BAN_DIR}/jail.d/recidive.local"
SSHD_FILTER = f"{FAIL2BAN_DIR}/filter.d/sshd.conf"
RECIDIVE_FILTER = f"{FAIL2BAN_DIR}/filter.d/recidive.conf"
AUTH_LOG = "/var/log/auth.log"

# Preferred first.
IPTABLES_BANACTIONS = ["iptables-multiport", "iptables"]

USAGE = """\
Useful commands:

  fail2ban-client status                      overall status
  fail2ban-client status sshd                 sshd jail, including "Banned IP list"
  fail2ban-client set sshd banip 1.2.3.4      ban an address now
  fail2ban-client set sshd unbanip 1.2.3.4    lift a ban
  tail -f /var/log/fail2ban.log               follow the log

The recidive jail re-bans addresses that keep getting banned by other
jails, for {recidive_days} days, using every port."""


@dataclass
class Fail2BanOptions:
    bantime: str = "1h"
    findtime: str = "10m"
    maxretry: int = 5
    ignoreip: List[str] = field(
        default_factory=lambda: ["127.0.0.1/8", "::1", "192.168.0.0/16"]
    )
    recidive_bantime: int = 604800  # 7 days, in seconds
    recidive_findtime: str = "2d"
    recidive_maxretry: int = 5


def fail2ban_version(host: Host) -> str:
    """Version token from `fail2ban-client --version`, e.g. "v1.0.2"."""
    output = host.runner.output(["fail2ban-client", "--version"])
    first = output.splitlines()[0] if output else ""
    parts = first.split()
    if len(parts) >= 2:
        return parts[1]
    return parts[0] if parts else "unknown"


def write_jails(host: Host, options: Fail2BanOptions, report: Report) -> None:
    """Write jail.local and the recidive jail."""
    auth_log: Optional[str] = AUTH_LOG if host.exists(AUTH_LOG) else None
    if auth_log is None:
        host.logger.info(f"{AUTH_LOG} not found; sshd jail will read the systemd journal.")
    host.write_text(
        JAIL_LOCAL,
        fail2ban_jail_local(
            options.bantime,
            options.findtime,
            options.maxretry,
            options.ignoreip,
            auth_log,
        ),
    )
    report.ok("jail.local", f"sshd jail, bantime {options.bantime}")

    host.makedirs(f"{FAIL2BAN_DIR}/jail.d")
    host.write_text(
        RECIDIVE_LOCAL,
        fail2ban_recidive(
            options.recidive_bantime,
            options.recidive_findtime,
            options.recidive_maxretry,
        ),
    )
    report.ok("recidive jail", f"bantime {options.recidive_bantime}s")


def ensure_filters(host: Host, report: Report) -> None:
    if not host.exists(SSHD_FILTER):
        report.warn("sshd filter", f"{SSHD_FILTER} is missing; the package should provide it")
    if not host.exists(RECIDIVE_FILTER):
        host.write_text(RECIDIVE_FILTER, FAIL2BAN_RECIDIVE_FILTER)
        report.ok("recidive filter", "wrote minimal filter")


def show_status(host: Host) -> None:
    """Print overall and sshd jail status; failures are not fatal."""
    for cmd in (["fail2ban-client", "status"], ["fail2ban-client", "status", "sshd"]):
        output = host.runner.output(cmd)
        if output:
            display_panel(output, title=" ".join(cmd))
        else:
            host.logger.warning(f"`{' '.join(cmd)}` returned no output")


def run_fail2ban(
    host: Host, report: Report, options: Optional[Fail2BanOptions] = None
) -> Report:
    """Install Fail2Ban and configure SSH plus recidive protection."""
    options = options or Fail2BanOptions()

    print_section("1/8 Install Fail2Ban")
    try:
        host.apt.update()
        host.apt.install(["fail2ban"])
    except CommandError as e:
        report.fail("fail2ban package", str(e))
        raise TaskError(f"Failed to install fail2ban: {e}")
    report.ok("fail2ban package", host.apt.version("fail2ban"))

    print_section("2/8 Back up existing configuration")
    backup_dir = f"/root/fail2ban-backup-{host.timestamp('%Y%m%d-%H%M%S')}"
    copied = host.backup_into(
        [
            f"{FAIL2BAN_DIR}/jail.conf",
            JAIL_LOCAL,
            f"{FAIL2BAN_DIR}/fail2ban.conf",
        ],
        backup_dir,
    )
    for source in copied:
        print_step(f"Backed up {source} -> {host.path(backup_dir)}")
    report.ok("backup", f"{len(copied)} file(s) in {backup_dir}")

    print_section("3-4/8 Write jails")
    write_jails(host, options, report)

    print_section("5/8 Check filters")
    ensure_filters(host, report)

    print_section("6/8 Start service")
    host.systemd.daemon_reload()
    host.systemd.enable("fail2ban", now=True)
    if host.systemd.restart("fail2ban"):
        report.ok("fail2ban service", "restarted")
    else:
        report.fail("fail2ban service", "restart failed; see journalctl -u fail2ban")

    print_section("7/8 Status")
    show_status(host)

    print_section("8/8 Usage")
    display_panel(
        USAGE.format(recidive_days=options.recidive_bantime // 86400),
        title="Fail2Ban",
    )
    display_panel(
        "systemctl stop fail2ban\n"
        f"cp -a {backup_dir}/* {FAIL2BAN_DIR}/\n"
        "systemctl start fail2ban",
        title="Rollback",
    )
    return report


def preferred_banaction(host: Host) -> Optional[str]:
    for action in IPTABLES_BANACTIONS:
        if host.exists(f"{FAIL2BAN_DIR}/action.d/{action}.conf"):
            return action
    return None


def set_banaction(host: Host, report: Report) -> Optional[str]:
    """
    Point fail2ban's default banaction at iptables when an iptables
    action is available, then reload fail2ban.

    Returns:
        The banaction written, or None when jail.local was left untouched.
    """
    action = preferred_banaction(host)
    if action is None:
        report.warn("fail2ban banaction", "no iptables action file found; left unchanged")
        return None

    current = host.read(JAIL_LOCAL) or ""
    host.write_text(JAIL_LOCAL, set_ini_option(current, "DEFAULT", "banaction", action))

    if host.runner.ok(["fail2ban-client", "reload"]):
        report.ok("fail2ban banaction", f"{action}, reloaded")
    elif host.systemd.restart("fail2ban"):
        report.ok("fail2ban banaction", f"{action}, restarted")
    else:
        report.warn(
            "fail2ban banaction",
            f"set to {action} but reload/restart failed; check journalctl -u fail2ban",
        )
    return action
