"""
Daily clock correction with ntpdate.

The installer sets the timezone, installs ntpdate and a cron.daily entry
that calls `vpskit timesync sync`, which tries each server in order and
stops at the first one that answers.
"""

import datetime
import os
from typing import List, Optional, Sequence

from vpskit.errors import CommandError, TaskError
from vpskit.host import Host
from vpskit.report import Report
from vpskit.tasks import vpskit_invocation
from vpskit.templates import cron_job
from vpskit.ui import print_section

CRON_SCRIPT = "/etc/cron.daily/ntpdate-sync"
SYNC_LOG = "/var/log/ntpdate-sync.log"

# Cloudflare first; Google, pool.ntp.org and Aliyun (mainland China) as backups.
NTP_SERVERS: List[str] = [
    "time.cloudflare.com",
    "time.google.com",
    "0.pool.ntp.org",
    "ntp1.aliyun.com",
]

TIMEZONE_MESSAGES = {
    "already": "already {tz}",
    "set": "set to {tz}",
    "localtime": "set to {tz} via /etc/localtime",
}


def _stamp() -> str:
    return datetime.datetime.now().astimezone().isoformat(timespec="seconds")


def _append_log(host: Host, lines: Sequence[str]) -> None:
    if host.dry_run:
        return
    log_path = host.path(SYNC_LOG)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "a", encoding="utf-8") as f:
        for line in lines:
            f.write(line.rstrip("\n") + "\n")


def sync_time(host: Host, servers: Optional[Sequence[str]] = None) -> Optional[str]:
    """
    Try `ntpdate -u` against each server in order.

    Returns:
        The server that succeeded, or None when all of them failed.
    """
    servers = list(servers or NTP_SERVERS)
    _append_log(host, [f"=== {_stamp()} ntpdate-sync start ==="])
    used = None
    for server in servers:
        _append_log(host, [f"{_stamp()} try: {server}"])
        try:
            # -u: unprivileged source port, passes most firewalls
            result = host.runner.run(["ntpdate", "-u", server], check=False, timeout=60)
        except CommandError as e:
            _append_log(host, [str(e), f"{_stamp()} fail: {server}"])
            continue
        output = (result.stdout or "") + (result.stderr or "")
        if output.strip():
            _append_log(host, [output.strip()])
        if result.returncode == 0:
            _append_log(host, [f"{_stamp()} success: {server}"])
            host.logger.info(f"Clock synchronised against {server}")
            used = server
            break
        _append_log(host, [f"{_stamp()} fail: {server}"])
        host.logger.warning(f"ntpdate against {server} failed")
    _append_log(host, [f"=== {_stamp()} ntpdate-sync end ==="])
    return used


def ensure_ntpdate(host: Host, report: Report) -> None:
    if host.runner.exists("ntpdate"):
        report.ok("ntpdate", "already installed")
        return
    if not host.apt.update(check=False):
        host.logger.warning("apt-get update failed; trying install from cache")
    try:
        host.apt.install(["ntpdate"], no_recommends=True)
    except CommandError as e:
        report.fail("ntpdate", "apt install failed")
        raise TaskError(
            f"ntpdate installation failed, check network/repositories: {e}",
            exit_code=2,
        )
    report.ok("ntpdate", f"installed {host.apt.version('ntpdate')}")


def install_cron(host: Host, report: Report) -> bool:
    """Install the daily sync entry. Returns True when the file was (re)written."""
    content = cron_job(
        "Daily clock sync with ntpdate, servers tried in order",
        vpskit_invocation(["timesync", "sync"]),
    )
    existing = host.read(CRON_SCRIPT)
    if existing is not None and existing != content:
        host.logger.warning(f"Replacing a different {CRON_SCRIPT} with the managed version")
    changed = host.write_text(CRON_SCRIPT, content, mode=0o755)
    if changed:
        report.ok("cron.daily", f"installed {CRON_SCRIPT}")
    else:
        report.ok("cron.daily", f"{CRON_SCRIPT} unchanged")
    return changed


def ensure_sync_log(host: Host) -> None:
    if host.dry_run:
        return
    log_path = host.path(SYNC_LOG)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_path.touch(exist_ok=True)
    os.chmod(log_path, 0o644)
    if host.settings.is_live_root and os.geteuid() == 0:
        os.chown(log_path, 0, 0)


def run_timesync_install(
    host: Host, report: Report, servers: Optional[Sequence[str]] = None
) -> Report:
    """Install ntpdate, set the timezone and schedule a daily sync."""
    tz = host.settings.timezone
    os_info = host.os_release()
    host.logger.info(f"Detected system: {os_info}")

    print_section("ntpdate")
    ensure_ntpdate(host, report)

    print_section("Timezone")
    try:
        outcome = host.set_timezone(tz)
    except CommandError as e:
        report.warn("timezone", f"could not set {tz}: {e}")
    else:
        if outcome == "skipped":
            report.warn("timezone", f"zoneinfo for {tz} not found; skipped")
        else:
            report.ok("timezone", TIMEZONE_MESSAGES[outcome].format(tz=tz))

    print_section("Daily sync")
    install_cron(host, report)
    ensure_sync_log(host)

    print_section("Immediate sync")
    used = sync_time(host, servers)
    if used:
        report.ok("sync now", f"via {used}")
    else:
        report.warn("sync now", f"all servers failed; see {SYNC_LOG}")

    host.logger.info(f"Servers (in order): {' '.join(servers or NTP_SERVERS)}")
    host.logger.info(
        "After restoring a VPS snapshot, run: ntpdate -u time.cloudflare.com"
    )
    return report
