"""
Command-line entry point.

    vpskit [options] init
    vpskit [options] dnscrypt {install,quick,maint}
    vpskit [options] fail2ban
    vpskit [options] timesync {install,sync}
    vpskit [options] panels
    vpskit [options] docker {install,revert-iptables}
"""

import argparse
import atexit
import datetime
import json
import logging
import shutil
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from vpskit import APP_NAME, LOGGER_NAME, VERSION
from vpskit.config import Settings
from vpskit.errors import TaskError, VpskitError
from vpskit.files import pop_temp_dirs
from vpskit.host import Host
from vpskit.logger import setup_logger
from vpskit.report import Report
from vpskit.tasks import bootstrap, dnscrypt, docker, fail2ban, panels, timesync
from vpskit.ui import console, create_header, print_error, print_success, print_warning


# ----------------------------------------------------------------
# Signal Handling and Cleanup
# ----------------------------------------------------------------
def cleanup_temp_files() -> None:
    """Remove temporary directories this process created and left behind."""
    for item in pop_temp_dirs():
        if not item.exists():
            continue
        try:
            shutil.rmtree(item)
        except OSError as e:
            logging.getLogger(LOGGER_NAME).warning(f"Failed to clean up {item}: {e}")


def signal_handler(signum: int, frame: Any) -> None:
    try:
        sig_name = signal.Signals(signum).name
    except ValueError:
        sig_name = f"signal {signum}"
    print_warning(f"Interrupted by {sig_name}")
    sys.exit(130 if signum == signal.SIGINT else 143 if signum == signal.SIGTERM else 128 + signum)


def setup_signal_handlers() -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, signal_handler)


# ----------------------------------------------------------------
# Command handlers
# ----------------------------------------------------------------
# Each handler returns the process exit status.
def cmd_init(host: Host, report: Report, args: argparse.Namespace) -> int:
    bootstrap.run_bootstrap(host, report)
    bootstrap.finish_bootstrap()
    return 0


def cmd_dnscrypt_install(host: Host, report: Report, args: argparse.Namespace) -> int:
    return 0 if dnscrypt.run_dnscrypt_install(host, report) else 1


def cmd_dnscrypt_quick(host: Host, report: Report, args: argparse.Namespace) -> int:
    return 0 if dnscrypt.run_dnscrypt_quick(host, report) else 1


def cmd_dnscrypt_maint(host: Host, report: Report, args: argparse.Namespace) -> int:
    updated = dnscrypt.refresh_lists(host)
    for name in updated:
        report.ok(f"{name}.md", "updated")
    if not updated:
        report.ok("resolver lists", "unchanged")
    return 0


def cmd_fail2ban(host: Host, report: Report, args: argparse.Namespace) -> int:
    options = fail2ban.Fail2BanOptions(
        bantime=args.bantime,
        findtime=args.findtime,
        maxretry=args.maxretry,
    )
    if args.ignoreip:
        options.ignoreip = args.ignoreip
    fail2ban.run_fail2ban(host, report, options)
    return 1 if report.has_failures else 0


def cmd_timesync_install(host: Host, report: Report, args: argparse.Namespace) -> int:
    timesync.run_timesync_install(host, report, args.servers or None)
    return 0


def cmd_timesync_sync(host: Host, report: Report, args: argparse.Namespace) -> int:
    used = timesync.sync_time(host, args.servers or None)
    if used:
        report.ok("sync", f"via {used}")
        return 0
    report.fail("sync", "all servers failed")
    return 1


def cmd_panels(host: Host, report: Report, args: argparse.Namespace) -> int:
    panels.run_panels(host, report)
    return 0


def cmd_docker_install(host: Host, report: Report, args: argparse.Namespace) -> int:
    docker.run_docker_install(host, report)
    return 1 if report.has_failures else 0


def cmd_docker_revert(host: Host, report: Report, args: argparse.Namespace) -> int:
    docker.run_revert_iptables(
        host,
        report,
        userland_proxy=args.userland_proxy,
        ip6tables=not args.no_ip6tables,
    )
    return 0


Handler = Callable[[Host, Report, argparse.Namespace], int]

# command key -> (report title, handler)
COMMANDS: Dict[str, Tuple[str, Handler]] = {
    "init": ("VPS Environment Setup", cmd_init),
    "dnscrypt.install": ("DNSCrypt Install", cmd_dnscrypt_install),
    "dnscrypt.quick": ("DNSCrypt Quick Install", cmd_dnscrypt_quick),
    "dnscrypt.maint": ("DNSCrypt List Refresh", cmd_dnscrypt_maint),
    "fail2ban": ("Fail2Ban Setup", cmd_fail2ban),
    "timesync.install": ("Daily Time Sync", cmd_timesync_install),
    "timesync.sync": ("Time Sync", cmd_timesync_sync),
    "panels": ("Panel Updates", cmd_panels),
    "docker.install": ("Docker Install", cmd_docker_install),
    "docker.revert-iptables": ("Docker iptables Rollback", cmd_docker_revert),
}

# Commands run unattended from cron: no banner, no summary table.
QUIET_COMMANDS = ("dnscrypt.maint", "timesync.sync")


# ----------------------------------------------------------------
# Argument parsing
# ----------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Non-interactive provisioning for Debian/Ubuntu VPS hosts.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("--root", type=Path, help="Manage a filesystem tree mounted here")
    parser.add_argument("--timezone", help="Timezone to configure")
    parser.add_argument("--timeout", type=int, help="Per-command timeout in seconds")
    parser.add_argument("--log-file", type=Path, help="Write the log here")
    parser.add_argument("--dry-run", action="store_true", help="Log actions without changing anything")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output")
    parser.add_argument("--no-banner", action="store_true", help="Skip the ASCII banner")
    parser.add_argument("--json", action="store_true", help="Print the result report as JSON")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    sub.add_parser("init", help="Upgrade the system and install base tools, Fail2Ban and Docker")

    p_dns = sub.add_parser("dnscrypt", help="DNSCrypt proxy")
    dns_sub = p_dns.add_subparsers(dest="action", metavar="ACTION")
    dns_sub.required = True
    dns_sub.add_parser("install", help="Full install with signed v3 lists and port conflict handling")
    dns_sub.add_parser("quick", help="Packaged install with a tuned stock config")
    dns_sub.add_parser("maint", help="Refresh resolver lists (run weekly from cron)")

    p_f2b = sub.add_parser("fail2ban", help="Install Fail2Ban with SSH and recidive jails")
    p_f2b.add_argument("--bantime", default="1h")
    p_f2b.add_argument("--findtime", default="10m")
    p_f2b.add_argument("--maxretry", type=int, default=5)
    p_f2b.add_argument(
        "--ignoreip", nargs="+", metavar="CIDR", help="Addresses never banned"
    )

    p_ts = sub.add_parser("timesync", help="Daily ntpdate clock sync")
    ts_sub = p_ts.add_subparsers(dest="action", metavar="ACTION")
    ts_sub.required = True
    for name, help_text in (
        ("install", "Install ntpdate, set the timezone and schedule a daily sync"),
        ("sync", "Sync the clock now (run daily from cron)"),
    ):
        p = ts_sub.add_parser(name, help=help_text)
        p.add_argument("--server", dest="servers", action="append", metavar="HOST")

    sub.add_parser("panels", help="Update x-ui and s-ui panels when installed")

    p_docker = sub.add_parser("docker", help="Docker Engine")
    docker_sub = p_docker.add_subparsers(dest="action", metavar="ACTION")
    docker_sub.required = True
    docker_sub.add_parser("install", help="Install Docker CE from the official repository")
    p_rev = docker_sub.add_parser(
        "revert-iptables", help="Hand Docker networking back to iptables"
    )
    p_rev.add_argument("--userland-proxy", action="store_true", help="Enable docker-proxy")
    p_rev.add_argument("--no-ip6tables", action="store_true", help="Leave ip6tables disabled")

    return parser


def command_key(args: argparse.Namespace) -> str:
    action = getattr(args, "action", None)
    return f"{args.command}.{action}" if action else args.command


def settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if args.root is not None:
        settings.root = args.root
    if args.timezone:
        settings.timezone = args.timezone
    if args.timeout:
        settings.timeout = args.timeout
    if args.log_file is not None:
        settings.log_file = args.log_file
    settings.dry_run = settings.dry_run or args.dry_run
    settings.verbose = args.verbose
    return settings


# ----------------------------------------------------------------
# Main
# ----------------------------------------------------------------
def main(argv: Optional[List[str]] = None, host: Optional[Host] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    key = command_key(args)
    title, handler = COMMANDS[key]

    try:
        settings = host.settings if host is not None else settings_from_args(args)
    except ValueError as e:
        print_error(str(e))
        return 2

    quiet = key in QUIET_COMMANDS
    if not (args.no_banner or quiet or args.json):
        console.print(create_header())

    started = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
    logger = setup_logger(settings.log_path(key, started), settings.verbose)
    if host is None:
        host = Host(settings, logger=logger)

    setup_signal_handlers()
    atexit.register(cleanup_temp_files)

    report = Report(title)
    logger.info(f"{APP_NAME} {VERSION}: {key} started")
    try:
        host.require_root()
        exit_code = handler(host, report, args)
    except TaskError as e:
        print_error(str(e))
        exit_code = e.exit_code
    except VpskitError as e:
        print_error(str(e))
        exit_code = 1
    except KeyboardInterrupt:
        print_warning("Received keyboard interrupt, shutting down...")
        exit_code = 130

    if args.json:
        data = report.to_dict()
        data["exit_code"] = exit_code
        console.print_json(json.dumps(data))
    elif not quiet and report.entries:
        report.render()

    if exit_code == 0:
        if not quiet:
            print_success(f"{title} finished.")
    else:
        print_error(f"{title} finished with exit code {exit_code}.")
    logger.info(f"{key} finished with exit code {exit_code}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
