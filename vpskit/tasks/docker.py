"""
Docker Engine installation from the official apt repository, and the
rollback that hands Docker's firewall rules back to iptables after they
were managed through nftables.
"""

import json
import os
from typing import List

from vpskit.errors import CommandError
from vpskit.files import has_managed_block, strip_managed_block
from vpskit.host import Host
from vpskit.report import Report
from vpskit.tasks.fail2ban import JAIL_LOCAL, set_banaction
from vpskit.templates import docker_apt_source
from vpskit.ui import console, print_section

DAEMON_JSON = "/etc/docker/daemon.json"
NFT_CONF = "/etc/nftables.conf"
KEYRING = "/etc/apt/keyrings/docker.asc"
APT_SOURCE = "/etc/apt/sources.list.d/docker.list"

NAT_TABLE = "docker_published_nat"
BLOCK_BEGIN = "# BEGIN DOCKER PUBLISHED DNAT (managed)"
BLOCK_END = "# END DOCKER PUBLISHED DNAT (managed)"

LEGACY_PACKAGES = ["docker", "docker-engine", "docker.io", "containerd", "runc"]
DOCKER_PACKAGES = [
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
]
SUPPORTED_DISTROS = ("debian", "ubuntu")
RESTART_SETTLE_SECONDS = 3


# ----------------------------------------------------------------
# Installation
# ----------------------------------------------------------------
def docker_version(host: Host) -> str:
    """Version from `docker --version`, e.g. "27.1.1"."""
    parts = host.runner.output(["docker", "--version"]).split()
    if len(parts) >= 3:
        return parts[2].rstrip(",")
    return "unknown"


def stop_running_containers(host: Host) -> List[str]:
    if not host.runner.exists("docker"):
        return []
    ids = host.runner.output(["docker", "ps", "-q"]).split()
    if ids:
        host.logger.warning(f"Stopping {len(ids)} running container(s) before reinstall")
        host.runner.ok(["docker", "stop"] + ids)
    return ids


def add_apt_repository(host: Host) -> None:
    os_info = host.os_release()
    distro = os_info.id if os_info.id in SUPPORTED_DISTROS else "debian"
    arch = host.runner.output(["dpkg", "--print-architecture"]) or "amd64"

    host.makedirs("/etc/apt/keyrings", mode=0o755)
    if not host.download(f"https://download.docker.com/linux/{distro}/gpg", KEYRING):
        host.logger.warning("Could not download the Docker apt key")
    host.chmod(KEYRING, 0o644)
    host.write_text(APT_SOURCE, docker_apt_source(arch, distro, os_info.codename))


def install_docker(host: Host, report: Report) -> bool:
    """Install Docker CE with the compose and buildx plugins."""
    stop_running_containers(host)
    host.apt.remove(LEGACY_PACKAGES, check=False)
    add_apt_repository(host)
    host.apt.update(check=False)

    try:
        host.apt.install(DOCKER_PACKAGES)
    except CommandError as e:
        host.logger.debug(f"{e}")
        report.fail("Docker", "install from the official repository failed")
        return False

    report.ok("Docker", docker_version(host))
    host.systemd.enable("docker")
    host.systemd.start("docker")

    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user and sudo_user != "root":
        if host.runner.ok(["usermod", "-aG", "docker", sudo_user]):
            host.logger.info(f"Added {sudo_user} to the docker group")
    return True


def run_docker_install(host: Host, report: Report) -> Report:
    print_section("Docker")
    install_docker(host, report)
    report.ok("Docker Compose", "bundled with docker-ce (v2 plugin)")
    return report


# ----------------------------------------------------------------
# iptables rollback
# ----------------------------------------------------------------
def write_daemon_json(
    host: Host, report: Report, userland_proxy: bool, ip6tables: bool
) -> None:
    config = {
        "iptables": True,
        "ip6tables": ip6tables,
        "userland-proxy": userland_proxy,
    }
    try:
        host.write_text(DAEMON_JSON, json.dumps(config, indent=2) + "\n")
    except OSError as e:
        report.fail(DAEMON_JSON, f"write failed: {e}")
        return
    report.ok(DAEMON_JSON, "iptables=true")


def restart_docker(host: Host, report: Report) -> None:
    if not host.systemd.restart("docker"):
        report.fail("docker restart", "failed; check systemctl status docker")
        return
    report.ok("docker restart")
    host.sleep(RESTART_SETTLE_SECONDS)
    if host.systemd.is_active("docker"):
        report.ok("docker service", "active")
    else:
        report.warn("docker service", "not active after restart; check docker logs")


def drop_runtime_nat_table(host: Host, report: Report) -> None:
    if not host.runner.ok(["nft", "list", "table", "ip", NAT_TABLE], query=True):
        report.warn(f"nft table {NAT_TABLE}", "not present at runtime; skipped")
        return
    if host.runner.ok(["nft", "delete", "table", "ip", NAT_TABLE]):
        report.ok(f"nft table {NAT_TABLE}", "removed")
    else:
        report.warn(f"nft table {NAT_TABLE}", "delete failed")


def strip_nftables_block(host: Host, report: Report) -> None:
    text = host.read(NFT_CONF)
    if text is None:
        report.warn(NFT_CONF, "not found; skipped")
        return
    if not has_managed_block(text, BLOCK_BEGIN):
        report.warn(NFT_CONF, "no managed DOCKER PUBLISHED DNAT block; skipped")
        return
    try:
        host.write_text(NFT_CONF, strip_managed_block(text, BLOCK_BEGIN, BLOCK_END))
    except OSError as e:
        report.warn(NFT_CONF, f"edit failed ({e}); clean it up by hand")
        return
    report.ok(NFT_CONF, "managed DNAT block removed")
    if host.runner.ok(["nft", "-f", str(host.path(NFT_CONF))]):
        report.ok(f"reload {NFT_CONF}")
    else:
        report.warn(f"reload {NFT_CONF}", "failed; verify with nft list ruleset")


def quick_checks(host: Host) -> None:
    print_section("Quick check")
    checks = [
        (["iptables", "-t", "nat", "-L", "-n", "-v"], 50),
        (["nft", "list", "ruleset"], 80),
        (["docker", "ps", "--format", "table {{.ID}}\t{{.Names}}\t{{.Ports}}"], None),
    ]
    for cmd, head in checks:
        if not host.runner.exists(cmd[0]):
            console.print(f"{cmd[0]} is not available")
            continue
        output = host.runner.output(cmd)
        lines = output.splitlines()
        if head is not None:
            lines = lines[:head]
        console.print(f"[bold]$ {' '.join(cmd)}[/bold]")
        console.print("\n".join(lines), markup=False, highlight=False)
        console.print()


def run_revert_iptables(
    host: Host,
    report: Report,
    userland_proxy: bool = False,
    ip6tables: bool = True,
) -> Report:
    """Switch Docker back to iptables and clean up the nftables DNAT setup."""
    print_section("Backups")
    for path in (DAEMON_JSON, NFT_CONF, JAIL_LOCAL):
        backup = host.backup(path)
        if backup is None:
            report.warn(f"backup {path}", "file not found; skipped")
        else:
            report.ok(f"backup {path}", str(backup))

    print_section("Docker daemon")
    write_daemon_json(host, report, userland_proxy, ip6tables)
    restart_docker(host, report)

    print_section("nftables")
    drop_runtime_nat_table(host, report)
    strip_nftables_block(host, report)

    print_section("Fail2Ban")
    set_banaction(host, report)

    quick_checks(host)
    return report
