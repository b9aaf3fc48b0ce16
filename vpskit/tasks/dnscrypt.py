"""
DNSCrypt proxy installation.

Full install (`dnscrypt install`): choose apt or GitHub releases by
distribution, remove dnsmasq, write an emergency config first so name
resolution never breaks, fetch the signed v3 resolver lists, write the
final config, start the service (moving to an alternate loopback address
when port 53 stays taken), point /etc/resolv.conf at the proxy and
schedule a weekly list refresh.

Quick install (`dnscrypt quick`): packaged dnscrypt-proxy with a few
keys tuned in its stock config.
"""

import re
import shutil
from typing import List, Optional

import requests

from vpskit import github
from vpskit.errors import CommandError, TaskError
from vpskit.files import (
    find_minisign_key,
    make_temp_dir,
    read_toml_value,
    set_conf_key,
    set_toml_key,
)
from vpskit.host import Host, OSInfo
from vpskit.report import Report
from vpskit.tasks import vpskit_invocation
from vpskit.templates import (
    DNSCRYPT_SYSTEMD_UNIT,
    OFFLINE_PUBLIC_RESOLVERS,
    cron_job,
    dnscrypt_config,
    dnscrypt_emergency_config,
    dnscrypt_source,
    resolv_conf,
)
from vpskit.ui import print_section, print_step

SERVICE = "dnscrypt-proxy"
CONFIG_DIR = "/etc/dnscrypt-proxy"
CONFIG_FILE = f"{CONFIG_DIR}/dnscrypt-proxy.toml"
MINISIGN_PUB = f"{CONFIG_DIR}/minisign.pub"
BINARY = "/usr/local/bin/dnscrypt-proxy"
UNIT_DIR = "/etc/systemd/system"
RESOLV_CONF = "/etc/resolv.conf"
RESOLVED_CONF = "/etc/systemd/resolved.conf"
MAINT_CRON = "/etc/cron.weekly/dnscrypt-maint"

GITHUB_REPO = "DNSCrypt/dnscrypt-proxy"
LISTS_BASE = "https://download.dnscrypt.info/dnscrypt-resolvers/v3"
LISTS_MIRROR = "https://raw.githubusercontent.com/DNSCrypt/dnscrypt-resolvers/master/v3"
# list name -> refresh_delay in hours
LISTS = {"public-resolvers": 72, "relays": 168}

PRIMARY_ADDRESS = "127.0.2.1"
ALTERNATE_ADDRESS = "127.0.3.1"
IPV6_LISTEN = "[::1]:53"
DEFAULT_SERVER_NAMES = "['cloudflare', 'google']"
UPSTREAM_FALLBACKS = ["1.1.1.1", "8.8.8.8"]

REQUIRED_TOOLS = {"curl": "curl", "wget": "wget", "jq": "jq", "tar": "tar", "ss": "iproute2"}
PORT_53_HOLDERS = ["dnsmasq", "systemd-resolved", "unbound", "bind9", "named"]
STARTUP_WAIT_SECONDS = 1
DOWNLOAD_TIMEOUT = 30


def listen(address: str) -> str:
    return f"{address}:53"


# ----------------------------------------------------------------
# Preparation
# ----------------------------------------------------------------
def ensure_tools(host: Host, report: Report) -> None:
    missing = sorted({pkg for tool, pkg in REQUIRED_TOOLS.items() if not host.runner.exists(tool)})
    if not missing:
        report.ok("tools", "all present")
        return
    print_step(f"Installing missing tools: {' '.join(missing)}")
    host.apt.update(check=False)
    if host.apt.install(missing, no_recommends=True, check=False):
        report.ok("tools", f"installed {' '.join(missing)}")
    else:
        report.warn("tools", f"could not install {' '.join(missing)}")


def choose_install_method(os_info: OSInfo) -> str:
    """"apt" for Debian 13 (trixie) and Ubuntu, "github" for everything else."""
    if os_info.id == "debian":
        if os_info.version_id == "13" or "trixie" in (os_info.version_id, os_info.codename):
            return "apt"
        return "github"
    if os_info.id == "ubuntu":
        return "apt"
    return "github"


def remove_dnsmasq(host: Host, report: Report) -> bool:
    if not (host.apt.is_installed("dnsmasq") or host.runner.exists("dnsmasq")):
        report.ok("dnsmasq", "not installed")
        return False
    print_step("dnsmasq found, removing it")
    host.systemd.stop("dnsmasq")
    host.apt.remove(["dnsmasq"], purge=True, check=False)
    host.apt.autoremove(purge=True, check=False)
    report.ok("dnsmasq", "removed")
    return True


# ----------------------------------------------------------------
# Installation
# ----------------------------------------------------------------
def install_via_apt(host: Host) -> bool:
    host.apt.update(check=False)
    return host.apt.install([SERVICE], check=False)


def install_from_github(host: Host) -> str:
    """
    Install the latest dnscrypt-proxy release binary and a systemd unit.

    Returns:
        The release tag installed.

    Raises:
        ReleaseError: exit code 2 for an unsupported architecture, 3 when
            no asset matches, 4 when the archive holds no binary.
    """
    arch = host.architecture()
    pattern = github.asset_pattern(arch)
    if pattern is None:
        raise github.ReleaseError(f"Unsupported architecture: {arch}", exit_code=2)

    try:
        release = github.latest_release(host.session, GITHUB_REPO)
    except requests.RequestException as e:
        raise github.ReleaseError(f"Could not query GitHub releases: {e}", exit_code=3)
    url = github.select_asset(release, pattern)
    if not url:
        raise github.ReleaseError(
            f"No release asset matches {pattern} for {arch}", exit_code=3
        )

    tag = release.get("tag_name", "latest")
    if host.dry_run:
        host.logger.info(f"[dry-run] install {url} -> {BINARY}")
        return tag

    tmp = make_temp_dir()
    try:
        print_step(f"Downloading {url}")
        archive = tmp / "dnscrypt-release.tar.gz"
        try:
            github.download_to(host.session, url, archive)
        except requests.RequestException as e:
            raise github.ReleaseError(f"Download failed: {e}", exit_code=3)
        github.extract_tarball(archive, tmp)

        binary = github.find_binary(tmp, "dnscrypt-proxy")
        if binary is None:
            listing = "\n".join(str(p) for p in sorted(tmp.rglob("*"))[:200])
            host.logger.debug(f"Archive contents:\n{listing}")
            raise github.ReleaseError("Release archive has no dnscrypt-proxy binary", exit_code=4)

        target = host.path(BINARY)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(binary, target)
        target.chmod(0o755)
        host.logger.info(f"Installed {BINARY} ({tag})")

        unit_dir = tmp / "linux-systemd"
        packaged_unit = unit_dir / f"{SERVICE}.service"
        if packaged_unit.is_file():
            host.write_text(f"{UNIT_DIR}/{SERVICE}.service", packaged_unit.read_text())
            packaged_socket = unit_dir / f"{SERVICE}.socket"
            if packaged_socket.is_file():
                host.write_text(f"{UNIT_DIR}/{SERVICE}.socket", packaged_socket.read_text())
            host.logger.info("Installed systemd unit shipped with the release")
        else:
            host.write_text(f"{UNIT_DIR}/{SERVICE}.service", DNSCRYPT_SYSTEMD_UNIT)
            host.logger.info("Created default systemd unit")
    finally:
        shutil.rmtree(tmp, ignore_errors=True)

    host.systemd.daemon_reload()
    return tag


def install_proxy(host: Host, os_info: OSInfo, report: Report) -> str:
    """Install with apt when suitable, falling back to GitHub releases."""
    method = choose_install_method(os_info)
    if method == "apt":
        print_step("Installing dnscrypt-proxy with apt")
        if install_via_apt(host):
            report.ok("dnscrypt-proxy", f"apt {host.apt.version(SERVICE)}")
            return "apt"
        host.logger.warning("apt could not install dnscrypt-proxy; using GitHub releases")
    else:
        print_step(f"{os_info.id} {os_info.version_id}: installing from GitHub releases")
    tag = install_from_github(host)
    report.ok("dnscrypt-proxy", f"github {tag}")
    return "github"


# ----------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------
def write_emergency_config(host: Host) -> None:
    host.write_text(CONFIG_FILE, dnscrypt_emergency_config(listen(PRIMARY_ADDRESS)))


def download_lists(host: Host, report: Report) -> None:
    """Fetch the v3 lists, their signatures and minisign.pub."""
    host.makedirs(CONFIG_DIR)
    for name in LISTS:
        dest = f"{CONFIG_DIR}/{name}.md"
        if host.download(f"{LISTS_BASE}/{name}.md", dest, timeout=DOWNLOAD_TIMEOUT):
            report.ok(f"{name}.md", "downloaded")
        elif host.download(f"{LISTS_MIRROR}/{name}.md", dest, timeout=DOWNLOAD_TIMEOUT):
            report.ok(f"{name}.md", "downloaded from GitHub mirror")
        else:
            report.warn(f"{name}.md", "download failed on both mirrors")

        if not host.download(
            f"{LISTS_BASE}/{name}.md.minisig", f"{dest}.minisig", timeout=DOWNLOAD_TIMEOUT
        ):
            report.warn(f"{name}.md.minisig", "download failed")

    if host.download(f"{LISTS_BASE}/minisign.pub", MINISIGN_PUB, timeout=DOWNLOAD_TIMEOUT):
        report.ok("minisign.pub", "downloaded")
    else:
        report.warn("minisign.pub", "download failed")


def extract_minisign_key(host: Host) -> Optional[str]:
    text = host.read(MINISIGN_PUB)
    if text is None:
        return None
    return find_minisign_key(text)


def write_v3_config(host: Host, minisign_key: str) -> None:
    sources = [
        dnscrypt_source(name, f"{LISTS_BASE}/{name}.md", delay, minisign_key)
        for name, delay in LISTS.items()
    ]
    host.write_text(
        CONFIG_FILE,
        dnscrypt_config(
            [listen(PRIMARY_ADDRESS), IPV6_LISTEN],
            DEFAULT_SERVER_NAMES,
            sources,
            header="# dnscrypt-proxy v3 configuration generated by vpskit",
        ),
    )


def write_offline_config(host: Host) -> None:
    """Cloudflare-only config that works without signed lists."""
    host.write_text(f"{CONFIG_DIR}/public-resolvers.md", OFFLINE_PUBLIC_RESOLVERS)
    host.write_text(
        CONFIG_FILE,
        dnscrypt_config(
            [listen(PRIMARY_ADDRESS)],
            "['cloudflare']",
            header="# Offline configuration: cloudflare only, no signed lists",
        ),
    )


def configure(host: Host, report: Report) -> None:
    host.makedirs(CONFIG_DIR, mode=0o755)
    write_emergency_config(host)
    download_lists(host, report)

    key = extract_minisign_key(host)
    if key:
        write_v3_config(host, key)
        report.ok("config", f"v3 sources, minisign key {key[:12]}...")
    else:
        write_offline_config(host)
        report.warn("config", "no minisign key; offline cloudflare-only config")


# ----------------------------------------------------------------
# Service startup and port conflicts
# ----------------------------------------------------------------
def _wait_active(host: Host) -> bool:
    host.sleep(STARTUP_WAIT_SECONDS)
    return host.systemd.is_active(SERVICE)


def write_alternate_config(host: Host) -> None:
    """Rewrite the config for the alternate address, keeping server_names."""
    current = host.read(CONFIG_FILE) or ""
    server_names = read_toml_value(current, "server_names") or DEFAULT_SERVER_NAMES
    host.backup(CONFIG_FILE, style="backup")
    source = dnscrypt_source(
        "public-resolvers",
        f"{LISTS_BASE}/public-resolvers.md",
        LISTS["public-resolvers"],
        extract_minisign_key(host),
    )
    host.write_text(
        CONFIG_FILE,
        dnscrypt_config(
            [listen(ALTERNATE_ADDRESS), IPV6_LISTEN],
            server_names,
            [source],
            header=f"# {listen(PRIMARY_ADDRESS)} was busy; moved to the alternate loopback address",
        ),
    )


def start_service(host: Host, report: Report) -> Optional[str]:
    """
    Start dnscrypt-proxy, resolving port 53 conflicts.

    Returns:
        The loopback address the proxy listens on, or None if it is not
        running.
    """
    host.systemd.daemon_reload()
    host.systemd.enable(SERVICE, now=True)
    if _wait_active(host):
        report.ok("service", f"active on {PRIMARY_ADDRESS}")
        return PRIMARY_ADDRESS

    journal = host.systemd.journal(SERVICE, 40)
    if "address already in use" not in journal.lower():
        host.logger.error("dnscrypt-proxy failed to start:")
        host.logger.error(host.systemd.journal(SERVICE, 200))
        report.fail("service", "failed to start; see journalctl -u dnscrypt-proxy")
        return None

    host.logger.warning(f"{listen(PRIMARY_ADDRESS)} is in use; stopping common DNS services")
    holders = [
        line
        for line in host.runner.output(["ss", "-ltnup"]).splitlines()
        if re.search(r":53\b", line)
    ]
    for line in holders:
        host.logger.info(f"port 53: {line}")

    for unit in PORT_53_HOLDERS:
        if host.systemd.is_active(unit) or host.systemd.is_enabled(unit):
            host.logger.warning(f"Stopping {unit}")
            host.systemd.stop(unit)
            host.sleep(STARTUP_WAIT_SECONDS)

    host.systemd.restart(SERVICE)
    if _wait_active(host):
        report.ok("service", f"active on {PRIMARY_ADDRESS} after stopping conflicting services")
        return PRIMARY_ADDRESS

    host.logger.warning(f"Port still busy; switching to {listen(ALTERNATE_ADDRESS)}")
    write_alternate_config(host)
    host.systemd.daemon_reload()
    host.systemd.restart(SERVICE)
    if _wait_active(host):
        report.warn("service", f"active on alternate address {ALTERNATE_ADDRESS}")
        return ALTERNATE_ADDRESS

    report.fail("service", "not running even on the alternate address")
    return None


# ----------------------------------------------------------------
# System resolver
# ----------------------------------------------------------------
def point_resolv_conf(host: Host, address: str, report: Report) -> bool:
    """
    Overwrite /etc/resolv.conf to use the local proxy first.

    Returns:
        True when the file was also made immutable.
    """
    has_chattr = host.runner.exists("chattr")
    target = str(host.path(RESOLV_CONF))
    if has_chattr:
        host.runner.ok(["chattr", "-i", target])

    host.backup(RESOLV_CONF, style="backup")
    host.write_text(RESOLV_CONF, resolv_conf([address] + UPSTREAM_FALLBACKS))

    managed = host.systemd.is_active("NetworkManager") or host.systemd.is_active(
        "systemd-resolved"
    )
    if managed:
        report.warn(
            "resolv.conf",
            f"points at {address}; not locked because NetworkManager or systemd-resolved is running",
        )
        return False
    if not has_chattr:
        report.warn("resolv.conf", f"points at {address}; chattr unavailable, not locked")
        return False
    host.runner.ok(["chattr", "+i", target])
    report.ok("resolv.conf", f"points at {address}, locked with chattr +i")
    return True


def install_maintenance(host: Host, report: Report) -> None:
    host.write_text(
        MAINT_CRON,
        cron_job(
            "Weekly refresh of the DNSCrypt v3 resolver lists",
            vpskit_invocation(["dnscrypt", "maint"]),
        ),
        mode=0o755,
    )
    report.ok("weekly refresh", MAINT_CRON)


# ----------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------
def run_dnscrypt_install(host: Host, report: Report) -> bool:
    """
    Full non-interactive install.

    Returns:
        True when dnscrypt-proxy ends up active.
    """
    print_section("Prerequisites")
    ensure_tools(host, report)
    os_info = host.os_release()
    host.logger.info(f"Detected distribution: id={os_info.id}, version={os_info.version_id}")
    remove_dnsmasq(host, report)

    print_section("Install")
    install_proxy(host, os_info, report)

    print_section("Configure")
    configure(host, report)

    print_section("Start")
    address = start_service(host, report)
    point_resolv_conf(host, address or PRIMARY_ADDRESS, report)

    print_section("Maintenance")
    install_maintenance(host, report)

    active = host.systemd.is_active(SERVICE)
    if active:
        host.logger.info("dnscrypt-proxy is running; watch it for 24 hours to confirm stability.")
    else:
        host.logger.error(
            "dnscrypt-proxy is not active; see journalctl -u dnscrypt-proxy -n 200 -o cat"
        )
    return active


def refresh_lists(host: Host) -> List[str]:
    """
    Weekly maintenance: replace resolver lists that changed upstream and
    restart the proxy when anything was replaced.

    Returns:
        Names of the lists that were updated.
    """
    host.logger.info("dnscrypt-maint: start")
    updated: List[str] = []
    tmp = make_temp_dir()
    try:
        for name in LISTS:
            try:
                response = host.session.get(f"{LISTS_BASE}/{name}.md", timeout=DOWNLOAD_TIMEOUT)
                response.raise_for_status()
            except requests.RequestException as e:
                host.logger.warning(f"dnscrypt-maint: {name}.md download failed: {e}")
                continue
            new_content = response.content
            current = host.path(f"{CONFIG_DIR}/{name}.md")
            if current.is_file() and current.read_bytes() == new_content:
                host.logger.info(f"dnscrypt-maint: {name}.md unchanged")
                continue

            staged = tmp / f"{name}.md"
            staged.write_bytes(new_content)
            if not host.dry_run:
                current.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(staged), current)
                current.chmod(0o644)
            host.download(
                f"{LISTS_BASE}/{name}.md.minisig",
                f"{CONFIG_DIR}/{name}.md.minisig",
                timeout=DOWNLOAD_TIMEOUT,
            )
            host.logger.info(f"dnscrypt-maint: updated {name}.md")
            updated.append(name)
    finally:
        shutil.rmtree(tmp, ignore_errors=True)

    host.download(f"{LISTS_BASE}/minisign.pub", MINISIGN_PUB, timeout=DOWNLOAD_TIMEOUT)
    if updated:
        host.systemd.restart(SERVICE)
        host.logger.info("dnscrypt-maint: dnscrypt-proxy restarted")
    host.logger.info("dnscrypt-maint: end")
    return updated


def tune_packaged_config(text: str) -> str:
    """Apply the quick-install settings to a stock dnscrypt-proxy.toml."""
    for key, value in (
        ("server_names", DEFAULT_SERVER_NAMES),
        ("cache", "true"),
        ("cache_size", "2048"),
        ("cache_min_ttl", "600"),
        ("cache_max_ttl", "86400"),
        ("require_dnssec", "true"),
    ):
        text = set_toml_key(text, key, value)
    return text


def uses_systemd_resolved(host: Host) -> bool:
    resolv = host.path(RESOLV_CONF)
    if not resolv.is_symlink():
        return False
    return "systemd" in str(resolv.readlink())


def run_dnscrypt_quick(host: Host, report: Report) -> bool:
    """Install the distribution package and tune its stock config."""
    print_section("Install")
    try:
        host.apt.update()
        host.apt.install([SERVICE])
    except CommandError as e:
        report.fail("dnscrypt-proxy", "apt install failed")
        raise TaskError(f"Could not install dnscrypt-proxy: {e}")
    report.ok("dnscrypt-proxy", f"apt {host.apt.version(SERVICE)}")

    print_section("Configure")
    current = host.read(CONFIG_FILE)
    if current is None:
        report.fail("config", f"{CONFIG_FILE} not found")
        raise TaskError(f"{CONFIG_FILE} not found after install")
    host.write_text(CONFIG_FILE, tune_packaged_config(current))
    report.ok("config", "cloudflare+google, cache, DNSSEC")
    host.systemd.restart(SERVICE)
    host.systemd.enable(SERVICE)

    print_section("System DNS")
    if uses_systemd_resolved(host):
        text = host.read(RESOLVED_CONF) or "[Resolve]\n"
        for key, value in (
            ("DNS", PRIMARY_ADDRESS),
            ("FallbackDNS", " ".join(UPSTREAM_FALLBACKS)),
            ("DNSStubListener", "no"),
        ):
            updated = set_conf_key(text, key, value)
            if updated == text and f"{key}={value}" not in text:
                updated = text.rstrip("\n") + f"\n{key}={value}\n"
            text = updated
        host.write_text(RESOLVED_CONF, text)
        host.systemd.restart("systemd-resolved")
        report.ok("system DNS", f"systemd-resolved -> {PRIMARY_ADDRESS}")
    else:
        target = str(host.path(RESOLV_CONF))
        host.runner.ok(["chattr", "-i", target])
        host.write_text(RESOLV_CONF, resolv_conf([PRIMARY_ADDRESS]))
        host.runner.ok(["chattr", "+i", target])
        report.ok("system DNS", f"resolv.conf -> {PRIMARY_ADDRESS}, locked")

    host.logger.info(f"Test with: dig @{PRIMARY_ADDRESS} google.com")
    return host.systemd.is_active(SERVICE)
