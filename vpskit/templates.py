"""
Fixed configuration file templates written by the tasks.
"""

from typing import Iterable, Optional


def _quoted_list(items: Iterable[str]) -> str:
    return "[" + ", ".join(f"'{i}'" for i in items) + "]"


# ----------------------------------------------------------------
# dnscrypt-proxy
# ----------------------------------------------------------------
DNSCRYPT_CACHE = """\
cache = true
cache_size = 2048
cache_min_ttl = 600
cache_max_ttl = 86400
"""

DNSCRYPT_SYSTEMD_UNIT = """\
[Unit]
Description=DNSCrypt client proxy
After=network.target

[Service]
ExecStart=/usr/local/bin/dnscrypt-proxy -config /etc/dnscrypt-proxy/dnscrypt-proxy.toml
Restart=on-failure
RestartSec=5s

[Install]
WantedBy=multi-user.target
"""

# Minimal Cloudflare DoH stamp used when the signed lists are unreachable.
OFFLINE_PUBLIC_RESOLVERS = """\
## cloudflare
Cloudflare DNS (DoH) minimal offline entry
sdns://AgcAAAAAAAAADzE1Mi4xMDkuMjQyLjIwOQovZG9oL2NlcnQ
"""


def dnscrypt_source(name: str, url: str, refresh_delay: int, minisign_key: Optional[str]) -> str:
    text = (
        f"[sources.'{name}']\n"
        f"urls = ['{url}']\n"
        f"cache_file = '{name}.md'\n"
        f"refresh_delay = {refresh_delay}\n"
    )
    if minisign_key:
        text += f'minisign_key = "{minisign_key}"\n'
    return text


def dnscrypt_config(
    listen_addresses: Iterable[str],
    server_names: str,
    sources: Iterable[str] = (),
    header: str = "# Generated by vpskit",
) -> str:
    """Full dnscrypt-proxy.toml with DoH, DNSSEC and cache settings."""
    text = (
        f"{header}\n"
        f"listen_addresses = {_quoted_list(listen_addresses)}\n"
        f"server_names = {server_names}\n"
        "doh_servers = true\n"
        "require_dnssec = true\n"
        "\n"
        f"{DNSCRYPT_CACHE}"
    )
    for source in sources:
        text += f"\n{source}"
    return text


def dnscrypt_emergency_config(listen_address: str) -> str:
    """Config that keeps resolution working when no source list is usable."""
    return (
        "# Emergency fallback config: runs even if resolver sources fail\n"
        f"listen_addresses = ['{listen_address}']\n"
        "server_names = []\n"
        "fallback_resolvers = ['1.1.1.1:53', '8.8.8.8:53']\n"
        f"{DNSCRYPT_CACHE}"
    )


def resolv_conf(nameservers: Iterable[str]) -> str:
    return "".join(f"nameserver {ns}\n" for ns in nameservers)


# ----------------------------------------------------------------
# fail2ban
# ----------------------------------------------------------------
def fail2ban_jail_local(
    bantime: str,
    findtime: str,
    maxretry: int,
    ignoreip: Iterable[str],
    auth_log: Optional[str],
) -> str:
    """jail.local with global defaults and the sshd jail."""
    if auth_log:
        sshd_source = f"logpath  = {auth_log}\n"
    else:
        sshd_source = "backend  = systemd\n"
    return (
        "[DEFAULT]\n"
        "# Global defaults\n"
        f"bantime  = {bantime}\n"
        f"findtime = {findtime}\n"
        f"maxretry = {maxretry}\n"
        "\n"
        "# Whitelisted addresses (management IPs, LAN)\n"
        f"ignoreip = {' '.join(ignoreip)}\n"
        "\n"
        "[sshd]\n"
        "enabled  = true\n"
        "port     = ssh\n"
        "filter   = sshd\n"
        f"{sshd_source}"
        f"maxretry = {maxretry}\n"
        f"findtime = {findtime}\n"
        f"bantime  = {bantime}\n"
    )


def fail2ban_recidive(bantime: int, findtime: str, maxretry: int) -> str:
    return (
        "[recidive]\n"
        "enabled  = true\n"
        "filter   = recidive\n"
        "logpath  = /var/log/fail2ban.log\n"
        "action   = iptables-allports[name=recidive]\n"
        f"bantime  = {bantime}\n"
        f"findtime = {findtime}\n"
        f"maxretry = {maxretry}\n"
    )


FAIL2BAN_RECIDIVE_FILTER = """\
# simple recidive filter - record bans in fail2ban log
[Definition]
failregex = Ban <HOST>
ignoreregex =
"""


# ----------------------------------------------------------------
# cron
# ----------------------------------------------------------------
def cron_job(description: str, command: str) -> str:
    """A /etc/cron.{daily,weekly} entry running one vpskit command."""
    return (
        "#!/bin/sh\n"
        f"# {description}\n"
        "# Managed by vpskit; rerunning the installer rewrites this file.\n"
        f"{command} >/dev/null 2>&1\n"
    )


# ----------------------------------------------------------------
# Docker
# ----------------------------------------------------------------
def docker_apt_source(arch: str, distro: str, codename: str) -> str:
    return (
        f"deb [arch={arch} signed-by=/etc/apt/keyrings/docker.asc] "
        f"https://download.docker.com/linux/{distro} {codename} stable\n"
    )
