"""
vpskit
------

Non-interactive provisioning tasks for Debian/Ubuntu VPS hosts: base
packages, DNSCrypt proxy, Fail2Ban, daily time sync, panel updates and
Docker firewall backend switching.
"""

APP_NAME: str = "vpskit"
VERSION: str = "1.0.0"
LOGGER_NAME: str = "vpskit"

__version__ = VERSION
