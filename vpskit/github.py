"""
GitHub release helpers: pick the archive for this machine's architecture
from the latest release and unpack it.
"""

import logging
import re
import tarfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from vpskit import LOGGER_NAME
from vpskit.errors import TaskError

logger = logging.getLogger(LOGGER_NAME)

API_ROOT = "https://api.github.com/repos"

# uname -m -> regex matched (case-insensitively) against release asset names
ARCH_ASSET_PATTERNS: Dict[str, str] = {
    "x86_64": r"linux_(x86_64|amd64|x86-64).*\.tar\.gz$",
    "amd64": r"linux_(x86_64|amd64|x86-64).*\.tar\.gz$",
    "aarch64": r"linux_(arm64|aarch64).*\.tar\.gz$",
    "arm64": r"linux_(arm64|aarch64).*\.tar\.gz$",
    "armv7l": r"linux_(armv7|arm)[-_.].*\.tar\.gz$",
    "armv7": r"linux_(armv7|arm)[-_.].*\.tar\.gz$",
    "i386": r"linux_(x86_32|i386|i486|i686).*\.tar\.gz$",
    "i686": r"linux_(x86_32|i386|i486|i686).*\.tar\.gz$",
}


class ReleaseError(TaskError):
    """A release could not be resolved or unpacked."""


def asset_pattern(arch: str) -> Optional[str]:
    return ARCH_ASSET_PATTERNS.get(arch)


def latest_release(session: requests.Session, repo: str, timeout: int = 30) -> Dict[str, Any]:
    response = session.get(
        f"{API_ROOT}/{repo}/releases/latest",
        headers={"Accept": "application/vnd.github+json"},
        timeout=timeout,
    )
    response.raise_for_status()
    return response.json()


def select_asset(release: Dict[str, Any], pattern: str) -> Optional[str]:
    """Download URL of the first asset whose name matches pattern."""
    regex = re.compile(pattern, re.IGNORECASE)
    for asset in release.get("assets", []):
        name = asset.get("name", "")
        if regex.search(name):
            return asset.get("browser_download_url")
    return None


def download_to(session: requests.Session, url: str, dest: Path, timeout: int = 120) -> Path:
    logger.debug(f"Downloading {url} to {dest}")
    with session.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with open(dest, "wb") as f:
            for chunk in response.iter_content(chunk_size=65536):
                if chunk:
                    f.write(chunk)
    return dest


def _inside(dest: Path, path: Path) -> bool:
    path = path.resolve()
    return path == dest or dest in path.parents


def _check_member(dest: Path, member: tarfile.TarInfo) -> None:
    if not _inside(dest, dest / member.name):
        raise ReleaseError(f"unsafe path in archive: {member.name}", exit_code=4)
    if member.issym():
        # symlink targets are relative to the link's own directory
        link_target = dest / Path(member.name).parent / member.linkname
    elif member.islnk():
        link_target = dest / member.linkname
    else:
        return
    if not _inside(dest, link_target):
        raise ReleaseError(
            f"unsafe link in archive: {member.name} -> {member.linkname}", exit_code=4
        )


def extract_tarball(archive: Path, dest: Path) -> None:
    """
    Unpack a .tar.gz, refusing members or links that would land outside
    dest.

    Raises:
        ReleaseError: exit code 4 for an unsafe, corrupt or unreadable
            archive.
    """
    dest = dest.resolve()
    try:
        with tarfile.open(archive, "r:gz") as tar:
            for member in tar.getmembers():
                _check_member(dest, member)
            if hasattr(tarfile, "data_filter"):
                tar.extractall(dest, filter="data")
            else:
                tar.extractall(dest)
    except (tarfile.TarError, OSError) as e:
        raise ReleaseError(f"cannot unpack {archive.name}: {e}", exit_code=4)


def find_binary(directory: Path, name: str) -> Optional[Path]:
    """First file called name, preferring one with an executable bit."""
    candidates: List[Path] = sorted(p for p in directory.rglob(name) if p.is_file())
    for path in candidates:
        if path.stat().st_mode & 0o111:
            return path
    return candidates[0] if candidates else None
