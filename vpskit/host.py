"""
Host context: the target filesystem root, the command runner, package
and service managers, and the HTTP session used by every task.
"""

import datetime
import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

import requests

from vpskit import LOGGER_NAME
from vpskit.config import Settings
from vpskit.errors import NotRootError
from vpskit.files import atomic_write, read_text
from vpskit.runner import Runner
from vpskit.services import Apt, Systemd

PathLike = Union[str, Path]


@dataclass
class OSInfo:
    """Distribution identity from /etc/os-release."""

    id: str = "unknown"
    version_id: str = "unknown"
    codename: str = "unknown"

    def __str__(self) -> str:
        return f"{self.id}|{self.version_id}"


def parse_os_release(text: str) -> OSInfo:
    values = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip('"').strip("'")
    return OSInfo(
        id=values.get("ID") or "unknown",
        version_id=values.get("VERSION_ID") or "unknown",
        codename=values.get("VERSION_CODENAME") or "unknown",
    )


class Host:
    """The machine being provisioned."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        runner: Optional[Runner] = None,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or Settings()
        self.runner = runner or Runner(
            dry_run=self.settings.dry_run, timeout=self.settings.timeout
        )
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.sleep = sleep
        self.apt = Apt(self.runner)
        self.systemd = Systemd(self.runner)

    @property
    def dry_run(self) -> bool:
        return self.settings.dry_run

    # ----------------------------------------------------------------
    # Paths and files
    # ----------------------------------------------------------------
    def path(self, path: PathLike) -> Path:
        """Map an absolute system path onto the configured root."""
        path = Path(path)
        if path.is_absolute():
            path = path.relative_to(path.anchor)
        return self.settings.root / path

    def exists(self, path: PathLike) -> bool:
        return self.path(path).exists()

    def read(self, path: PathLike) -> Optional[str]:
        return read_text(self.path(path))

    def write_text(self, path: PathLike, content: str, mode: int = 0o644) -> bool:
        """
        Atomically write a managed file.

        Returns:
            True when the file was created or its content changed.
        """
        target = self.path(path)
        if read_text(target) == content:
            self.chmod(path, mode)
            return False
        if self.dry_run:
            self.logger.info(f"[dry-run] write {target}")
            return True
        atomic_write(target, content, mode)
        self.logger.debug(f"Wrote {target}")
        return True

    def chmod(self, path: PathLike, mode: int) -> None:
        target = self.path(path)
        if self.dry_run:
            return
        if target.exists():
            os.chmod(target, mode)

    def makedirs(self, path: PathLike, mode: int = 0o755) -> Path:
        target = self.path(path)
        if not self.dry_run:
            target.mkdir(parents=True, exist_ok=True)
            os.chmod(target, mode)
        return target

    def timestamp(self, fmt: str = "%Y%m%d%H%M%S") -> str:
        return datetime.datetime.now().strftime(fmt)

    def backup(self, path: PathLike, style: str = "bak") -> Optional[Path]:
        """
        Copy a file next to itself with a timestamped suffix.

        Args:
            path: File to back up.
            style: "bak" for `<file>.bak.<YYYYmmddHHMMSS>`, "backup" for
                `<file>.backup.<epoch>`.

        Returns:
            The backup path, or None when the file does not exist.
        """
        source = self.path(path)
        if not source.is_file():
            self.logger.debug(f"{source} not found; skipping backup.")
            return None
        if style == "backup":
            suffix = f".backup.{int(time.time())}"
        else:
            suffix = f".bak.{self.timestamp()}"
        backup_path = source.with_name(source.name + suffix)
        if self.dry_run:
            self.logger.info(f"[dry-run] backup {source} -> {backup_path}")
            return backup_path
        shutil.copy2(source, backup_path)
        self.logger.debug(f"Backed up {source} to {backup_path}")
        return backup_path

    def backup_into(self, paths: Iterable[PathLike], directory: PathLike) -> List[Path]:
        """Copy every existing file in paths into directory."""
        dest = self.path(directory)
        copied: List[Path] = []
        for p in paths:
            source = self.path(p)
            if not source.is_file():
                continue
            if not self.dry_run:
                dest.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, dest / source.name)
            copied.append(source)
        return copied

    # ----------------------------------------------------------------
    # System identity and privileges
    # ----------------------------------------------------------------
    def os_release(self) -> OSInfo:
        text = self.read("/etc/os-release")
        if text is None:
            return OSInfo()
        return parse_os_release(text)

    def architecture(self) -> str:
        return os.uname().machine

    def require_root(self) -> None:
        if self.dry_run or not self.settings.is_live_root:
            return
        if os.geteuid() != 0:
            raise NotRootError()

    def set_timezone(self, timezone: str) -> str:
        """
        Set the system timezone.

        Returns:
            "already", "set", "localtime" or "skipped".
        """
        if self.runner.exists("timedatectl"):
            current = self.runner.output(
                ["timedatectl", "show", "-p", "Timezone", "--value"]
            )
            if current == timezone:
                return "already"
            self.runner.run(["timedatectl", "set-timezone", timezone])
            return "set"

        zoneinfo = self.path(f"/usr/share/zoneinfo/{timezone}")
        if not zoneinfo.exists():
            return "skipped"
        localtime = self.path("/etc/localtime")
        if not self.dry_run:
            if localtime.is_symlink() or localtime.exists():
                localtime.unlink()
            localtime.symlink_to(f"/usr/share/zoneinfo/{timezone}")
        return "localtime"

    # ----------------------------------------------------------------
    # Downloads
    # ----------------------------------------------------------------
    def download(self, url: str, dest: PathLike, timeout: int = 30, mode: int = 0o644) -> bool:
        """Fetch url into a managed path. Returns False on any HTTP failure."""
        try:
            response = self.session.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            self.logger.debug(f"Download failed {url}: {e}")
            return False
        if self.dry_run:
            self.logger.info(f"[dry-run] save {url} -> {self.path(dest)}")
            return True
        target = self.path(dest)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.part")
        tmp.write_bytes(response.content)
        os.chmod(tmp, mode)
        os.replace(tmp, target)
        return True
