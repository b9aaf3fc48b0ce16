"""
Text and file helpers used to rewrite configuration files in place:
atomic writes, marker-delimited block removal, and key edits for the
INI, TOML and KEY=value dialects found under /etc.
"""

import os
import re
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from vpskit.config import TEMP_PREFIX


def atomic_write(path: Union[str, Path], content: str, mode: int = 0o644) -> None:
    """Write content to path via a temp file in the same directory."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


# Scratch directories made by this process, removed again at exit.
_temp_dirs: List[Path] = []


def make_temp_dir() -> Path:
    path = Path(tempfile.mkdtemp(prefix=TEMP_PREFIX))
    _temp_dirs.append(path)
    return path


def pop_temp_dirs() -> List[Path]:
    """Hand over every directory make_temp_dir created and forget them."""
    dirs = list(_temp_dirs)
    _temp_dirs.clear()
    return dirs


def read_text(path: Union[str, Path]) -> Optional[str]:
    """Return file contents, or None when the file does not exist."""
    try:
        return Path(path).read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None


def strip_managed_block(text: str, begin: str, end: str) -> str:
    """
    Remove every region delimited by the begin and end marker lines,
    markers included. An unterminated block runs to the end of the text.
    """
    kept = []
    inside = False
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        if not inside and stripped == begin:
            inside = True
            continue
        if inside and stripped == end:
            inside = False
            continue
        if not inside:
            kept.append(line)
    return "".join(kept)


def has_managed_block(text: str, begin: str) -> bool:
    return any(line.strip() == begin for line in text.splitlines())


def set_ini_option(text: str, section: str, key: str, value: str) -> str:
    """
    Set `key = value` for a fail2ban-style INI file.

    When the [section] header is missing a new section holding the option
    is appended and the rest of the file is left alone. Otherwise an
    existing assignment of the key anywhere in the file is replaced, or
    the option is inserted right after the header.
    """
    assignment = f"{key} = {value}"
    key_re = re.compile(rf"^\s*{re.escape(key)}\s*=.*$")
    header = f"[{section}]"
    lines = text.splitlines()

    header_at = next((i for i, line in enumerate(lines) if line.strip() == header), None)
    if header_at is None:
        body = "\n".join(lines)
        if body and not body.endswith("\n"):
            body += "\n"
        return f"{body}{header}\n{assignment}\n"

    replaced = False
    for i, line in enumerate(lines):
        if key_re.match(line):
            lines[i] = assignment
            replaced = True
    if not replaced:
        lines.insert(header_at + 1, assignment)
    return "\n".join(lines) + "\n"


def set_toml_key(text: str, key: str, value: str) -> str:
    """Replace every `key = ...` line, commented out or not, with `key = value`."""
    pattern = re.compile(rf"^#*\s*{re.escape(key)}\s*=.*$", re.MULTILINE)
    return pattern.sub(lambda _m: f"{key} = {value}", text)


def set_conf_key(text: str, key: str, value: str) -> str:
    """Replace every `KEY=...` line, commented out or not, with `KEY=value`."""
    pattern = re.compile(rf"^#*\s*{re.escape(key)}=.*$", re.MULTILINE)
    return pattern.sub(lambda _m: f"{key}={value}", text)


def read_toml_value(text: str, key: str) -> Optional[str]:
    """Return the raw right-hand side of the first top-level `key =` line."""
    match = re.search(rf"^{re.escape(key)}\s*=\s*(.+?)\s*$", text, re.MULTILINE)
    if not match:
        return None
    return match.group(1)


def find_minisign_key(text: str) -> Optional[str]:
    """Return the first base64 run long enough to be a minisign public key."""
    for line in text.splitlines():
        if line.lower().startswith("untrusted comment"):
            continue
        match = re.search(r"[A-Za-z0-9+/=]{20,}", line)
        if match:
            return match.group(0)
    return None
