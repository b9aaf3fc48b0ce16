"""
Shared fixtures: a scripted command runner, a canned HTTP session and a
Host rooted in a temporary directory.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import pytest
import requests

from vpskit.config import Settings
from vpskit.errors import CommandError
from vpskit.host import Host
from vpskit.report import Report
from vpskit.runner import Runner


# ═══════════════════════════════════════════════════════════════════════
#  Fake runner
# ═══════════════════════════════════════════════════════════════════════


@dataclass
class Call:
    cmd: List[str]
    input: Optional[str] = None
    env: Optional[Dict[str, str]] = None


@dataclass
class Rule:
    prefix: Tuple[str, ...]
    results: List[Tuple[int, str, str]] = field(default_factory=list)

    def next(self) -> Tuple[int, str, str]:
        # The last result repeats once the sequence is exhausted.
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class FakeRunner(Runner):
    """
    Records every command. Results come from rules registered with on();
    the longest matching prefix wins, later rules win ties. Unmatched
    commands succeed with empty output.
    """

    def __init__(self, available: Iterable[str] = (), dry_run: bool = False):
        super().__init__(dry_run=dry_run)
        self.calls: List[Call] = []
        self.rules: List[Rule] = []
        self.available = set(available)

    def on(
        self,
        *prefix: str,
        returncode: Union[int, List[int]] = 0,
        stdout: str = "",
        stderr: str = "",
    ) -> "FakeRunner":
        codes = returncode if isinstance(returncode, list) else [returncode]
        self.rules.append(Rule(tuple(prefix), [(c, stdout, stderr) for c in codes]))
        return self

    def _match(self, cmd: List[str]) -> Tuple[int, str, str]:
        best: Optional[Rule] = None
        for rule in self.rules:
            if tuple(cmd[: len(rule.prefix)]) == rule.prefix:
                if best is None or len(rule.prefix) >= len(best.prefix):
                    best = rule
        if best is None:
            return 0, "", ""
        return best.next()

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        input: Optional[str] = None,
        timeout: Optional[int] = None,
        env: Optional[Dict[str, str]] = None,
        query: bool = False,
    ) -> subprocess.CompletedProcess:
        self.calls.append(Call(list(cmd), input, env))
        if self.dry_run and not query:
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        code, out, err = self._match(cmd)
        if check and code != 0:
            raise CommandError(cmd, code, out, err)
        return subprocess.CompletedProcess(cmd, code, stdout=out, stderr=err)

    def exists(self, name: str) -> bool:
        return name in self.available

    def commands(self, *prefix: str) -> List[List[str]]:
        return [c.cmd for c in self.calls if tuple(c.cmd[: len(prefix)]) == prefix]

    def ran(self, *prefix: str) -> bool:
        return bool(self.commands(*prefix))


# ═══════════════════════════════════════════════════════════════════════
#  Fake HTTP session
# ═══════════════════════════════════════════════════════════════════════


class FakeResponse:
    def __init__(self, url: str, status_code: int = 200, content: bytes = b"", json_data: Any = None):
        self.url = url
        self.status_code = status_code
        self.content = content
        self._json = json_data

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    def json(self) -> Any:
        return self._json

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} for {self.url}")

    def iter_content(self, chunk_size: int = 1) -> Iterable[bytes]:
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i : i + chunk_size]

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc: Any) -> None:
        return None


class FakeSession:
    """Serves registered URLs; anything else raises ConnectionError."""

    def __init__(self):
        self.routes: Dict[str, FakeResponse] = {}
        self.requested: List[str] = []

    def add(
        self,
        url: str,
        content: Union[bytes, str] = b"",
        status_code: int = 200,
        json_data: Any = None,
    ) -> None:
        if isinstance(content, str):
            content = content.encode("utf-8")
        self.routes[url] = FakeResponse(url, status_code, content, json_data)

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.requested.append(url)
        if url not in self.routes:
            raise requests.ConnectionError(f"no route to {url}")
        return self.routes[url]


# ═══════════════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════════════


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    root = tmp_path / "root"
    root.mkdir()
    return Settings(root=root, log_dir=tmp_path / "log", log_file=tmp_path / "vpskit.log")


@pytest.fixture
def host(settings: Settings, runner: FakeRunner, session: FakeSession) -> Host:
    return Host(settings, runner=runner, session=session, sleep=lambda _s: None)


@pytest.fixture
def report() -> Report:
    return Report("test")


def put(host: Host, path: str, content: str = "") -> Path:
    """Create a file under the host root."""
    target = host.path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    return target


def entry_status(report: Report, name: str) -> str:
    return report.get(name).status.value
