"""
Result bookkeeping. Tasks record one entry per step and the CLI renders
the collected entries as a status table at the end of a run.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from rich import box
from rich.panel import Panel
from rich.table import Table

from vpskit import LOGGER_NAME
from vpskit.ui import NordColors, console

logger = logging.getLogger(LOGGER_NAME)


class Status(str, Enum):
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"


STATUS_STYLE: Dict[Status, str] = {
    Status.OK: "success",
    Status.WARN: "warning",
    Status.FAIL: "error",
}


@dataclass
class Entry:
    name: str
    status: Status
    detail: str = ""


@dataclass
class Report:
    """Ordered list of step outcomes for one command."""

    title: str
    entries: List[Entry] = field(default_factory=list)

    def add(self, name: str, status: Status, detail: str = "") -> Entry:
        entry = Entry(name=name, status=status, detail=detail)
        self.entries.append(entry)
        message = f"{name}: {detail}" if detail else name
        if status is Status.OK:
            logger.info(f"[OK] {message}")
        elif status is Status.WARN:
            logger.warning(f"[WARN] {message}")
        else:
            logger.error(f"[FAIL] {message}")
        return entry

    def ok(self, name: str, detail: str = "") -> Entry:
        return self.add(name, Status.OK, detail)

    def warn(self, name: str, detail: str = "") -> Entry:
        return self.add(name, Status.WARN, detail)

    def fail(self, name: str, detail: str = "") -> Entry:
        return self.add(name, Status.FAIL, detail)

    def by_status(self, status: Status) -> List[Entry]:
        return [e for e in self.entries if e.status is status]

    def counts(self) -> Dict[str, int]:
        return {s.value: len(self.by_status(s)) for s in Status}

    def get(self, name: str) -> Entry:
        """Most recent entry recorded under name."""
        for entry in reversed(self.entries):
            if entry.name == name:
                return entry
        raise KeyError(name)

    @property
    def succeeded(self) -> int:
        return len(self.by_status(Status.OK))

    @property
    def has_failures(self) -> bool:
        return any(e.status is Status.FAIL for e in self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "entries": [
                {"name": e.name, "status": e.status.value, "detail": e.detail}
                for e in self.entries
            ],
            "counts": self.counts(),
        }

    def render(self) -> None:
        """Print the report as a table inside a panel."""
        table = Table(
            show_header=True,
            header_style=f"bold {NordColors.FROST_1}",
            box=box.ROUNDED,
            expand=True,
        )
        table.add_column("Item", style="header")
        table.add_column("Status", justify="center")
        table.add_column("Detail", style=NordColors.SNOW_STORM_1)

        for entry in self.entries:
            style = STATUS_STYLE[entry.status]
            table.add_row(
                entry.name,
                f"[{style}]{entry.status.value.upper()}[/{style}]",
                entry.detail,
            )

        console.print(
            Panel(
                table,
                title=f"[banner]{self.title}[/banner]",
                subtitle=f"{self.succeeded} / {len(self.entries)} succeeded",
                border_style=NordColors.FROST_3,
                box=box.ROUNDED,
            )
        )
