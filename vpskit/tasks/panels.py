"""
Updates for the x-ui and s-ui proxy panels. Both ship an interactive
`update` subcommand; the expected answers are fed through stdin.
"""

import json
from dataclasses import dataclass
from typing import Dict, List, Optional

from vpskit.errors import CommandError
from vpskit.host import Host
from vpskit.report import Report
from vpskit.ui import console, print_section, print_step


@dataclass
class Panel:
    name: str
    key: str
    answers: str
    detected: bool = False
    updated: bool = False
    exit_code: Optional[int] = None


def default_panels() -> List[Panel]:
    return [
        # confirm, accept default, then exit the menu
        Panel(name="x-ui", key="xui", answers="y\n\n0\n"),
        # confirm, decline the follow-up
        Panel(name="s-ui", key="sui", answers="y\nn\n"),
    ]


def update_panel(host: Host, panel: Panel, report: Report) -> Panel:
    if not host.runner.exists(panel.name):
        panel.detected = False
        print_step(f"{panel.name} not found on PATH, skipping.")
        return panel

    panel.detected = True
    print_step(f"{panel.name} detected, updating...")
    try:
        result = host.runner.run(
            [panel.name, "update"], check=False, input=panel.answers, timeout=900
        )
        panel.exit_code = result.returncode
    except CommandError as e:
        panel.exit_code = e.returncode
    panel.updated = panel.exit_code == 0

    if panel.updated:
        report.ok(panel.name, "updated")
    else:
        report.fail(panel.name, f"update failed (exit code {panel.exit_code})")
    return panel


def summary_json(panels: List[Panel]) -> str:
    """One-line JSON summary; values are "true"/"false" strings."""
    data: Dict[str, str] = {}
    for panel in panels:
        data[f"{panel.key}_detected"] = str(panel.detected).lower()
        data[f"{panel.key}_updated"] = str(panel.updated).lower()
    return json.dumps(data)


def run_panels(
    host: Host, report: Report, panels: Optional[List[Panel]] = None
) -> List[Panel]:
    """Detect and update each panel, then print a summary."""
    panels = panels if panels is not None else default_panels()
    print_section("Panel updates")
    for panel in panels:
        update_panel(host, panel, report)
        console.print()

    print_section("Summary")
    for panel in panels:
        console.print(f"{panel.name}: {'installed' if panel.detected else 'not installed'}")
        if panel.detected:
            console.print(f"{panel.name} update: {'succeeded' if panel.updated else 'failed'}")
        else:
            report.warn(panel.name, "not installed")

    if any(p.updated for p in panels):
        console.print("Overall: at least one panel was updated.")
    else:
        console.print("Overall: nothing updated (not installed or update failed).")

    console.print(summary_json(panels), markup=False, highlight=False)
    return panels
