"""Rich output formatting for ``deployctl``.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that JSON written to *stdout* stays machine-readable.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from deploy_api.services.lifecycle_sweeper import SweepReport
    from deploy_core.models.orgapp import OrgAppRecord


# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "ADDED": "dim",
    "DEPLOYING": "yellow",
    "PREVIEW": "cyan",
    "RUNNING": "green",
    "STOPPED": "dim red",
    "FAILED": "red",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


# ---------------------------------------------------------------------------
# OrgApp listing
# ---------------------------------------------------------------------------


def display_org_apps(console: Console, org_id: str, records: list[OrgAppRecord]) -> None:
    """Render every OrgApp of one organization as a table.

    Parameters
    ----------
    console:
        Rich console to write to.
    org_id:
        Organization the records belong to, shown in the title.
    records:
        OrgApp records in display order.
    """
    if not records:
        console.print(f"[dim]Organization {org_id} has no apps.[/dim]")
        return

    table = Table(title=f"Apps for {org_id}", show_lines=False, pad_edge=True, expand=False)
    table.add_column("App", style="bold")
    table.add_column("Status")
    table.add_column("Deployed", justify="right")
    table.add_column("Latest", justify="right")
    table.add_column("Drift", justify="center")
    table.add_column("Hostname")
    table.add_column("URL")

    for record in records:
        drift = "[yellow]update[/yellow]" if record.needs_update else "-"
        table.add_row(
            record.app_id,
            _coloured_status(record.status.value),
            record.deployed_version or "-",
            record.latest_version,
            drift,
            record.hostname or "-",
            record.deploy_url or "-",
        )

    console.print(table)

    failed = [r for r in records if r.last_error]
    for record in failed:
        console.print(f"[red]{record.app_id}:[/red] {record.last_error}")


# ---------------------------------------------------------------------------
# Sweep report
# ---------------------------------------------------------------------------


def display_sweep_report(console: Console, report: SweepReport) -> None:
    """Summarize one watchdog and draft expiry pass."""
    lines = [
        f"[bold]Timed out:[/bold]      {len(report.timed_out)}",
        f"[bold]Drafts expired:[/bold] {report.drafts_expired}",
        f"[bold]Finished:[/bold]       {report.finished_at.isoformat(timespec='seconds')}",
    ]
    for key in report.timed_out:
        lines.append(f"  [red]✗[/red] {key}")
    border = "yellow" if report.timed_out else "green"
    console.print(Panel("\n".join(lines), title="Lifecycle Sweep", border_style=border))
