"""Output formatters for stack views, drift jobs and drift reports."""

import io
import json

from rich.console import Console
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from driftwatch.analyzer import AnalyzedStack, Severity
from driftwatch.models import Grant, JobView, ResourceStatus, StackStatus, StackView

SEVERITY_COLORS = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "dim",
}

DRIFT_STATUS_COLORS = {
    StackStatus.IN_SYNC: "green",
    StackStatus.DRIFTED: "red",
    StackStatus.DETECTION_IN_PROGRESS: "cyan",
    StackStatus.UNKNOWN: "yellow",
    StackStatus.NOT_CHECKED: "dim",
}

REDACTED = "[REDACTED]"


def _escape_md_cell(value) -> str:
    """Escape characters that break markdown table cells."""
    return str(value).replace("|", "\\|").replace("\n", " ")


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _render(renderable) -> str:
    console = Console(record=True, width=120, file=io.StringIO())
    console.print(renderable)
    return console.export_text()


def _is_drifted(status: ResourceStatus) -> bool:
    return status in (ResourceStatus.MODIFIED, ResourceStatus.DELETED)


def stack_view_to_dict(view: StackView) -> dict:
    stack = view.stack
    job = view.latest_job
    return {
        "account_id": stack.account_id,
        "stack_name": stack.stack_name,
        "stack_id": stack.stack_id,
        "region": stack.region,
        "status": stack.last_known_status,
        "drift_status": stack.drift_status.value,
        "detection_time": _iso(stack.detection_time),
        "description": stack.description,
        "tags": stack.tags,
        "outputs": stack.outputs,
        "parameters": stack.parameters,
        "latest_job": job_to_dict(job) if job else None,
        "stale": view.stale,
    }


def job_to_dict(job) -> dict:
    return {
        "remote_operation_id": job.remote_operation_id,
        "account_id": job.account_id,
        "stack_name": job.stack_name,
        "region": job.region,
        "status": job.status.value,
        "drift_status": job.drift_status.value if job.drift_status else None,
        "failure_reason": job.failure_reason,
        "started_at": _iso(job.started_at),
        "completed_at": _iso(job.completed_at),
    }


def format_stacks_json(views: list[StackView]) -> str:
    return json.dumps(
        {"total": len(views), "stacks": [stack_view_to_dict(v) for v in views]}, indent=2
    )


def format_stacks_table(views: list[StackView]) -> str:
    if not views:
        return "No stacks found."

    table = Table(title="Stacks")
    table.add_column("Account")
    table.add_column("Region")
    table.add_column("Stack")
    table.add_column("Status")
    table.add_column("Drift")
    table.add_column("Checked")

    for view in views:
        stack = view.stack
        color = DRIFT_STATUS_COLORS.get(stack.drift_status, "dim")
        drift = Text(stack.drift_status.value, style=color)
        if view.stale:
            drift.append(" (stale)", style="bold yellow")
        checked = f"{stack.detection_time:%Y-%m-%d %H:%M}" if stack.detection_time else "—"
        table.add_row(
            stack.account_id,
            stack.region,
            stack.stack_name,
            stack.last_known_status or "—",
            drift,
            checked,
        )

    return _render(table)


def format_jobs_table(views: list[JobView]) -> str:
    if not views:
        return "No drift jobs found."

    table = Table(title="Drift jobs")
    table.add_column("Operation")
    table.add_column("Stack")
    table.add_column("Status")
    table.add_column("Result")
    table.add_column("Started")

    for view in views:
        job = view.job
        status = Text(job.status.value)
        if view.stale:
            status.append(" (stale)", style="bold yellow")
        result = job.drift_status.value if job.drift_status else (job.failure_reason or "—")
        table.add_row(
            job.remote_operation_id,
            f"{job.account_id}/{job.stack_name}",
            status,
            result,
            f"{job.started_at:%Y-%m-%d %H:%M}",
        )

    return _render(table)


def format_accounts_table(grants: list[Grant]) -> str:
    if not grants:
        return "No connected accounts."

    table = Table(title="Connected accounts")
    table.add_column("Account")
    table.add_column("Name")
    table.add_column("Region")
    table.add_column("Role")
    for grant in grants:
        table.add_row(grant.account_id, grant.name or "—", grant.region, grant.role_arn)
    return _render(table)


def format_drift_json(analyzed: AnalyzedStack, *, redact: bool = False) -> str:
    """Format a stack's drift snapshot as JSON."""
    resources = []
    for rd in analyzed.resources:
        severity = analyzed.resource_severities.get(rd.logical_resource_id)
        resources.append(
            {
                "logical_resource_id": rd.logical_resource_id,
                "physical_resource_id": rd.physical_resource_id,
                "resource_type": rd.resource_type,
                "drift_status": rd.drift_status.value,
                "severity": severity.name if severity else None,
                "property_differences": [
                    {
                        "property_path": pd.get("property_path"),
                        "difference_type": pd.get("difference_type"),
                        "expected_value": REDACTED if redact else pd.get("expected_value"),
                        "actual_value": REDACTED if redact else pd.get("actual_value"),
                    }
                    for pd in rd.property_differences
                ],
            }
        )

    payload = stack_view_to_dict(analyzed.view)
    payload["severity"] = analyzed.stack_severity.name if analyzed.stack_severity else None
    payload["resources"] = resources
    return json.dumps(payload, indent=2, default=str)


def format_drift_tree(analyzed: AnalyzedStack, *, redact: bool = False) -> str:
    """Format a stack's drift snapshot as a Rich tree view, returned as a string."""
    stack = analyzed.view.stack
    color = DRIFT_STATUS_COLORS.get(stack.drift_status, "dim")
    severity_label = f" [{analyzed.stack_severity.name}]" if analyzed.stack_severity else ""
    tree = Tree(
        Text.from_markup(
            f"[bold]{stack.stack_name}[/bold] — [{color}]{stack.drift_status.value}[/{color}]"
        ).append(severity_label)
    )
    if analyzed.view.stale:
        tree.add(Text("Latest drift job is stale", style="bold yellow"))

    for rd in analyzed.resources:
        if not _is_drifted(rd.drift_status):
            continue
        sev = analyzed.resource_severities.get(rd.logical_resource_id, Severity.LOW)
        sev_color = SEVERITY_COLORS.get(sev, "dim")
        resource_branch = tree.add(
            Text.from_markup(
                f"[{sev_color}]{rd.logical_resource_id}[/{sev_color}]"
                f" ({rd.resource_type}) — {rd.drift_status.value} [{sev.name}]"
            )
        )
        for pd in rd.property_differences:
            expected = REDACTED if redact else pd.get("expected_value")
            actual = REDACTED if redact else pd.get("actual_value")
            line = Text(f"{pd.get('property_path')}: ")
            line.append(str(expected), style="green")
            line.append(" → ")
            line.append(str(actual), style="red")
            resource_branch.add(line)

    return _render(tree)


def format_markdown(analyzed: list[AnalyzedStack], *, redact: bool = False) -> str:
    """Format drifted stacks as Markdown."""
    drifted = [a for a in analyzed if a.view.stack.drift_status == StackStatus.DRIFTED]
    if not drifted:
        return "No drift detected."

    lines = [
        f"## Drift Report — {len(drifted)}/{len(analyzed)} stacks drifted",
        "",
    ]

    for a in drifted:
        stack = a.view.stack
        severity_label = f" [{a.stack_severity.name}]" if a.stack_severity else ""
        lines.append(
            f"### {_escape_md_cell(stack.stack_name)} ({stack.account_id}, {stack.region})"
            f" — DRIFTED{severity_label}"
        )
        lines.append("")
        lines.append("| Resource | Type | Status | Severity | Property | Expected | Actual |")
        lines.append("|----------|------|--------|----------|----------|----------|--------|")

        for rd in a.resources:
            if not _is_drifted(rd.drift_status):
                continue
            sev = a.resource_severities.get(rd.logical_resource_id, Severity.LOW).name
            logical_id = _escape_md_cell(rd.logical_resource_id)
            resource_type = _escape_md_cell(rd.resource_type)
            if rd.property_differences:
                for pd in rd.property_differences:
                    prop_path = _escape_md_cell(pd.get("property_path", ""))
                    expected = REDACTED if redact else _escape_md_cell(pd.get("expected_value"))
                    actual = REDACTED if redact else _escape_md_cell(pd.get("actual_value"))
                    lines.append(
                        f"| {logical_id} | {resource_type} | {rd.drift_status.value} "
                        f"| {sev} | `{prop_path}` "
                        f"| `{expected}` | `{actual}` |"
                    )
            else:
                lines.append(
                    f"| {logical_id} | {resource_type} | {rd.drift_status.value} "
                    f"| {sev} | — | — | — |"
                )

        lines.append("")

    return "\n".join(lines)
