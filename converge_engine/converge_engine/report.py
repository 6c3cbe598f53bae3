"""Plan, apply, and drift reporting.

Two audiences are served:

* **Machines**: :func:`serialize_plan` produces deterministic JSON (sorted
  keys, stable indentation) so a plan can be stored, reviewed in an approval
  gate, and later deserialized and applied byte-for-byte.
  :func:`plan_report` returns a compact dict for logs and API payloads.
* **Humans**: the ``display_*`` functions render rich tables to a
  :class:`rich.console.Console` (typically bound to *stderr*).
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from converge_engine.models.drift import DriftKind, DriftReport
from converge_engine.models.plan import ActionKind, Plan
from converge_engine.models.result import ActionStatus, ApplyResult

# ---------------------------------------------------------------------------
# Plan serialization
# ---------------------------------------------------------------------------


def serialize_plan(plan: Plan) -> str:
    """Serialize a plan to a deterministic JSON string.

    Identical plans always produce byte-identical JSON.
    """
    # ``model_dump_json`` has no ``sort_keys``; go through a dict instead.
    raw = plan.model_dump(mode="json")
    return json.dumps(raw, indent=2, sort_keys=True, ensure_ascii=False)


def deserialize_plan(json_str: str) -> Plan:
    """Deserialize a JSON string produced by :func:`serialize_plan`.

    Raises
    ------
    pydantic.ValidationError
        If the JSON does not conform to the Plan schema.
    """
    return Plan.model_validate_json(json_str)


def validate_plan_schema(json_str: str) -> list[str]:
    """Validate a JSON string against the Plan schema without raising.

    Returns
    -------
    list[str]
        Human-readable validation errors; empty when the JSON is valid.
    """
    try:
        Plan.model_validate_json(json_str)
    except ValidationError as exc:
        return [
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" if err.get("loc") else err["msg"]
            for err in exc.errors()
        ]
    except (ValueError, TypeError) as exc:
        return [f"Invalid JSON: {exc}"]

    return []


def plan_report(plan: Plan) -> dict[str, Any]:
    """Return a machine-readable summary of *plan*.

    Every action is listed with its kind, the attributes that changed, and
    the attributes forcing a replacement.
    """
    return {
        "plan_id": plan.plan_id,
        "lineage": plan.lineage,
        "base_serial": plan.base_serial,
        "summary": plan.summary.model_dump(mode="json"),
        "actions": [
            {
                "resource_key": action.resource_key,
                "action": action.action_kind.value,
                "resource_id": action.resource_id,
                "changed_attributes": action.changed_attributes,
                "replace_attributes": action.replace_attributes,
                "replace_order": action.replace_order.value if action.replace_order else None,
                "depends_on": list(action.depends_on),
                "reason": action.reason,
            }
            for action in plan.actions
        ],
    }


# ---------------------------------------------------------------------------
# Rich rendering
# ---------------------------------------------------------------------------

_ACTION_STYLES: dict[ActionKind, str] = {
    ActionKind.CREATE: "green",
    ActionKind.UPDATE: "yellow",
    ActionKind.REPLACE: "magenta",
    ActionKind.DESTROY: "red",
    ActionKind.NO_OP: "dim",
}

_STATUS_STYLES: dict[ActionStatus, str] = {
    ActionStatus.APPLIED: "green",
    ActionStatus.FAILED: "red",
    ActionStatus.SKIPPED: "dim",
}


def _styled(text: str, style: str) -> str:
    return f"[{style}]{text}[/{style}]"


def display_plan(console: Console, plan: Plan, *, show_no_op: bool = False) -> None:
    """Render a plan overview followed by an action table."""
    summary = plan.summary
    header_lines = [
        f"[bold]Plan ID:[/bold]     {plan.plan_id[:16]}...",
        f"[bold]Base serial:[/bold] {plan.base_serial}",
        f"[bold]Changes:[/bold]     "
        f"{summary.create} to create, {summary.update} to update, "
        f"{summary.replace} to replace, {summary.destroy} to destroy",
    ]
    console.print(Panel("\n".join(header_lines), title="Reconciliation Plan", border_style="blue"))

    actions = [a for a in plan.actions if show_no_op or a.is_change]
    if not actions:
        console.print("[dim]No changes. Infrastructure matches the desired configuration.[/dim]")
        return

    table = Table(title="Planned Actions", show_lines=False, pad_edge=True, expand=False)
    table.add_column("#", style="dim", width=4, justify="right")
    table.add_column("Resource", style="bold")
    table.add_column("Action")
    table.add_column("Attributes")
    table.add_column("Depends On")
    table.add_column("Reason")

    for idx, action in enumerate(actions, start=1):
        attrs = ", ".join(
            f"{name}*" if name in action.replace_attributes else name for name in action.changed_attributes
        )
        action_text = action.action_kind.value
        if action.replace_order is not None:
            action_text += f" ({action.replace_order.value})"
        table.add_row(
            str(idx),
            action.resource_key,
            _styled(action_text, _ACTION_STYLES[action.action_kind]),
            attrs or "-",
            ", ".join(action.depends_on) or "-",
            escape(action.reason),
        )

    console.print(table)
    if any(a.replace_attributes for a in actions):
        console.print("[dim]* forces replacement[/dim]")


def display_apply_result(console: Console, result: ApplyResult) -> None:
    """Render the per-action outcome of an apply."""
    table = Table(title="Apply Result", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Resource", style="bold")
    table.add_column("Action")
    table.add_column("Status")
    table.add_column("Resource ID")
    table.add_column("Duration", justify="right")
    table.add_column("Error")

    for r in result.results:
        duration = r.duration_seconds
        table.add_row(
            r.resource_key,
            r.action_kind.value,
            _styled(r.status.value, _STATUS_STYLES[r.status]),
            r.resource_id or "-",
            f"{duration:.2f}s" if duration is not None else "-",
            escape(r.error or ""),
        )

    console.print(table)

    serial = result.snapshot.serial if result.snapshot is not None else None
    footer = (
        f"{len(result.applied)} applied, {len(result.failed)} failed, {len(result.skipped)} skipped"
        + (f"; state at serial {serial}" if serial is not None else "")
    )
    if result.cancelled:
        console.print(f"[yellow]Cancelled:[/yellow] {footer}")
    elif result.failed:
        console.print(f"[red]Completed with failures:[/red] {footer}")
    else:
        console.print(f"[green]Complete:[/green] {footer}")


def display_drift_report(console: Console, report: DriftReport) -> None:
    """Render drifted resources and read errors."""
    if not report.has_drift and not report.errors:
        console.print(f"[green]No drift detected[/green] ({report.checked} resources checked).")
        return

    if report.entries:
        table = Table(title="Drift Detected", show_lines=False, pad_edge=True, expand=False)
        table.add_column("Resource", style="bold")
        table.add_column("Kind")
        table.add_column("Attribute")
        table.add_column("Stored")
        table.add_column("Live")

        for entry in report.entries:
            if entry.kind == DriftKind.MISSING:
                table.add_row(entry.resource_key, _styled("missing", "red"), "-", "-", "-")
                continue
            for change in entry.changes:
                table.add_row(
                    entry.resource_key,
                    _styled("changed", "yellow"),
                    change.name,
                    escape(repr(change.before)),
                    escape(repr(change.after)),
                )
        console.print(table)

    if report.errors:
        errors = Table(title="Read Errors", show_lines=False, pad_edge=True, expand=False)
        errors.add_column("Resource", style="bold")
        errors.add_column("Error", style="red")
        for key, message in report.errors.items():
            errors.add_row(key, escape(message))
        console.print(errors)
