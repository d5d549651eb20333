"""Rendering of run reports, drift and plans on the console"""

from typing import List

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from homekube.engine import DriftEntry, Outcome, Plan, RunReport
from homekube.engine.state import SecretPresent

console = Console()
err_console = Console(stderr=True)

OUTCOME_STYLE = {
    Outcome.UNCHANGED: "dim",
    Outcome.CONVERGED: "green",
    Outcome.FAILED: "red",
}


def _state(value) -> str:
    return escape(str(value)) if value is not None else "-"


def print_report(report: RunReport, format: str = "table") -> None:
    if format == "json":
        console.print_json(data=report.to_dict())
        return

    table = Table(title=f"Plan: {report.plan}")
    table.add_column("Step", style="cyan")
    table.add_column("Outcome")
    table.add_column("Before")
    table.add_column("After")
    table.add_column("Error", style="red")

    for result in report.results:
        style = OUTCOME_STYLE[result.outcome]
        outcome = f"[{style}]{result.outcome.value}[/{style}]"
        if result.attempts > 1:
            outcome += f" ({result.attempts} attempts)"
        table.add_row(
            result.label,
            outcome,
            _state(result.before),
            _state(result.after),
            escape(str(result.error)) if result.error else "",
        )

    console.print(table)
    if report.ok:
        console.print(f"[green]✓[/green] {report.status}")
    elif report.cancelled:
        console.print(f"[yellow]⚠ Cancelled:[/yellow] {report.status}")
    else:
        console.print(f"[red]✗[/red] {report.status}")


def print_drift(phase: str, entries: List[DriftEntry], format: str = "table") -> None:
    if format == "json":
        console.print_json(data={"plan": phase, "steps": [e.to_dict() for e in entries]})
        return

    table = Table(title=f"Drift: {phase}")
    table.add_column("Step", style="cyan")
    table.add_column("State")
    table.add_column("Observed")
    table.add_column("Desired")

    for entry in entries:
        if entry.error:
            state = f"[red]error: {escape(str(entry.error))}[/red]"
        elif entry.drifted:
            state = "[yellow]drift[/yellow]"
        else:
            state = "[green]ok[/green]"
        table.add_row(entry.label, state, _state(entry.observed), _state(entry.desired))

    console.print(table)


def print_plan(plan: Plan, format: str = "table") -> None:
    steps = []
    for step in plan:
        desired = "(computed during the run)" if callable(step.desired) else str(step.desired)
        steps.append(
            {
                "label": step.label,
                "probe": type(step.probe).__name__,
                "action": type(step.action).__name__,
                "compare": getattr(step.compare, "__name__", repr(step.compare)),
                "desired": desired,
                "policy": step.policy.value if step.policy else None,
            }
        )

    if format == "json":
        console.print_json(data={"plan": plan.name, "steps": steps})
        return

    table = Table(title=f"Plan: {plan.name}")
    table.add_column("#", justify="right")
    table.add_column("Step", style="cyan")
    table.add_column("Probe")
    table.add_column("Action")
    table.add_column("Compare")
    table.add_column("Desired")

    for i, step in enumerate(steps, 1):
        label = step["label"]
        if step["policy"]:
            label += f" [dim]({step['policy']})[/dim]"
        table.add_row(str(i), label, step["probe"], step["action"], step["compare"], escape(step["desired"]))

    console.print(table)


def reveal_secret(desired: SecretPresent, key: str, value: str) -> None:
    """Show a generated secret value once; it is not displayed again"""
    err_console.print(f"  Secret [cyan]{desired.namespace}/{desired.name}[/cyan] created with a generated {key}.")
    err_console.print(f"  Your one-time generated password is: [bold yellow]{value}[/bold yellow]")
