"""Read-only commands: drift detection and plan listing"""

import click

from homekube.cli.output import console, print_drift, print_plan
from homekube.engine import detect_drift
from homekube.errors import HomekubeError
from homekube.plans import PHASES, build_plan


@click.command()
@click.argument("phase", type=click.Choice(PHASES))
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
def check(ctx, phase, format):
    """Report drift of PHASE without changing anything; exits 1 on drift"""
    try:
        plan = build_plan(phase, ctx.obj["config"], ctx.obj["runner"])
        entries = detect_drift(plan)
    except HomekubeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise click.Abort()

    print_drift(plan.name, entries, format)
    if any(e.drifted for e in entries):
        ctx.exit(1)


@click.command()
@click.argument("phase", type=click.Choice(PHASES))
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
def plan(ctx, phase, format):
    """List the steps of PHASE"""
    try:
        built = build_plan(phase, ctx.obj["config"], ctx.obj["runner"])
    except HomekubeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise click.Abort()

    print_plan(built, format)
