#!/usr/bin/env python3
"""homekube CLI - Main entry point"""

import logging
from pathlib import Path

import click
from rich.logging import RichHandler

from homekube.cli.output import console, err_console
from homekube.config.manager import DEFAULT_CONFIG_PATH, ConfigManager
from homekube.errors import ConfigError
from homekube.system.runner import CommandRunner


def setup_logging(level: str, verbose: bool) -> None:
    """Send log records through rich on stderr"""
    if verbose:
        level = "DEBUG"
    numeric = logging.getLevelName(str(level).upper())
    if not isinstance(numeric, int):
        raise ConfigError(f"Unknown log level: {level}")

    logging.basicConfig(
        level=numeric,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=verbose)],
        force=True,
    )


@click.group()
@click.option("--config", type=click.Path(), help="Config file path")
@click.option("-v", "--verbose", is_flag=True, help="Verbose output")
@click.pass_context
def cli(ctx, config, verbose):
    """homekube - idempotent k3s homelab bootstrap"""
    ctx.ensure_object(dict)

    # Load configuration
    config_path = Path(config) if config else DEFAULT_CONFIG_PATH
    try:
        cfg = ConfigManager(config_path).load()
        setup_logging(cfg["logging"]["level"], verbose)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise click.Abort()

    ctx.obj["config"] = cfg
    ctx.obj["verbose"] = verbose
    ctx.obj.setdefault("runner", CommandRunner(env={"KUBECONFIG": cfg["k3s"]["config_path"]}))


@cli.command()
def version():
    """Show version information"""
    from homekube import __version__

    console.print(f"homekube version {__version__}")


# Import subcommands
from homekube.cli import apply, drift

cli.add_command(apply.orchestrator)
cli.add_command(apply.worker)
cli.add_command(apply.nfs)
cli.add_command(apply.database)
cli.add_command(drift.check)
cli.add_command(drift.plan)


if __name__ == "__main__":
    cli()
