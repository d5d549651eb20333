"""Commands converging a machine or the cluster"""

import base64
import logging
import os
import signal
import threading
from contextlib import contextmanager
from typing import Optional

import click
from rich.markup import escape

from homekube.cli.output import console, print_report, reveal_secret
from homekube.engine import FailurePolicy, Plan, Reconciler
from homekube.errors import CommandError, HomekubeError
from homekube.plans import agent_plan, ci_plan, database_plan, monitoring_plan, server_plan, storage_plan
from homekube.plans.ci import ci_key_paths
from homekube.plans.common import calling_user, user_home

logger = logging.getLogger(__name__)


def run_options(f):
    """Options shared by every converging command"""
    f = click.option(
        "--skip-root-check", is_flag=True, help="Run even without root privileges"
    )(f)
    f = click.option("--format", type=click.Choice(["table", "json"]), default="table")(f)
    f = click.option(
        "--policy",
        type=click.Choice([p.value for p in FailurePolicy]),
        default=FailurePolicy.ABORT.value,
        help="What to do after a failed step",
    )(f)
    return f


@contextmanager
def cancel_on_signal():
    """Set an event on SIGINT/SIGTERM so the run stops between steps"""
    cancel = threading.Event()

    def handler(signum, frame):
        logger.warning("Received %s, stopping after the current step", signal.Signals(signum).name)
        cancel.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def converge(ctx, build, policy: str, format: str, skip_root_check: bool):
    """Build a plan, run it under the run lock and report; exits 1 unless all converged"""
    if not skip_root_check and os.geteuid() != 0:
        console.print("[red]Error:[/red] Please run this command with sudo.")
        raise click.Abort()

    cfg = ctx.obj["config"]
    try:
        plan: Plan = build()
        with cancel_on_signal() as cancel:
            reconciler = Reconciler(lock_path=cfg["engine"]["lock_file"], cancel=cancel)
            report = reconciler.run(plan, FailurePolicy(policy))
    except HomekubeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise click.Abort()

    print_report(report, format)
    if not report.ok:
        ctx.exit(1)
    return report


@click.command()
@run_options
@click.pass_context
def orchestrator(ctx, policy, format, skip_root_check):
    """Set up this machine as the k3s server with monitoring and CI access"""
    cfg = ctx.obj["config"]
    runner = ctx.obj["runner"]

    def build():
        plan = Plan("orchestrator")
        plan.extend(server_plan(cfg, runner))
        plan.extend(monitoring_plan(cfg, runner, reveal=reveal_secret))
        plan.extend(ci_plan(cfg, runner))
        return plan

    converge(ctx, build, policy, format, skip_root_check)
    if format == "table":
        show_orchestrator_hints(cfg, runner)


def tailscale_ip(runner) -> Optional[str]:
    """This machine's Tailscale IPv4 address, or None while tailscale is down"""
    try:
        result = runner.run(["tailscale", "ip", "-4"], check=False, timeout=10)
    except CommandError as e:
        logger.debug("Cannot query tailscale: %s", e)
        return None
    addresses = result.stdout.split()
    if result.returncode != 0 or not addresses:
        return None
    return addresses[0]


def show_orchestrator_hints(cfg, runner):
    user = calling_user(cfg)
    key_path, _ = ci_key_paths(cfg)
    monitoring = cfg["monitoring"]

    console.print("\n[bold]Grafana[/bold]")
    if monitoring.get("grafana_host"):
        console.print(f"  URL: https://{monitoring['grafana_host']}")
    console.print("  Username: admin")
    console.print(
        f"  Password: secret '{monitoring['grafana_secret']}' in namespace '{monitoring['namespace']}'"
    )

    console.print("\n[bold]GitHub CI[/bold]")
    console.print(f"  Private key: {key_path}")
    console.print(f"  Public key: {key_path}.pub")
    console.print("  Add these to your GitHub repository secrets:")
    try:
        encoded = base64.b64encode(key_path.read_bytes()).decode("ascii")
        console.print(f"  HOMELAB_SSH_KEY: {encoded}", soft_wrap=True)
    except OSError as e:
        console.print(f"  [yellow]HOMELAB_SSH_KEY: cannot read {escape(str(e))}[/yellow]")
    console.print(f"  HOMELAB_USER: {user}")
    host = tailscale_ip(runner) or "<Run 'tailscale up' to get IP>"
    console.print(f"  HOMELAB_HOST: {host}")

    console.print("\n[bold]Next steps[/bold]")
    console.print("  1. Connect to Tailscale: sudo tailscale up")
    console.print("  2. Forward ports 80/443 on your router to this machine")
    console.print(f"  3. Log in again, or run: export KUBECONFIG={user_home(user) / '.kube' / 'config'}")
    console.print("  4. Add the secrets above to your GitHub repository settings")
    console.print(f"  5. Your Let's Encrypt resolver name is: [green]{cfg['traefik']['resolver']}[/green]")


@click.command()
@click.argument("server_url")
@click.argument("token")
@run_options
@click.pass_context
def worker(ctx, server_url, token, policy, format, skip_root_check):
    """Join this machine to the cluster at SERVER_URL as a worker node

    SERVER_URL is https://IP:6443 of the server; TOKEN is the content of
    /var/lib/rancher/k3s/server/node-token on the server.
    """
    cfg = ctx.obj["config"]
    logger.info("Joining %s with token %s...", server_url, token[:10])

    converge(ctx, lambda: agent_plan(cfg, ctx.obj["runner"], server_url, token), policy, format, skip_root_check)
    if format == "table":
        console.print("\nRun 'kubectl get nodes' on the server to see this node.")


@click.command()
@click.argument("server")
@click.argument("path")
@run_options
@click.pass_context
def nfs(ctx, server, path, policy, format, skip_root_check):
    """Provision storage dynamically from the NFS export SERVER:PATH"""
    cfg = ctx.obj["config"]

    converge(ctx, lambda: storage_plan(cfg, ctx.obj["runner"], server, path), policy, format, skip_root_check)
    if format == "table":
        console.print(f"\nStorageClass '{cfg['storage']['storage_class']}' is ready for persistent volumes.")


@click.command()
@click.argument("node", required=False)
@run_options
@click.pass_context
def database(ctx, node, policy, format, skip_root_check):
    """Deploy MySQL, on NODE (tainted for databases) or the control plane"""
    cfg = ctx.obj["config"]
    db = cfg["database"]

    converge(
        ctx,
        lambda: database_plan(cfg, ctx.obj["runner"], node, reveal=reveal_secret),
        policy,
        format,
        skip_root_check,
    )
    if format == "table":
        console.print("\n[bold]MySQL[/bold]")
        console.print(f"  Service: mysql.{db['namespace']}.svc.cluster.local")
        console.print(f"  Password secret: {db['secret']}")
