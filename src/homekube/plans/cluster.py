"""k3s server and agent nodes"""

from pathlib import Path
from typing import Any, Dict

from ..config.validation import validate_email, validate_join_url, validate_token
from ..engine import (
    FailurePolicy,
    Plan,
    Step,
    checksum_equal,
    field_equal,
    restarted_after,
    retrying,
)
from ..engine.state import FileChecksum, NodeReady, Reachable, ServiceState, sha256_text
from ..errors import ProbeError
from ..system.actions import (
    CopyFile,
    EnsureClusterInstalled,
    Require,
    RestartService,
    WaitForNode,
    WriteFile,
)
from ..system.probes import (
    FileChecksumProbe,
    NodeReadyProbe,
    ServerReachableProbe,
    ServiceProbe,
    file_checksum,
)
from ..system.runner import CommandRunner
from . import manifests
from .common import as_user, calling_user, kubeconfig, node_name, probe_timeout, user_home
from .host import host_plan

TRAEFIK_CONFIG = "traefik acme config"


def server_plan(config: Dict[str, Any], runner: CommandRunner) -> Plan:
    """Single-node k3s server with user access and Traefik ACME"""
    k3s = config["k3s"]
    timeout = probe_timeout(config)
    kube = kubeconfig(config)
    node = node_name(config)
    user = calling_user(config)
    user_kubeconfig = user_home(user) / ".kube" / "config"

    traefik = config["traefik"]
    traefik_content = manifests.traefik_config(validate_email(traefik["acme_email"]), traefik["resolver"])
    traefik_path = Path(k3s["manifests_dir"]) / "traefik-config.yaml"

    def cluster_kubeconfig(context) -> FileChecksum:
        source = file_checksum(kube)
        if source.sha256 is None:
            raise ProbeError(f"{kube} does not exist yet")
        return FileChecksum(path=str(user_kubeconfig), sha256=source.sha256)

    def restarted_since_traefik_change(context) -> ServiceState:
        since = context.converged_at(TRAEFIK_CONFIG) if context else None
        return ServiceState(name="k3s", active=True, active_since=since)

    plan = host_plan(config, runner, name="server")
    plan.add(
        Step(
            "k3s server active",
            ServiceProbe(runner, "k3s", timeout),
            EnsureClusterInstalled(runner, "server", install_url=k3s["install_url"]),
            ServiceState(name="k3s", active=True),
            compare=field_equal("active"),
        )
    )
    plan.add(
        retrying(
            Step(
                "node ready",
                NodeReadyProbe(runner, node, kube, timeout),
                WaitForNode(runner, kube),
                NodeReady(node=node, ready=True),
            ),
            attempts=3,
            delay=10.0,
        )
    )
    plan.add(
        Step(
            "user kubeconfig",
            FileChecksumProbe(user_kubeconfig),
            CopyFile(kube, mode=0o600, owner=as_user(user)),
            cluster_kubeconfig,
            compare=checksum_equal,
        )
    )
    plan.add(
        Step(
            TRAEFIK_CONFIG,
            FileChecksumProbe(traefik_path),
            WriteFile(traefik_content, mode=0o600),
            FileChecksum(path=str(traefik_path), sha256=sha256_text(traefik_content)),
            compare=checksum_equal,
        )
    )
    plan.add(
        Step(
            "k3s restarted after traefik change",
            ServiceProbe(runner, "k3s", timeout),
            RestartService(runner),
            restarted_since_traefik_change,
            compare=restarted_after,
        )
    )
    return plan


def agent_plan(config: Dict[str, Any], runner: CommandRunner, join_url: str, token: str) -> Plan:
    """Worker node joined to an existing server, with its monitoring agents"""
    validate_join_url(join_url)
    validate_token(token)
    k3s = config["k3s"]
    timeout = probe_timeout(config)

    plan = host_plan(config, runner, packages=config["host"]["worker_packages"], name="agent")
    plan.add(
        Step(
            "server reachable",
            ServerReachableProbe(join_url, timeout),
            Require(
                f"Cannot reach K3s server at {join_url}; check the address, that the server "
                "is running and that port 6443 is open"
            ),
            Reachable(url=join_url, reachable=True),
            compare=field_equal("reachable"),
        )
    )
    plan.add(
        Step(
            "k3s agent active",
            ServiceProbe(runner, "k3s-agent", timeout),
            EnsureClusterInstalled(runner, "agent", join_url=join_url, token=token, install_url=k3s["install_url"]),
            ServiceState(name="k3s-agent", active=True),
            compare=field_equal("active"),
        )
    )

    ns = config["monitoring"]["namespace"]
    pod_manifests = Path(k3s["agent_manifests_dir"])
    for name, content in (("node-exporter", manifests.node_exporter(ns)), ("promtail", manifests.promtail(ns))):
        path = pod_manifests / f"{name}.yaml"
        plan.add(
            Step(
                f"{name} manifest",
                FileChecksumProbe(path),
                WriteFile(content),
                FileChecksum(path=str(path), sha256=sha256_text(content)),
                compare=checksum_equal,
                policy=FailurePolicy.CONTINUE,
            )
        )
    return plan
