"""Prometheus, Loki and Grafana on the server"""

from typing import Any, Dict, Optional

from ..engine import Plan, Step, present, release_matches
from ..engine.state import ReleaseState, SecretPresent, sha256_values
from ..system.actions import EnsureRelease, EnsureSecret
from ..system.probes import ReleaseProbe, SecretProbe
from ..system.runner import CommandRunner
from . import manifests
from .common import Reveal, action_timeout, kubeconfig, load_values, manifest_step, probe_timeout

PROMETHEUS_REPO = ("prometheus-community", "https://prometheus-community.github.io/helm-charts")
PROMETHEUS_CHART = "kube-prometheus-stack"


def monitoring_plan(config: Dict[str, Any], runner: CommandRunner, reveal: Optional[Reveal] = None) -> Plan:
    monitoring = config["monitoring"]
    ns = monitoring["namespace"]
    secret = monitoring["grafana_secret"]
    timeout = probe_timeout(config)

    if monitoring.get("values_file"):
        values = load_values(monitoring["values_file"])
    else:
        values = manifests.monitoring_values(secret, monitoring.get("grafana_host", ""))

    return Plan(
        "monitoring",
        [
            manifest_step("monitoring namespace", runner, manifests.namespace(ns), config),
            Step(
                "grafana admin secret",
                SecretProbe(runner, ns, secret, kubeconfig(config), timeout),
                EnsureSecret(
                    runner,
                    manifests.GRAFANA_PASSWORD_KEY,
                    reveal=reveal,
                    kubeconfig=kubeconfig(config),
                    literals={manifests.GRAFANA_USER_KEY: manifests.GRAFANA_ADMIN},
                ),
                SecretPresent(namespace=ns, name=secret, present=True),
                compare=present,
            ),
            manifest_step(
                "loki",
                runner,
                manifests.loki(ns, monitoring["storage_class"], monitoring["loki_storage"]),
                config,
            ),
            Step(
                "kube-prometheus-stack release",
                ReleaseProbe(runner, "prometheus", ns, timeout),
                EnsureRelease(
                    runner,
                    f"{PROMETHEUS_REPO[0]}/{PROMETHEUS_CHART}",
                    values,
                    repo=PROMETHEUS_REPO,
                    timeout=action_timeout(config),
                ),
                ReleaseState(
                    name="prometheus",
                    namespace=ns,
                    status="deployed",
                    chart=PROMETHEUS_CHART,
                    values_sha256=sha256_values(values),
                ),
                compare=release_matches,
            ),
        ],
    )
