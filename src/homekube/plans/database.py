"""MySQL on the control plane or on a dedicated, tainted node"""

from typing import Any, Dict, Optional

from ..engine import Plan, Step, equal, present, superset
from ..engine.state import NodeTaints, ObjectPresent, RolloutState, SecretPresent, Taint
from ..system.actions import EnsureSecret, Require, TaintNode, WaitForRollout
from ..system.probes import NodeTaintProbe, ObjectProbe, RolloutProbe, SecretProbe
from ..system.runner import CommandRunner
from . import manifests
from .common import Reveal, kubeconfig, manifest_step, probe_timeout

DB_TAINT = Taint("app-type", "db", "NoSchedule")


def database_plan(
    config: Dict[str, Any],
    runner: CommandRunner,
    node: Optional[str] = None,
    reveal: Optional[Reveal] = None,
) -> Plan:
    db = config["database"]
    ns = db["namespace"]
    kube = kubeconfig(config)
    timeout = probe_timeout(config)

    plan = Plan("database")
    plan.add(manifest_step("database namespace", runner, manifests.namespace(ns), config))
    plan.add(
        Step(
            "mysql secret",
            SecretProbe(runner, ns, db["secret"], kube, timeout),
            EnsureSecret(runner, "root-password", reveal=reveal, kubeconfig=kube),
            SecretPresent(namespace=ns, name=db["secret"], present=True),
            compare=present,
        )
    )
    if node:
        plan.add(
            Step(
                "database node exists",
                ObjectProbe(runner, "node", node, kubeconfig=kube, timeout=timeout),
                Require(f"Node '{node}' not found in the cluster."),
                ObjectPresent(kind_name="node", namespace=None, name=node, present=True),
                compare=present,
            )
        )
        plan.add(
            Step(
                "database node taint",
                NodeTaintProbe(runner, node, kube, timeout),
                TaintNode(runner, kube),
                NodeTaints(node=node, taints=frozenset({DB_TAINT})),
                compare=superset("taints"),
            )
        )
    plan.add(
        manifest_step(
            "mysql",
            runner,
            manifests.mysql(ns, db["secret"], db["image"], db["storage_class"], db["storage_size"], node),
            config,
        )
    )
    plan.add(
        Step(
            "mysql rollout",
            RolloutProbe(runner, "statefulset", "mysql", ns, kube, timeout),
            WaitForRollout(runner, kube),
            RolloutState(kind_name="statefulset", namespace=ns, name="mysql", ready=True),
            compare=equal,
        )
    )
    return plan
