"""Dynamic NFS storage provisioning"""

from typing import Any, Dict

from ..config.validation import validate_export_path, validate_nfs_server
from ..engine import Plan, Step, present, release_matches
from ..engine.state import ObjectPresent, ReleaseState, sha256_values
from ..system.actions import EnsureRelease, Require
from ..system.probes import ObjectProbe, ReleaseProbe
from ..system.runner import CommandRunner
from .common import action_timeout, kubeconfig, probe_timeout

NFS_RELEASE = "nfs-subdir-external-provisioner"
NFS_REPO = (NFS_RELEASE, "https://kubernetes-sigs.github.io/nfs-subdir-external-provisioner/")


def storage_plan(config: Dict[str, Any], runner: CommandRunner, server: str, path: str) -> Plan:
    validate_nfs_server(server)
    validate_export_path(path)
    storage = config["storage"]
    storage_class = storage["storage_class"]
    ns = storage["namespace"]
    values = {
        "nfs": {"server": server, "path": path},
        "storageClass": {"name": storage_class, "onDelete": "delete"},
    }

    return Plan(
        "storage",
        [
            Step(
                "nfs provisioner release",
                ReleaseProbe(runner, NFS_RELEASE, ns, probe_timeout(config)),
                EnsureRelease(runner, f"{NFS_RELEASE}/{NFS_RELEASE}", values, repo=NFS_REPO, timeout=action_timeout(config)),
                ReleaseState(
                    name=NFS_RELEASE,
                    namespace=ns,
                    status="deployed",
                    chart=NFS_RELEASE,
                    values_sha256=sha256_values(values),
                ),
                compare=release_matches,
            ),
            Step(
                "storage class present",
                ObjectProbe(runner, "storageclass", storage_class, kubeconfig=kubeconfig(config), timeout=probe_timeout(config)),
                Require(f"StorageClass '{storage_class}' was not found after deployment; check the helm release"),
                ObjectPresent(kind_name="storageclass", namespace=None, name=storage_class, present=True),
                compare=present,
            ),
        ],
    )
