"""Prerequisites for deploying from GitHub Actions: VPN client and an SSH key"""

from typing import Any, Dict

from ..engine import Plan, Step, field_equal, file_exists, superset
from ..engine.state import AuthorizedKeys, FileChecksum, PackagesPresent, ServiceState
from ..system.actions import AuthorizeKey, EnableService, EnsurePackages, GenerateSSHKey
from ..system.probes import (
    AuthorizedKeysProbe,
    FileChecksumProbe,
    PackagesProbe,
    ServiceProbe,
    public_key,
)
from ..system.runner import CommandRunner
from .common import as_user, calling_user, probe_timeout, user_home

# any content will do, only the key's existence is compared
ANY_CONTENT = "*"


def ci_key_paths(config: Dict[str, Any]):
    """Private key and authorized_keys paths of the calling user"""
    home = user_home(calling_user(config))
    return home / config["ci"]["ssh_key"], home / ".ssh" / "authorized_keys"


def ci_plan(config: Dict[str, Any], runner: CommandRunner) -> Plan:
    ci = config["ci"]
    host = config["host"]
    timeout = probe_timeout(config)
    user = calling_user(config)
    key_path, authorized_keys = ci_key_paths(config)
    pub_path = key_path.with_name(key_path.name + ".pub")
    vpn = frozenset({ci["vpn_package"]})

    def key_authorized(context) -> AuthorizedKeys:
        return AuthorizedKeys(path=str(authorized_keys), keys=frozenset({public_key(pub_path)}))

    return Plan(
        "ci",
        [
            Step(
                "vpn client installed",
                PackagesProbe(runner, vpn, host["query_cmd"], timeout=timeout),
                EnsurePackages(runner, host["install_cmd"], user=as_user(host.get("install_user") or user)),
                PackagesPresent(packages=vpn),
                compare=superset("packages"),
            ),
            Step(
                "vpn daemon active",
                ServiceProbe(runner, ci["vpn_service"], timeout),
                EnableService(runner),
                ServiceState(name=ci["vpn_service"], active=True),
                compare=field_equal("active"),
            ),
            Step(
                "ci ssh key",
                FileChecksumProbe(key_path),
                GenerateSSHKey(runner, ci["ssh_comment"], user=as_user(user)),
                FileChecksum(path=str(key_path), sha256=ANY_CONTENT),
                compare=file_exists,
            ),
            Step(
                "ci key authorized",
                AuthorizedKeysProbe(authorized_keys),
                AuthorizeKey(pub_path, owner=as_user(user)),
                key_authorized,
                compare=superset("keys"),
            ),
        ],
    )
