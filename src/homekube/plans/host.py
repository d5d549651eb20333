"""Host preparation shared by server and agent nodes"""

from typing import Any, Dict, Iterable, Optional

from ..engine import Plan, Step, superset
from ..engine.state import PackagesPresent, SwapState
from ..system.actions import DisableSwap, EnsurePackages
from ..system.probes import PackagesProbe, SwapProbe
from ..system.runner import CommandRunner
from .common import as_user, calling_user, probe_timeout


def host_plan(
    config: Dict[str, Any],
    runner: CommandRunner,
    packages: Optional[Iterable[str]] = None,
    name: str = "host",
) -> Plan:
    """Swap off for good and the required packages installed"""
    host = config["host"]
    wanted = frozenset(host["packages"] if packages is None else packages)
    # AUR helpers refuse to run as root
    install_user = as_user(host.get("install_user") or calling_user(config))

    return Plan(
        name,
        [
            Step(
                "swap disabled",
                SwapProbe(host["proc_swaps"], host["fstab"]),
                DisableSwap(runner, host["fstab"]),
                SwapState(active=False, in_fstab=False),
            ),
            Step(
                "packages installed",
                PackagesProbe(runner, wanted, host["query_cmd"], timeout=probe_timeout(config)),
                EnsurePackages(runner, host["install_cmd"], user=install_user),
                PackagesPresent(packages=wanted),
                compare=superset("packages"),
            ),
        ],
    )
