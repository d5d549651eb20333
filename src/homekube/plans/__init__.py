"""Phase plans bootstrapping the homelab cluster"""

from typing import Any, Dict, Optional

from ..engine import Plan
from ..errors import ConfigError
from ..system.runner import CommandRunner
from .ci import ci_plan
from .cluster import agent_plan, server_plan
from .common import Reveal
from .database import database_plan
from .host import host_plan
from .monitoring import monitoring_plan
from .storage import storage_plan

PHASES = ("host", "server", "agent", "monitoring", "ci", "storage", "database")


def build_plan(
    phase: str,
    config: Dict[str, Any],
    runner: CommandRunner,
    reveal: Optional[Reveal] = None,
) -> Plan:
    """Build a phase plan, taking phase arguments from the configuration"""
    if phase == "host":
        return host_plan(config, runner)
    if phase == "server":
        return server_plan(config, runner)
    if phase == "agent":
        k3s = config["k3s"]
        if not (k3s.get("server_url") and k3s.get("token")):
            raise ConfigError("The agent phase needs k3s.server_url and k3s.token (or HOMEKUBE_K3S_URL/TOKEN)")
        return agent_plan(config, runner, k3s["server_url"], k3s["token"])
    if phase == "monitoring":
        return monitoring_plan(config, runner, reveal)
    if phase == "ci":
        return ci_plan(config, runner)
    if phase == "storage":
        storage = config["storage"]
        if not (storage.get("server") and storage.get("path")):
            raise ConfigError("The storage phase needs storage.server and storage.path")
        return storage_plan(config, runner, storage["server"], storage["path"])
    if phase == "database":
        return database_plan(config, runner, config["database"].get("node") or None, reveal)
    raise ConfigError(f"Unknown phase: {phase}")


__all__ = [
    "PHASES",
    "agent_plan",
    "build_plan",
    "ci_plan",
    "database_plan",
    "host_plan",
    "monitoring_plan",
    "server_plan",
    "storage_plan",
]
