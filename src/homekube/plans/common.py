"""Helpers shared by the phase plans"""

import getpass
import os
import socket
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml

from ..engine import Step, checksum_equal
from ..engine.state import ManifestState, SecretPresent
from ..errors import ConfigError
from ..system.actions import ApplyManifest
from ..system.probes import ManifestProbe
from ..system.runner import CommandRunner

Reveal = Callable[[SecretPresent, str, str], None]


def calling_user(config: Dict[str, Any]) -> str:
    """The user the cluster is set up for: configured, sudo caller or current"""
    return config["k3s"].get("user") or os.environ.get("SUDO_USER") or getpass.getuser()


def as_user(user: str) -> Optional[str]:
    """User to run a command as, None when already running as that user"""
    return None if user in ("", "root", getpass.getuser()) else user


def user_home(user: str) -> Path:
    if user == getpass.getuser():
        return Path.home()
    return Path(os.path.expanduser(f"~{user}"))


def node_name(config: Dict[str, Any]) -> str:
    return config["k3s"].get("node_name") or socket.gethostname()


def kubeconfig(config: Dict[str, Any]) -> str:
    return config["k3s"]["config_path"]


def probe_timeout(config: Dict[str, Any]) -> float:
    return float(config["engine"]["probe_timeout"])


def action_timeout(config: Dict[str, Any]) -> float:
    return float(config["engine"]["action_timeout"])


def load_values(path: str) -> Dict[str, Any]:
    """Helm values from a YAML file"""
    try:
        with open(path) as f:
            values = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read values file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in values file {path}: {e}") from e
    if not isinstance(values, dict):
        raise ConfigError(f"Values file {path} must contain a mapping")
    return values


def manifest_step(label: str, runner: CommandRunner, content: str, config: Dict[str, Any]) -> Step:
    """Step applying a manifest until every object carries its checksum"""
    action = ApplyManifest(runner, content, kubeconfig(config), timeout=action_timeout(config))
    return Step(
        label,
        ManifestProbe(runner, content, kubeconfig(config), timeout=probe_timeout(config)),
        action,
        ManifestState(checksum=action.checksum),
        compare=checksum_equal,
    )
