"""Configuration management for homekube"""

import copy
import os
from pathlib import Path
from typing import Any, Dict

import yaml

from ..errors import ConfigError

DEFAULT_CONFIG_PATH = Path.home() / ".homekube" / "config.yaml"

DEFAULTS: Dict[str, Any] = {
    "host": {
        "packages": ["curl", "git", "kubectl", "podman", "helm", "nfs-utils"],
        "worker_packages": ["curl", "git", "kubectl"],
        "query_cmd": ["pacman", "-Qi"],
        "install_cmd": ["yay", "-S", "--needed", "--noconfirm"],
        "install_user": "",
        "fstab": "/etc/fstab",
        "proc_swaps": "/proc/swaps",
    },
    "k3s": {
        "install_url": "https://get.k3s.io",
        "config_path": "/etc/rancher/k3s/k3s.yaml",
        "manifests_dir": "/var/lib/rancher/k3s/server/manifests",
        "agent_manifests_dir": "/var/lib/rancher/k3s/agent/pod-manifests",
        "node_name": "",
        "user": "",
        "server_url": "",
        "token": "",
    },
    "traefik": {
        "acme_email": "",
        "resolver": "letsencrypt",
    },
    "monitoring": {
        "namespace": "monitoring",
        "grafana_secret": "grafana-credentials",
        "grafana_host": "",
        "values_file": "",
        "loki_storage": "100Gi",
        "storage_class": "nfs-client",
    },
    "ci": {
        "ssh_key": ".ssh/github-actions",
        "ssh_comment": "github-actions-ci",
        "vpn_package": "tailscale",
        "vpn_service": "tailscaled",
    },
    "storage": {
        "server": "",
        "path": "",
        "storage_class": "nfs-client",
        "namespace": "default",
    },
    "database": {
        "namespace": "database",
        "node": "",
        "secret": "mysql-credentials",
        "storage_class": "nfs-client",
        "storage_size": "20Gi",
        "image": "mysql:8.0",
    },
    "engine": {
        "lock_file": "/run/homekube.lock",
        "probe_timeout": 10,
        "action_timeout": 600,
    },
    "logging": {
        "level": "info",
    },
}


class ConfigManager:
    """Manage homekube configuration"""

    def __init__(self, config_path: Path = DEFAULT_CONFIG_PATH):
        self.config_path = Path(config_path)

    def load(self) -> Dict[str, Any]:
        """Load configuration from file and environment"""
        config = self._load_defaults()

        if self.config_path.exists():
            try:
                with open(self.config_path) as f:
                    file_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {self.config_path}: {e}") from e
            if not isinstance(file_config, dict):
                raise ConfigError(f"{self.config_path} must contain a mapping")
            config = self._merge(config, file_config)

        config = self._apply_env_overrides(config)

        return config

    def save(self, config: Dict[str, Any]) -> None:
        """Save configuration to file"""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, "w") as f:
            yaml.dump(config, f, default_flow_style=False)

    def _load_defaults(self) -> Dict[str, Any]:
        return copy.deepcopy(DEFAULTS)

    def _merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Merge two configuration dictionaries"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides"""
        if email := os.getenv("HOMEKUBE_ACME_EMAIL"):
            config["traefik"]["acme_email"] = email

        if level := os.getenv("HOMEKUBE_LOG_LEVEL"):
            config["logging"]["level"] = level

        if lock_file := os.getenv("HOMEKUBE_LOCK_FILE"):
            config["engine"]["lock_file"] = lock_file

        if url := os.getenv("HOMEKUBE_K3S_URL"):
            config["k3s"]["server_url"] = url

        if token := os.getenv("HOMEKUBE_K3S_TOKEN"):
            config["k3s"]["token"] = token

        return config
