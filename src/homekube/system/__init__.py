"""Probes and actions for the host, the k3s cluster and its tooling."""

from .runner import CommandRunner

__all__ = ["CommandRunner"]
