"""Shared fixtures: a scripted command runner and in-memory resources"""

import getpass
import json
import subprocess
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import pytest

from homekube.config.manager import ConfigManager
from homekube.engine import Action, Probe
from homekube.engine.state import ResourceState, SwapState
from homekube.errors import ActionError, CommandError, ProbeError


@dataclass
class Call:
    cmd: List[str]
    input: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    user: Optional[str] = None
    timeout: Optional[float] = None

    def has(self, *tokens: str) -> bool:
        return _contains(self.cmd, tokens)


def _contains(cmd: List[str], tokens) -> bool:
    n = len(tokens)
    return any(tuple(cmd[i : i + n]) == tuple(tokens) for i in range(len(cmd) - n + 1))


class FakeRunner:
    """Stand-in for CommandRunner answering from scripted responses.

    A response registered with ``on`` applies to every command containing its
    tokens in sequence; later registrations win. Unmatched commands succeed
    with empty output.
    """

    def __init__(self):
        self.calls: List[Call] = []
        self._responses: List[tuple] = []

    def on(
        self,
        *tokens: str,
        stdout: Any = "",
        returncode: int = 0,
        stderr: str = "",
        timed_out: bool = False,
        handler: Optional[Callable[[Call], Any]] = None,
    ) -> "FakeRunner":
        if not isinstance(stdout, str):
            stdout = json.dumps(stdout)
        self._responses.insert(0, (tokens, stdout, returncode, stderr, timed_out, handler))
        return self

    def run(self, cmd, input=None, env=None, cwd=None, timeout=None, check=True, user=None):
        call = Call(list(cmd), input, env, user, timeout)
        self.calls.append(call)
        for tokens, stdout, returncode, stderr, timed_out, handler in self._responses:
            if not _contains(call.cmd, tokens):
                continue
            if timed_out:
                raise CommandError(call.cmd, timed_out=True)
            if handler:
                out = handler(call)
                if isinstance(out, subprocess.CompletedProcess):
                    if check and out.returncode != 0:
                        raise CommandError(call.cmd, returncode=out.returncode, stderr=out.stderr)
                    return out
                stdout = out if isinstance(out, str) else json.dumps(out) if out is not None else ""
            if check and returncode != 0:
                raise CommandError(call.cmd, returncode=returncode, stderr=stderr)
            return subprocess.CompletedProcess(call.cmd, returncode, stdout, stderr)
        return subprocess.CompletedProcess(call.cmd, 0, "", "")

    def ran(self, *tokens: str) -> List[Call]:
        return [c for c in self.calls if c.has(*tokens)]


@pytest.fixture
def runner():
    return FakeRunner()


@dataclass(frozen=True)
class Value(ResourceState):
    value: Any


class Resource:
    """Mutable in-memory resource observed and changed by the fake probe and action"""

    def __init__(self, value: Any = None):
        self.value = value


class ResourceProbe(Probe):
    def __init__(self, resource: Resource, fail: bool = False):
        self.resource = resource
        self.fail = fail
        self.observed = 0

    def observe(self) -> Value:
        self.observed += 1
        if self.fail:
            raise ProbeError("resource unreadable")
        return Value(self.resource.value)


class ResourceAction(Action):
    """Sets the resource to the desired value; can be told to fail or do nothing"""

    def __init__(self, resource: Resource, fail: bool = False, noop: bool = False, on_apply=None):
        self.resource = resource
        self.fail = fail
        self.noop = noop
        self.on_apply = on_apply
        self.applied: List[Any] = []

    def apply(self, desired: Value) -> None:
        self.applied.append(desired)
        if self.on_apply:
            self.on_apply()
        if self.fail:
            raise ActionError("resource refused the change")
        if not self.noop:
            self.resource.value = desired.value


@pytest.fixture
def config(tmp_path, monkeypatch):
    """Default configuration pointed at temporary paths"""
    for var in ("HOMEKUBE_ACME_EMAIL", "HOMEKUBE_LOG_LEVEL", "HOMEKUBE_LOCK_FILE", "HOMEKUBE_K3S_URL", "HOMEKUBE_K3S_TOKEN"):
        monkeypatch.delenv(var, raising=False)
    cfg = ConfigManager(tmp_path / "missing.yaml").load()

    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))

    proc_swaps = tmp_path / "swaps"
    proc_swaps.write_text("Filename\tType\tSize\tUsed\tPriority\n")
    fstab = tmp_path / "fstab"
    fstab.write_text("UUID=abc / ext4 defaults 0 1\n")

    cfg["host"].update(proc_swaps=str(proc_swaps), fstab=str(fstab), install_user="builder")
    cfg["k3s"].update(
        config_path=str(tmp_path / "k3s.yaml"),
        manifests_dir=str(tmp_path / "manifests"),
        agent_manifests_dir=str(tmp_path / "pod-manifests"),
        node_name="node1",
        user=getpass.getuser(),
    )
    cfg["traefik"]["acme_email"] = "admin@example.com"
    cfg["engine"]["lock_file"] = str(tmp_path / "homekube.lock")
    return cfg


def swap_files(tmp_path, active: bool, in_fstab: bool):
    """Write /proc/swaps and fstab look-alikes for the given swap situation"""
    swaps = tmp_path / "swaps"
    fstab = tmp_path / "fstab"
    header = "Filename\tType\tSize\tUsed\tPriority\n"
    swaps.write_text(header + ("/swapfile file 4194300 0 -2\n" if active else ""))
    lines = "UUID=abc / ext4 defaults 0 1\n"
    if in_fstab:
        lines += "/swapfile none swap defaults 0 0\n"
    fstab.write_text(lines)
    return SwapState(active=active, in_fstab=in_fstab), swaps, fstab
