"""Probes observing the host and the cluster.

Absence of a resource is reported as state. A ProbeError is raised only when
the question cannot be answered at all: a missing tool, a permission problem,
unparseable output or a timeout.
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import httpx

from ..engine.state import (
    AuthorizedKeys,
    FileChecksum,
    ManifestState,
    NodeReady,
    NodeTaints,
    ObjectPresent,
    PackagesPresent,
    Reachable,
    ReleaseState,
    RolloutState,
    SecretPresent,
    ServiceState,
    SwapState,
    Taint,
    sha256_values,
)
from ..engine.step import Probe
from ..errors import CommandError, ProbeError
from . import manifest
from .runner import CommandRunner

logger = logging.getLogger(__name__)


class CommandProbe(Probe):
    """Base for probes that query external tools through a CommandRunner"""

    def __init__(self, runner: CommandRunner, timeout: float = 10.0):
        self.runner = runner
        self.timeout = timeout

    def _run(self, cmd: list[str], check: bool = True, **kwargs):
        try:
            return self.runner.run(cmd, timeout=self.timeout, check=check, **kwargs)
        except CommandError as e:
            raise ProbeError(str(e), cause=e) from e

    def _json(self, cmd: list[str], **kwargs) -> Any:
        """Run a query whose stdout is JSON; empty output yields None"""
        out = self._run(cmd, **kwargs).stdout.strip()
        if not out:
            return None
        try:
            return json.loads(out)
        except json.JSONDecodeError as e:
            raise ProbeError(f"Unparseable output from {' '.join(cmd)}: {e}", cause=e) from e


def kubectl(kubeconfig: Optional[str], *args: str) -> list[str]:
    cmd = ["kubectl"]
    if kubeconfig:
        cmd += ["--kubeconfig", kubeconfig]
    return cmd + list(args)


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise ProbeError(f"Cannot read {path}: {e}", cause=e) from e


def fstab_swap_lines(text: str) -> list[int]:
    """Indexes of active (uncommented) swap entries in an fstab"""
    indexes = []
    for i, line in enumerate(text.splitlines()):
        fields = line.split()
        if not fields or fields[0].startswith("#"):
            continue
        if len(fields) >= 3 and fields[2] == "swap":
            indexes.append(i)
    return indexes


class SwapProbe(Probe):
    """Whether swap is active and whether fstab would re-enable it on boot"""

    def __init__(self, proc_swaps: Union[str, Path] = "/proc/swaps", fstab: Union[str, Path] = "/etc/fstab"):
        self.proc_swaps = Path(proc_swaps)
        self.fstab = Path(fstab)

    def observe(self) -> SwapState:
        swaps = _read_text(self.proc_swaps)
        if swaps is None:
            raise ProbeError(f"{self.proc_swaps} not found")
        # first line is the column header
        active = any(line.strip() for line in swaps.splitlines()[1:])
        fstab = _read_text(self.fstab) or ""
        return SwapState(active=active, in_fstab=bool(fstab_swap_lines(fstab)))


class ServiceProbe(CommandProbe):
    """systemd unit activity and the monotonic time it last became active"""

    def __init__(self, runner: CommandRunner, name: str, timeout: float = 10.0):
        super().__init__(runner, timeout)
        self.name = name

    def observe(self) -> ServiceState:
        result = self._run(
            ["systemctl", "show", self.name, "--property=ActiveState,ActiveEnterTimestampMonotonic"]
        )
        props = dict(line.split("=", 1) for line in result.stdout.splitlines() if "=" in line)
        if "ActiveState" not in props:
            raise ProbeError(f"systemctl returned no ActiveState for {self.name}")
        try:
            since = int(props.get("ActiveEnterTimestampMonotonic") or 0)
        except ValueError as e:
            raise ProbeError(f"Bad ActiveEnterTimestampMonotonic for {self.name}", cause=e) from e
        return ServiceState(name=self.name, active=props["ActiveState"] == "active", active_since=since or None)


class PackagesProbe(CommandProbe):
    """Which of the requested packages the package database knows as installed"""

    def __init__(
        self,
        runner: CommandRunner,
        packages: Iterable[str],
        query_cmd: Iterable[str] = ("pacman", "-Qi"),
        timeout: float = 10.0,
    ):
        super().__init__(runner, timeout)
        self.packages = sorted(set(packages))
        self.query_cmd = list(query_cmd)

    def observe(self) -> PackagesPresent:
        installed = set()
        for package in self.packages:
            if self._run(self.query_cmd + [package], check=False).returncode == 0:
                installed.add(package)
        return PackagesPresent(packages=frozenset(installed))


class FileChecksumProbe(Probe):
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def observe(self) -> FileChecksum:
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            return FileChecksum(path=str(self.path), sha256=None)
        except OSError as e:
            raise ProbeError(f"Cannot read {self.path}: {e}", cause=e) from e
        return FileChecksum(path=str(self.path), sha256=hashlib.sha256(data).hexdigest())


def file_checksum(path: Union[str, Path]) -> FileChecksum:
    """Observe a file once, for use in desired-state functions"""
    return FileChecksumProbe(path).observe()


class NodeReadyProbe(CommandProbe):
    def __init__(self, runner: CommandRunner, node: str, kubeconfig: Optional[str] = None, timeout: float = 10.0):
        super().__init__(runner, timeout)
        self.node = node
        self.kubeconfig = kubeconfig

    def observe(self) -> NodeReady:
        data = self._json(kubectl(self.kubeconfig, "get", "node", self.node, "--ignore-not-found", "-o", "json"))
        if not data:
            return NodeReady(node=self.node, ready=False)
        conditions = (data.get("status") or {}).get("conditions") or []
        ready = any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)
        return NodeReady(node=self.node, ready=ready)


class NodeTaintProbe(CommandProbe):
    def __init__(self, runner: CommandRunner, node: str, kubeconfig: Optional[str] = None, timeout: float = 10.0):
        super().__init__(runner, timeout)
        self.node = node
        self.kubeconfig = kubeconfig

    def observe(self) -> NodeTaints:
        data = self._json(kubectl(self.kubeconfig, "get", "node", self.node, "--ignore-not-found", "-o", "json"))
        taints = ((data or {}).get("spec") or {}).get("taints") or []
        return NodeTaints(
            node=self.node,
            taints=frozenset(Taint(t.get("key", ""), t.get("value", "") or "", t.get("effect", "")) for t in taints),
        )


class ObjectProbe(CommandProbe):
    """Existence of one named cluster object"""

    def __init__(
        self,
        runner: CommandRunner,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        kubeconfig: Optional[str] = None,
        timeout: float = 10.0,
    ):
        super().__init__(runner, timeout)
        self.kind = kind
        self.name = name
        self.namespace = namespace
        self.kubeconfig = kubeconfig

    def _get_name(self) -> bool:
        args = ["get", self.kind, self.name, "--ignore-not-found", "-o", "name"]
        if self.namespace:
            args += ["-n", self.namespace]
        return bool(self._run(kubectl(self.kubeconfig, *args)).stdout.strip())

    def observe(self) -> ObjectPresent:
        return ObjectPresent(kind_name=self.kind, namespace=self.namespace, name=self.name, present=self._get_name())


class SecretProbe(ObjectProbe):
    def __init__(
        self,
        runner: CommandRunner,
        namespace: str,
        name: str,
        kubeconfig: Optional[str] = None,
        timeout: float = 10.0,
    ):
        super().__init__(runner, "secret", name, namespace, kubeconfig, timeout)

    def observe(self) -> SecretPresent:
        return SecretPresent(namespace=self.namespace, name=self.name, present=self._get_name())


class ManifestProbe(CommandProbe):
    """Checksum annotation shared by every live object of a manifest"""

    def __init__(self, runner: CommandRunner, content: str, kubeconfig: Optional[str] = None, timeout: float = 15.0):
        super().__init__(runner, timeout)
        self.expected = len(manifest.parse(content))
        self.content = content
        self.kubeconfig = kubeconfig

    def observe(self) -> ManifestState:
        data = self._json(
            kubectl(self.kubeconfig, "get", "-f", "-", "--ignore-not-found", "-o", "json"), input=self.content
        )
        if not data:
            return ManifestState(checksum=None)
        items = data.get("items", []) if data.get("kind") == "List" else [data]
        checksums = {manifest.checksum_of(item) for item in items}
        if len(items) != self.expected or len(checksums) != 1:
            return ManifestState(checksum=None)
        return ManifestState(checksum=checksums.pop())


class ReleaseProbe(CommandProbe):
    def __init__(self, runner: CommandRunner, name: str, namespace: str, timeout: float = 15.0):
        super().__init__(runner, timeout)
        self.name = name
        self.namespace = namespace

    def observe(self) -> ReleaseState:
        releases = self._json(
            ["helm", "list", "-n", self.namespace, "--filter", f"^{self.name}$", "-a", "-o", "json"]
        ) or []
        if not releases:
            return ReleaseState(self.name, self.namespace, status=None, chart=None, values_sha256=None)
        release = releases[0]
        values = self._json(["helm", "get", "values", self.name, "-n", self.namespace, "-o", "json"]) or {}
        return ReleaseState(
            name=self.name,
            namespace=self.namespace,
            status=release.get("status"),
            chart=release.get("chart"),
            values_sha256=sha256_values(values),
        )


class RolloutProbe(CommandProbe):
    def __init__(
        self,
        runner: CommandRunner,
        kind: str,
        name: str,
        namespace: str,
        kubeconfig: Optional[str] = None,
        timeout: float = 10.0,
    ):
        super().__init__(runner, timeout)
        self.kind = kind
        self.name = name
        self.namespace = namespace
        self.kubeconfig = kubeconfig

    def observe(self) -> RolloutState:
        data = self._json(
            kubectl(self.kubeconfig, "get", self.kind, self.name, "-n", self.namespace, "--ignore-not-found", "-o", "json")
        )
        ready = False
        if data:
            wanted = (data.get("spec") or {}).get("replicas", 1)
            status = data.get("status") or {}
            current = status.get("observedGeneration", 0) >= (data.get("metadata") or {}).get("generation", 0)
            ready = current and status.get("readyReplicas", 0) >= wanted
        return RolloutState(kind_name=self.kind, namespace=self.namespace, name=self.name, ready=ready)


class ServerReachableProbe(Probe):
    """Whether the k3s server answers on its /ping endpoint.

    Any HTTP response counts as reachable. Connection errors and timeouts are
    an observed "unreachable", not a probe failure.
    """

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url.rstrip("/")
        self.timeout = timeout

    def observe(self) -> Reachable:
        try:
            httpx.get(f"{self.url}/ping", verify=False, timeout=self.timeout)
        except httpx.TransportError as e:
            logger.debug("%s not reachable: %s", self.url, e)
            return Reachable(url=self.url, reachable=False)
        return Reachable(url=self.url, reachable=True)


def key_identity(line: str) -> Optional[str]:
    """Key type and blob of an authorized_keys or .pub line, without options or comment"""
    fields = line.split()
    for i, field in enumerate(fields):
        if field.startswith(("ssh-", "ecdsa-", "sk-")) and i + 1 < len(fields):
            return f"{field} {fields[i + 1]}"
    return None


class AuthorizedKeysProbe(Probe):
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def observe(self) -> AuthorizedKeys:
        text = _read_text(self.path) or ""
        keys = {key_identity(line) for line in text.splitlines() if line.strip() and not line.startswith("#")}
        keys.discard(None)
        return AuthorizedKeys(path=str(self.path), keys=frozenset(keys))


def public_key(path: Union[str, Path]) -> str:
    """Identity of the key in a .pub file; raises ProbeError if it is missing"""
    text = _read_text(Path(path))
    identity = key_identity(text or "")
    if identity is None:
        raise ProbeError(f"No public key at {path}")
    return identity
