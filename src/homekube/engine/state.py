"""Resource state snapshots observed by probes and declared as desired state.

Every state is a frozen dataclass: once a probe has captured it, it never
changes. Desired states use the same types as observed ones so that a compare
function can put them side by side.
"""

import hashlib
import json
from dataclasses import dataclass, field, fields
from typing import Any, Dict, FrozenSet, Optional


def sha256_text(content: str) -> str:
    """Return the hex sha256 digest of a text payload"""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _normalise_numbers(value: Any) -> Any:
    """Map numbers onto what survives helm's float64 JSON round trip"""
    if isinstance(value, dict):
        return {k: _normalise_numbers(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalise_numbers(v) for v in value]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    number = float(value)
    return int(number) if number.is_integer() else number


def sha256_values(values: Dict[str, Any]) -> str:
    """Return a stable digest of a JSON-compatible mapping.

    Numbers are compared as float64, so ``1.0`` in a values file and the ``1``
    helm reports back hash the same.
    """
    return sha256_text(json.dumps(_normalise_numbers(values or {}), sort_keys=True, separators=(",", ":")))



@dataclass(frozen=True)
class ResourceState:
    """Base class for all observable facts"""

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        data = {"kind": self.kind}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, frozenset):
                value = sorted(str(v) for v in value)
            data[f.name] = value
        return data

    def __str__(self) -> str:
        body = ", ".join(f"{k}={v}" for k, v in self.to_dict().items() if k != "kind")
        return f"{self.kind}({body})"


@dataclass(frozen=True)
class SwapState(ResourceState):
    active: bool
    in_fstab: bool


@dataclass(frozen=True)
class ServiceState(ResourceState):
    """A systemd unit; active_since is the CLOCK_MONOTONIC start time in microseconds"""

    name: str
    active: bool
    active_since: Optional[int] = None


@dataclass(frozen=True)
class FileChecksum(ResourceState):
    """Content digest of a file, None when the file does not exist"""

    path: str
    sha256: Optional[str]


@dataclass(frozen=True)
class PackagesPresent(ResourceState):
    packages: FrozenSet[str]


@dataclass(frozen=True, order=True)
class Taint:
    key: str
    value: str
    effect: str

    def __str__(self) -> str:
        if self.value:
            return f"{self.key}={self.value}:{self.effect}"
        return f"{self.key}:{self.effect}"


@dataclass(frozen=True)
class NodeTaints(ResourceState):
    node: str
    taints: FrozenSet[Taint] = field(default_factory=frozenset)


@dataclass(frozen=True)
class NodeReady(ResourceState):
    node: str
    ready: bool


@dataclass(frozen=True)
class SecretPresent(ResourceState):
    namespace: str
    name: str
    present: bool


@dataclass(frozen=True)
class ManifestState(ResourceState):
    """Checksum stamped on every live object of a manifest, None when absent or mixed"""

    checksum: Optional[str]


@dataclass(frozen=True)
class ReleaseState(ResourceState):
    name: str
    namespace: str
    status: Optional[str]
    chart: Optional[str]
    values_sha256: Optional[str]

    @property
    def deployed(self) -> bool:
        return self.status == "deployed"


@dataclass(frozen=True)
class ObjectPresent(ResourceState):
    kind_name: str
    namespace: Optional[str]
    name: str
    present: bool


@dataclass(frozen=True)
class RolloutState(ResourceState):
    kind_name: str
    namespace: str
    name: str
    ready: bool


@dataclass(frozen=True)
class Reachable(ResourceState):
    url: str
    reachable: bool


@dataclass(frozen=True)
class AuthorizedKeys(ResourceState):
    path: str
    keys: FrozenSet[str] = field(default_factory=frozenset)
