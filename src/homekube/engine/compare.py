"""Comparison rules between observed and desired state.

Compare functions are pure: they take (observed, desired) and return a
Comparison without touching the system. Steps receive one of these from the
plan author; the engine has no built-in notion of what "matches" means.
"""

from enum import Enum
from typing import Callable

from .state import ReleaseState, ResourceState, ServiceState


class Comparison(Enum):
    MATCH = "match"
    DIVERGE = "diverge"

    @classmethod
    def of(cls, matches: bool) -> "Comparison":
        return cls.MATCH if matches else cls.DIVERGE


CompareFn = Callable[[ResourceState, ResourceState], Comparison]


def equal(observed: ResourceState, desired: ResourceState) -> Comparison:
    """Whole-value equality"""
    return Comparison.of(observed == desired)


def field_equal(*names: str) -> CompareFn:
    """Equality restricted to the given fields"""

    def compare(observed: ResourceState, desired: ResourceState) -> Comparison:
        if type(observed) is not type(desired):
            return Comparison.DIVERGE
        return Comparison.of(all(getattr(observed, n) == getattr(desired, n) for n in names))

    compare.__name__ = f"field_equal({', '.join(names)})"
    return compare


def checksum_equal(observed: ResourceState, desired: ResourceState) -> Comparison:
    """Content digest equality for file and manifest states"""
    observed_sum = getattr(observed, "sha256", getattr(observed, "checksum", None))
    desired_sum = getattr(desired, "sha256", getattr(desired, "checksum", None))
    if desired_sum is None:
        return Comparison.DIVERGE
    return Comparison.of(observed_sum == desired_sum)


def present(observed: ResourceState, desired: ResourceState) -> Comparison:
    """Presence flags agree"""
    return Comparison.of(getattr(observed, "present") == getattr(desired, "present"))


def superset(attr: str) -> CompareFn:
    """Every desired member of a set-valued field is present in the observed one"""

    def compare(observed: ResourceState, desired: ResourceState) -> Comparison:
        return Comparison.of(getattr(desired, attr) <= getattr(observed, attr))

    compare.__name__ = f"superset({attr})"
    return compare


def restarted_after(observed: ServiceState, desired: ServiceState) -> Comparison:
    """Service is active and was (re)started no earlier than the desired instant.

    A desired active_since of None means no restart is required beyond the
    service being active.
    """
    if observed.active != desired.active:
        return Comparison.DIVERGE
    if desired.active_since is None:
        return Comparison.MATCH
    if observed.active_since is None:
        return Comparison.DIVERGE
    return Comparison.of(observed.active_since >= desired.active_since)


def file_exists(observed: ResourceState, desired: ResourceState) -> Comparison:
    """File presence only, whatever its content"""
    return Comparison.of((getattr(observed, "sha256") is not None) == (getattr(desired, "sha256") is not None))


def release_matches(observed: ReleaseState, desired: ReleaseState) -> Comparison:
    """Release deployed from the desired chart with exactly the desired values.

    Helm reports the chart as ``<name>-<version>``, so the desired chart name
    matches any version of it.
    """
    if observed.status != desired.status or observed.values_sha256 != desired.values_sha256:
        return Comparison.DIVERGE
    chart = observed.chart or ""
    return Comparison.of(chart == desired.chart or chart.startswith(f"{desired.chart}-"))
