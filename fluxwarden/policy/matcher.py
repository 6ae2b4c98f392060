"""
FLUXWARDEN Policy Matcher

Decides which running workloads violate the disallowed-name policy and
which primary workload must be removed for each of them. Pure functions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

NAME_SEPARATOR = "/"
COMPONENT_SEPARATOR = "_"


@dataclass(frozen=True)
class WorkloadMatch:
    """One running workload and its policy verdict."""

    raw_name: str
    name: str
    is_target: bool
    matched_prefix: str | None = None

    @property
    def primary_name(self) -> str:
        return primary_workload_name(self.name)


def strip_name(raw_name: str) -> str:
    """Drop the leading '/' the container runtime prepends."""
    if raw_name.startswith(NAME_SEPARATOR):
        return raw_name[len(NAME_SEPARATOR):]
    return raw_name


def primary_workload_name(name: str) -> str:
    """
    Owning workload of a component named `<component>_<primaryApp>`.

    Everything after the last underscore; the whole name when there is none.
    """
    return strip_name(name).rsplit(COMPONENT_SEPARATOR, 1)[-1]


def find_prefix(name: str, prefixes: Iterable[str]) -> str | None:
    """First configured prefix contained anywhere in `name`."""
    for prefix in prefixes:
        if prefix and prefix in name:
            return prefix
    return None


def match_workloads(raw_names: Iterable[str], prefixes: Iterable[str]) -> list[WorkloadMatch]:
    """Classify every workload name against the prefix set, in input order."""
    prefixes = [p for p in prefixes if p]
    matches: list[WorkloadMatch] = []
    for raw_name in raw_names:
        name = strip_name(raw_name)
        prefix = find_prefix(name, prefixes)
        matches.append(
            WorkloadMatch(
                raw_name=raw_name,
                name=name,
                is_target=prefix is not None,
                matched_prefix=prefix,
            )
        )
    return matches


def policy_targets(raw_names: Iterable[str], prefixes: Iterable[str]) -> list[WorkloadMatch]:
    return [match for match in match_workloads(raw_names, prefixes) if match.is_target]
