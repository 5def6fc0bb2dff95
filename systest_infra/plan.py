# /*
# Copyright 2026 The Grove Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Flow selection and plan resolution.

A flow names the cluster targets a test suite needs and, per target, which
capabilities must be provisioned on it. Resolution is pure: the same flow and
descriptor always yield the same sorted plan.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, fields
from pathlib import Path

from rich.table import Table

from systest_infra import console, logger
from systest_infra.config import EnvironmentDescriptor
from systest_infra.constants import BUILTIN_FLOWS, CAPABILITY_ORDER
from systest_infra.errors import PlanTargetNotFound, UnknownFlow


@dataclass(frozen=True)
class InfraCapabilitySet:
    """Capabilities required on one cluster target."""

    object_store: bool = False
    seed_data: bool = False
    message_bus: bool = False
    cache: bool = False
    deployment_controller: bool = False

    @classmethod
    def from_names(cls, names: Iterable[str]) -> InfraCapabilitySet:
        """Build a set from capability names.

        Raises:
            ValueError: If a name is not a known capability.
        """
        names = set(names)
        unknown = sorted(names - set(CAPABILITY_ORDER))
        if unknown:
            raise ValueError(f"unknown capabilities: {', '.join(unknown)}")
        return cls(**{name: True for name in names})

    def enabled(self) -> tuple[str, ...]:
        """Names of the enabled capabilities, in provisioning order."""
        return tuple(name for name in CAPABILITY_ORDER if getattr(self, name))

    def __bool__(self) -> bool:
        return any(getattr(self, f.name) for f in fields(self))


@dataclass(frozen=True)
class Plan:
    """Ordered ``(target_key, capabilities)`` pairs, sorted by target key."""

    flow: str
    entries: tuple[tuple[str, InfraCapabilitySet], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", tuple(sorted(self.entries, key=lambda entry: entry[0])))

    def __iter__(self) -> Iterator[tuple[str, InfraCapabilitySet]]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def keys(self) -> tuple[str, ...]:
        return tuple(key for key, _ in self.entries)

    def capabilities_for(self, target_key: str) -> InfraCapabilitySet:
        for key, caps in self.entries:
            if key == target_key:
                return caps
        raise KeyError(target_key)


# ============================================================================
# Flow selection
# ============================================================================

def known_flows(descriptor: EnvironmentDescriptor) -> dict[str, Mapping[str, Sequence[str]]]:
    """Built-in flows overlaid with the descriptor's own flow table."""
    return {**BUILTIN_FLOWS, **descriptor.flows}


def select_flow(
    explicit: str | None = None,
    *,
    cwd: str | Path | None = None,
    known_flows: Iterable[str],
    default_flow: str,
) -> str:
    """Pick the flow to run.

    An explicit selector wins. Otherwise the innermost directory of *cwd*
    whose name equals a known flow is used. Otherwise *default_flow*.

    Args:
        explicit: Flow requested via SYSTEST_FLOW or ``--flow``.
        cwd: Working directory to infer from; defaults to the current one.
        known_flows: Names of all resolvable flows.
        default_flow: Fallback flow name.

    Returns:
        The selected flow name.

    Raises:
        UnknownFlow: If *explicit* is not a known flow.
    """
    known = set(known_flows)
    if explicit:
        if explicit not in known:
            raise UnknownFlow(explicit, known)
        return explicit

    path = Path(cwd) if cwd is not None else Path.cwd()
    for segment in reversed(path.parts):
        if segment in known:
            logger.debug("flow '%s' inferred from working directory %s", segment, path)
            return segment
    return default_flow


# ============================================================================
# Plan resolution
# ============================================================================

def resolve_plan(flow: str, descriptor: EnvironmentDescriptor) -> Plan:
    """Resolve *flow* against *descriptor* into a sorted plan.

    Args:
        flow: Flow name.
        descriptor: Validated environment descriptor.

    Returns:
        Plan with one entry per target the flow touches.

    Raises:
        UnknownFlow: If the flow is neither built in nor declared.
        PlanTargetNotFound: If the flow names a target missing from ``clusters``.
    """
    flows = known_flows(descriptor)
    if flow not in flows:
        raise UnknownFlow(flow, flows)

    targets = flows[flow]
    missing = sorted(key for key in targets if key not in descriptor.clusters)
    if missing:
        raise PlanTargetNotFound(flow, missing)

    return Plan(
        flow=flow,
        entries=tuple((key, InfraCapabilitySet.from_names(caps)) for key, caps in targets.items()),
    )


def display_plan(plan: Plan, descriptor: EnvironmentDescriptor) -> None:
    """Print the plan as a table of targets and capabilities."""
    table = Table(title=f"Plan: {plan.flow}")
    table.add_column("Target", style="cyan")
    table.add_column("Cluster")
    table.add_column("Context")
    table.add_column("Capabilities", style="green")
    for key, caps in plan:
        target = descriptor.clusters[key]
        table.add_row(key, target.name, target.kube_context, ", ".join(caps.enabled()) or "-")
    console.print(table)
