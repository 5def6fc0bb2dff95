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

"""Capability interfaces and the readiness probes built on them.

Probes close over a capability (a key-value store, an attribute reader, a
rollout controller) and translate one observation into a PollOutcome. The
kubectl-backed readers here are the cluster-side implementations; the
LocalStack-backed ones live in :mod:`systest_infra.stores`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from systest_infra.constants import KUBECTL, KUBECTL_QUERY_TIMEOUT_SECONDS
from systest_infra.errors import NonZeroExit, ProcessTimeout, UnexpectedOutput
from systest_infra.process import ProcessRunner, RunOptions
from systest_infra.readiness import READY, NotYetReady, ProbeFailed, Probe

# Probe failures of these types are retried by the poller; anything else propagates.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (ProcessTimeout, NonZeroExit, UnexpectedOutput, OSError)


class _NotFound:
    _instance: _NotFound | None = None

    def __new__(cls) -> _NotFound:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND = _NotFound()

# Derived job states reported by KubectlJobStatus.
JOB_STATE = "state"
JOB_COMPLETE = "complete"
JOB_FAILED = "failed"
JOB_RUNNING = "running"


# ============================================================================
# Capability interfaces
# ============================================================================

@runtime_checkable
class KeyValueStore(Protocol):
    def put(self, key: str, value: Any) -> None: ...

    def get(self, key: str) -> Any | None: ...

    def exists(self, key: str) -> bool: ...

    def list(self, prefix: str = "") -> list[str]: ...


@runtime_checkable
class AttributeReader(Protocol):
    def get_attribute(self, key: str, attr: str) -> Any: ...


@dataclass(frozen=True)
class RolloutStatus:
    """Replica counts of a deployment, as kubectl reports them."""

    found: bool = True
    desired: int = 0
    updated: int = 0
    available: int = 0
    replicas: int = 0
    generation: int = 0
    observed_generation: int = 0

    @property
    def complete(self) -> bool:
        return (
            self.found
            and self.observed_generation >= self.generation
            and self.updated == self.desired
            and self.replicas == self.desired
            and self.available == self.desired
        )


@runtime_checkable
class RolloutController(Protocol):
    def rollout_status(self, name: str) -> RolloutStatus: ...


# ============================================================================
# Probe factories
# ============================================================================

def exists_probe(
    store: KeyValueStore,
    key: str,
    *,
    transient: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
) -> Probe:
    """Ready once *key* exists in *store*."""

    def _probe():
        try:
            found = store.exists(key)
        except transient as err:
            return ProbeFailed(err)
        return READY if found else NotYetReady(NOT_FOUND)

    return _probe


def attribute_equals_probe(
    reader: AttributeReader,
    key: str,
    attr: str,
    expected: Any,
    *,
    failed: Any = None,
    transient: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
) -> Probe:
    """Ready once ``reader.get_attribute(key, attr) == expected``.

    Args:
        reader: Where the attribute is read from.
        key: Resource key.
        attr: Attribute name.
        expected: Value that means ready.
        failed: Value that means the resource will never become ready.
        transient: Exception types reported as retryable probe failures.
    """

    def _probe():
        try:
            value = reader.get_attribute(key, attr)
        except transient as err:
            return ProbeFailed(err)
        if value == expected:
            return READY
        if failed is not None and value == failed:
            return ProbeFailed(f"{key} {attr}={value!r}", transient=False)
        return NotYetReady(value)

    return _probe


def rollout_probe(
    controller: RolloutController,
    name: str,
    *,
    transient: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
) -> Probe:
    """Ready once deployment *name* has fully rolled out."""

    def _probe():
        try:
            status = controller.rollout_status(name)
        except transient as err:
            return ProbeFailed(err)
        return READY if status.complete else NotYetReady(status)

    return _probe


def job_complete_probe(reader: AttributeReader, name: str) -> Probe:
    """Ready once job *name* completes; a failed job stops polling immediately."""
    return attribute_equals_probe(reader, name, JOB_STATE, JOB_COMPLETE, failed=JOB_FAILED)


# ============================================================================
# kubectl-backed readers
# ============================================================================

class _KubectlReader:
    def __init__(self, runner: ProcessRunner, kube_context: str, namespace: str) -> None:
        self.runner = runner
        self.kube_context = kube_context
        self.namespace = namespace

    def _get_json(self, kind: str, name: str) -> dict | None:
        """Return the object as JSON, or None if the API server says it does not exist.

        Raises:
            UnexpectedOutput: If kubectl printed something other than JSON.
        """
        try:
            result = self.runner.run(
                KUBECTL,
                ["--context", self.kube_context, "-n", self.namespace, "get", kind, name, "-o", "json"],
                RunOptions(timeout=KUBECTL_QUERY_TIMEOUT_SECONDS),
            )
        except NonZeroExit as err:
            if "NotFound" in err.stderr or "not found" in err.stderr:
                return None
            raise
        try:
            return json.loads(result.stdout)
        except ValueError as err:
            raise UnexpectedOutput(result.command, f"not JSON ({err})", result.stdout) from err


class KubectlRolloutController(_KubectlReader):
    """RolloutController for deployments in one namespace of one cluster."""

    def rollout_status(self, name: str) -> RolloutStatus:
        obj = self._get_json("deployment", name)
        if obj is None:
            return RolloutStatus(found=False)
        spec = obj.get("spec", {})
        status = obj.get("status", {})
        return RolloutStatus(
            desired=spec.get("replicas", 1),
            updated=status.get("updatedReplicas", 0),
            available=status.get("availableReplicas", 0),
            replicas=status.get("replicas", 0),
            generation=obj.get("metadata", {}).get("generation", 0),
            observed_generation=status.get("observedGeneration", 0),
        )


class KubectlJobStatus(_KubectlReader):
    """AttributeReader over batch jobs.

    The ``state`` attribute is derived from the job conditions and is one of
    ``complete``, ``failed`` or ``running``. Any other attribute is a dotted
    path into the job object, e.g. ``status.succeeded``.
    """

    def get_attribute(self, key: str, attr: str) -> Any:
        obj = self._get_json("job", key)
        if obj is None:
            return NOT_FOUND
        if attr == JOB_STATE:
            return _job_state(obj)
        node: Any = obj
        for part in attr.split("."):
            if not isinstance(node, dict) or part not in node:
                return NOT_FOUND
            node = node[part]
        return node


def _job_state(obj: dict) -> str:
    for condition in obj.get("status", {}).get("conditions") or []:
        if condition.get("status") != "True":
            continue
        if condition.get("type") == "Complete":
            return JOB_COMPLETE
        if condition.get("type") == "Failed":
            return JOB_FAILED
    return JOB_RUNNING
