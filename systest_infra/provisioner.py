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

"""Cluster creation, capability installation, and readiness, all-or-nothing."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from rich.panel import Panel

from systest_infra import console, logger
from systest_infra.config import CapabilitySettings, ClusterTarget, EnvironmentDescriptor
from systest_infra.constants import (
    CAPABILITY_ORDER,
    CLUSTER_ALREADY_EXISTS_MARKER,
    DOCKER,
    DOCKER_INSPECT_TIMEOUT_SECONDS,
    DOCKER_PULL_TIMEOUT_SECONDS,
    HELM,
    KIND,
    KUBECTL,
)
from systest_infra.errors import (
    CapabilityProvisionError,
    ClusterCreateFailed,
    NonZeroExit,
    ProcessError,
    ProcessTimeout,
)
from systest_infra.plan import Plan
from systest_infra.probes import (
    KubectlJobStatus,
    KubectlRolloutController,
    attribute_equals_probe,
    exists_probe,
    job_complete_probe,
    rollout_probe,
)
from systest_infra.process import ProcessRunner, RunOptions
from systest_infra.readiness import Probe, poll_until_ready
from systest_infra.stores import TRANSIENT_ERRORS as AWS_TRANSIENT_ERRORS
from systest_infra.stores import DynamoTableCatalog, S3BucketCatalog, aws_client
from systest_infra.teardown import TeardownCoordinator, teardown

DYNAMO_TABLE_ACTIVE = "ACTIVE"


class CapabilityStatus(str, Enum):
    READY = "ready"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class CapabilityRecord:
    capability: str
    status: CapabilityStatus
    detail: str = ""


@dataclass
class ProvisionedTarget:
    """A cluster created (or reused) for one plan target.

    Attributes:
        key: Plan target key.
        name: kind cluster name.
        kube_context: kubectl/helm context of the cluster.
        reused: Whether kind reported the cluster as already existing.
        capabilities: Per-capability outcomes, appended in provisioning order.
    """

    key: str
    name: str
    kube_context: str
    reused: bool = False
    capabilities: list[CapabilityRecord] = field(default_factory=list)

    def record(self, capability: str, status: CapabilityStatus, detail: str = "") -> None:
        self.capabilities.append(CapabilityRecord(capability, status, detail))

    def capability_status(self, capability: str) -> CapabilityStatus | None:
        for record in self.capabilities:
            if record.capability == capability:
                return record.status
        return None


# ============================================================================
# Readiness probes
# ============================================================================

class ReadinessProbes:
    """Builds the readiness probes a capability's settings call for.

    Args:
        runner: Process runner for kubectl-backed probes.
        aws_client_factory: ``(service, endpoint, region) -> client`` for
            LocalStack-backed probes.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        aws_client_factory: Callable = aws_client,
    ) -> None:
        self.runner = runner
        self.aws_client_factory = aws_client_factory

    def for_capability(
        self, target: ProvisionedTarget, capability: str, settings: CapabilitySettings,
    ) -> list[tuple[str, Probe]]:
        """Return ``(description, probe)`` pairs, in the order they should be awaited."""
        probes: list[tuple[str, Probe]] = []
        if settings.deployment:
            controller = KubectlRolloutController(self.runner, target.kube_context, settings.namespace)
            probes.append((
                f"deployment {settings.namespace}/{settings.deployment} on {target.name}",
                rollout_probe(controller, settings.deployment),
            ))
        if settings.job:
            jobs = KubectlJobStatus(self.runner, target.kube_context, settings.namespace)
            probes.append((
                f"job {settings.namespace}/{settings.job} on {target.name}",
                job_complete_probe(jobs, settings.job),
            ))
        if settings.tables:
            tables = DynamoTableCatalog(self.aws_client_factory("dynamodb", settings.endpoint, settings.region))
            for table in settings.tables:
                probes.append((
                    f"dynamodb table {table}",
                    attribute_equals_probe(
                        tables, table, "TableStatus", DYNAMO_TABLE_ACTIVE, transient=AWS_TRANSIENT_ERRORS),
                ))
        if settings.buckets:
            buckets = S3BucketCatalog(
                self.aws_client_factory("s3", settings.endpoint, settings.region), settings.region)
            for bucket in settings.buckets:
                probes.append((f"s3 bucket {bucket}", exists_probe(buckets, bucket, transient=AWS_TRANSIENT_ERRORS)))
        return probes


# ============================================================================
# Steps
# ============================================================================

def _create_cluster(cluster: ClusterTarget, descriptor: EnvironmentDescriptor, runner: ProcessRunner) -> ProvisionedTarget:
    """Create the kind cluster for *cluster*, treating "already exists" as reuse.

    Raises:
        ClusterCreateFailed: For any other failure, with the process error as cause.
            A cluster whose creation timed out is deleted first, best effort.
    """
    timeout = descriptor.timeouts.create_cluster
    console.print(Panel.fit(f"Creating cluster {cluster.name}", style="bold blue"))
    target = ProvisionedTarget(key=cluster.key, name=cluster.name, kube_context=cluster.kube_context)
    try:
        runner.run(
            KIND,
            ["create", "cluster", "--name", cluster.name, "--config", str(cluster.manifest), "--wait", f"{timeout:g}s"],
            RunOptions(timeout=timeout),
        )
    except NonZeroExit as err:
        if CLUSTER_ALREADY_EXISTS_MARKER not in f"{err.stdout}\n{err.stderr}":
            raise ClusterCreateFailed(cluster.key, cluster.name) from err
        target.reused = True
        console.print(f"[yellow]\u2139\ufe0f  Cluster {cluster.name} already exists, reusing it[/yellow]")
        return target
    except ProcessTimeout as err:
        # kind may have left a partial cluster behind before it was killed.
        teardown([target], descriptor, runner=runner)
        raise ClusterCreateFailed(cluster.key, cluster.name) from err
    except ProcessError as err:
        raise ClusterCreateFailed(cluster.key, cluster.name) from err
    console.print(f"[green]\u2705 Cluster {cluster.name} created[/green]")
    return target


def _load_image(target: ProvisionedTarget, image: str, runner: ProcessRunner) -> None:
    """Make *image* available inside the cluster, pulling it locally first if needed."""
    try:
        runner.run(DOCKER, ["image", "inspect", image], RunOptions(timeout=DOCKER_INSPECT_TIMEOUT_SECONDS))
    except NonZeroExit:
        console.print(f"[yellow]\u2139\ufe0f  Pulling {image}...[/yellow]")
        runner.run(DOCKER, ["pull", image], RunOptions(timeout=DOCKER_PULL_TIMEOUT_SECONDS))
    runner.run(
        KIND,
        ["load", "docker-image", image, "--name", target.name],
        RunOptions(timeout=DOCKER_PULL_TIMEOUT_SECONDS),
    )
    console.print(f"[green]  \u2713 Loaded {image} into {target.name}[/green]")


def _helm_upgrade_install(
    target: ProvisionedTarget, settings: CapabilitySettings, timeout: float, runner: ProcessRunner,
) -> None:
    args = [
        "--kube-context", target.kube_context,
        "upgrade", "--install", settings.release, settings.chart,
        "--namespace", settings.namespace,
        "--create-namespace",
        "--wait", "--timeout", f"{timeout:g}s",
    ]
    for values_file in settings.values:
        args.extend(["-f", str(values_file)])
    for key, value in settings.set_values.items():
        args.extend(["--set", f"{key}={value}"])
    runner.run(HELM, args, RunOptions(timeout=timeout))
    console.print(f"[green]  \u2713 Release {settings.release} installed in {settings.namespace}[/green]")


def _ensure_namespace(target: ProvisionedTarget, namespace: str, timeout: float, runner: ProcessRunner) -> None:
    manifest = f"apiVersion: v1\nkind: Namespace\nmetadata:\n  name: {namespace}\n"
    runner.run(
        KUBECTL,
        ["--context", target.kube_context, "apply", "-f", "-"],
        RunOptions(input=manifest, timeout=timeout),
    )


def _apply_manifest(
    target: ProvisionedTarget, settings: CapabilitySettings, timeout: float, runner: ProcessRunner,
) -> None:
    _ensure_namespace(target, settings.namespace, timeout, runner)
    runner.run(
        KUBECTL,
        ["--context", target.kube_context, "-n", settings.namespace, "apply", "-f", str(settings.manifest)],
        RunOptions(timeout=timeout),
    )
    console.print(f"[green]  \u2713 Applied {settings.manifest.name} in {settings.namespace}[/green]")


def _provision_capability(
    target: ProvisionedTarget,
    capability: str,
    descriptor: EnvironmentDescriptor,
    runner: ProcessRunner,
    probes: ReadinessProbes,
) -> None:
    """Run one capability's action and wait for its readiness probes.

    Raises:
        CapabilityProvisionError: Wrapping whatever the action or readiness wait
            raised, kept as the cause.
    """
    settings = descriptor.capability(capability)
    if settings is None or not settings.has_action:
        detail = "no chart or manifest configured"
        logger.warning("capability %s on target %s is unsupported: %s", capability, target.key, detail)
        console.print(f"[yellow]\u26a0\ufe0f  {capability}: {detail}, skipping[/yellow]")
        target.record(capability, CapabilityStatus.UNSUPPORTED, detail)
        return

    console.print(f"[yellow]\u2139\ufe0f  Provisioning {capability} on {target.name}...[/yellow]")
    timeouts = descriptor.timeouts
    polling = descriptor.polling
    try:
        if settings.image:
            _load_image(target, settings.image, runner)
        if settings.chart:
            _helm_upgrade_install(target, settings, timeouts.apply, runner)
        if settings.manifest:
            _apply_manifest(target, settings, timeouts.apply, runner)
        for description, probe in probes.for_capability(target, capability, settings):
            attempts = poll_until_ready(
                probe,
                timeouts.readiness,
                polling.initial_backoff,
                polling.max_backoff,
                description=description,
            )
            logger.info("%s ready after %d probe(s)", description, attempts)
    except Exception as err:
        raise CapabilityProvisionError(target.key, capability, str(err)) from err

    target.record(capability, CapabilityStatus.READY)
    console.print(f"[green]\u2705 {capability} ready on {target.name}[/green]")


# ============================================================================
# Public API
# ============================================================================

def provision(
    plan: Plan,
    descriptor: EnvironmentDescriptor,
    *,
    runner: ProcessRunner | None = None,
    coordinator: TeardownCoordinator | None = None,
    probes: ReadinessProbes | None = None,
) -> list[ProvisionedTarget]:
    """Provision every target of *plan*, in order.

    Each cluster is registered with *coordinator* as soon as it exists. On
    any failure the coordinator tears down everything created so far and the
    original error is re-raised; teardown problems are only logged.

    Args:
        plan: Resolved plan.
        descriptor: Validated environment descriptor.
        runner: Process runner for external tools.
        coordinator: Receives every created target.
        probes: Builds readiness probes per capability.

    Returns:
        Provisioned targets in plan order.

    Raises:
        ClusterCreateFailed: If a cluster cannot be created.
        CapabilityProvisionError: If a capability action or readiness wait fails.
    """
    runner = runner or ProcessRunner()
    coordinator = coordinator or TeardownCoordinator(descriptor, runner)
    probes = probes or ReadinessProbes(runner)

    provisioned: list[ProvisionedTarget] = []
    try:
        for key, caps in plan:
            target = _create_cluster(descriptor.clusters[key], descriptor, runner)
            coordinator.register(target)
            provisioned.append(target)
            for capability in CAPABILITY_ORDER:
                if getattr(caps, capability):
                    _provision_capability(target, capability, descriptor, runner, probes)
    except Exception as err:
        logger.error("provisioning flow %s failed: %s", plan.flow, err)
        console.print(f"[red]\u274c Provisioning failed: {err}[/red]")
        try:
            for failure in coordinator.run():
                logger.warning("teardown after failed provisioning: %s", failure)
        except Exception:
            logger.exception("teardown after failed provisioning raised")
        raise

    console.print(f"[green]\u2705 Flow {plan.flow} provisioned ({len(provisioned)} cluster(s))[/green]")
    return provisioned
