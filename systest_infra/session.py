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

"""One complete run: config, plan, provision, test phase, teardown."""

from __future__ import annotations

import os
import shlex
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from rich.panel import Panel

from systest_infra import console, logger
from systest_infra.config import EnvironmentDescriptor, LoadedDescriptor, RunSettings, load_descriptor
from systest_infra.constants import DOCKER, ENV_PREFIX, HELM, KIND, KUBECTL
from systest_infra.errors import CommandNotFound, InfraError
from systest_infra.plan import Plan, display_plan, known_flows, resolve_plan, select_flow
from systest_infra.process import ProcessRunner, require_command
from systest_infra.provisioner import ProvisionedTarget, ReadinessProbes, provision
from systest_infra.teardown import TeardownCoordinator

EXIT_OK = 0
EXIT_SETUP_FAILED = 1

SuiteRunner = Callable[[Sequence[str], Mapping[str, str], Path | None], int]


def report(err: InfraError) -> None:
    """Print a fatal error with any captured process output."""
    console.print(f"[red]\u274c {err.details()}[/red]")


@dataclass(frozen=True)
class ResolvedRun:
    loaded: LoadedDescriptor
    plan: Plan

    @property
    def descriptor(self) -> EnvironmentDescriptor:
        return self.loaded.descriptor


def resolve_run(settings: RunSettings) -> ResolvedRun:
    """Load the descriptor and resolve the selected flow into a plan.

    Raises:
        ConfigError: If the descriptor cannot be loaded.
        PlanError: If the flow is unknown or names undeclared targets.
    """
    loaded = load_descriptor(settings.start_dir, config_path=settings.config_path)
    descriptor = loaded.descriptor
    flow = select_flow(
        settings.flow,
        cwd=settings.start_dir,
        known_flows=known_flows(descriptor),
        default_flow=descriptor.default_flow,
    )
    return ResolvedRun(loaded=loaded, plan=resolve_plan(flow, descriptor))


def required_tools(plan: Plan, descriptor: EnvironmentDescriptor) -> list[str]:
    """External tools the plan will invoke."""
    tools = [KIND, KUBECTL]
    settings = [
        descriptor.capability(name)
        for _, caps in plan
        for name in caps.enabled()
    ]
    settings = [s for s in settings if s is not None and s.has_action]
    if any(s.chart for s in settings):
        tools.append(HELM)
    if any(s.image for s in settings):
        tools.append(DOCKER)
    return tools


def check_prerequisites(plan: Plan, descriptor: EnvironmentDescriptor) -> None:
    """Check that every tool the plan needs is on PATH.

    Raises:
        CommandNotFound: For the first missing tool.
    """
    console.print(Panel.fit("Checking prerequisites", style="bold blue"))
    for cmd in required_tools(plan, descriptor):
        require_command(cmd)
    console.print("[green]\u2705 All required tools are available[/green]")


def environment_for_tests(plan: Plan, targets: Sequence[ProvisionedTarget]) -> dict[str, str]:
    """Variables exported to the test command describing what was provisioned.

    ``SYSTEST_FLOW`` names the flow and ``SYSTEST_KUBE_CONTEXT_<KEY>`` holds
    each target's kube context. A single-target plan also gets
    ``SYSTEST_KUBE_CONTEXT``.
    """
    env = {f"{ENV_PREFIX}FLOW": plan.flow}
    for target in targets:
        suffix = target.key.upper().replace("-", "_")
        env[f"{ENV_PREFIX}KUBE_CONTEXT_{suffix}"] = target.kube_context
    if len(targets) == 1:
        env[f"{ENV_PREFIX}KUBE_CONTEXT"] = targets[0].kube_context
    return env


def run_test_command(argv: Sequence[str], env: Mapping[str, str], cwd: Path | None) -> int:
    """Run the test suite with inherited stdio and return its exit code.

    Raises:
        CommandNotFound: If the test executable does not exist.
    """
    logger.info("running tests: %s", " ".join(argv))
    try:
        completed = subprocess.run(list(argv), cwd=cwd, env={**os.environ, **env}, check=False)
    except FileNotFoundError as err:
        raise CommandNotFound(tuple(argv)) from err
    return completed.returncode


def run_session(
    settings: RunSettings | None = None,
    *,
    runner: ProcessRunner | None = None,
    probes: ReadinessProbes | None = None,
    test_runner: SuiteRunner = run_test_command,
) -> int:
    """Provision the selected flow, run the tests, and tear everything down.

    Args:
        settings: Run options; read from SYSTEST_* variables when None.
        runner: Process runner for provisioning and teardown.
        probes: Readiness probe builder.
        test_runner: Runs the test command and returns its exit code.

    Returns:
        0 when provisioning succeeded and the tests passed, 1 on a config,
        plan, prerequisite or provisioning failure, otherwise the test
        command's exit code. Teardown failures only produce warnings.
    """
    settings = settings or RunSettings()
    runner = runner or ProcessRunner()

    try:
        resolved = resolve_run(settings)
        display_plan(resolved.plan, resolved.descriptor)
        if not settings.skip_prereq_check:
            check_prerequisites(resolved.plan, resolved.descriptor)
    except InfraError as err:
        report(err)
        return EXIT_SETUP_FAILED

    argv = shlex.split(settings.test_command)
    if not argv:
        console.print("[red]\u274c test command is empty[/red]")
        return EXIT_SETUP_FAILED

    with TeardownCoordinator(resolved.descriptor, runner) as coordinator:
        try:
            targets = provision(resolved.plan, resolved.descriptor, runner=runner, coordinator=coordinator, probes=probes)
        except InfraError as err:
            report(err)
            return EXIT_SETUP_FAILED

        console.print(Panel.fit(f"Running tests for flow {resolved.plan.flow}", style="bold blue"))
        try:
            exit_code = test_runner(argv, environment_for_tests(resolved.plan, targets), settings.start_dir)
        except CommandNotFound as err:
            console.print(f"[red]\u274c {err}[/red]")
            return EXIT_SETUP_FAILED

    for failure in coordinator.failures:
        console.print(f"[yellow]\u26a0\ufe0f  Teardown failed for {failure}[/yellow]")
    if exit_code == EXIT_OK:
        console.print("[green]\u2705 Tests passed[/green]")
    else:
        console.print(f"[red]\u274c Tests failed (exit={exit_code})[/red]")
    return exit_code
