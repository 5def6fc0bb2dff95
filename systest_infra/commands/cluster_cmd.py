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

"""Cluster subcommands (up, down)."""

from __future__ import annotations

from pathlib import Path

import typer

from systest_infra import console
from systest_infra.commands.plan_cmd import settings_with
from systest_infra.errors import InfraError
from systest_infra.plan import display_plan
from systest_infra.process import ProcessRunner
from systest_infra.provisioner import ProvisionedTarget, provision
from systest_infra.session import check_prerequisites, report, resolve_run
from systest_infra.teardown import TeardownCoordinator, teardown

app = typer.Typer(help="Provision or destroy the clusters of a flow.")


@app.command()
def up(
    flow: str | None = typer.Option(None, "--flow", help="Flow to provision (overrides SYSTEST_FLOW)"),
    config: Path | None = typer.Option(None, "--config", help="Path to env.yaml"),
    skip_prereq_check: bool = typer.Option(
        False, "--skip-prereq-check", help="Do not check for kind/kubectl/helm/docker"),
) -> None:
    """Provision the flow and leave the clusters running.

    Clusters are torn down only if provisioning fails part way.
    """
    settings = settings_with(flow=flow, config_path=config)
    runner = ProcessRunner()
    try:
        resolved = resolve_run(settings)
        display_plan(resolved.plan, resolved.descriptor)
        if not (skip_prereq_check or settings.skip_prereq_check):
            check_prerequisites(resolved.plan, resolved.descriptor)
        coordinator = TeardownCoordinator(resolved.descriptor, runner)
        targets = provision(resolved.plan, resolved.descriptor, runner=runner, coordinator=coordinator)
    except InfraError as err:
        report(err)
        raise typer.Exit(1)

    console.print("[yellow]Kube contexts:[/yellow]")
    for target in targets:
        state = "reused" if target.reused else "created"
        console.print(f"  {target.key:<16}: {target.kube_context} ({state})")


@app.command()
def down(
    flow: str | None = typer.Option(None, "--flow", help="Flow whose clusters to delete"),
    config: Path | None = typer.Option(None, "--config", help="Path to env.yaml"),
) -> None:
    """Delete every cluster the flow would provision."""
    settings = settings_with(flow=flow, config_path=config)
    try:
        resolved = resolve_run(settings)
    except InfraError as err:
        report(err)
        raise typer.Exit(1)

    descriptor = resolved.descriptor
    targets = [
        ProvisionedTarget(key=key, name=descriptor.clusters[key].name, kube_context=descriptor.clusters[key].kube_context)
        for key in resolved.plan.keys()
    ]
    failures = teardown(targets, descriptor, runner=ProcessRunner())
    if failures:
        raise typer.Exit(1)
