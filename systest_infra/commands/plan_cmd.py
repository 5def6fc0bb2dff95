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

"""Plan subcommands (show, flows)."""

from __future__ import annotations

from pathlib import Path

import typer

from systest_infra import console
from systest_infra.config import RunSettings, display_descriptor, load_descriptor
from systest_infra.errors import InfraError
from systest_infra.plan import display_plan, known_flows
from systest_infra.session import report, resolve_run

app = typer.Typer(help="Inspect flows and resolved plans.")


def settings_with(**overrides) -> RunSettings:
    """RunSettings from SYSTEST_* variables, with the non-None CLI options applied."""
    settings = RunSettings()
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@app.command()
def show(
    flow: str | None = typer.Option(None, "--flow", help="Flow to resolve (overrides SYSTEST_FLOW)"),
    config: Path | None = typer.Option(None, "--config", help="Path to env.yaml"),
    start_dir: Path | None = typer.Option(None, "--dir", help="Directory to search env.yaml from"),
) -> None:
    """Resolve the selected flow and print the plan without provisioning."""
    settings = settings_with(flow=flow, config_path=config, start_dir=start_dir)
    try:
        resolved = resolve_run(settings)
    except InfraError as err:
        report(err)
        raise typer.Exit(1)
    display_descriptor(resolved.loaded)
    display_plan(resolved.plan, resolved.descriptor)


@app.command()
def flows(
    config: Path | None = typer.Option(None, "--config", help="Path to env.yaml"),
    start_dir: Path | None = typer.Option(None, "--dir", help="Directory to search env.yaml from"),
) -> None:
    """List every flow the descriptor can resolve."""
    try:
        loaded = load_descriptor(start_dir, config_path=config)
    except InfraError as err:
        report(err)
        raise typer.Exit(1)
    descriptor = loaded.descriptor
    for name, targets in sorted(known_flows(descriptor).items()):
        marker = " (default)" if name == descriptor.default_flow else ""
        console.print(f"[cyan]{name}[/cyan]{marker}")
        for key in sorted(targets):
            console.print(f"  {key:<16}: {', '.join(targets[key]) or '-'}")
