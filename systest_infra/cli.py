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

"""
cli.py - CLI for provisioning system-test environments.

Subcommands:
    plan     Inspect flows and resolved plans (show, flows)
    cluster  Provision or destroy the clusters of a flow (up, down)
    run      Provision, run the test command, tear down

Examples:
    # Show what the aws_only flow would provision
    systest-infra plan show --flow aws_only

    # Provision, run pytest, tear down
    systest-infra run --flow event_flow --test-command "pytest tests/system -x"

    # Flow inferred from the working directory name
    cd tests/system/flows/platform_flow && systest-infra run

    # Delete leftover clusters
    systest-infra cluster down --flow event_flow

Environment Variables:
    SYSTEST_FLOW, SYSTEST_CONFIG_PATH, SYSTEST_START_DIR,
    SYSTEST_SKIP_PREREQ_CHECK, SYSTEST_TEST_COMMAND

For detailed usage information, run: systest-infra --help
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import typer

from systest_infra import console
from systest_infra.commands import cluster_cmd, plan_cmd
from systest_infra.errors import InfraError
from systest_infra.session import run_session

app = typer.Typer(
    help="Provision ephemeral clusters and services for system test suites.",
    no_args_is_help=True,
)


@app.callback()
def _main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Initialize logging for all subcommands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


app.add_typer(plan_cmd.app, name="plan")
app.add_typer(cluster_cmd.app, name="cluster")


@app.command()
def run(
    flow: str | None = typer.Option(None, "--flow", help="Flow to provision (overrides SYSTEST_FLOW)"),
    config: Path | None = typer.Option(None, "--config", help="Path to env.yaml"),
    start_dir: Path | None = typer.Option(None, "--dir", help="Directory to search env.yaml and infer the flow from"),
    test_command: str | None = typer.Option(None, "--test-command", help="Command that runs the test suite"),
    skip_prereq_check: bool = typer.Option(
        False, "--skip-prereq-check", help="Do not check for kind/kubectl/helm/docker"),
) -> None:
    """Provision the flow, run the tests, and tear everything down."""
    settings = plan_cmd.settings_with(
        flow=flow,
        config_path=config,
        start_dir=start_dir,
        test_command=test_command,
        skip_prereq_check=skip_prereq_check or None,
    )
    raise typer.Exit(run_session(settings))


def main() -> None:
    try:
        app()
    except InfraError as e:
        console.print(f"[red]\u274c {e.details()}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
