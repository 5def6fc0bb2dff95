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

"""Best-effort destruction of provisioned clusters."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from rich.panel import Panel

from systest_infra import console, logger
from systest_infra.config import EnvironmentDescriptor
from systest_infra.constants import KIND
from systest_infra.errors import ProcessError
from systest_infra.process import ProcessRunner, RunOptions

if TYPE_CHECKING:
    from systest_infra.provisioner import ProvisionedTarget


@dataclass(frozen=True)
class TeardownFailure:
    """A target that could not be destroyed. Reported, never raised."""

    target_key: str
    cluster_name: str
    error: Exception

    def __str__(self) -> str:
        return f"{self.target_key} ({self.cluster_name}): {self.error}"


def teardown(
    targets: Iterable[ProvisionedTarget],
    descriptor: EnvironmentDescriptor,
    *,
    runner: ProcessRunner,
) -> list[TeardownFailure]:
    """Delete the kind cluster of every target, continuing past failures.

    Args:
        targets: Targets to destroy.
        descriptor: Supplies the teardown timeout.
        runner: Process runner used for ``kind delete cluster``.

    Returns:
        One TeardownFailure per target that could not be deleted.
    """
    failures: list[TeardownFailure] = []
    options = RunOptions(timeout=descriptor.timeouts.teardown)
    for target in targets:
        console.print(f"[yellow]\u2139\ufe0f  Deleting cluster {target.name}...[/yellow]")
        try:
            runner.run(KIND, ["delete", "cluster", "--name", target.name], options)
        except (ProcessError, OSError) as err:
            logger.warning("teardown of target %s (%s) failed: %s", target.key, target.name, err)
            console.print(f"[red]\u274c Failed to delete cluster {target.name}: {err}[/red]")
            failures.append(TeardownFailure(target.key, target.name, err))
            continue
        console.print(f"[green]\u2705 Cluster {target.name} deleted[/green]")
    return failures


class TeardownCoordinator:
    """Tracks provisioned targets and destroys each of them exactly once.

    ``run()`` may be called from the failure path of provisioning and again
    after the test phase; only the first call does any work.
    """

    def __init__(self, descriptor: EnvironmentDescriptor, runner: ProcessRunner) -> None:
        self.descriptor = descriptor
        self.runner = runner
        self._targets: list[ProvisionedTarget] = []
        self._done = False
        self.failures: list[TeardownFailure] = []

    @property
    def targets(self) -> tuple[ProvisionedTarget, ...]:
        return tuple(self._targets)

    @property
    def done(self) -> bool:
        return self._done

    def register(self, target: ProvisionedTarget) -> None:
        if self._done:
            raise RuntimeError(f"cannot register target '{target.key}' after teardown ran")
        if any(t.key == target.key for t in self._targets):
            return
        self._targets.append(target)

    def run(self) -> list[TeardownFailure]:
        """Tear down every registered target; later calls return no failures."""
        if self._done:
            return []
        self._done = True
        if not self._targets:
            return []
        console.print(Panel.fit("Tearing down clusters", style="bold blue"))
        self.failures = teardown(self._targets, self.descriptor, runner=self.runner)
        return self.failures

    def __enter__(self) -> TeardownCoordinator:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.run()
