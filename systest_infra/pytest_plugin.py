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

"""pytest plugin that provisions the selected flow around a test session.

Enable it from a ``conftest.py``::

    pytest_plugins = ["systest_infra.pytest_plugin"]

Tests then request the ``systest_environment`` fixture. Provisioning happens
once per session, on first use, and everything is torn down at session end.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest

from systest_infra.config import EnvironmentDescriptor, RunSettings
from systest_infra.errors import InfraError
from systest_infra.plan import Plan
from systest_infra.process import ProcessRunner
from systest_infra.provisioner import ProvisionedTarget, provision
from systest_infra.session import check_prerequisites, resolve_run
from systest_infra.teardown import TeardownCoordinator


@dataclass(frozen=True)
class SystestEnvironment:
    """What the session provisioned, handed to tests."""

    descriptor: EnvironmentDescriptor
    plan: Plan
    targets: tuple[ProvisionedTarget, ...]

    def target(self, key: str) -> ProvisionedTarget:
        for target in self.targets:
            if target.key == key:
                return target
        raise KeyError(key)

    def kube_context(self, key: str) -> str:
        return self.target(key).kube_context


def pytest_addoption(parser):
    group = parser.getgroup("systest", "system-test environment provisioning")
    group.addoption("--systest-flow", default=None, help="Flow to provision (overrides SYSTEST_FLOW)")
    group.addoption("--systest-config", default=None, help="Path to env.yaml")
    group.addoption(
        "--systest-skip-prereq-check", action="store_true", default=False,
        help="Do not check for kind/kubectl/helm/docker",
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "systest: test needs the provisioned system-test environment")


def settings_from_options(config) -> RunSettings:
    settings = RunSettings()
    # Flow inference looks at where pytest was invoked, not at the rootdir.
    overrides: dict = {"start_dir": Path(config.invocation_params.dir)} if settings.start_dir is None else {}
    if config.getoption("--systest-flow"):
        overrides["flow"] = config.getoption("--systest-flow")
    if config.getoption("--systest-config"):
        overrides["config_path"] = Path(config.getoption("--systest-config"))
    if config.getoption("--systest-skip-prereq-check"):
        overrides["skip_prereq_check"] = True
    return settings.model_copy(update=overrides)


@pytest.fixture(scope="session")
def systest_runner() -> ProcessRunner:
    return ProcessRunner()


@pytest.fixture(scope="session")
def systest_environment(request, systest_runner):
    """Provision the selected flow for the session and tear it down afterwards."""
    settings = settings_from_options(request.config)
    try:
        resolved = resolve_run(settings)
        if not settings.skip_prereq_check:
            check_prerequisites(resolved.plan, resolved.descriptor)
    except InfraError as err:
        pytest.fail(err.details(), pytrace=False)

    with TeardownCoordinator(resolved.descriptor, systest_runner) as coordinator:
        try:
            targets = provision(
                resolved.plan, resolved.descriptor, runner=systest_runner, coordinator=coordinator)
        except InfraError as err:
            pytest.fail(err.details(), pytrace=False)
        yield SystestEnvironment(resolved.descriptor, resolved.plan, tuple(targets))
