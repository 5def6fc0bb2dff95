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

from __future__ import annotations

import textwrap
from pathlib import Path
from types import SimpleNamespace

import pytest
import yaml

from systest_infra.config import validate_descriptor
from systest_infra.plan import resolve_plan
from systest_infra.provisioner import ProvisionedTarget
from systest_infra.pytest_plugin import SystestEnvironment, settings_from_options

pytestmark = pytest.mark.unit


class FakeConfig:
    def __init__(self, invocation_dir, rootpath=None, **options) -> None:
        self.invocation_params = SimpleNamespace(dir=invocation_dir)
        self.rootpath = rootpath or invocation_dir
        self.options = {
            "--systest-flow": None,
            "--systest-config": None,
            "--systest-skip-prereq-check": False,
            **options,
        }

    def getoption(self, name):
        return self.options[name]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ("SYSTEST_FLOW", "SYSTEST_CONFIG_PATH", "SYSTEST_START_DIR", "SYSTEST_SKIP_PREREQ_CHECK"):
        monkeypatch.delenv(name, raising=False)


def test_settings_default_to_invocation_dir(tmp_path):
    flow_dir = tmp_path / "tests" / "system" / "flows" / "event_flow"

    settings = settings_from_options(FakeConfig(flow_dir, rootpath=tmp_path))

    assert settings.start_dir == flow_dir
    assert settings.flow is None
    assert settings.skip_prereq_check is False


def test_settings_from_command_line(tmp_path):
    config = FakeConfig(
        tmp_path,
        **{"--systest-flow": "event_flow", "--systest-config": "ci/env.yaml", "--systest-skip-prereq-check": True},
    )

    settings = settings_from_options(config)

    assert settings.flow == "event_flow"
    assert settings.config_path == Path("ci/env.yaml")
    assert settings.skip_prereq_check is True


def test_command_line_overrides_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("SYSTEST_FLOW", "aws_only")
    monkeypatch.setenv("SYSTEST_START_DIR", str(tmp_path / "flows"))

    settings = settings_from_options(FakeConfig(tmp_path, **{"--systest-flow": "platform_flow"}))

    assert settings.flow == "platform_flow"
    assert settings.start_dir == tmp_path / "flows"


def test_environment_lookups(repo, two_cluster_env):
    descriptor = validate_descriptor(two_cluster_env, repo.resolve())
    targets = (
        ProvisionedTarget(key="cluster-a", name="systest-cluster-a", kube_context="kind-systest-cluster-a"),
        ProvisionedTarget(key="cluster-b", name="systest-cluster-b", kube_context="kind-systest-cluster-b"),
    )
    env = SystestEnvironment(descriptor, resolve_plan("both", descriptor), targets)

    assert env.target("cluster-b") is targets[1]
    assert env.kube_context("cluster-a") == "kind-systest-cluster-a"
    with pytest.raises(KeyError):
        env.target("cluster-c")


# =============================================================================
# systest_environment fixture
# =============================================================================

RECORDING_CONFTEST = textwrap.dedent("""
    import pytest

    from systest_infra.process import ProcessResult

    pytest_plugins = ["systest_infra.pytest_plugin"]

    LOG = LOG_PATH


    class RecordingRunner:
        def run(self, command, args=(), options=None):
            argv = (command, *args)
            with open(LOG, "a") as f:
                f.write(" ".join(argv) + "\\n")
            return ProcessResult(argv, "", "", 0)


    @pytest.fixture(scope="session")
    def systest_runner():
        return RecordingRunner()
""")


@pytest.fixture
def plugin_project(pytester):
    """A pytester project with two kind targets and a recording process runner."""
    (pytester.path / ".git").mkdir()
    (pytester.path / "kind").mkdir()
    for key in ("a", "b"):
        (pytester.path / "kind" / f"{key}.yaml").write_text("kind: Cluster\n")
    log = pytester.path / "commands.log"
    pytester.makeconftest(RECORDING_CONFTEST.replace("LOG_PATH", repr(str(log))))

    def _write_env(default_flow: str = "pair") -> Path:
        (pytester.path / "env.yaml").write_text(yaml.safe_dump({
            "clusters": {"a": {"manifest": "kind/a.yaml"}, "b": {"manifest": "kind/b.yaml"}},
            "flows": {"pair": {"a": ["cache"], "b": ["cache"]}},
            "default_flow": default_flow,
        }))
        return log

    return _write_env


def test_environment_is_provisioned_once_and_torn_down(pytester, plugin_project):
    log = plugin_project()
    pytester.makepyfile(test_flow="""
        def test_contexts(systest_environment):
            assert systest_environment.kube_context("a") == "kind-systest-a"
            assert systest_environment.plan.flow == "pair"


        def test_targets(systest_environment):
            assert [t.key for t in systest_environment.targets] == ["a", "b"]
    """)

    result = pytester.runpytest("--systest-skip-prereq-check")

    result.assert_outcomes(passed=2)
    commands = log.read_text().splitlines()
    creates = [c for c in commands if c.startswith("kind create cluster")]
    deletes = [c for c in commands if c.startswith("kind delete cluster")]
    assert len(creates) == 2
    assert sorted(deletes) == ["kind delete cluster --name systest-a", "kind delete cluster --name systest-b"]
    assert commands.index(deletes[0]) > commands.index(creates[-1])


def test_environment_setup_failure_fails_the_test(pytester, plugin_project):
    log = plugin_project(default_flow="missing")
    pytester.makepyfile(test_flow="""
        def test_needs_environment(systest_environment):
            pass
    """)

    result = pytester.runpytest("--systest-skip-prereq-check")

    result.assert_outcomes(errors=1)
    result.stdout.fnmatch_lines(["*unknown flow 'missing'*"])
    assert not log.exists()


def test_flow_is_inferred_from_invocation_directory(pytester, plugin_project, monkeypatch):
    log = plugin_project(default_flow="aws_only")
    pytester.makeini("[pytest]\n")
    flow_dir = pytester.path / "flows" / "pair"
    flow_dir.mkdir(parents=True)
    (flow_dir / "test_pair.py").write_text(textwrap.dedent("""
        def test_flow(systest_environment):
            assert systest_environment.plan.flow == "pair"
    """))
    monkeypatch.chdir(flow_dir)

    result = pytester.runpytest("--systest-skip-prereq-check")

    result.assert_outcomes(passed=1)
    assert "kind create cluster --name systest-b" in log.read_text()
