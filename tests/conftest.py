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
Pytest configuration and shared fixtures.

Provides custom markers, a recording fake for the process runner, and a
temporary repository with an ``env.yaml`` writer.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
import yaml

from systest_infra.process import ProcessResult, RunOptions

pytest_plugins = ["pytester"]

# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated, no external dependencies)")
    config.addinivalue_line("markers", "subprocess: Tests that spawn real child processes")


# =============================================================================
# Fakes
# =============================================================================


@dataclass
class Call:
    argv: tuple[str, ...]
    options: RunOptions


@dataclass
class FakeRunner:
    """Records invocations and answers them from registered rules.

    A rule matches when every one of its tokens appears in the argv. The
    first matching rule wins; unmatched commands succeed with empty output.
    Every call is also appended to ``events`` as ``("run", argv)`` so tests
    can interleave it with other recorded activity.
    """

    events: list[tuple[str, Any]] = field(default_factory=list)
    calls: list[Call] = field(default_factory=list)
    _rules: list[tuple[tuple[str, ...], Any]] = field(default_factory=list)

    def on(self, *tokens: str, stdout: str = "", error: Exception | None = None,
           handler: Callable[[tuple[str, ...]], ProcessResult] | None = None) -> FakeRunner:
        self._rules.append((tokens, handler or error or stdout))
        return self

    def run(self, command, args=(), options=None):
        argv = (command, *args)
        self.calls.append(Call(argv, options or RunOptions()))
        self.events.append(("run", argv))
        for tokens, response in self._rules:
            if all(token in argv for token in tokens):
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(argv)
                return ProcessResult(argv, response, "", 0)
        return ProcessResult(argv, "", "", 0)

    def argvs(self, *tokens: str) -> list[tuple[str, ...]]:
        """Recorded argvs containing every token."""
        return [c.argv for c in self.calls if all(token in c.argv for token in tokens)]


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


# =============================================================================
# Repository fixtures
# =============================================================================


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A repository root with ``.git``, kind configs and a manifest."""
    (tmp_path / ".git").mkdir()
    (tmp_path / "kind").mkdir()
    for name in ("default", "cluster-a", "cluster-b"):
        (tmp_path / "kind" / f"{name}.yaml").write_text("kind: Cluster\napiVersion: kind.x-k8s.io/v1alpha4\n")
    (tmp_path / "manifests").mkdir()
    (tmp_path / "manifests" / "nats.yaml").write_text("apiVersion: v1\nkind: List\nitems: []\n")
    (tmp_path / "values").mkdir()
    (tmp_path / "values" / "localstack.yaml").write_text("startServices: dynamodb,s3\n")
    return tmp_path


@pytest.fixture
def write_env(repo: Path) -> Callable[..., Path]:
    """Write ``env.yaml`` (at the repo root unless a subdirectory is given)."""

    def _write(data: Any, subdir: str | None = None, raw: str | None = None) -> Path:
        directory = repo / subdir if subdir else repo
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / "env.yaml"
        path.write_text(raw if raw is not None else yaml.safe_dump(data))
        return path

    return _write


@pytest.fixture
def two_cluster_env() -> dict:
    """Descriptor with a ``both`` flow spanning cluster-a and cluster-b."""
    return {
        "clusters": {
            "cluster-a": {"manifest": "kind/cluster-a.yaml"},
            "cluster-b": {"manifest": "kind/cluster-b.yaml"},
        },
        "capabilities": {
            "object_store": {
                "chart": "localstack/localstack",
                "values": ["values/localstack.yaml"],
                "set": {"service.type": "NodePort", "debug": True},
            },
            "message_bus": {"manifest": "manifests/nats.yaml", "namespace": "nats"},
        },
        "flows": {
            "both": {
                "cluster-b": ["message_bus"],
                "cluster-a": ["object_store"],
            },
        },
        "default_flow": "both",
    }
