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

"""Constants, default table, dependency loading, and dep_value helper."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


def load_dependencies() -> dict:
    """Load default tool images and versions from dependencies.yaml.

    Returns:
        Parsed YAML content as a nested dictionary.
    """
    deps_file = Path(__file__).resolve().parent / "dependencies.yaml"
    with open(deps_file) as f:
        return yaml.safe_load(f) or {}


DEPENDENCIES = load_dependencies()


def dep_value(*keys: str, default: Any = None) -> Any:
    """Safely traverse the DEPENDENCIES dict by key path.

    Args:
        *keys: Sequence of dictionary keys to traverse.
        default: Value to return if any key is missing.

    Returns:
        The value at the nested key path, or *default* if not found.
    """
    node = DEPENDENCIES
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


# -- Descriptor discovery --
CONFIG_FILE_NAME = "env.yaml"
REPO_ROOT_MARKER = ".git"
ENV_PREFIX = "SYSTEST_"

# -- Descriptor defaults --
DEFAULT_TARGET_KEY = "default"
DEFAULT_CLUSTER_NAME_PREFIX = "systest-"
DEFAULT_KUBE_CONTEXT_PREFIX = "kind-"
DEFAULT_FLOW = "aws_only"
DEFAULT_NAMESPACE = "default"

DEFAULT_CREATE_CLUSTER_TIMEOUT_SECONDS = 120.0
DEFAULT_APPLY_TIMEOUT_SECONDS = 120.0
DEFAULT_READINESS_TIMEOUT_SECONDS = 180.0
DEFAULT_TEARDOWN_TIMEOUT_SECONDS = 60.0

DEFAULT_INITIAL_BACKOFF_SECONDS = 0.3
DEFAULT_MAX_BACKOFF_SECONDS = 2.0

# -- LocalStack --
DEFAULT_LOCALSTACK_RELEASE = "localstack"
DEFAULT_LOCALSTACK_NAMESPACE = "localstack"
DEFAULT_AWS_REGION = "sa-east-1"
LOCALSTACK_ACCESS_KEY = "test"
LOCALSTACK_SECRET_KEY = "test"
AWS_CLIENT_TIMEOUT_SECONDS = 15

# -- Capabilities, in provisioning order --
CAP_OBJECT_STORE = "object_store"
CAP_SEED_DATA = "seed_data"
CAP_MESSAGE_BUS = "message_bus"
CAP_CACHE = "cache"
CAP_DEPLOYMENT_CONTROLLER = "deployment_controller"

CAPABILITY_ORDER = (
    CAP_OBJECT_STORE,
    CAP_SEED_DATA,
    CAP_MESSAGE_BUS,
    CAP_CACHE,
    CAP_DEPLOYMENT_CONTROLLER,
)

# -- Built-in flows: flow -> target key -> required capabilities --
BUILTIN_FLOWS: dict[str, dict[str, tuple[str, ...]]] = {
    "aws_only": {
        DEFAULT_TARGET_KEY: (CAP_OBJECT_STORE,),
    },
    "event_flow": {
        DEFAULT_TARGET_KEY: (CAP_OBJECT_STORE, CAP_SEED_DATA, CAP_MESSAGE_BUS, CAP_CACHE),
    },
    "platform_flow": {
        DEFAULT_TARGET_KEY: (CAP_MESSAGE_BUS, CAP_CACHE, CAP_DEPLOYMENT_CONTROLLER),
    },
}

# -- External tools --
KIND = "kind"
KUBECTL = "kubectl"
HELM = "helm"
DOCKER = "docker"
CLUSTER_ALREADY_EXISTS_MARKER = "already exist"
DOCKER_PULL_TIMEOUT_SECONDS = 300.0
DOCKER_INSPECT_TIMEOUT_SECONDS = 20.0
KUBECTL_QUERY_TIMEOUT_SECONDS = 30.0
