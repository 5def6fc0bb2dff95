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

"""Environment descriptor discovery, parsing, defaulting, and validation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.panel import Panel

from systest_infra import console
from systest_infra.constants import (
    CAP_OBJECT_STORE,
    CAPABILITY_ORDER,
    CONFIG_FILE_NAME,
    DEFAULT_APPLY_TIMEOUT_SECONDS,
    DEFAULT_AWS_REGION,
    DEFAULT_CLUSTER_NAME_PREFIX,
    DEFAULT_CREATE_CLUSTER_TIMEOUT_SECONDS,
    DEFAULT_FLOW,
    DEFAULT_INITIAL_BACKOFF_SECONDS,
    DEFAULT_KUBE_CONTEXT_PREFIX,
    DEFAULT_LOCALSTACK_NAMESPACE,
    DEFAULT_LOCALSTACK_RELEASE,
    DEFAULT_MAX_BACKOFF_SECONDS,
    DEFAULT_NAMESPACE,
    DEFAULT_READINESS_TIMEOUT_SECONDS,
    DEFAULT_TARGET_KEY,
    DEFAULT_TEARDOWN_TIMEOUT_SECONDS,
    ENV_PREFIX,
    REPO_ROOT_MARKER,
    dep_value,
)
from systest_infra.errors import ConfigNotFound, ConfigParseError, ConfigValidationError

# ============================================================================
# Field helpers
# ============================================================================

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> Any:
    """Convert ``90``, ``"90s"``, ``"2m"`` or ``"1m30s"`` into seconds.

    Args:
        value: Raw duration from the descriptor.

    Returns:
        Seconds as a float, or the value untouched when it is not a duration
        shape, so pydantic reports the type error.

    Raises:
        ValueError: If a string does not follow the ``<n><unit>...`` grammar.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, timedelta):
        return value.total_seconds()
    if not isinstance(value, str):
        return value

    text = value.strip()
    if re.fullmatch(r"\d+(?:\.\d+)?", text):
        return float(text)
    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ValueError(f"invalid duration {value!r} (expected e.g. 90s, 2m, 1m30s)")
    return total


Seconds = Annotated[float, BeforeValidator(parse_duration)]


def _resolve_path(value: Path, info: ValidationInfo) -> Path:
    root = (info.context or {}).get("repo_root")
    if not value.is_absolute() and root is not None:
        value = Path(root) / value
    return value


def _require_file(value: Path, info: ValidationInfo) -> Path:
    value = _resolve_path(value, info)
    if not value.is_file():
        raise ValueError(f"file not found: {value}")
    return value


# ============================================================================
# Descriptor models
# ============================================================================

class ClusterTarget(BaseModel):
    """One provisionable kind cluster.

    Attributes:
        key: Stable target key used by flows.
        name: kind cluster name.
        kube_context: kubectl/helm context for the cluster.
        manifest: kind cluster config file, absolute after loading.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    key: str = Field(min_length=1)
    name: str = Field(min_length=1)
    kube_context: str = Field(min_length=1, validation_alias=AliasChoices("kube_context", "kubeContext"))
    manifest: Path = Field(validation_alias=AliasChoices("manifest", "kindConfig", "kind_config"))

    @model_validator(mode="before")
    @classmethod
    def _apply_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("name") and data.get("key"):
            data["name"] = f"{DEFAULT_CLUSTER_NAME_PREFIX}{data['key']}"
        if not (data.get("kube_context") or data.get("kubeContext")) and data.get("name"):
            data["kube_context"] = f"{DEFAULT_KUBE_CONTEXT_PREFIX}{data['name']}"
        return data

    @field_validator("name", "kube_context")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("manifest")
    @classmethod
    def _manifest_exists(cls, value: Path, info: ValidationInfo) -> Path:
        return _require_file(value, info)


class CapabilitySettings(BaseModel):
    """How one capability is provisioned and probed.

    An action is ``chart`` (helm) and/or ``manifest`` (kubectl apply). A
    capability with neither is declared but unsupported and is recorded as a
    no-op. Readiness comes from ``deployment``, ``job``, ``tables`` or
    ``buckets``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    namespace: str = Field(default=DEFAULT_NAMESPACE, min_length=1)
    release: str | None = None
    chart: str | None = None
    values: tuple[Path, ...] = ()
    set_values: dict[str, str] = Field(default_factory=dict, alias="set")
    manifest: Path | None = None
    image: str | None = None
    deployment: str | None = None
    job: str | None = None
    tables: tuple[str, ...] = ()
    buckets: tuple[str, ...] = ()
    endpoint: str | None = None
    region: str = DEFAULT_AWS_REGION

    @field_validator("values")
    @classmethod
    def _values_exist(cls, value: tuple[Path, ...], info: ValidationInfo) -> tuple[Path, ...]:
        return tuple(_require_file(v, info) for v in value)

    @field_validator("manifest")
    @classmethod
    def _manifest_exists(cls, value: Path | None, info: ValidationInfo) -> Path | None:
        return None if value is None else _require_file(value, info)

    @field_validator("chart")
    @classmethod
    def _resolve_chart(cls, value: str | None, info: ValidationInfo) -> str | None:
        # Local chart directories are repo-relative; repo/chart and oci:// refs pass through.
        if value is None or "://" in value or Path(value).is_absolute():
            return value
        local = _resolve_path(Path(value), info)
        return str(local) if local.exists() else value

    @field_validator("set_values", mode="before")
    @classmethod
    def _stringify_set(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v).lower() if isinstance(v, bool) else str(v) for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> CapabilitySettings:
        problems = []
        if self.chart and not self.release:
            problems.append("release is required when chart is set")
        if (self.tables or self.buckets) and not self.endpoint:
            problems.append("endpoint is required when tables or buckets are probed")
        if problems:
            raise ValueError("; ".join(problems))
        return self

    @property
    def has_action(self) -> bool:
        return bool(self.chart or self.manifest)


class Timeouts(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    create_cluster: Seconds = Field(
        default=DEFAULT_CREATE_CLUSTER_TIMEOUT_SECONDS, gt=0,
        validation_alias=AliasChoices("create_cluster", "createCluster"))
    apply: Seconds = Field(default=DEFAULT_APPLY_TIMEOUT_SECONDS, gt=0)
    readiness: Seconds = Field(default=DEFAULT_READINESS_TIMEOUT_SECONDS, gt=0)
    teardown: Seconds = Field(default=DEFAULT_TEARDOWN_TIMEOUT_SECONDS, gt=0)


class Polling(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    initial_backoff: Seconds = Field(default=DEFAULT_INITIAL_BACKOFF_SECONDS, gt=0)
    max_backoff: Seconds = Field(default=DEFAULT_MAX_BACKOFF_SECONDS, gt=0)

    @model_validator(mode="after")
    def _ordered(self) -> Polling:
        if self.initial_backoff > self.max_backoff:
            raise ValueError("initial_backoff must not exceed max_backoff")
        return self


def _normalize_flow_targets(targets: Any) -> Any:
    """Turn ``{target: [caps]}`` or ``{target: {cap: bool}}`` into sorted capability tuples."""
    if not isinstance(targets, dict):
        return targets
    normalized: dict[str, Any] = {}
    for key, caps in targets.items():
        if isinstance(caps, dict):
            caps = [name for name, enabled in caps.items() if enabled]
        if isinstance(caps, (list, tuple)):
            unknown = [c for c in caps if c not in CAPABILITY_ORDER]
            if unknown:
                raise ValueError(
                    f"target '{key}' uses unknown capabilities {unknown} "
                    f"(known: {', '.join(CAPABILITY_ORDER)})"
                )
            caps = tuple(c for c in CAPABILITY_ORDER if c in caps)
        normalized[str(key)] = caps
    return normalized


FlowTargets = Annotated[dict[str, tuple[str, ...]], BeforeValidator(_normalize_flow_targets)]


class EnvironmentDescriptor(BaseModel):
    """Validated, defaulted environment descriptor (``env.yaml``).

    Attributes:
        clusters: Cluster targets keyed by target key.
        capabilities: Capability settings keyed by capability name.
        flows: Descriptor-defined flows, target key to required capabilities.
        default_flow: Flow used when no selector is given or inferred.
        timeouts: Global step timeouts in seconds.
        polling: Readiness backoff bounds in seconds.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    clusters: dict[str, ClusterTarget] = Field(min_length=1)
    capabilities: dict[str, CapabilitySettings] = Field(default_factory=dict)
    flows: dict[str, FlowTargets] = Field(default_factory=dict)
    default_flow: str = Field(
        default=DEFAULT_FLOW, min_length=1, validation_alias=AliasChoices("default_flow", "defaultFlow"))
    timeouts: Timeouts = Field(default_factory=Timeouts)
    polling: Polling = Field(default_factory=Polling)

    @model_validator(mode="before")
    @classmethod
    def _apply_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)

        legacy = data.pop("cluster", None)
        if legacy is not None:
            clusters = dict(data.get("clusters") or {})
            clusters.setdefault(DEFAULT_TARGET_KEY, legacy)
            data["clusters"] = clusters

        clusters = data.get("clusters")
        if isinstance(clusters, dict):
            data["clusters"] = {
                str(key): ({**entry, "key": str(key)} if isinstance(entry, dict) else entry)
                for key, entry in clusters.items()
            }

        capabilities = dict(data.get("capabilities") or {})
        for name, entry in list(capabilities.items()):
            if entry is None:
                entry = {}
            if isinstance(entry, dict):
                entry = dict(entry)
                if name == CAP_OBJECT_STORE:
                    entry.setdefault("release", DEFAULT_LOCALSTACK_RELEASE)
                    entry.setdefault("namespace", DEFAULT_LOCALSTACK_NAMESPACE)
                if entry.get("image") == "default":
                    entry["image"] = dep_value("images", name)
            capabilities[name] = entry
        data["capabilities"] = capabilities
        return data

    @field_validator("capabilities")
    @classmethod
    def _known_capabilities(cls, value: dict[str, CapabilitySettings]) -> dict[str, CapabilitySettings]:
        unknown = sorted(set(value) - set(CAPABILITY_ORDER))
        if unknown:
            raise ValueError(f"unknown capabilities {unknown} (known: {', '.join(CAPABILITY_ORDER)})")
        return value

    def capability(self, name: str) -> CapabilitySettings | None:
        return self.capabilities.get(name)


@dataclass(frozen=True)
class LoadedDescriptor:
    """A descriptor together with where it came from.

    Attributes:
        repo_root: Directory relative paths were resolved against.
        config_path: Absolute path of the descriptor file.
        descriptor: The validated descriptor.
    """

    repo_root: Path
    config_path: Path
    descriptor: EnvironmentDescriptor


# ============================================================================
# Discovery and loading
# ============================================================================

def find_config(start_dir: str | Path | None = None, file_name: str = CONFIG_FILE_NAME) -> Path:
    """Walk upward from *start_dir* until *file_name* is found.

    Args:
        start_dir: Directory to start from, or None for the current directory.
        file_name: Descriptor file name to look for.

    Returns:
        Absolute path to the descriptor file.

    Raises:
        ConfigNotFound: If the filesystem root is reached without a match.
    """
    start = Path(start_dir) if start_dir is not None else Path.cwd()
    start = start.resolve()
    for directory in (start, *start.parents):
        candidate = directory / file_name
        if candidate.is_file():
            return candidate
    raise ConfigNotFound(file_name, str(start))


def find_repo_root(config_path: Path) -> Path:
    """Return the nearest ancestor holding ``.git``, else the descriptor's directory."""
    config_dir = config_path.resolve().parent
    for directory in (config_dir, *config_dir.parents):
        if (directory / REPO_ROOT_MARKER).exists():
            return directory
    return config_dir


def _format_issue(error: dict) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    message = error.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def validate_descriptor(raw: Any, repo_root: Path, source: str = "<memory>") -> EnvironmentDescriptor:
    """Apply defaults and validate raw descriptor data.

    Args:
        raw: Parsed descriptor mapping.
        repo_root: Directory relative paths are resolved against.
        source: Name used in error messages.

    Returns:
        A new, independent descriptor.

    Raises:
        ConfigValidationError: Listing every violated field.
    """
    if not isinstance(raw, dict):
        raise ConfigValidationError(source, ["descriptor must be a mapping"])
    try:
        return EnvironmentDescriptor.model_validate(raw, context={"repo_root": repo_root})
    except ValidationError as err:
        raise ConfigValidationError(source, [_format_issue(e) for e in err.errors()]) from err


def parse_descriptor_file(config_path: Path) -> dict:
    """Read a descriptor file into a mapping.

    Raises:
        ConfigParseError: If the file is not YAML or not a mapping.
    """
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as err:
        raise ConfigParseError(str(config_path), str(err)) from err
    except OSError as err:
        raise ConfigParseError(str(config_path), err.strerror or str(err)) from err
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigParseError(str(config_path), f"expected a mapping, got {type(raw).__name__}")
    return raw


def load_descriptor(
    start_dir: str | Path | None = None,
    *,
    config_path: str | Path | None = None,
    repo_root: str | Path | None = None,
    file_name: str = CONFIG_FILE_NAME,
) -> LoadedDescriptor:
    """Locate, parse, default, and validate the environment descriptor.

    Args:
        start_dir: Directory to start the upward search from.
        config_path: Explicit descriptor path; skips the search.
        repo_root: Explicit root for relative paths; detected when None.
        file_name: Descriptor file name to search for.

    Returns:
        A freshly built LoadedDescriptor; nothing is cached between calls.

    Raises:
        ConfigNotFound: If no descriptor is found.
        ConfigParseError: If the descriptor is malformed.
        ConfigValidationError: If any field is invalid.
    """
    path = Path(config_path).resolve() if config_path is not None else find_config(start_dir, file_name)
    root = Path(repo_root).resolve() if repo_root is not None else find_repo_root(path)
    raw = parse_descriptor_file(path)
    descriptor = validate_descriptor(raw, root, source=str(path))
    return LoadedDescriptor(repo_root=root, config_path=path, descriptor=descriptor)


# ============================================================================
# Run settings
# ============================================================================

class RunSettings(BaseSettings):
    """Per-run options, auto-loaded from SYSTEST_* env vars.

    Attributes:
        flow: Explicit flow selector, or None to infer from the working directory.
        config_path: Explicit descriptor path, or None to search upward.
        start_dir: Directory to start the descriptor search from.
        skip_prereq_check: Whether to skip checking for kind/kubectl/helm/docker.
        test_command: Command line that runs the test suite.
    """

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    flow: str | None = None
    config_path: Path | None = None
    start_dir: Path | None = None
    skip_prereq_check: bool = False
    test_command: str = "pytest"


# ============================================================================
# Display
# ============================================================================

def display_descriptor(loaded: LoadedDescriptor) -> None:
    """Print the resolved descriptor location, targets, and timeouts."""
    descriptor = loaded.descriptor
    console.print(Panel.fit("Environment", style="bold blue"))
    console.print(f"  config          : {loaded.config_path}")
    console.print(f"  repo_root       : {loaded.repo_root}")
    console.print("[yellow]Clusters:[/yellow]")
    for key in sorted(descriptor.clusters):
        target = descriptor.clusters[key]
        console.print(f"  {key:<16}: {target.name} (context {target.kube_context})")
    console.print("[yellow]Timeouts:[/yellow]")
    for field, value in descriptor.timeouts.model_dump().items():
        console.print(f"  {field:<16}: {value:g}s")

