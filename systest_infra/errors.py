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

"""Typed failures raised by the config, plan, process, polling and provisioning layers."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class InfraError(RuntimeError):
    """Base class for every failure this package raises."""

    def details(self) -> str:
        """Render the message plus any captured process output along the cause chain.

        Returns:
            Multi-line text suitable for printing to a human.
        """
        lines = [str(self)]
        seen: set[int] = set()
        err: BaseException | None = self
        while err is not None and id(err) not in seen:
            seen.add(id(err))
            if isinstance(err, ProcessError):
                lines.append(err.output_block())
            err = err.__cause__
        return "\n".join(line for line in lines if line)


# ============================================================================
# Config phase
# ============================================================================

class ConfigError(InfraError):
    """Raised when the environment descriptor cannot be produced."""


class ConfigNotFound(ConfigError):
    """No environment descriptor file between the start directory and the filesystem root."""

    def __init__(self, file_name: str, start_dir: str) -> None:
        super().__init__(f"{file_name} not found walking up from {start_dir}")
        self.file_name = file_name
        self.start_dir = start_dir


class ConfigParseError(ConfigError):
    """The descriptor file is not a valid YAML mapping."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"failed to parse {path}: {reason}")
        self.path = path
        self.reason = reason


class ConfigValidationError(ConfigError):
    """One or more descriptor fields are invalid after defaulting."""

    def __init__(self, path: str, issues: Sequence[str]) -> None:
        self.path = path
        self.issues = list(issues)
        bullet = "\n".join(f"  - {issue}" for issue in self.issues)
        super().__init__(f"invalid environment descriptor {path} ({len(self.issues)} issue(s)):\n{bullet}")


# ============================================================================
# Plan phase
# ============================================================================

class PlanError(InfraError):
    """Raised when a flow cannot be turned into a provisionable plan."""


class UnknownFlow(PlanError):
    def __init__(self, flow: str, known: Sequence[str]) -> None:
        super().__init__(f"unknown flow '{flow}' (known flows: {', '.join(sorted(known)) or 'none'})")
        self.flow = flow
        self.known = sorted(known)


class PlanTargetNotFound(PlanError):
    def __init__(self, flow: str, missing: Sequence[str]) -> None:
        super().__init__(
            f"flow '{flow}' references cluster targets not declared in the descriptor: {', '.join(missing)}"
        )
        self.flow = flow
        self.missing = list(missing)


# ============================================================================
# Process phase
# ============================================================================

class ProcessError(InfraError):
    """An external command failed. Captured streams are always attached."""

    def __init__(self, message: str, command: Sequence[str], stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.command = list(command)
        self.stdout = stdout
        self.stderr = stderr

    def output_block(self) -> str:
        parts = []
        if self.stdout.strip():
            parts.append(f"stdout:\n{self.stdout.rstrip()}")
        if self.stderr.strip():
            parts.append(f"stderr:\n{self.stderr.rstrip()}")
        return "\n".join(parts)


class ProcessTimeout(ProcessError):
    def __init__(self, command: Sequence[str], timeout: float, stdout: str = "", stderr: str = "") -> None:
        super().__init__(f"command timed out after {timeout:g}s: {' '.join(command)}", command, stdout, stderr)
        self.timeout = timeout


class NonZeroExit(ProcessError):
    def __init__(self, command: Sequence[str], exit_code: int, stdout: str = "", stderr: str = "") -> None:
        super().__init__(f"command failed (exit={exit_code}): {' '.join(command)}", command, stdout, stderr)
        self.exit_code = exit_code


class CommandNotFound(ProcessError):
    def __init__(self, command: Sequence[str]) -> None:
        name = command[0] if command else ""
        super().__init__(f"required command '{name}' not found, please install it first", command)


class UnexpectedOutput(ProcessError):
    """The command succeeded but its stdout could not be parsed."""

    def __init__(self, command: Sequence[str], reason: str, stdout: str = "") -> None:
        super().__init__(f"unexpected output from {' '.join(command)}: {reason}", command, stdout)
        self.reason = reason


# ============================================================================
# Readiness phase
# ============================================================================

class PollError(InfraError):
    """Raised when a readiness wait does not converge."""


class PollTimeout(PollError):
    def __init__(self, description: str, timeout: float, attempts: int, last_observed: Any = None) -> None:
        super().__init__(
            f"timed out after {timeout:g}s waiting for {description} "
            f"({attempts} probe(s), last observed: {last_observed!r})"
        )
        self.description = description
        self.timeout = timeout
        self.attempts = attempts
        self.last_observed = last_observed


class PollProbeError(PollError):
    def __init__(self, description: str, error: Any) -> None:
        super().__init__(f"probe for {description} failed: {error}")
        self.description = description
        self.error = error


# ============================================================================
# Store phase
# ============================================================================

class EndpointUnavailable(InfraError):
    """An AWS-compatible endpoint answered with a server-side or throttling error."""

    def __init__(self, service: str, operation: str, code: str, status: int) -> None:
        super().__init__(f"{service} {operation} failed with {code} (HTTP {status})")
        self.service = service
        self.operation = operation
        self.code = code
        self.status = status


# ============================================================================
# Provisioning phase
# ============================================================================

class ProvisionError(InfraError):
    """Raised when a plan cannot be fully provisioned. Partial state is torn down first."""


class ClusterCreateFailed(ProvisionError):
    def __init__(self, target_key: str, cluster_name: str) -> None:
        super().__init__(f"failed to create cluster '{cluster_name}' for target '{target_key}'")
        self.target_key = target_key
        self.cluster_name = cluster_name


class CapabilityProvisionError(ProvisionError):
    def __init__(self, target_key: str, capability: str, reason: str) -> None:
        super().__init__(f"failed to provision {capability} on target '{target_key}': {reason}")
        self.target_key = target_key
        self.capability = capability
