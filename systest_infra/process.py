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

"""External command execution with captured output, timeouts, and typed failures."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import sh

from systest_infra import logger
from systest_infra.errors import CommandNotFound, NonZeroExit, ProcessTimeout


@dataclass(frozen=True)
class RunOptions:
    """Options for a single external invocation.

    Attributes:
        cwd: Working directory, or None for the current directory.
        env: Variables merged over the ambient environment; overrides win.
        input: Text fed to the process on stdin, or None for no input.
        timeout: Seconds before the process is killed, or None to wait forever.
    """

    cwd: str | Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    input: str | None = None
    timeout: float | None = None


@dataclass(frozen=True)
class ProcessResult:
    """Snapshot of a completed invocation."""

    command: tuple[str, ...]
    stdout: str
    stderr: str
    exit_code: int


def _text(data: str | bytes | None) -> str:
    # TimeoutExpired carries bytes even in text mode.
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


class ProcessRunner:
    """Runs one external command and classifies how it ended.

    Failures carry stdout and stderr separately, including whatever was
    produced before a timeout kill. The runner never retries.
    """

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        options: RunOptions | None = None,
    ) -> ProcessResult:
        """Run *command* with *args* and return its captured result.

        Args:
            command: Executable name or path.
            args: Argument vector after the executable.
            options: Working directory, env overrides, stdin, and timeout.

        Returns:
            ProcessResult for a zero exit status.

        Raises:
            CommandNotFound: If the executable does not exist.
            ProcessTimeout: If the timeout elapsed; carries partial output.
            NonZeroExit: If the process exited non-zero; carries full output.
        """
        options = options or RunOptions()
        argv = (command, *args)
        env = {**os.environ, **options.env} if options.env else None
        logger.debug("exec: %s (cwd=%s, timeout=%s)", " ".join(argv), options.cwd, options.timeout)

        try:
            completed = subprocess.run(
                argv,
                cwd=options.cwd,
                env=env,
                input=options.input,
                stdin=None if options.input is not None else subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=options.timeout,
            )
        except FileNotFoundError as err:
            if err.filename not in (None, command):
                raise
            raise CommandNotFound(argv) from err
        except subprocess.TimeoutExpired as err:
            raise ProcessTimeout(argv, err.timeout, _text(err.stdout), _text(err.stderr)) from err

        result = ProcessResult(
            command=argv,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            exit_code=completed.returncode,
        )
        if result.exit_code != 0:
            raise NonZeroExit(argv, result.exit_code, result.stdout, result.stderr)
        return result


def require_command(cmd: str) -> None:
    """Check if a command exists on the system PATH.

    Args:
        cmd: Name of the CLI command to check.

    Raises:
        CommandNotFound: If the command is not found.
    """
    try:
        found = sh.which(cmd)
    except sh.ErrorReturnCode:
        found = None
    if not found:
        raise CommandNotFound((cmd,))
