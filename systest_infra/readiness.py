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

"""Generic bounded-backoff polling for eventually consistent resources.

Probes are supplied by callers and report one of three outcomes:

* ``Ready`` - the resource reached the wanted state;
* ``NotYetReady(observed)`` - not there yet, with what was seen;
* ``ProbeFailed(error, transient)`` - the probe itself could not answer.

The poller knows nothing about clusters, tables, or deployments.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from tenacity import RetryCallState, RetryError, Retrying, retry_if_result, wait_exponential

from systest_infra import logger
from systest_infra.constants import DEFAULT_INITIAL_BACKOFF_SECONDS, DEFAULT_MAX_BACKOFF_SECONDS
from systest_infra.errors import PollProbeError, PollTimeout

T = TypeVar("T")


@dataclass(frozen=True)
class Ready:
    pass


@dataclass(frozen=True)
class NotYetReady(Generic[T]):
    observed: T


@dataclass(frozen=True)
class ProbeFailed:
    """The probe could not determine state.

    Attributes:
        error: What went wrong, kept for failure reporting.
        transient: Whether polling should keep trying.
    """

    error: Any
    transient: bool = True


PollOutcome = Union[Ready, NotYetReady[T], ProbeFailed]
Probe = Callable[[], PollOutcome]

READY = Ready()


def _keeps_polling(outcome: PollOutcome) -> bool:
    if isinstance(outcome, NotYetReady):
        return True
    return isinstance(outcome, ProbeFailed) and outcome.transient


def _last_seen(outcome: PollOutcome | None) -> Any:
    if isinstance(outcome, NotYetReady):
        return outcome.observed
    if isinstance(outcome, ProbeFailed):
        return outcome.error
    return None


def poll_until_ready(
    probe: Probe,
    timeout: float,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF_SECONDS,
    max_backoff: float = DEFAULT_MAX_BACKOFF_SECONDS,
    *,
    description: str = "resource",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Invoke *probe* until it reports Ready or the deadline passes.

    The backoff starts at *initial_backoff* and doubles after every
    unsuccessful probe up to *max_backoff*. A sleep never runs past the
    deadline, so a probe that never becomes ready fails no later than
    ``timeout + max_backoff`` after the call started.

    Args:
        probe: Zero-argument callable returning a PollOutcome.
        timeout: Seconds from now until the deadline.
        initial_backoff: First sleep between probes in seconds.
        max_backoff: Upper bound for the sleep between probes.
        description: What is being waited for, used in logs and errors.
        clock: Monotonic time source.
        sleep: Sleep function.

    Returns:
        Number of probe invocations, including the successful one.

    Raises:
        PollTimeout: If the deadline passed; carries the last observed state.
        PollProbeError: If the probe reported a non-transient failure.
    """
    deadline = clock() + timeout
    calls = 0
    backoff = wait_exponential(multiplier=initial_backoff, max=max_backoff)

    def _probe() -> PollOutcome:
        nonlocal calls
        calls += 1
        return probe()

    def _stop(retry_state: RetryCallState) -> bool:
        return clock() >= deadline

    def _wait(retry_state: RetryCallState) -> float:
        return max(0.0, min(backoff(retry_state), deadline - clock()))

    def _log_retry(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome.result() if retry_state.outcome else None
        logger.debug(
            "waiting for %s: attempt %d not ready (%r), sleeping %.2fs",
            description, retry_state.attempt_number, _last_seen(outcome),
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )

    retrying = Retrying(
        stop=_stop,
        wait=_wait,
        retry=retry_if_result(_keeps_polling),
        sleep=sleep,
        before_sleep=_log_retry,
    )
    try:
        outcome = retrying(_probe)
    except RetryError as err:
        last = err.last_attempt.result()
        raise PollTimeout(description, timeout, calls, _last_seen(last)) from None

    if isinstance(outcome, ProbeFailed):
        raise PollProbeError(description, outcome.error)
    logger.debug("%s ready after %d probe(s)", description, calls)
    return calls
