# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Retry helper shared by every ledger submission path."""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

from ..types import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class RetryExhausted(Exception):
    """Raised by ``retry_async`` when every attempt failed retryably."""

    def __init__(self, last_error: BaseException, attempts: int):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class BackoffSchedule:
    """Per-call failure counter and delay log.

    One schedule is shared by every endpoint tried within a single call, so
    the delay keeps growing across failovers instead of resetting.
    """

    def __init__(self, policy: RetryPolicy):
        self.policy = policy
        self.failures = 0
        self.delays: List[float] = []

    def record_failure(self) -> None:
        self.failures += 1

    def next_delay(self) -> float:
        delay = self.policy.delay_for(self.failures)
        self.delays.append(delay)
        return delay


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    *,
    max_attempts: int,
    schedule: BackoffSchedule,
    is_retryable: Callable[[BaseException], bool],
    sleep: Sleep = asyncio.sleep,
    on_failure: Optional[Callable[[int, BaseException], None]] = None,
    on_delay: Optional[Callable[[float], None]] = None,
) -> T:
    """Run ``operation`` until it succeeds, a non-retryable error escapes, or
    ``max_attempts`` is reached.

    ``operation`` receives the 1-based attempt number. Before every attempt
    except the first of the whole schedule, the helper sleeps for the
    schedule's next delay.

    Raises:
        RetryExhausted: every attempt failed with a retryable error.
        Exception: the first non-retryable error, unchanged.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        if schedule.failures:
            delay = schedule.next_delay()
            if on_delay:
                on_delay(delay)
            logger.info(f"Backing off {delay:g}s before attempt {attempt}")
            await sleep(delay)
        try:
            return await operation(attempt)
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e
            schedule.record_failure()
            if on_failure:
                on_failure(attempt, e)
            logger.warning(f"Attempt {attempt}/{max_attempts} failed: {e}")

    raise RetryExhausted(last_error, max_attempts)
