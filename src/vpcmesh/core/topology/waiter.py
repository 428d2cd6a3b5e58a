# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from .config import WaitConfig
from .errors import ConvergenceCancelled, DependencyNotReadyError

module_logger = logging.getLogger(__name__)

_Ready = TypeVar("_Ready")

# lower bound of the poll interval
MIN_DELAY_SECS = 0.01


def wait_until(
    predicate: Callable[[], Optional[_Ready]],
    kind: str,
    key: str,
    description: str,
    wait: WaitConfig,
    cancel_event: Optional[threading.Event] = None,
    observe: Optional[Callable[[], str]] = None,
) -> _Ready:
    """Poll `predicate` until it returns a truthy value and return that value.

    Sleep between polls starts at `wait.initial_delay_secs` and doubles up to `wait.max_delay_secs`. When
    `wait.timeout_secs` elapses a :class:`DependencyNotReadyError` is raised (distinct from provider rejections which
    propagate from the predicate as they are). `observe` is used to report the last seen state in the error.
    """
    start = time.monotonic()
    delay = max(wait.initial_delay_secs, MIN_DELAY_SECS)
    attempt = 0
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise ConvergenceCancelled(f"Cancelled while waiting for {description}", kind, key)

        attempt += 1
        ready = predicate()
        if ready:
            if attempt > 1:
                module_logger.info(f"{description} after {attempt} attempts ({time.monotonic() - start:.1f} secs)")
            return ready

        elapsed = time.monotonic() - start
        if elapsed + delay > wait.timeout_secs:
            last_observed = observe() if observe else None
            raise DependencyNotReadyError(
                f"Timed out after {elapsed:.1f} secs waiting for {description}"
                + (f", last observed state: {last_observed}" if last_observed else ""),
                kind,
                key,
                waited_secs=elapsed,
                last_observed=last_observed,
            )

        module_logger.debug(f"Waiting {delay} secs for {description} (attempt {attempt})")
        if cancel_event is not None:
            # returns early on cancellation, checked at the top of the loop
            cancel_event.wait(delay)
        else:
            time.sleep(delay)
        delay = max(min(delay * 2, wait.max_delay_secs), MIN_DELAY_SECS)
