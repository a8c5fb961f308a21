# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Bounded polling and retry helpers.

Both the ACME order poll and the Key Vault certificate-operation poll go
through poll_until(); transient service errors go through retry_transient().
All waiting is done on a threading.Event so that an operator abort or a run
deadline interrupts a sleep immediately instead of after the next interval.
"""
from typing import Callable, Iterator, Optional
import logging
import random
import threading
import time

from renewal_errors import PollTimeoutError, RenewalCancelledError, ServiceUnavailableError

log = logging.getLogger(__name__)


class PollPolicy:
    """How often and for how long to poll.

    backoff is 'fixed' (every `interval` seconds) or 'exponential' (interval,
    interval*multiplier, ... capped at max_interval). jitter is a fraction of
    each delay that is randomly shaved off so concurrent runs spread out.
    The total wait never exceeds max_wait; max_attempts bounds the number of
    checks when set.
    """

    def __init__(self, interval: float = 10.0, max_wait: float = 600.0,
                 backoff: str = 'fixed', multiplier: float = 2.0,
                 max_interval: Optional[float] = None, jitter: float = 0.0,
                 max_attempts: Optional[int] = None):
        if backoff not in ('fixed', 'exponential'):
            raise ValueError(f"Unknown backoff '{backoff}'")
        if interval < 0 or max_wait < 0:
            raise ValueError("interval and max_wait must not be negative")
        if not 0.0 <= jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if interval == 0 and max_attempts is None:
            raise ValueError("a zero interval needs max_attempts")
        self.interval = interval
        self.max_wait = max_wait
        self.backoff = backoff
        self.multiplier = multiplier
        self.max_interval = max_interval if max_interval is not None else max_wait
        self.jitter = jitter
        self.max_attempts = max_attempts

    def __repr__(self):
        return (f"PollPolicy(interval={self.interval}, max_wait={self.max_wait}, "
                f"backoff={self.backoff!r}, max_attempts={self.max_attempts})")

    def delays(self) -> Iterator[float]:
        """Yield the wait before each check after the first one."""
        total = 0.0
        delay = self.interval
        n = 1
        while self.max_attempts is None or n < self.max_attempts:
            step = min(delay, self.max_interval)
            if self.jitter:
                step -= step * self.jitter * random.random()
            if self.interval > 0 and total + step > self.max_wait:
                step = self.max_wait - total
                if step <= 0:
                    return
            total += step
            n += 1
            yield step
            if self.backoff == 'exponential':
                delay *= self.multiplier


def sleep(cancel: Optional[threading.Event], seconds: float) -> None:
    """Wait up to `seconds`, raising RenewalCancelledError if cancelled."""
    if cancel is None:
        if seconds > 0:
            time.sleep(seconds)
        return
    if cancel.is_set() or cancel.wait(seconds):
        raise RenewalCancelledError("Run cancelled")


def poll_until(fetch: Callable[[], object], done: Callable[[object], bool],
               policy: PollPolicy, cancel: Optional[threading.Event] = None,
               what: str = 'operation', timeout_error=PollTimeoutError):
    """Call fetch() until done(result) is true and return that result.

    The first check happens immediately. Raises `timeout_error` once the
    policy's budget is spent.
    """
    deadline = time.monotonic() + policy.max_wait
    result = fetch()
    checks = 1
    for delay in policy.delays():
        if done(result):
            return result
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        log.debug("Waiting %.1fs for %s (check %d)", min(delay, remaining), what, checks)
        sleep(cancel, min(delay, remaining))
        result = fetch()
        checks += 1
    if done(result):
        return result
    raise timeout_error(f"{what} did not complete after {checks} checks "
                        f"within {policy.max_wait:g}s")


def retry_transient(func: Callable, *args, policy: PollPolicy,
                    cancel: Optional[threading.Event] = None, **kwargs):
    """Call func, retrying ServiceUnavailableError per `policy`.

    Every other exception propagates on the first occurrence.
    """
    name = getattr(func, '__name__', repr(func))
    delays = policy.delays()
    attempt = 1
    while True:
        if cancel is not None and cancel.is_set():
            raise RenewalCancelledError("Run cancelled")
        try:
            return func(*args, **kwargs)
        except ServiceUnavailableError as e:
            delay = next(delays, None)
            if delay is None:
                log.error("%s failed after %d attempt(s): %s", name, attempt, e)
                raise
            log.warning("%s failed (%s), retrying in %.1fs", name, e, delay)
            sleep(cancel, delay)
            attempt += 1
