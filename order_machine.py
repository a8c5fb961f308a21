# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Drive one ACME order from creation to an imported certificate.

High-level flow:

- create the account and the order, refresh its authorizations
- publish the http-01 response of every pending authorization; only when all
  of them are in place, answer the challenges
- poll the order until it is ready, finalize it with a freshly generated key
- poll until the certificate is issued, download it and import it through the
  sink
- remove every published challenge response, whatever happened

Errors that concern single domains are collected, not raised on the first
one, so a failed run reports every domain that failed.
"""
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional
import logging
import threading

from poll_retry import PollPolicy, poll_until, retry_transient
from renewal_errors import FinalizationError, OrderInvalidError, RenewalCancelledError, RenewalError
from renewal_models import (
    INVALID, READY, VALID, TRANSITIONS, CertificateKeyPair, Order, OrderState,
    PublishedArtifact, RenewalResult, normalize_domains,
)

log = logging.getLogger(__name__)

MAX_WORKERS = 8


class _Failed(Exception):
    """Internal: a step failed with one or more collected errors."""

    def __init__(self, errors: List[RenewalError]):
        super().__init__(f"{len(errors)} error(s)")
        self.errors = errors


class OrderStateMachine:
    def __init__(self, client, publisher, sink, poll_policy: Optional[PollPolicy] = None,
                 retry_policy: Optional[PollPolicy] = None,
                 cancel: Optional[threading.Event] = None,
                 key_type: str = 'rsa2048', parallel: bool = False,
                 run_timeout: Optional[float] = None):
        self.client = client
        self.publisher = publisher
        self.sink = sink
        self.poll_policy = poll_policy or PollPolicy(interval=10, max_wait=600)
        self.retry_policy = retry_policy or PollPolicy(interval=2, max_wait=60, backoff='exponential',
                                                       jitter=0.1, max_attempts=4)
        self.cancel = cancel if cancel is not None else threading.Event()
        self.key_type = key_type
        self.parallel = parallel
        self.run_timeout = run_timeout

        self.state = OrderState.CREATED
        self.history = [OrderState.CREATED]
        self.artifacts: List[PublishedArtifact] = []
        self.errors: List[RenewalError] = []
        self._lock = threading.Lock()

    def _transition(self, new: OrderState) -> None:
        allowed = new in TRANSITIONS[self.state] or (new is OrderState.FAILED and not self.state.terminal)
        if not allowed:
            raise RuntimeError(f"Illegal order transition {self.state.value} -> {new.value}")
        log.debug("Order state %s -> %s", self.state.value, new.value)
        self.state = new
        self.history.append(new)

    def _call(self, func, *args):
        return retry_transient(func, *args, policy=self.retry_policy, cancel=self.cancel)

    def _check_cancel(self) -> None:
        if self.cancel.is_set():
            raise RenewalCancelledError("Run cancelled")

    def run(self, email: Optional[str], domains, certificate_name: str) -> RenewalResult:
        """Obtain a certificate for domains and store it as certificate_name.

        Failures end up in the returned result. `cancel` and
        `run_timeout` concern this run only, so callers running several
        orders pass a fresh event to each machine.
        """
        if self.state is not OrderState.CREATED:
            raise RuntimeError("OrderStateMachine instances are single use")

        timer = None
        if self.run_timeout:
            timer = threading.Timer(self.run_timeout, self._timeout)
            timer.daemon = True
            timer.start()

        thumbprint = None
        try:
            thumbprint = self._run(email, domains, certificate_name)
        except _Failed as failed:
            self._fail(failed.errors)
        except RenewalError as e:
            self._fail([e])
        except Exception as e:
            log.exception("Unexpected error while processing %s", certificate_name)
            self._fail([RenewalError(f"Unexpected {type(e).__name__}: {e}")])
        finally:
            if timer is not None:
                timer.cancel()
            self._cleanup()

        return RenewalResult(name=certificate_name, state=self.state, thumbprint=thumbprint,
                             errors=list(self.errors), history=list(self.history),
                             artifacts=list(self.artifacts))

    def _timeout(self):
        log.error("Run timeout of %ss reached, cancelling", self.run_timeout)
        self.cancel.set()

    def _fail(self, errors: List[RenewalError]) -> None:
        for e in errors:
            log.error("Order failed: %s", e)
        self.errors.extend(errors)
        self._transition(OrderState.FAILED)

    def _run(self, email, domains, certificate_name) -> str:
        domains = normalize_domains(domains)
        log.info("Requesting certificate %s for %s", certificate_name, ', '.join(domains))

        account = self._call(self.client.create_account, email)
        order = self._call(self.client.create_order, account, domains)
        order.authorizations = self._call(self.client.fetch_authorizations, order)
        self._transition(OrderState.AUTHORIZATIONS_PENDING)

        challenges = self._publish_challenges(order)
        self._check_cancel()
        self._complete_challenges(challenges)
        self._transition(OrderState.CHALLENGES_COMPLETED)

        order = self._wait_for(order, lambda o: o.status in (READY, VALID, INVALID), "order validation")
        if order.status == INVALID:
            raise _Failed(self._invalid_errors(order))
        if order.status != READY:
            raise FinalizationError(f"Order {order.uri} is already {order.status}; its key is unknown")

        keypair = CertificateKeyPair.generate(self.key_type)
        self._transition(OrderState.AWAITING_FINALIZATION)
        order = self._call(self.client.finalize_order, order, keypair)
        self._transition(OrderState.FINALIZED)

        order = self._wait_for(order, lambda o: bool(o.certificate_url) or o.status == INVALID,
                               "certificate issuance")
        if order.status == INVALID:
            raise OrderInvalidError(order.error or "Order became invalid after finalization")
        chain = self._call(self.client.fetch_certificate, order)
        keypair.chain_pem = chain

        self._check_cancel()
        thumbprint = self.sink.import_certificate(keypair, chain, certificate_name)
        self._transition(OrderState.CERTIFICATE_READY)
        log.info("Certificate %s ready (thumbprint %s)", certificate_name, thumbprint)
        return thumbprint

    def _wait_for(self, order: Order, done, what: str) -> Order:
        return poll_until(lambda: self._call(self.client.poll_order, order), done,
                          self.poll_policy, self.cancel, what=what)

    def _publish_challenges(self, order: Order) -> list:
        pending = []
        for authz in order.authorizations:
            if authz.status == VALID:
                log.info("%s is already authorized", authz.domain)
            else:
                pending.append(authz)

        if self.parallel and len(pending) > 1:
            with ThreadPoolExecutor(max_workers=min(len(pending), MAX_WORKERS)) as pool:
                outcomes = list(pool.map(self._publish_one, pending))
        else:
            outcomes = [self._publish_one(a) for a in pending]

        errors = [o for o in outcomes if isinstance(o, RenewalError)]
        if errors:
            raise _Failed(errors)
        return outcomes

    def _publish_one(self, authz):
        """Select and publish one challenge; returns it or the error."""
        try:
            self._check_cancel()
            challenge = self.client.select_challenge(authz)
            artifact = self.publisher.publish(challenge.path, challenge.content,
                                              domain=authz.domain, cancel=self.cancel)
        except RenewalError as e:
            if e.domain is None:
                e.domain = authz.domain
            return e
        with self._lock:
            self.artifacts.append(artifact)
        return challenge

    def _complete_challenges(self, challenges) -> None:
        errors = []
        for challenge in challenges:
            try:
                self._call(self.client.complete_challenge, challenge)
            except RenewalError as e:
                if e.domain is None:
                    e.domain = challenge.domain
                errors.append(e)
        if errors:
            raise _Failed(errors)

    def _invalid_errors(self, order: Order) -> List[RenewalError]:
        try:
            details = self._call(self.client.authorization_errors, order)
        except RenewalError as e:
            log.warning("Cannot read authorization errors: %s", e)
            details = {}
        errors = [OrderInvalidError(detail, domain=domain) for domain, detail in details.items()]
        return errors or [OrderInvalidError(order.error or f"Order {order.uri} is invalid")]

    def _cleanup(self) -> None:
        for artifact in self.artifacts:
            self.publisher.unpublish(artifact.path)
