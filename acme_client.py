#!/usr/bin/env python3
# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Step-by-step ACME client for HTTP-01 orders.

This module wraps the `acme` library (from the certbot project) so the order
flow can drive each protocol step on its own:

- create or look up an ACME account
- create an order and refresh its authorizations
- pick the http-01 challenge of an authorization and signal it
- read the order status, finalize it and download the chain

None of these calls sleep. Waiting between polls belongs to the caller.

Library exceptions are translated into renewal_errors types. Connection
failures, timeouts, HTTP 5xx and the `serverInternal`/`badNonce` problem types
become ServiceUnavailableError; everything else is a permanent rejection.
"""
from typing import Dict, List, Optional
import logging
import os
import re

import josepy as jose
import requests
from acme import client as acme_client, errors as acme_errors, messages
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from renewal_errors import (
    AccountCreationError, AuthorizationFetchError, CertificateNotReadyError,
    ChallengeError, FinalizationError, OrderCreationError, RateLimitedError,
    RenewalError, ServiceUnavailableError, UnsupportedChallengeError,
)
from renewal_models import (
    HTTP01, PENDING, READY, AcmeAccount, Authorization, CertificateKeyPair,
    Challenge, Order, normalize_domains,
)

log = logging.getLogger(__name__)

LE_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"
LE_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
USER_AGENT = "kvcertmgr"

TRANSIENT_CODES = {'serverInternal', 'badNonce'}
ACME_FAILURES = (acme_errors.Error, jose.DeserializationError, requests.exceptions.RequestException)

EMAIL_RE = re.compile(r"^[^@\s:]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)+$")


def _is_transient(e: Exception) -> bool:
    if isinstance(e, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return True
    if isinstance(e, messages.Error):
        return e.code in TRANSIENT_CODES
    if isinstance(e, acme_errors.ClientError) and e.args and isinstance(e.args[0], requests.Response):
        return e.args[0].status_code >= 500
    return False


def _translate(e: Exception, error_cls, what: str, domain: Optional[str] = None) -> RenewalError:
    if _is_transient(e):
        return ServiceUnavailableError(f"{what}: {e}", domain=domain)
    return error_cls(f"{what}: {e}", domain=domain)


def _extract_retry_after(text: str) -> Optional[str]:
    m = re.search(r"retry after\s+([0-9]{4}-[0-9]{2}-[0-9]{2}[ T][0-9]{2}:[0-9]{2}:[0-9]{2})", text or "", re.I)
    return m.group(1) if m else None


def _status(status) -> str:
    return status.name if status is not None else PENDING


class AcmeClient:
    def __init__(self, directory_url: str = LE_PRODUCTION, key_size: int = 2048,
                 timeout: int = 45, user_agent: str = USER_AGENT):
        self.directory_url = directory_url
        self.key_size = key_size
        self.timeout = timeout
        self.user_agent = user_agent
        # account key and client are created lazily by create_account()
        self.account_key = None
        self.jwk = None
        self.client = None
        self.account = None
        self._answered = set()

    def generate_account_key(self, bits: Optional[int] = None):
        key = rsa.generate_private_key(public_exponent=65537, key_size=bits or self.key_size)
        self.account_key = key
        return key

    def load_or_create_account_key(self, path: str) -> RSAPrivateKey:
        if os.path.exists(path):
            with open(path, "rb") as f:
                key = serialization.load_pem_private_key(f.read(), password=None)
            if not isinstance(key, RSAPrivateKey):
                raise AccountCreationError(f"Account key {path} is not an RSA private key")
            self.account_key = key
            return key
        key = self.generate_account_key()
        with open(path, "wb") as f:
            f.write(key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.TraditionalOpenSSL,
                serialization.NoEncryption()))
        os.chmod(path, 0o600)
        log.info("Created new ACME account key %s", path)
        return key

    def _require_client(self):
        if self.client is None:
            raise AccountCreationError("No ACME account; call create_account() first")

    # ------------------------------------------------------------------ account

    def create_account(self, email: Optional[str]) -> AcmeAccount:
        """Register (or look up) the account for the current account key."""
        if email and not EMAIL_RE.match(email):
            raise AccountCreationError(f"Malformed contact email '{email}'")
        if self.account is not None and self.account.email == email:
            return self.account
        if self.account_key is None:
            self.generate_account_key()
        self.jwk = jose.JWKRSA(key=self.account_key)

        try:
            net = acme_client.ClientNetwork(self.jwk, user_agent=self.user_agent, timeout=self.timeout)
            directory = messages.Directory.from_json(net.get(self.directory_url).json())
        except ACME_FAILURES as e:
            raise _translate(e, AccountCreationError, f"Cannot load ACME directory {self.directory_url}") from e
        self.client = acme_client.ClientV2(directory, net)

        registration = messages.NewRegistration.from_data(email=email or None, terms_of_service_agreed=True)
        try:
            regr = self.client.new_account(registration)
            log.info("Registered ACME account %s", regr.uri)
        except acme_errors.ConflictError as ce:
            # The key is already registered; the server answered with its location.
            location = ce.location
            log.info("ACME account already exists at %s", location)
            try:
                regr = messages.RegistrationResource(uri=location, body=messages.Registration())
                self.client.net.account = regr
                regr = self.client.query_registration(regr)
            except ACME_FAILURES as e:
                raise _translate(e, AccountCreationError, "Cannot query existing account") from e
        except ACME_FAILURES as e:
            raise _translate(e, AccountCreationError, "Account registration failed") from e

        self.account = AcmeAccount(directory_url=self.directory_url, key=self.jwk,
                                   uri=regr.uri, email=email, regr=regr)
        return self.account

    # ------------------------------------------------------------------ orders

    def create_order(self, account: AcmeAccount, domains) -> Order:
        domains = normalize_domains(domains)
        self._require_client()
        if account.regr is not None and self.client.net.account is not account.regr:
            self.client.net.account = account.regr

        # new_order() derives the identifiers from a CSR. This one only names
        # the domains; finalize_order() signs a new CSR with the certificate key.
        csr_pem = CertificateKeyPair.generate('ec256').csr_pem(domains)
        try:
            orderr = self.client.new_order(csr_pem)
        except messages.Error as e:
            if e.code == 'rateLimited':
                raise RateLimitedError(f"Rate limited: {e.detail or e}",
                                       retry_after=_extract_retry_after(e.detail)) from e
            raise _translate(e, OrderCreationError, "Order creation failed") from e
        except ACME_FAILURES as e:
            raise _translate(e, OrderCreationError, "Order creation failed") from e

        order = self._order_from_resource(orderr)
        log.info("Created order %s for %s (%s)", order.uri, ', '.join(domains), order.status)
        return order

    def _order_from_resource(self, orderr, authorizations: Optional[List[Authorization]] = None) -> Order:
        body = orderr.body
        if authorizations is None:
            authorizations = [self._authorization_from_resource(a) for a in (orderr.authorizations or [])]
        return Order(
            identifiers=[i.value for i in (body.identifiers or [])],
            status=_status(body.status),
            authorizations=authorizations,
            uri=orderr.uri,
            certificate_url=body.certificate,
            error=str(body.error) if body.error else None,
            resource=orderr,
        )

    @staticmethod
    def _authorization_from_resource(authzr) -> Authorization:
        body = authzr.body
        error = None
        for challb in body.challenges:
            if challb.error:
                error = str(challb.error)
                break
        return Authorization(domain=body.identifier.value, status=_status(body.status),
                             challenges=list(body.challenges), uri=authzr.uri,
                             error=error, resource=authzr)

    def fetch_authorizations(self, order: Order) -> List[Authorization]:
        """Refresh every authorization of `order`, one per domain."""
        self._require_client()
        result = []
        failures: Dict[str, str] = {}
        transient = []
        for authz in order.authorizations:
            try:
                authzr, _ = self.client.poll(authz.resource)
            except ACME_FAILURES as e:
                log.warning("Cannot fetch authorization for %s: %s", authz.domain, e)
                failures[authz.domain] = str(e)
                transient.append(_is_transient(e))
                continue
            result.append(self._authorization_from_resource(authzr))

        covered = {a.domain for a in order.authorizations}
        for domain in order.identifiers:
            if domain not in covered:
                failures[domain] = "no authorization returned by the server"
                transient.append(False)

        if failures:
            if all(transient):
                raise ServiceUnavailableError(f"Authorization fetch failed for {', '.join(failures)}")
            raise AuthorizationFetchError(f"Authorization unavailable for {', '.join(failures)}",
                                          failures=failures)
        return result

    def select_challenge(self, authorization: Authorization, typ: str = HTTP01) -> Challenge:
        for challb in authorization.challenges:
            if challb.chall.typ != typ:
                continue
            return Challenge(
                domain=authorization.domain,
                token=challb.chall.encode('token'),
                content=challb.chall.validation(self.jwk),
                uri=challb.uri,
                status=_status(challb.status),
                type=typ,
                resource=challb,
            )
        offered = ', '.join(c.chall.typ for c in authorization.challenges) or 'none'
        raise UnsupportedChallengeError(f"No {typ} challenge offered (server offers: {offered})",
                                        domain=authorization.domain)

    def complete_challenge(self, challenge: Challenge) -> None:
        """Tell the server the challenge response is in place.

        Answering a challenge twice is a no-op: the second call neither
        reaches the server nor fails.
        """
        self._require_client()
        if challenge.uri in self._answered:
            log.debug("Challenge %s already answered", challenge.uri)
            return
        if challenge.status != PENDING:
            log.debug("Challenge for %s is %s, not answering", challenge.domain, challenge.status)
            self._answered.add(challenge.uri)
            return
        challb = challenge.resource
        try:
            self.client.answer_challenge(challb, challb.response(self.jwk))
        except ACME_FAILURES as e:
            raise _translate(e, ChallengeError, "Cannot answer challenge", domain=challenge.domain) from e
        self._answered.add(challenge.uri)
        log.info("Answered %s challenge for %s", challenge.type, challenge.domain)

    def poll_order(self, order: Order) -> Order:
        """Read the order status once."""
        self._require_client()
        try:
            response = self.client._post_as_get(order.uri)
            body = messages.Order.from_json(response.json())
        except ACME_FAILURES as e:
            raise _translate(e, RenewalError, f"Cannot read order {order.uri}") from e
        return self._order_from_resource(order.resource.update(body=body), order.authorizations)

    def authorization_errors(self, order: Order) -> Dict[str, str]:
        """Problem details of every authorization that is not valid."""
        errors = {}
        for authz in self.fetch_authorizations(order):
            if authz.status != 'valid':
                errors[authz.domain] = authz.error or f"authorization {authz.status}"
        return errors

    def finalize_order(self, order: Order, keypair: CertificateKeyPair) -> Order:
        """Submit the CSR for `keypair`. Does not wait for issuance."""
        self._require_client()
        if order.status != READY:
            raise FinalizationError(f"Order {order.uri} is {order.status}, not {READY}")
        orderr = order.resource.update(csr_pem=keypair.csr_pem(order.identifiers))
        try:
            orderr = self.client.begin_finalization(orderr)
        except ACME_FAILURES as e:
            raise _translate(e, FinalizationError, "Finalization failed") from e
        log.info("Finalized order %s", order.uri)
        return self._order_from_resource(orderr, order.authorizations)

    def fetch_certificate(self, order: Order) -> bytes:
        """Download the PEM chain (leaf first) of a valid order."""
        self._require_client()
        if not order.certificate_url:
            raise CertificateNotReadyError(f"Order {order.uri} has no certificate yet ({order.status})")
        try:
            response = self.client._post_as_get(order.certificate_url)
        except ACME_FAILURES as e:
            raise _translate(e, CertificateNotReadyError, "Certificate download failed") from e
        chain = response.text.encode()
        if b"-----BEGIN CERTIFICATE-----" not in chain:
            raise CertificateNotReadyError(f"No certificate in response from {order.certificate_url}")
        return chain
