from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

from poll_retry import PollPolicy
from renewal_errors import (
    CertificateImportError, FinalizationError, PublicationError, UnsupportedChallengeError,
)
from renewal_models import (
    AcmeAccount, Authorization, CertificateKeyPair, Challenge, Order, PublishedArtifact,
)

FAKE_CHAIN = b"-----BEGIN CERTIFICATE-----\nRkFLRQ==\n-----END CERTIFICATE-----\n"


def make_certificate_pem(keypair: CertificateKeyPair, domains) -> bytes:
    """Self-signed certificate for keypair, good enough to build a PFX."""
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(keypair.private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=90))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
        .sign(keypair.private_key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


class FakeAcmeClient:
    """In-memory stand-in for AcmeClient.

    ready_after: number of order polls before the order turns ready
    (None never). issue_after: polls after finalization before the
    certificate URL appears.
    """

    def __init__(self, events, ready_after=1, issue_after=1, invalid=False,
                 unsupported=(), tokens=None, on_poll=None):
        self.events = events
        self.ready_after = ready_after
        self.issue_after = issue_after
        self.invalid = invalid
        self.unsupported = set(unsupported)
        self.tokens = tokens or {}
        self.on_poll = on_poll
        self.polls = 0
        self.issued_polls = 0
        self.finalized = False
        self.keypair = None
        self.signaled = []

    def create_account(self, email):
        self.events.append(('account', email))
        return AcmeAccount(directory_url='https://acme.test/directory', key=None, email=email)

    def create_order(self, account, domains):
        self.events.append(('order', tuple(domains)))
        authzs = [Authorization(domain=d, status='pending', challenges=['http-01']) for d in domains]
        return Order(identifiers=list(domains), status='pending', authorizations=authzs,
                     uri='https://acme.test/order/1')

    def fetch_authorizations(self, order):
        return list(order.authorizations)

    def select_challenge(self, authorization, typ='http-01'):
        domain = authorization.domain
        if domain in self.unsupported:
            raise UnsupportedChallengeError("No http-01 challenge offered", domain=domain)
        token = self.tokens.get(domain, 'TOKEN-' + domain.replace('.', '-'))
        return Challenge(domain=domain, token=token, content=f"{token}.KEYAUTHZ",
                         uri=f"https://acme.test/chall/{domain}")

    def complete_challenge(self, challenge):
        if challenge.uri in self.signaled:
            return
        self.signaled.append(challenge.uri)
        self.events.append(('signal', challenge.domain))

    def poll_order(self, order):
        self.polls += 1
        if self.on_poll:
            self.on_poll(self.polls)
        if not self.finalized:
            if self.invalid:
                status = 'invalid'
            elif self.ready_after is not None and self.polls >= self.ready_after:
                status = 'ready'
            else:
                status = 'processing'
            return Order(identifiers=order.identifiers, status=status,
                         authorizations=order.authorizations, uri=order.uri)
        self.issued_polls += 1
        if self.issue_after is not None and self.issued_polls >= self.issue_after:
            return Order(identifiers=order.identifiers, status='valid', authorizations=order.authorizations,
                         uri=order.uri, certificate_url='https://acme.test/cert/1')
        return Order(identifiers=order.identifiers, status='processing',
                     authorizations=order.authorizations, uri=order.uri)

    def authorization_errors(self, order):
        return {a.domain: 'Connection refused' for a in order.authorizations}

    def finalize_order(self, order, keypair):
        if order.status != 'ready':
            raise FinalizationError(f"Order is {order.status}")
        self.events.append(('finalize', None))
        self.finalized = True
        self.keypair = keypair
        return Order(identifiers=order.identifiers, status='processing',
                     authorizations=order.authorizations, uri=order.uri)

    def fetch_certificate(self, order):
        return FAKE_CHAIN


class FakePublisher:
    def __init__(self, events, fail_domains=()):
        self.events = events
        self.fail_domains = set(fail_domains)
        self.live = {}
        self.published = []
        self.removed = []

    def publish(self, path, content, domain=None, cancel=None):
        if domain in self.fail_domains:
            raise PublicationError("Upload failed", domain=domain)
        self.live[path] = content
        self.published.append((path, content))
        self.events.append(('publish', domain))
        return PublishedArtifact(path=path, content=content, domain=domain)

    def unpublish(self, path):
        self.live.pop(path, None)
        self.removed.append(path)
        self.events.append(('unpublish', path))


class FakeSink:
    def __init__(self, fail=False):
        self.fail = fail
        self.imported = []

    def import_certificate(self, keypair, chain, name):
        if self.fail:
            raise CertificateImportError("Policy violation")
        self.imported.append((keypair, chain, name))
        return "0123456789ABCDEF"


@pytest.fixture
def events():
    return []


@pytest.fixture
def fast_policy():
    return PollPolicy(interval=0, max_wait=30, max_attempts=5)


@pytest.fixture
def retry_policy():
    return PollPolicy(interval=0, max_wait=30, max_attempts=3)
