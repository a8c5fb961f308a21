# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Plain data types shared by the ACME client, publishers and the order flow.

The ACME types wrap the corresponding `acme` library resource in `resource`
so the client can hand them back to the library; everything else in the
program only reads the plain fields.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from renewal_errors import OrderCreationError, RenewalError

HTTP01 = 'http-01'
WELL_KNOWN_PREFIX = '/.well-known/acme-challenge'

# ACME order statuses (RFC 8555 section 7.1.6)
PENDING = 'pending'
READY = 'ready'
PROCESSING = 'processing'
VALID = 'valid'
INVALID = 'invalid'


def challenge_path(token: str) -> str:
    return f"{WELL_KNOWN_PREFIX}/{token}"


def normalize_domains(domains) -> List[str]:
    """Lower-case, strip trailing dots and drop duplicates keeping order.

    Wildcards are rejected because HTTP-01 cannot validate them.
    """
    seen = []
    for d in domains or []:
        name = str(d).strip().rstrip('.').lower()
        if not name:
            continue
        if name.startswith('*.'):
            raise OrderCreationError("Wildcard names need DNS-01 and are not supported", domain=name)
        if name not in seen:
            seen.append(name)
    if not seen:
        raise OrderCreationError("At least one domain is required")
    return seen


@dataclass
class AcmeAccount:
    directory_url: str
    key: object = field(repr=False)
    uri: Optional[str] = None
    email: Optional[str] = None
    regr: object = field(default=None, repr=False, compare=False)


@dataclass
class Challenge:
    domain: str
    token: str
    content: str = field(repr=False)
    uri: Optional[str] = None
    status: str = PENDING
    type: str = HTTP01
    resource: object = field(default=None, repr=False, compare=False)

    @property
    def path(self) -> str:
        return challenge_path(self.token)


@dataclass
class Authorization:
    domain: str
    status: str
    challenges: list = field(default_factory=list, repr=False)
    uri: Optional[str] = None
    error: Optional[str] = None
    resource: object = field(default=None, repr=False, compare=False)


@dataclass
class Order:
    identifiers: List[str]
    status: str
    authorizations: List[Authorization] = field(default_factory=list)
    uri: Optional[str] = None
    certificate_url: Optional[str] = None
    error: Optional[str] = None
    resource: object = field(default=None, repr=False, compare=False)


@dataclass
class PublishedArtifact:
    path: str
    content: str = field(repr=False)
    domain: Optional[str] = None
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


KEY_TYPES = ('rsa2048', 'rsa3072', 'rsa4096', 'ec256', 'ec384')


@dataclass
class CertificateKeyPair:
    """Certificate private key and, once issued, its PEM chain (leaf first)."""
    private_key: object = field(repr=False)
    chain_pem: Optional[bytes] = field(default=None, repr=False)

    @classmethod
    def generate(cls, key_type: str = 'rsa2048') -> 'CertificateKeyPair':
        if key_type.startswith('rsa') and key_type in KEY_TYPES:
            key = rsa.generate_private_key(public_exponent=65537, key_size=int(key_type[3:]))
        elif key_type == 'ec256':
            key = ec.generate_private_key(ec.SECP256R1())
        elif key_type == 'ec384':
            key = ec.generate_private_key(ec.SECP384R1())
        else:
            raise ValueError(f"Unsupported key type '{key_type}', expected one of {', '.join(KEY_TYPES)}")
        return cls(private_key=key)

    def csr_pem(self, domains) -> bytes:
        domains = list(domains)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
        csr = x509.CertificateSigningRequestBuilder().subject_name(name).add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
        csr = csr.sign(self.private_key, hashes.SHA256())
        return csr.public_bytes(serialization.Encoding.PEM)

    def certificates(self) -> List[x509.Certificate]:
        if not self.chain_pem:
            return []
        return x509.load_pem_x509_certificates(self.chain_pem)

    def to_pkcs12(self, passphrase: bytes, friendly_name: Optional[bytes] = None) -> bytes:
        """Bundle key, leaf and intermediates into a passphrase-protected PFX."""
        certs = self.certificates()
        if not certs:
            raise ValueError("No certificate chain to bundle")
        return pkcs12.serialize_key_and_certificates(
            name=friendly_name,
            key=self.private_key,
            cert=certs[0],
            cas=certs[1:] or None,
            encryption_algorithm=serialization.BestAvailableEncryption(passphrase))


class OrderState(Enum):
    CREATED = 'Created'
    AUTHORIZATIONS_PENDING = 'AuthorizationsPending'
    CHALLENGES_COMPLETED = 'ChallengesCompleted'
    AWAITING_FINALIZATION = 'AwaitingFinalization'
    FINALIZED = 'Finalized'
    CERTIFICATE_READY = 'CertificateReady'
    FAILED = 'Failed'

    @property
    def terminal(self) -> bool:
        return self in (OrderState.CERTIFICATE_READY, OrderState.FAILED)


# Forward transitions; FAILED is reachable from every non-terminal state.
TRANSITIONS = {
    OrderState.CREATED: {OrderState.AUTHORIZATIONS_PENDING},
    OrderState.AUTHORIZATIONS_PENDING: {OrderState.CHALLENGES_COMPLETED},
    OrderState.CHALLENGES_COMPLETED: {OrderState.AWAITING_FINALIZATION},
    OrderState.AWAITING_FINALIZATION: {OrderState.FINALIZED},
    OrderState.FINALIZED: {OrderState.CERTIFICATE_READY},
    OrderState.CERTIFICATE_READY: set(),
    OrderState.FAILED: set(),
}


@dataclass
class RenewalResult:
    name: str
    state: OrderState
    thumbprint: Optional[str] = None
    errors: List[RenewalError] = field(default_factory=list)
    history: List[OrderState] = field(default_factory=list)
    artifacts: List[PublishedArtifact] = field(default_factory=list, repr=False)

    @property
    def ok(self) -> bool:
        return self.state is OrderState.CERTIFICATE_READY and not self.errors
