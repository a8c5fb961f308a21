# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Azure Key Vault certificate store.

KeyVaultSink hands issued certificates to Key Vault and provisions
self-signed certificates from the vault's own issuer when ACME is not an
option (bootstrap, internal names). The CertificateClient is passed in so
callers decide how it authenticates.
"""
from datetime import datetime, timezone
from typing import Optional
import logging
import secrets
import threading

from azure.core.exceptions import (
    HttpResponseError, ResourceNotFoundError, ServiceRequestError, ServiceResponseError,
)
from azure.keyvault.certificates import CertificateClient, CertificateContentType, CertificatePolicy
from cryptography import x509

from poll_retry import PollPolicy, poll_until, retry_transient
from renewal_errors import (
    CertificateImportError, ProvisioningError, ProvisioningTimeoutError, RenewalError,
    ServiceUnavailableError,
)
from renewal_models import CertificateKeyPair

log = logging.getLogger(__name__)

DONE_STATUSES = ('completed', 'failed', 'cancelled')


def thumbprint_of(certificate) -> Optional[str]:
    """Upper-case hex SHA-1 thumbprint of a KeyVaultCertificate."""
    raw = certificate.properties.x509_thumbprint if certificate.properties else None
    return raw.hex().upper() if raw else None


def _translate(e: Exception, error_cls, what: str) -> RenewalError:
    if isinstance(e, (ServiceRequestError, ServiceResponseError)):
        return ServiceUnavailableError(f"{what}: {e}")
    if isinstance(e, HttpResponseError) and (e.status_code or 0) >= 500:
        return ServiceUnavailableError(f"{what}: {e.message or e}")
    return error_cls(f"{what}: {getattr(e, 'message', None) or e}")


class KeyVaultSink:
    def __init__(self, certificate_client, poll_policy: Optional[PollPolicy] = None,
                 retry_policy: Optional[PollPolicy] = None,
                 cancel: Optional[threading.Event] = None):
        self.client = certificate_client
        # 120 checks, 10 seconds apart
        self.poll_policy = poll_policy or PollPolicy(interval=10, max_wait=1200, max_attempts=120)
        self.retry_policy = retry_policy or PollPolicy(interval=2, max_wait=60, backoff='exponential',
                                                       jitter=0.1, max_attempts=4)
        self.cancel = cancel

    @classmethod
    def from_vault(cls, vault_url: str, credential, **kwargs) -> 'KeyVaultSink':
        return cls(CertificateClient(vault_url=vault_url, credential=credential), **kwargs)

    def _retry(self, func, *args, **kwargs):
        return retry_transient(func, *args, policy=self.retry_policy, cancel=self.cancel, **kwargs)

    def _get(self, name: str):
        """Return the certificate called name, or None if the vault has none."""
        def get():
            try:
                return self.client.get_certificate(name)
            except ResourceNotFoundError:
                return None
            except (HttpResponseError, ServiceRequestError, ServiceResponseError) as e:
                raise _translate(e, ProvisioningError, f"Cannot read certificate {name}") from e
        return self._retry(get)

    def import_certificate(self, keypair: CertificateKeyPair, chain: bytes, name: str) -> str:
        """Import key + chain as certificate `name` and return its thumbprint."""
        keypair.chain_pem = chain
        passphrase = secrets.token_urlsafe(32)
        try:
            pfx = keypair.to_pkcs12(passphrase.encode(), name.encode())
        except ValueError as e:
            raise CertificateImportError(f"Cannot bundle certificate {name}: {e}") from e

        def do_import():
            try:
                return self.client.import_certificate(
                    certificate_name=name,
                    certificate_bytes=pfx,
                    password=passphrase,
                    policy=CertificatePolicy(content_type=CertificateContentType.pkcs12, exportable=True),
                )
            except (HttpResponseError, ServiceRequestError, ServiceResponseError) as e:
                raise _translate(e, CertificateImportError, f"Key Vault rejected {name}") from e

        cert = self._retry(do_import)
        thumbprint = thumbprint_of(cert)
        log.info("Imported certificate %s into Key Vault (thumbprint %s)", name, thumbprint)
        return thumbprint

    def request_self_signed(self, name: str, subject: str, validity_months: int = 12,
                            san_dns_names=None) -> str:
        """Provision a self-signed certificate unless `name` already exists."""
        existing = self._get(name)
        if existing is not None:
            thumbprint = thumbprint_of(existing)
            log.info("Certificate %s already exists (thumbprint %s), nothing to do", name, thumbprint)
            return thumbprint

        policy = CertificatePolicy(
            issuer_name='Self',
            subject=subject,
            san_dns_names=list(san_dns_names) if san_dns_names else None,
            validity_in_months=validity_months,
            content_type=CertificateContentType.pkcs12,
            exportable=True,
        )

        def begin():
            try:
                self.client.begin_create_certificate(certificate_name=name, policy=policy)
            except (HttpResponseError, ServiceRequestError, ServiceResponseError) as e:
                raise _translate(e, ProvisioningError, f"Cannot request certificate {name}") from e

        self._retry(begin)
        log.info("Requested self-signed certificate %s (%s)", name, subject)

        def operation():
            try:
                return self.client.get_certificate_operation(name)
            except (HttpResponseError, ServiceRequestError, ServiceResponseError) as e:
                raise _translate(e, ProvisioningError, f"Cannot read operation for {name}") from e

        op = poll_until(lambda: self._retry(operation),
                        lambda o: (o.status or '').lower() in DONE_STATUSES,
                        self.poll_policy, self.cancel,
                        what=f"provisioning of {name}", timeout_error=ProvisioningTimeoutError)

        if op.status.lower() != 'completed':
            detail = op.error.message if op.error else op.status_details
            raise ProvisioningError(f"Provisioning of {name} {op.status}: {detail}")

        cert = self._get(name)
        if cert is None:
            raise ProvisioningError(f"Certificate {name} missing after provisioning completed")
        thumbprint = thumbprint_of(cert)
        log.info("Provisioned self-signed certificate %s (thumbprint %s)", name, thumbprint)
        return thumbprint

    def certificate_domains(self, name: str) -> Optional[set]:
        """DNS names in the SAN of the stored certificate, None if absent."""
        cert = self._get(name)
        if cert is None or not cert.cer:
            return None
        parsed = x509.load_der_x509_certificate(bytes(cert.cer))
        try:
            san = parsed.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        except x509.ExtensionNotFound:
            return set()
        return set(san.value.get_values_for_type(x509.DNSName))

    def days_until_expiry(self, name: str) -> Optional[int]:
        cert = self._get(name)
        if cert is None or cert.properties.expires_on is None:
            return None
        expires_on = cert.properties.expires_on
        if expires_on.tzinfo is None:
            expires_on = expires_on.replace(tzinfo=timezone.utc)
        return (expires_on - datetime.now(timezone.utc)).days
