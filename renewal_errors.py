# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Exception types raised by the renewal flow.

Every error that ends a renewal run derives from RenewalError. Errors that
concern a single name in a multi-domain order carry that name in `domain` so
the final result can report each failure separately.

Only ServiceUnavailableError is transient; callers retry it and nothing else.
"""
from typing import Optional


class RenewalError(Exception):
    """Base class for all renewal failures."""
    exit_code = 1

    def __init__(self, message: str, domain: Optional[str] = None):
        super().__init__(message)
        self.domain = domain

    def __str__(self):
        msg = super().__str__()
        if self.domain:
            return f"{self.domain}: {msg}"
        return msg


class ConfigError(RenewalError):
    exit_code = 2


class AccountCreationError(RenewalError):
    exit_code = 10


class OrderCreationError(RenewalError):
    exit_code = 11


class RateLimitedError(OrderCreationError):
    """The ACME server refused the order because of a rate limit."""
    exit_code = 12

    def __init__(self, message: str, retry_after: Optional[str] = None):
        super().__init__(message)
        self.retry_after = retry_after


class AuthorizationFetchError(RenewalError):
    """One or more authorizations of an order could not be fetched.

    `failures` maps each failed domain to the reason it failed.
    """
    exit_code = 13

    def __init__(self, message: str, failures: Optional[dict] = None):
        super().__init__(message)
        self.failures = dict(failures or {})


class UnsupportedChallengeError(RenewalError):
    exit_code = 14


class PublicationError(RenewalError):
    exit_code = 15


class ChallengeError(RenewalError):
    exit_code = 16


class OrderInvalidError(RenewalError):
    exit_code = 17


class FinalizationError(RenewalError):
    exit_code = 18


class CertificateNotReadyError(RenewalError):
    exit_code = 19


class PollTimeoutError(RenewalError):
    exit_code = 20


class ProvisioningError(RenewalError):
    exit_code = 21


class ProvisioningTimeoutError(ProvisioningError):
    exit_code = 22


class CertificateImportError(RenewalError):
    exit_code = 23


class ServiceUnavailableError(RenewalError):
    """A remote service failed in a way that may succeed on retry."""
    exit_code = 24


class RenewalCancelledError(RenewalError):
    exit_code = 25


def exit_code_for(errors) -> int:
    """Exit status for a failed run: the shared kind's code, else 1."""
    codes = {getattr(e, 'exit_code', 1) for e in errors}
    if len(codes) == 1:
        return codes.pop()
    return 1
