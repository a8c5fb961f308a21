# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Publish and remove HTTP-01 challenge responses.

A publisher writes the key authorization for a token at
/.well-known/acme-challenge/<token> somewhere the public HTTP endpoint serves
it from:

- BlobPublisher uploads to an Azure Storage container that the load balancer
  redirects challenge requests to.
- WebrootPublisher writes below a local web server document root.

publish() returns only once the content is stored, and, when a check URL is
configured, once that URL serves it. unpublish() is best effort and never
raises.
"""
from typing import Optional
import logging
import os
import re
import tempfile
import threading

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

from challenge_check import wait_for_challenge
from poll_retry import PollPolicy
from renewal_errors import PublicationError
from renewal_models import WELL_KNOWN_PREFIX, PublishedArtifact

log = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _relative_path(path: str) -> str:
    """Validate a challenge path and return it without the leading slash."""
    prefix, _, token = path.rpartition('/')
    if prefix != WELL_KNOWN_PREFIX or not TOKEN_RE.match(token):
        raise PublicationError(f"Refusing to publish outside {WELL_KNOWN_PREFIX}: {path!r}")
    return path.lstrip('/')


class ChallengePublisher:
    """Base class; subclasses implement _write() and _delete()."""

    def __init__(self, check_url: Optional[str] = None, verify_ssl: bool = False,
                 check_policy: Optional[PollPolicy] = None):
        # check_url is a template such as
        # "http://{domain}/.well-known/acme-challenge/{token}"
        self.check_url = check_url
        self.verify_ssl = verify_ssl
        self.check_policy = check_policy or PollPolicy(interval=2, max_wait=60)

    def _write(self, relpath: str, content: str) -> None:
        raise NotImplementedError

    def _delete(self, relpath: str) -> None:
        raise NotImplementedError

    def publish(self, path: str, content: str, domain: Optional[str] = None,
                cancel: Optional[threading.Event] = None) -> PublishedArtifact:
        relpath = _relative_path(path)
        try:
            self._write(relpath, content)
        except PublicationError:
            raise
        except (AzureError, OSError) as e:
            raise PublicationError(f"Cannot publish {path}: {e}", domain=domain) from e
        artifact = PublishedArtifact(path=path, content=content, domain=domain)
        log.info("Published challenge %s%s", path, f" for {domain}" if domain else "")

        if self.check_url and domain:
            url = self.check_url.format(domain=domain, token=path.rsplit('/', 1)[-1], path=path)
            try:
                wait_for_challenge(url, content, self.check_policy, cancel,
                                   verify_ssl=self.verify_ssl, domain=domain)
            except Exception:
                self.unpublish(path)
                raise
        return artifact

    def unpublish(self, path: str) -> None:
        try:
            self._delete(_relative_path(path))
        except PublicationError as e:
            log.warning("Not removing %s: %s", path, e)
            return
        except (AzureError, OSError) as e:
            log.warning("Failed to remove challenge %s: %s", path, e)
            return
        log.info("Removed challenge %s", path)


class BlobPublisher(ChallengePublisher):
    def __init__(self, container_client, **kwargs):
        super().__init__(**kwargs)
        self.container = container_client

    @classmethod
    def from_account(cls, account_url: str, container: str, credential, **kwargs) -> 'BlobPublisher':
        service = BlobServiceClient(account_url=account_url, credential=credential)
        return cls(service.get_container_client(container), **kwargs)

    def _write(self, relpath: str, content: str) -> None:
        log.debug("Uploading blob %s (%d bytes)", relpath, len(content))
        self.container.upload_blob(
            relpath, content.encode('ascii'), overwrite=True,
            content_settings=ContentSettings(content_type='text/plain'))

    def _delete(self, relpath: str) -> None:
        try:
            self.container.delete_blob(relpath)
        except ResourceNotFoundError:
            log.debug("Blob %s already gone", relpath)


class WebrootPublisher(ChallengePublisher):
    def __init__(self, webroot: str, **kwargs):
        super().__init__(**kwargs)
        self.webroot = webroot

    def _write(self, relpath: str, content: str) -> None:
        target = os.path.join(self.webroot, relpath)
        directory = os.path.dirname(target)
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix='.tmp-')
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, 0o644)
            os.replace(tmp, target)
        except OSError:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

    def _delete(self, relpath: str) -> None:
        try:
            os.remove(os.path.join(self.webroot, relpath))
        except FileNotFoundError:
            log.debug("Challenge file %s already gone", relpath)
