#!/usr/bin/env python3
# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Check that an HTTP-01 challenge URL serves the expected key authorization.

Usage:
  ./challenge_check.py <url> <expected> [--verify-ssl] [--timeout N]

It will:
 1. GET the URL, following redirects (the load balancer usually redirects
    /.well-known/acme-challenge/ to the blob container).
 2. Compare the full response body with the expected content.
 3. Print the outcome and exit 0 on a match, 1 otherwise.

The publishers use wait_for_challenge() from this module to confirm a freshly
published token is reachable before the ACME server is told to look for it.
"""
from typing import Optional
import argparse
import logging
import sys
import threading

import requests
import urllib3
from urllib3.exceptions import InsecureRequestWarning

from poll_retry import PollPolicy, poll_until
from renewal_errors import PublicationError

log = logging.getLogger(__name__)
# The ACME validator ignores certificate errors on redirect targets, so the
# check does not verify them by default either.
urllib3.disable_warnings(InsecureRequestWarning)


def fetch_challenge(url: str, verify_ssl: bool = False, timeout: float = 10) -> Optional[str]:
    """Return the body served at url, or None if it cannot be fetched."""
    try:
        r = requests.get(url, timeout=timeout, verify=verify_ssl, allow_redirects=True)
    except requests.exceptions.RequestException as e:
        log.debug("GET %s failed: %s", url, e)
        return None
    if r.status_code != 200:
        log.debug("GET %s returned %s", url, r.status_code)
        return None
    return r.text


def check_challenge(url: str, expected: str, verify_ssl: bool = False, timeout: float = 10) -> bool:
    return fetch_challenge(url, verify_ssl, timeout) == expected


def wait_for_challenge(url: str, expected: str, policy: PollPolicy,
                       cancel: Optional[threading.Event] = None,
                       verify_ssl: bool = False, domain: Optional[str] = None) -> None:
    """Poll url until it serves exactly `expected`; PublicationError otherwise."""
    def timed_out(message):
        return PublicationError(f"{url} does not serve the challenge ({message})", domain=domain)

    poll_until(lambda: fetch_challenge(url, verify_ssl),
               lambda body: body == expected,
               policy, cancel, what=f"challenge at {url}", timeout_error=timed_out)
    log.info("Verified challenge is reachable at %s", url)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Check an ACME HTTP-01 challenge URL',
        epilog='Example: %(prog)s http://example.com/.well-known/acme-challenge/TOKEN TOKEN.THUMBPRINT'
    )
    parser.add_argument('url', help='Challenge URL to fetch')
    parser.add_argument('expected', help='Expected key authorization')
    parser.add_argument('--verify-ssl', action='store_true', help='Verify TLS certificates of redirect targets')
    parser.add_argument('--timeout', type=float, default=10, help='Request timeout in seconds (default: %(default)s)')
    args = parser.parse_args(argv)

    body = fetch_challenge(args.url, args.verify_ssl, args.timeout)
    print(f"URL:      {args.url}")
    print(f"Expected: {args.expected}")
    print(f"Served:   {body if body is not None else '<unreachable>'}")
    if body == args.expected:
        print("Result:   OK")
        return 0
    print("Result:   MISMATCH")
    return 1


if __name__ == "__main__":
    sys.exit(main())
