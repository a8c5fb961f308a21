#!/usr/bin/env python3
# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Command-line orchestration for obtaining certificates into Azure Key Vault.

Usage:
    ./kvcertmgr.py [options]

Default behavior (no options):
    - Shows list of all certificates with expiration status
    - Renews certificates that expire within 30 days (or --days threshold)
    - Renews certificates whose domains changed in config
    - Provisions self-signed certificates for entries marked self_signed
    - Shows summary of actions taken

Options:
    --list: Only show certificate list, do not renew
    --self-signed: Provision self-signed certificates for every entry
    --staging: Use Let's Encrypt staging environment
    --force: Force renewal regardless of expiration
    --days N: Renew if expires within N days (default: 30)
    --only NAME: Only process the named certificate (repeatable)
"""
import argparse
import logging
import os
import signal
import sys
import threading

import yaml
from azure.identity import DefaultAzureCredential

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
if SCRIPT_DIR not in sys.path:
    sys.path.insert(0, SCRIPT_DIR)

from acme_client import LE_PRODUCTION, LE_STAGING, AcmeClient
from challenge_publish import BlobPublisher, WebrootPublisher
from keyvault_sink import KeyVaultSink
from order_machine import OrderStateMachine
from poll_retry import PollPolicy
from renewal_errors import ConfigError, RenewalError, exit_code_for
from renewal_models import KEY_TYPES

log = logging.getLogger(__name__)


def load_yaml(path):
    with open(path, 'r') as f:
        return yaml.safe_load(f)


def load_config(path) -> dict:
    """Read and validate the YAML configuration."""
    try:
        config = load_yaml(path)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    if not isinstance(config, dict):
        raise ConfigError(f"Config {path} must be a mapping")

    certificates = config.get('certificates') or []
    if not isinstance(certificates, list) or not certificates:
        raise ConfigError("Config lists no certificates")

    names = set()
    needs_publisher = False
    for cert in certificates:
        name = cert.get('name') if isinstance(cert, dict) else None
        if not name:
            raise ConfigError(f"Certificate entry without a name: {cert!r}")
        if name in names:
            raise ConfigError(f"Duplicate certificate name '{name}'")
        names.add(name)
        if not (cert.get('key_vault_url') or config.get('key_vault_url')):
            raise ConfigError(f"No key_vault_url for certificate '{name}'")
        domains = cert.get('domains') or []
        if not isinstance(domains, list):
            raise ConfigError(f"domains of '{name}' must be a list")
        if cert.get('self_signed'):
            if not (domains or cert.get('subject')):
                raise ConfigError(f"Self-signed certificate '{name}' needs domains or a subject")
        else:
            if not domains:
                raise ConfigError(f"Certificate '{name}' has no domains")
            needs_publisher = True
        if cert.get('key_type', 'rsa2048') not in KEY_TYPES:
            raise ConfigError(f"Unknown key_type '{cert.get('key_type')}' for '{name}'")

    if needs_publisher:
        publisher = config.get('publisher') or {}
        kind = publisher.get('type', 'blob')
        if kind == 'blob':
            if not (publisher.get('account_url') and publisher.get('container')):
                raise ConfigError("Blob publisher needs account_url and container")
        elif kind == 'webroot':
            if not publisher.get('webroot'):
                raise ConfigError("Webroot publisher needs webroot")
        else:
            raise ConfigError(f"Unknown publisher type '{kind}'")

    run_timeout = config.get('run_timeout')
    if run_timeout is not None and (isinstance(run_timeout, bool) or not isinstance(run_timeout, (int, float))
                                    or run_timeout <= 0):
        raise ConfigError(f"run_timeout must be a positive number of seconds, not {run_timeout!r}")
    return config


def poll_policy(section, what, interval=10.0, max_wait=600.0, max_attempts=None, **defaults) -> PollPolicy:
    section = section or {}
    try:
        interval = float(section.get('interval', interval))
        if interval <= 0:
            raise ConfigError(f"Invalid {what} settings: interval must be positive")
        attempts = section.get('attempts', max_attempts)
        if attempts is not None and 'max_wait' not in section:
            max_wait = interval * int(attempts)
        return PollPolicy(
            interval=interval,
            max_wait=float(section.get('max_wait', max_wait)),
            backoff=section.get('backoff', defaults.get('backoff', 'fixed')),
            jitter=float(section.get('jitter', defaults.get('jitter', 0.0))),
            max_attempts=int(attempts) if attempts is not None else None,
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid {what} settings: {e}") from e


def retry_policy(config) -> PollPolicy:
    polling = config.get('polling') or {}
    return poll_policy({'attempts': polling.get('transient_attempts', 4), 'max_wait': 60},
                       'transient retry', interval=2.0, backoff='exponential', jitter=0.1)


def build_publisher(config, credential):
    p = config.get('publisher') or {}
    kwargs = dict(check_url=p.get('check_url'), verify_ssl=bool(p.get('verify_ssl', False)),
                  check_policy=poll_policy(p.get('check'), 'publisher check', interval=2.0, max_wait=60.0))
    if p.get('type', 'blob') == 'webroot':
        return WebrootPublisher(p['webroot'], **kwargs)
    return BlobPublisher.from_account(p['account_url'], p['container'], credential, **kwargs)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument('--config', default=os.path.join(SCRIPT_DIR, 'config.yaml'))
    parser.add_argument('--account-key', default=None,
                        help='PEM file holding the ACME account key (created if missing); default: new key per run')
    parser.add_argument('--days', type=int, default=30, help='Renew if cert expires within DAYS')
    parser.add_argument('--force', action='store_true')
    parser.add_argument('--staging', action='store_true', help='Use Let\'s Encrypt staging directory (safe for testing)')
    parser.add_argument('--dry-run', action='store_true', help='Do not perform network calls; print planned actions')
    parser.add_argument('--verbose', action='store_true')
    parser.add_argument('--list', action='store_true',
                        help='List configured certificates with their Key Vault expiration status')
    parser.add_argument('--self-signed', action='store_true',
                        help='Provision self-signed certificates in Key Vault instead of using ACME')
    parser.add_argument('--only', action='append', metavar='NAME',
                        help='Only process the named certificate (may be repeated)')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    # Azure SDK request logging is very chatty at INFO
    logging.getLogger('azure').setLevel(logging.DEBUG if args.verbose else logging.WARNING)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        log.error("%s", e)
        return e.exit_code

    certificates = config['certificates']
    if args.only:
        unknown = set(args.only) - {c['name'] for c in certificates}
        if unknown:
            log.error("Unknown certificate name(s): %s", ', '.join(sorted(unknown)))
            return ConfigError.exit_code
        certificates = [c for c in certificates if c['name'] in args.only]

    if args.dry_run:
        for cert in certificates:
            mode = 'self-signed' if (args.self_signed or cert.get('self_signed')) else 'ACME'
            log.info("DRY RUN: would check %s and request a %s certificate for %s if due",
                     cert['name'], mode, cert.get('domains') or cert.get('subject'))
        return 0

    # Choose ACME directory: production by default, staging if requested
    directory_url = config.get('directory_url') or LE_PRODUCTION
    if args.staging:
        directory_url = config.get('staging_directory_url') or LE_STAGING
        log.info("Using Let's Encrypt STAGING directory: %s", directory_url)

    # cancel aborts the whole batch; each order run also gets its own event
    # so that its run_timeout does not stop the certificates after it.
    cancel = threading.Event()
    active_runs = []

    def on_signal(signum, frame):
        log.warning("Received signal %d, cancelling", signum)
        cancel.set()
        for run_cancel in list(active_runs):
            run_cancel.set()

    signal.signal(signal.SIGTERM, on_signal)
    signal.signal(signal.SIGINT, on_signal)

    credential = DefaultAzureCredential()
    retry = retry_policy(config)
    run_timeout = config.get('run_timeout')
    self_signed_policy = poll_policy(config.get('self_signed'), 'self_signed', interval=10.0, max_attempts=120)
    sinks = {}

    def sink_for(cert):
        vault_url = cert.get('key_vault_url') or config['key_vault_url']
        if vault_url not in sinks:
            sinks[vault_url] = KeyVaultSink.from_vault(vault_url, credential, poll_policy=self_signed_policy,
                                                       retry_policy=retry, cancel=cancel)
        return sinks[vault_url]

    # Handle --list option (or default with no action options)
    if args.list or not args.self_signed:
        print(f"{'Certificate':<30} {'Expires In':<15} {'Status':<15} {'Domains'}")
        print("-" * 120)
        for cert in certificates:
            name = cert['name']
            domains_str = ', '.join(cert.get('domains') or [cert.get('subject', '')])
            try:
                days = sink_for(cert).days_until_expiry(name)
            except RenewalError as e:
                print(f"{name:<30} {'ERROR':<15} {str(e)[:20]:<15} {domains_str}")
                continue
            if days is None:
                print(f"{name:<30} {'NOT FOUND':<15} {'Missing':<15} {domains_str}")
                continue
            if days < 0:
                status = "EXPIRED"
            elif days <= args.days:
                status = "RENEW SOON"
            else:
                status = "Valid"
            print(f"{name:<30} {days:>3} days        {status:<15} {domains_str}")
        print()

    # If --list only, exit after showing list
    if args.list:
        return 0

    acme = AcmeClient(directory_url=directory_url)
    if args.account_key:
        acme.load_or_create_account_key(args.account_key)

    publisher = None
    summary = {
        'renewed': [],
        'reordered': [],
        'self_signed': [],
        'errors': [],
    }

    for cert in certificates:
        if cancel.is_set():
            log.warning("Cancelled, skipping remaining certificates")
            break
        name = cert['name']
        domains = cert.get('domains') or []
        sink = sink_for(cert)

        if args.self_signed or cert.get('self_signed'):
            subject = cert.get('subject') or f"CN={domains[0]}"
            try:
                thumbprint = sink.request_self_signed(
                    name, subject,
                    validity_months=int((config.get('self_signed') or {}).get('validity_months', 12)),
                    san_dns_names=domains)
                summary['self_signed'].append(f"{name} ({thumbprint})")
            except RenewalError as e:
                log.error("Self-signed provisioning of %s failed: %s", name, e)
                summary['errors'].append(e)
            continue

        need = args.force
        reorder = False  # Track if domains have changed
        if not need:
            try:
                days = sink.days_until_expiry(name)
                stored_domains = sink.certificate_domains(name)
            except RenewalError as e:
                log.error("Cannot inspect %s: %s", name, e)
                summary['errors'].append(e)
                continue
            if days is None:
                log.info("Certificate %s not found in Key Vault, will request it", name)
                need = True
            elif days <= args.days:
                log.info("Certificate %s expires in %d days (<= %d), will renew", name, days, args.days)
                need = True
            else:
                log.info("Certificate %s is valid for %d more days", name, days)
            if stored_domains is not None and stored_domains != {d.lower() for d in domains}:
                log.info("Certificate %s has domain changes (vault: %s, config: %s), will reorder",
                         name, sorted(stored_domains), domains)
                need = True
                reorder = True
        if not need:
            continue

        if publisher is None:
            publisher = build_publisher(config, credential)
        run_cancel = threading.Event()
        machine = OrderStateMachine(
            acme, publisher, sink,
            poll_policy=poll_policy(config.get('polling'), 'polling'),
            retry_policy=retry,
            cancel=run_cancel,
            key_type=cert.get('key_type', 'rsa2048'),
            parallel=bool((config.get('publisher') or {}).get('parallel', False)),
            run_timeout=run_timeout,
        )
        active_runs.append(run_cancel)
        if cancel.is_set():
            run_cancel.set()
        try:
            result = machine.run(config.get('contact_email'), domains, name)
        finally:
            active_runs.remove(run_cancel)
        if result.ok:
            summary['reordered' if reorder else 'renewed'].append(f"{name} ({result.thumbprint})")
        else:
            summary['errors'].extend(result.errors)

    print()
    print("=" * 80)
    print("SUMMARY")
    print("=" * 80)
    if summary['renewed']:
        print(f"Renewed certificates: {', '.join(summary['renewed'])}")
    if summary['reordered']:
        print(f"Reordered certificates (domain changes): {', '.join(summary['reordered'])}")
    if summary['self_signed']:
        print(f"Self-signed certificates: {', '.join(summary['self_signed'])}")
    if summary['errors']:
        print(f"Errors encountered: {len(summary['errors'])}")
        for err in summary['errors']:
            print(f"  - {type(err).__name__}: {err}")
        return exit_code_for(summary['errors'])

    if not (summary['renewed'] or summary['reordered'] or summary['self_signed']):
        print("No certificates needed renewal. All certificates are up to date.")
    return 0


if __name__ == '__main__':
    sys.exit(main())
