import threading

import pytest

from conftest import FAKE_CHAIN, FakeAcmeClient, FakePublisher, FakeSink
from order_machine import OrderStateMachine
from poll_retry import PollPolicy
from renewal_errors import (
    CertificateImportError, OrderCreationError, OrderInvalidError, PollTimeoutError,
    PublicationError, RenewalCancelledError, RenewalError, ServiceUnavailableError,
    UnsupportedChallengeError,
)
from renewal_models import OrderState


def make_machine(client, publisher, sink, fast_policy, retry_policy, **kwargs):
    return OrderStateMachine(client, publisher, sink, poll_policy=fast_policy,
                             retry_policy=retry_policy, **kwargs)


def test_happy_path_single_domain(events, fast_policy, retry_policy):
    client = FakeAcmeClient(events, tokens={'example.com': 'TOKEN123'})
    publisher = FakePublisher(events)
    sink = FakeSink()
    machine = make_machine(client, publisher, sink, fast_policy, retry_policy)

    result = machine.run('admin@example.com', ['example.com'], 'example-com')

    assert result.ok
    assert result.state is OrderState.CERTIFICATE_READY
    assert result.thumbprint == "0123456789ABCDEF"
    assert publisher.published == [('/.well-known/acme-challenge/TOKEN123', 'TOKEN123.KEYAUTHZ')]
    assert publisher.live == {}
    assert publisher.removed == ['/.well-known/acme-challenge/TOKEN123']
    assert result.history == [
        OrderState.CREATED,
        OrderState.AUTHORIZATIONS_PENDING,
        OrderState.CHALLENGES_COMPLETED,
        OrderState.AWAITING_FINALIZATION,
        OrderState.FINALIZED,
        OrderState.CERTIFICATE_READY,
    ]
    keypair, chain, name = sink.imported[0]
    assert chain == FAKE_CHAIN
    assert name == 'example-com'
    assert keypair is client.keypair
    assert keypair.chain_pem == FAKE_CHAIN


def test_every_domain_published_before_any_signal(events, fast_policy, retry_policy):
    domains = ['a.example.com', 'b.example.com', 'c.example.com']
    client = FakeAcmeClient(events)
    publisher = FakePublisher(events)
    machine = make_machine(client, publisher, FakeSink(), fast_policy, retry_policy)

    result = machine.run(None, domains, 'multi')

    assert result.ok
    kinds = [kind for kind, _ in events if kind in ('publish', 'signal')]
    assert kinds == ['publish'] * 3 + ['signal'] * 3
    assert sorted(d for kind, d in events if kind == 'publish') == domains
    assert publisher.live == {}


def test_publication_failure_reports_only_failed_domain(events, fast_policy, retry_policy):
    client = FakeAcmeClient(events)
    publisher = FakePublisher(events, fail_domains={'b.com'})
    sink = FakeSink()
    machine = make_machine(client, publisher, sink, fast_policy, retry_policy)

    result = machine.run(None, ['a.com', 'b.com'], 'ab')

    assert result.state is OrderState.FAILED
    assert [e.domain for e in result.errors] == ['b.com']
    assert isinstance(result.errors[0], PublicationError)
    # a.com was published, never signaled, and cleaned up
    assert ('publish', 'a.com') in events
    assert not any(kind == 'signal' for kind, _ in events)
    assert publisher.removed == ['/.well-known/acme-challenge/TOKEN-a-com']
    assert publisher.live == {}
    assert sink.imported == []


def test_all_domain_errors_are_collected(events, fast_policy, retry_policy):
    client = FakeAcmeClient(events, unsupported={'a.com'})
    publisher = FakePublisher(events, fail_domains={'c.com'})
    machine = make_machine(client, publisher, FakeSink(), fast_policy, retry_policy)

    result = machine.run(None, ['a.com', 'b.com', 'c.com'], 'abc')

    assert result.state is OrderState.FAILED
    by_domain = {e.domain: type(e) for e in result.errors}
    assert by_domain == {'a.com': UnsupportedChallengeError, 'c.com': PublicationError}
    assert publisher.live == {}


def test_parallel_publication_still_aggregates(events, fast_policy, retry_policy):
    client = FakeAcmeClient(events)
    publisher = FakePublisher(events, fail_domains={'b.com', 'd.com'})
    machine = make_machine(client, publisher, FakeSink(), fast_policy, retry_policy, parallel=True)

    result = machine.run(None, ['a.com', 'b.com', 'c.com', 'd.com'], 'abcd')

    assert result.state is OrderState.FAILED
    assert sorted(e.domain for e in result.errors) == ['b.com', 'd.com']
    assert sorted(a.domain for a in result.artifacts) == ['a.com', 'c.com']
    assert publisher.live == {}


def test_order_stuck_processing_times_out(events, retry_policy):
    client = FakeAcmeClient(events, ready_after=None)
    publisher = FakePublisher(events)
    machine = make_machine(client, publisher, FakeSink(),
                           PollPolicy(interval=0, max_wait=30, max_attempts=3), retry_policy)

    result = machine.run(None, ['example.com'], 'stuck')

    assert result.state is OrderState.FAILED
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], PollTimeoutError)
    assert client.polls == 3
    assert publisher.live == {}
    assert len(publisher.removed) == 1


def test_issuance_that_never_completes_times_out(events, retry_policy):
    client = FakeAcmeClient(events, issue_after=None)
    publisher = FakePublisher(events)
    machine = make_machine(client, publisher, FakeSink(),
                           PollPolicy(interval=0, max_wait=30, max_attempts=2), retry_policy)

    result = machine.run(None, ['example.com'], 'slow')

    assert isinstance(result.errors[0], PollTimeoutError)
    assert result.history[-2] is OrderState.FINALIZED
    assert publisher.live == {}


def test_invalid_order_reports_each_authorization(events, fast_policy, retry_policy):
    client = FakeAcmeClient(events, invalid=True)
    publisher = FakePublisher(events)
    machine = make_machine(client, publisher, FakeSink(), fast_policy, retry_policy)

    result = machine.run(None, ['a.com', 'b.com'], 'ab')

    assert result.state is OrderState.FAILED
    assert all(isinstance(e, OrderInvalidError) for e in result.errors)
    assert sorted(e.domain for e in result.errors) == ['a.com', 'b.com']
    assert client.finalized is False
    assert publisher.live == {}


def test_transient_error_is_retried(events, fast_policy, retry_policy):
    client = FakeAcmeClient(events)
    real_create_order = client.create_order
    failures = []

    def flaky_create_order(account, domains):
        if not failures:
            failures.append(1)
            raise ServiceUnavailableError("503 from ACME server")
        return real_create_order(account, domains)

    client.create_order = flaky_create_order
    machine = make_machine(client, FakePublisher(events), FakeSink(), fast_policy, retry_policy)

    result = machine.run(None, ['example.com'], 'flaky')

    assert result.ok
    assert failures == [1]


def test_transient_error_gives_up_after_bounded_attempts(events, fast_policy, retry_policy):
    client = FakeAcmeClient(events)
    calls = []

    def down(account, domains):
        calls.append(1)
        raise ServiceUnavailableError("503 from ACME server")

    client.create_order = down
    machine = make_machine(client, FakePublisher(events), FakeSink(), fast_policy, retry_policy)

    result = machine.run(None, ['example.com'], 'down')

    assert isinstance(result.errors[0], ServiceUnavailableError)
    assert len(calls) == retry_policy.max_attempts


def test_permanent_error_is_not_retried(events, fast_policy, retry_policy):
    client = FakeAcmeClient(events)
    calls = []

    def rejected(account, domains):
        calls.append(1)
        raise OrderCreationError("rejectedIdentifier")

    client.create_order = rejected
    machine = make_machine(client, FakePublisher(events), FakeSink(), fast_policy, retry_policy)

    result = machine.run(None, ['example.com'], 'rejected')

    assert result.history == [OrderState.CREATED, OrderState.FAILED]
    assert calls == [1]


def test_cancel_during_poll_fails_and_cleans_up(events, retry_policy):
    cancel = threading.Event()
    client = FakeAcmeClient(events, ready_after=None, on_poll=lambda n: cancel.set())
    publisher = FakePublisher(events)
    machine = make_machine(client, publisher, FakeSink(),
                           PollPolicy(interval=0, max_wait=30, max_attempts=10), retry_policy,
                           cancel=cancel)

    result = machine.run(None, ['example.com'], 'cancelled')

    assert result.state is OrderState.FAILED
    assert isinstance(result.errors[0], RenewalCancelledError)
    assert client.polls == 1
    assert publisher.live == {}


def test_run_timeout_cancels_the_run(events):
    client = FakeAcmeClient(events, ready_after=None)
    publisher = FakePublisher(events)
    machine = OrderStateMachine(client, publisher, FakeSink(),
                                poll_policy=PollPolicy(interval=0.05, max_wait=30),
                                retry_policy=PollPolicy(interval=0, max_wait=1, max_attempts=1),
                                run_timeout=0.2)

    result = machine.run(None, ['example.com'], 'deadline')

    assert isinstance(result.errors[0], RenewalCancelledError)
    assert publisher.live == {}


def test_import_failure_fails_run(events, fast_policy, retry_policy):
    publisher = FakePublisher(events)
    machine = make_machine(FakeAcmeClient(events), publisher, FakeSink(fail=True), fast_policy, retry_policy)

    result = machine.run(None, ['example.com'], 'rejected-by-vault')

    assert result.state is OrderState.FAILED
    assert isinstance(result.errors[0], CertificateImportError)
    assert OrderState.CERTIFICATE_READY not in result.history
    assert publisher.live == {}


def test_wildcard_domain_rejected_before_contacting_server(events, fast_policy, retry_policy):
    machine = make_machine(FakeAcmeClient(events), FakePublisher(events), FakeSink(), fast_policy, retry_policy)

    result = machine.run(None, ['*.example.com'], 'wild')

    assert isinstance(result.errors[0], OrderCreationError)
    assert events == []


def test_machine_is_single_use(events, fast_policy, retry_policy):
    machine = make_machine(FakeAcmeClient(events), FakePublisher(events), FakeSink(), fast_policy, retry_policy)
    machine.run(None, ['example.com'], 'once')
    with pytest.raises(RuntimeError):
        machine.run(None, ['example.com'], 'twice')


def test_illegal_transition_is_rejected(events):
    machine = OrderStateMachine(FakeAcmeClient(events), FakePublisher(events), FakeSink())
    with pytest.raises(RuntimeError):
        machine._transition(OrderState.FINALIZED)


def test_unexpected_error_fails_run_and_cleans_up(events, fast_policy, retry_policy):
    client = FakeAcmeClient(events)

    def broken_poll(order):
        raise KeyError('status')

    client.poll_order = broken_poll
    publisher = FakePublisher(events)
    machine = make_machine(client, publisher, FakeSink(), fast_policy, retry_policy)

    result = machine.run(None, ['example.com'], 'broken')

    assert result.state is OrderState.FAILED
    assert len(result.errors) == 1
    assert type(result.errors[0]) is RenewalError
    assert 'KeyError' in str(result.errors[0])
    assert publisher.live == {}
