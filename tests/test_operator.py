"""Tests for the Operator watch and poll loops."""

import dataclasses
import threading
from unittest.mock import MagicMock

import pytest

from conftest import enabled_annotations, make_secret
from gcp_sa_operator import metrics
from gcp_sa_operator.operator import Operator, is_annotated
from gcp_sa_operator.reconciler import DELETED, FAILED, SUCCEEDED


@pytest.fixture
def reconciler():
    reconciler = MagicMock()
    reconciler.reconcile.return_value = SUCCEEDED
    reconciler.delete.return_value = DELETED
    return reconciler


@pytest.fixture
def operator(reconciler, secret_gateway, config):
    config = dataclasses.replace(config, watch_retry_seconds=0, poll_initial_delay_seconds=0)
    return Operator(reconciler, [secret_gateway], config)


def pass_count(status, initiator, namespace="default"):
    return metrics.SERVICE_ACCOUNT_TOTALS.labels(
        namespace=namespace, status=status, initiator=initiator, type="secret", mode="normal")._value.get()


@pytest.mark.parametrize("annotations, expected", [
    (None, False),
    ({}, False),
    ({"other.io/enabled": "true"}, False),
    ({"gcp-service-account-operator.io/enabled": "false"}, True),
    ({"gcp-service-account-operator.io/state": "{}"}, True),
])
def test_is_annotated(annotations, expected):
    assert is_annotated(make_secret(annotations=annotations)) is expected


def test_handle_resource_records_pass(operator, reconciler, secret_gateway):
    secret = make_secret(annotations=enabled_annotations())
    initial = pass_count(SUCCEEDED, "watcher")

    assert operator.handle_resource(secret_gateway, secret, "watcher") == SUCCEEDED

    reconciler.reconcile.assert_called_once_with(secret, secret_gateway, "watcher")
    assert pass_count(SUCCEEDED, "watcher") == initial + 1


def test_handle_resource_never_raises(operator, reconciler, secret_gateway):
    reconciler.reconcile.side_effect = RuntimeError("boom")
    initial_errors = metrics.ERRORS_TOTAL._value.get()

    status = operator.handle_resource(secret_gateway, make_secret(annotations=enabled_annotations()), "poller")

    assert status == FAILED
    assert metrics.ERRORS_TOTAL._value.get() == initial_errors + 1
    assert operator.wait_until_idle(timeout=0)


def test_handle_deleted_never_raises(operator, reconciler, secret_gateway):
    reconciler.delete.side_effect = RuntimeError("boom")

    assert operator.handle_deleted(secret_gateway, make_secret(), "watcher") == FAILED


def test_sync_reconciles_annotated_resources_only(operator, reconciler, secret_gateway, secret_store):
    secret_store.add(make_secret("annotated", annotations=enabled_annotations()))
    secret_store.add(make_secret("plain", annotations={"team": "payments"}))
    secret_store.add(make_secret("bare"))

    operator.sync(secret_gateway)

    reconciler.reconcile.assert_called_once()
    resource, gateway, initiator = reconciler.reconcile.call_args.args
    assert resource.metadata.name == "annotated"
    assert gateway is secret_gateway
    assert initiator == "poller"


def test_sync_stops_on_shutdown(operator, reconciler, secret_gateway, secret_store):
    secret_store.add(make_secret("a", annotations=enabled_annotations()))
    secret_store.add(make_secret("b", annotations=enabled_annotations()))
    reconciler.reconcile.side_effect = lambda *args: operator.shutdown() or SUCCEEDED

    operator.sync(secret_gateway)

    assert reconciler.reconcile.call_count == 1


def test_sync_survives_list_failure(operator, reconciler):
    gateway = MagicMock()
    gateway.kind.name = "secret"
    gateway.store.list.side_effect = RuntimeError("apiserver unavailable")
    initial_errors = metrics.ERRORS_TOTAL._value.get()

    operator.sync(gateway)

    reconciler.reconcile.assert_not_called()
    assert metrics.ERRORS_TOTAL._value.get() == initial_errors + 1


def test_poll_syncs_until_shutdown(operator, secret_gateway):
    operator.sync = MagicMock(side_effect=lambda gateway: operator.shutdown())

    operator.poll(secret_gateway)

    operator.sync.assert_called_once_with(secret_gateway)


def test_watch_dispatches_events(operator, reconciler):
    added = make_secret("added", annotations=enabled_annotations())
    deleted = make_secret("deleted", annotations=enabled_annotations())
    ignored = make_secret("ignored", annotations={})

    def events(timeout_seconds):
        yield 'ADDED', added
        yield 'MODIFIED', ignored
        yield 'DELETED', deleted
        operator.shutdown()

    gateway = MagicMock()
    gateway.kind.name = "secret"
    gateway.store.watch.side_effect = events

    operator.watch(gateway)

    gateway.store.watch.assert_called_once_with(300)
    reconciler.reconcile.assert_called_once_with(added, gateway, "watcher")
    reconciler.delete.assert_called_once_with(deleted, gateway.kind, "watcher")


def test_watch_reconnects_after_failure(operator, reconciler):
    modified = make_secret("modified", annotations=enabled_annotations())

    def failing(timeout_seconds):
        raise RuntimeError("connection reset")
        yield

    def recovered(timeout_seconds):
        yield 'MODIFIED', modified
        operator.shutdown()

    gateway = MagicMock()
    gateway.kind.name = "secret"
    gateway.store.watch.side_effect = [failing(300), recovered(300)]
    initial_errors = metrics.ERRORS_TOTAL._value.get()

    operator.watch(gateway)

    assert gateway.store.watch.call_count == 2
    reconciler.reconcile.assert_called_once_with(modified, gateway, "watcher")
    assert metrics.ERRORS_TOTAL._value.get() == initial_errors + 1


def test_run_skipped_in_test_mode(operator, monkeypatch):
    monkeypatch.setenv("TEST_MODE", "true")
    operator.watch = MagicMock()

    operator.run()

    operator.watch.assert_not_called()


def test_run_starts_loops_per_gateway_and_returns_on_shutdown(operator, secret_gateway, monkeypatch):
    monkeypatch.delenv("TEST_MODE", raising=False)
    watched, polled = threading.Event(), threading.Event()
    operator.watch = MagicMock(side_effect=lambda gateway: watched.set())
    operator.poll = MagicMock(side_effect=lambda gateway: polled.set())
    operator.shutdown()

    operator.run(drain_timeout=1)

    assert watched.wait(timeout=2) and polled.wait(timeout=2)
    operator.watch.assert_called_once_with(secret_gateway)
    operator.poll.assert_called_once_with(secret_gateway)
