"""GCP Service Account Operator - watch and poll loops."""

import logging
import os
import threading
from contextlib import contextmanager

from . import metrics
from .reconciler import FAILED
from .resources import annotations_of, identity_of
from .state import ANNOTATION_PREFIX
from .utils import apply_jitter

logger = logging.getLogger("gcp-service-account-operator")


def is_annotated(resource):
    """Only resources carrying one of the operator's annotations are handled."""
    return any(key.startswith(f"{ANNOTATION_PREFIX}/") for key in annotations_of(resource))


class Operator:
    """Main operator that watches and polls resources and reconciles them."""

    def __init__(self, reconciler, gateways, config):
        self.reconciler = reconciler
        self.gateways = list(gateways)
        self.config = config
        self._shutdown = threading.Event()
        self._idle = threading.Condition()
        self._inflight = 0

    def shutdown(self):
        """Signal the operator to shutdown gracefully."""
        logger.info("Shutdown signal received. Stopping operator...")
        self._shutdown.set()

    def run(self, drain_timeout=300):
        """Start a watch and a poll loop per resource kind and block until shutdown."""
        if os.environ.get("TEST_MODE") == "true":
            logger.info("TEST_MODE is enabled. Skipping operator run.")
            return

        for gateway in self.gateways:
            for target, name in ((self.watch, "watch"), (self.poll, "poll")):
                thread = threading.Thread(
                    target=target, args=(gateway,), name=f"{name}-{gateway.kind.name}", daemon=True)
                thread.start()

        self._shutdown.wait()
        logger.info("Waiting for running reconciliations to finish...")
        if not self.wait_until_idle(drain_timeout):
            logger.warning(f"Reconciliations still running after {drain_timeout} seconds, exiting anyway.")

    @contextmanager
    def _tracked(self):
        with self._idle:
            self._inflight += 1
        try:
            yield
        finally:
            with self._idle:
                self._inflight -= 1
                self._idle.notify_all()

    def wait_until_idle(self, timeout=None):
        with self._idle:
            return self._idle.wait_for(lambda: self._inflight == 0, timeout=timeout)

    def handle_resource(self, gateway, resource, initiator):
        """Reconcile a single resource; never raises."""
        kind = gateway.kind.name
        with self._tracked(), metrics.RECONCILE_DURATION.labels(type=kind).time():
            try:
                status = self.reconciler.reconcile(resource, gateway, initiator)
            except Exception as e:
                logger.error(f"[{initiator}] Error handling {kind} {identity_of(resource)}: {e}", exc_info=True)
                status = FAILED
        if status == FAILED:
            metrics.ERRORS_TOTAL.inc()
        metrics.record_pass(status, resource.metadata.namespace, initiator, kind, self.config.mode.value)
        return status

    def handle_deleted(self, gateway, resource, initiator):
        """Clean up after a deleted resource; never raises."""
        kind = gateway.kind
        with self._tracked():
            try:
                status = self.reconciler.delete(resource, kind, initiator)
            except Exception as e:
                logger.error(f"[{initiator}] Error deleting {kind.name} {identity_of(resource)}: {e}", exc_info=True)
                status = FAILED
        if status == FAILED:
            metrics.ERRORS_TOTAL.inc()
        metrics.record_pass(status, resource.metadata.namespace, initiator, kind.name, self.config.mode.value)
        return status

    def sync(self, gateway):
        """List all resources of a kind and reconcile each of them in turn."""
        kind = gateway.kind.name
        logger.info(f"Listing {kind}s for all namespaces...")
        try:
            resources = gateway.store.list()
        except Exception as e:
            metrics.ERRORS_TOTAL.inc()
            logger.error(f"Failed listing {kind}s: {e}")
            return

        annotated = [r for r in resources if is_annotated(r)]
        logger.info(f"Cluster has {len(resources)} {kind}s, {len(annotated)} annotated.")
        for resource in annotated:
            if self._shutdown.is_set():
                logger.info("Shutdown requested during sync. Stopping...")
                break
            self.handle_resource(gateway, resource, "poller")

    def poll(self, gateway):
        """Reconcile everything periodically as a backstop for missed watch events."""
        self._shutdown.wait(apply_jitter(self.config.poll_initial_delay_seconds))
        while not self._shutdown.is_set():
            self.sync(gateway)
            sleep_time = apply_jitter(self.config.poll_interval_seconds)
            logger.info(f"Sleeping for {sleep_time} seconds before polling {gateway.kind.name}s again...")
            self._shutdown.wait(sleep_time)
        logger.info(f"Poll loop for {gateway.kind.name}s stopped.")

    def watch(self, gateway):
        """Watch for changes and deletions and handle them."""
        kind = gateway.kind.name
        while not self._shutdown.is_set():
            logger.info(f"Watching {kind}s for all namespaces...")
            try:
                for event_type, resource in gateway.store.watch(self.config.watch_timeout_seconds):
                    if self._shutdown.is_set():
                        logger.info("Shutdown requested during watch loop. Exiting...")
                        break
                    if not is_annotated(resource):
                        continue

                    logger.info(f"Handling '{event_type}' event for {kind} {identity_of(resource)}")
                    if event_type in ('ADDED', 'MODIFIED'):
                        self.handle_resource(gateway, resource, "watcher")
                    elif event_type == 'DELETED':
                        self.handle_deleted(gateway, resource, "watcher")
            except Exception as e:
                if self._shutdown.is_set():
                    break
                metrics.ERRORS_TOTAL.inc()
                logger.warning(f"Watch stream for {kind}s interrupted, will reconnect: {e}")

            if self._shutdown.is_set():
                break
            sleep_time = apply_jitter(self.config.watch_retry_seconds)
            logger.info(f"Sleeping for {sleep_time} seconds before watching {kind}s again...")
            self._shutdown.wait(sleep_time)
        logger.info(f"Watch loop for {kind}s stopped.")
