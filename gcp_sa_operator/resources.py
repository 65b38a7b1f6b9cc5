"""Access to the Kubernetes resources the operator manages."""

import base64
import logging

from kubernetes import watch
from kubernetes.client.exceptions import ApiException

from .errors import StoreError
from .state import ANNOTATION_STATE, encode_state

logger = logging.getLogger("gcp-service-account-operator.resources")

ANNOTATION_WORKLOAD_IDENTITY = "iam.gke.io/gcp-service-account"


def annotations_of(resource):
    return (resource.metadata.annotations or {}) if resource.metadata else {}


def identity_of(resource):
    return f"{resource.metadata.namespace}/{resource.metadata.name}"


class SecretKind:
    """Secrets hold the service account key file and get it rotated."""

    name = "secret"
    supports_keys = True

    def list_all(self, v1_api):
        return v1_api.list_secret_for_all_namespaces().items

    def watch_func(self, v1_api):
        return v1_api.list_secret_for_all_namespaces

    def read(self, v1_api, namespace, name):
        return v1_api.read_namespaced_secret(name, namespace)

    def replace(self, v1_api, resource):
        return v1_api.replace_namespaced_secret(
            resource.metadata.name, resource.metadata.namespace, resource)

    def has_key_file(self, resource, filename):
        return bool((resource.data or {}).get(filename))

    def set_key_file(self, resource, filename, payload):
        """Store raw key bytes; the API object carries data base64 encoded."""
        if resource.data is None:
            resource.data = {}
        resource.data[filename] = base64.b64encode(payload).decode("ascii")

    def on_account_ready(self, resource, state):
        pass


class ServiceAccountKind:
    """ServiceAccounts are bound to the cloud account via workload identity."""

    name = "serviceaccount"
    supports_keys = False

    def list_all(self, v1_api):
        return v1_api.list_service_account_for_all_namespaces().items

    def watch_func(self, v1_api):
        return v1_api.list_service_account_for_all_namespaces

    def read(self, v1_api, namespace, name):
        return v1_api.read_namespaced_service_account(name, namespace)

    def replace(self, v1_api, resource):
        return v1_api.replace_namespaced_service_account(
            resource.metadata.name, resource.metadata.namespace, resource)

    def has_key_file(self, resource, filename):
        return False

    def on_account_ready(self, resource, state):
        if state.full_service_account_email:
            if resource.metadata.annotations is None:
                resource.metadata.annotations = {}
            resource.metadata.annotations[ANNOTATION_WORKLOAD_IDENTITY] = state.full_service_account_email


class ResourceStore:
    """Reads, updates, lists and watches resources of one kind."""

    def __init__(self, v1_api, kind):
        self.v1 = v1_api
        self.kind = kind

    def get(self, namespace, name):
        return self.kind.read(self.v1, namespace, name)

    def update(self, resource):
        return self.kind.replace(self.v1, resource)

    def list(self):
        return self.kind.list_all(self.v1)

    def watch(self, timeout_seconds):
        """Yield (event_type, resource) until the server closes the stream."""
        w = watch.Watch()
        try:
            for event in w.stream(self.kind.watch_func(self.v1), timeout_seconds=timeout_seconds):
                resource = event.get('object')
                if resource is None:
                    continue
                yield event.get('type', 'UNKNOWN'), resource
        finally:
            w.stop()


class ResourceGateway:
    """Persists state into a resource and re-reads it for a fresh version."""

    def __init__(self, store):
        self.store = store

    @property
    def kind(self):
        return self.store.kind

    def persist(self, resource, state):
        """
        Write the state annotation, update the resource and return it re-read.

        Other annotations and pending data changes on the in-memory object are
        sent along unchanged. Failures raise StoreError and are not retried.
        """
        if resource.metadata.annotations is None:
            resource.metadata.annotations = {}
        resource.metadata.annotations[ANNOTATION_STATE] = encode_state(state)

        try:
            self.store.update(resource)
        except ApiException as e:
            raise StoreError(
                f"Failed updating {self.kind.name} {identity_of(resource)}: {e.status} {e.reason}") from e

        try:
            return self.store.get(resource.metadata.namespace, resource.metadata.name)
        except ApiException as e:
            logger.warning(
                f"Updated {self.kind.name} {identity_of(resource)} but could not re-read it; "
                f"later updates in this pass may conflict.")
            raise StoreError(
                f"Failed refreshing {self.kind.name} {identity_of(resource)}: {e.status} {e.reason}") from e
