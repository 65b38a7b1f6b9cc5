"""Reconciliation of one managed resource against Google Cloud IAM.

Every pass re-reads desired and persisted state from the resource and walks
four sub-actions in a fixed order: adopt-or-create the account, set its
permissions, rotate its key and purge old keys. Each sub-action is guarded on
its own, persists its own progress and never stops the next one from running.

Mutating sub-actions take a lease first: the lastAttempt timestamp is written
to the resource before the IAM call is made. A second pass, from the watcher or
the poller, sees the fresh timestamp and leaves the resource alone for
LEASE_DURATION.
"""

import logging
from datetime import datetime, timedelta, timezone

from . import metrics
from .errors import AccountNotFoundError, OperatorError
from .resources import annotations_of, identity_of
from .state import decode_state, extract_desired_state, format_time, parse_time

logger = logging.getLogger("gcp-service-account-operator")

LEASE_DURATION = timedelta(minutes=15)
MIN_AGE_BEFORE_PURGE = timedelta(hours=2)

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"
DELETED = "deleted"


class _Pass:
    """Mutable working set of a single reconciliation pass."""

    def __init__(self, resource, gateway, initiator, desired, current):
        self.resource = resource
        self.gateway = gateway
        self.initiator = initiator
        self.desired = desired
        self.current = current
        self.new_account = False
        self.statuses = []

    @property
    def kind(self):
        return self.gateway.kind

    @property
    def namespace(self):
        return self.resource.metadata.namespace

    def persist(self):
        self.resource = self.gateway.persist(self.resource, self.current)

    def describe(self):
        return f"[{self.initiator}] {self.kind.name.capitalize()} {identity_of(self.resource)}"


class Reconciler:
    """Drives annotated resources toward their desired service account state."""

    def __init__(self, config, backend, now=None, on_action=None):
        self.config = config
        self.backend = backend
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._on_action = on_action or metrics.record_action

    def _record(self, run, action, status):
        run.statuses.append(status)
        self._on_action(action, status, run.namespace, run.initiator, run.kind.name, self.config.mode.value)

    def _lease_free(self, current):
        return self._now() - parse_time(current.last_attempt) > LEASE_DURATION

    def _take_lease(self, run):
        run.current.last_attempt = format_time(self._now())
        run.persist()

    def _rotation_disabled(self, run):
        return (
            run.kind.has_key_file(run.resource, run.desired.filename)
            and self.config.allow_disable_key_rotation_override
            and run.desired.disable_key_rotation
        )

    def reconcile(self, resource, gateway, initiator):
        """Run all sub-actions for a resource and return the pass status."""
        annotations = annotations_of(resource)
        run = _Pass(
            resource, gateway, initiator,
            desired=extract_desired_state(annotations),
            current=decode_state(annotations),
        )

        self.adopt_or_create(run)
        if self.config.mode.sets_permissions:
            self.set_permissions(run)
        if run.kind.supports_keys:
            self.rotate_keys(run)
            self.purge_keys(run)

        if FAILED in run.statuses:
            return FAILED
        if SUCCEEDED in run.statuses:
            return SUCCEEDED
        return SKIPPED

    def adopt_or_create(self, run):
        """Create the service account, or adopt an existing one, for a resource that has none yet."""
        desired, current = run.desired, run.current
        if not (desired.enabled and desired.name and self._lease_free(current)
                and not current.full_service_account_name):
            return

        creating = self.config.mode.creates_accounts
        action = "create" if creating else "retrieve"
        logger.info(
            f"{run.describe()} - Service account {desired.name} is not known yet, "
            f"{'creating' if creating else 'retrieving'} it now...")

        try:
            self._take_lease(run)
            if creating:
                account = self.backend.create_account(desired.name)
            else:
                account = self.backend.find_account(desired.name)

            current.enabled = desired.enabled
            current.name = desired.name
            current.full_service_account_name = account.name
            current.full_service_account_email = account.email
            run.kind.on_account_ready(run.resource, current)
            run.persist()
        except AccountNotFoundError as e:
            logger.error(
                f"{run.describe()} - {e}; pre-provision the service account with display name "
                f"'{self.config.owner_id}/{desired.name}' first.")
            self._record(run, action, FAILED)
            return
        except OperatorError as e:
            logger.error(f"{run.describe()} - Failed to {action} service account {desired.name}: {e}")
            self._record(run, action, FAILED)
            return

        run.new_account = True
        self._record(run, action, SUCCEEDED)
        logger.info(f"{run.describe()} - Service account {current.full_service_account_name} is ready.")

    def set_permissions(self, run):
        """Check the account's project roles when the requested permissions changed."""
        desired, current = run.desired, run.current
        if not (desired.enabled and desired.name
                and (run.new_account or self._lease_free(current))
                and current.full_service_account_name
                and set(desired.permissions) != set(current.permissions)):
            return

        logger.info(f"{run.describe()} - Permissions changed, checking service account roles...")
        try:
            missing = self.backend.set_permissions(
                current.full_service_account_name, current.full_service_account_email, desired.permissions)
            if missing:
                logger.info(
                    f"{run.describe()} - {len(missing)} roles are only checked, not granted; "
                    f"grant them outside the operator.")
                self._record(run, "permissions", SKIPPED)
                return
            current.permissions = list(desired.permissions)
            run.persist()
        except OperatorError as e:
            logger.warning(f"{run.describe()} - Checking permissions failed: {e}")
            self._record(run, "permissions", FAILED)
            return

        self._record(run, "permissions", SUCCEEDED)

    def rotate_keys(self, run):
        """Create a new key and store it in the resource once the rotation interval has passed."""
        desired, current = run.desired, run.current
        if not (desired.enabled and desired.name
                and (run.new_account or self._lease_free(current))
                and current.full_service_account_name):
            return
        if self._rotation_disabled(run):
            logger.debug(f"{run.describe()} - Key rotation is disabled for this resource.")
            return
        rotation_interval = timedelta(hours=self.config.key_rotation_after_hours)
        if self._now() - parse_time(current.last_renewed) <= rotation_interval:
            return

        logger.info(f"{run.describe()} - Key of {current.full_service_account_name} is up for rotation...")
        try:
            if not run.new_account:
                self._take_lease(run)
            key = self.backend.create_key(current.full_service_account_name)

            current.last_renewed = format_time(self._now())
            current.filename = desired.filename
            current.disable_key_rotation = desired.disable_key_rotation
            run.kind.set_key_file(run.resource, desired.filename, key.private_key_data)
            run.persist()
        except OperatorError as e:
            logger.error(f"{run.describe()} - Key rotation failed: {e}")
            self._record(run, "rotate", FAILED)
            return

        self._record(run, "rotate", SUCCEEDED)
        logger.info(f"{run.describe()} - Key has been stored in '{desired.filename}'.")

    def purge_keys(self, run):
        """Delete keys older than the purge threshold, keeping the newest one."""
        desired, current = run.desired, run.current
        if not (desired.enabled and desired.name
                and self._lease_free(current) and current.enabled and current.last_renewed
                and self._now() - parse_time(current.last_renewed) > MIN_AGE_BEFORE_PURGE
                and current.full_service_account_name):
            return
        if self._rotation_disabled(run):
            return

        logger.info(f"{run.describe()} - Purging keys older than {self.config.purge_keys_after_hours} hours...")
        try:
            self._take_lease(run)
            deleted = self.backend.purge_keys(
                current.full_service_account_name, self.config.purge_keys_after_hours)
            current.purged_keys = deleted
            run.persist()
        except OperatorError as e:
            logger.error(f"{run.describe()} - Purging keys failed: {e}")
            self._record(run, "purge", FAILED)
            return

        metrics.KEYS_PURGED.inc(deleted)
        self._record(run, "purge", SUCCEEDED)
        logger.info(f"{run.describe()} - Purged {deleted} keys.")

    def delete(self, resource, kind, initiator):
        """Delete the cloud account of a resource that no longer exists."""
        current = decode_state(annotations_of(resource))
        prefix = f"[{initiator}] {kind.name.capitalize()} {identity_of(resource)}"
        namespace = resource.metadata.namespace

        if not current.full_service_account_name:
            return SKIPPED
        if not self.config.mode.creates_accounts:
            logger.info(
                f"{prefix} - Leaving pre-provisioned service account "
                f"{current.full_service_account_name} in place.")
            return SKIPPED

        logger.info(f"{prefix} - Deleting service account because the resource has been deleted...")
        try:
            deleted = self.backend.delete_account(current.full_service_account_name)
        except OperatorError as e:
            logger.error(f"{prefix} - Failed deleting service account {current.full_service_account_name}: {e}")
            self._on_action("delete", FAILED, namespace, initiator, kind.name, self.config.mode.value)
            return FAILED

        if not deleted:
            logger.info(f"{prefix} - Service account {current.full_service_account_name} was already gone.")
            self._on_action("delete", SKIPPED, namespace, initiator, kind.name, self.config.mode.value)
            return SKIPPED

        self._on_action("delete", SUCCEEDED, namespace, initiator, kind.name, self.config.mode.value)
        logger.info(f"{prefix} - Deleted service account {current.full_service_account_name}.")
        return DELETED
