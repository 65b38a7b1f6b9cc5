import logging
import random
import re
import string
from datetime import datetime, timedelta, timezone

from google.api_core import exceptions
from google.cloud import iam_admin_v1
from google.cloud.iam_admin_v1 import types

from .backend import AccountRef, IAMBackend, KeyMaterial, KeyRecord
from ..errors import AccountNotFoundError, BackendError, PolicyViolationError, ValidationError
from ..state import Permission

logger = logging.getLogger("gcp-service-account-operator.google")

MIN_NAME_LENGTH = 3
MAX_NAME_LENGTH = 69
ACCOUNT_ID_MAX_LENGTH = 30
DISPLAY_NAME_MAX_LENGTH = 100
RANDOM_SUFFIX_LENGTH = 4
MAX_CREATE_ATTEMPTS = 10

FULL_NAME_PATTERN = re.compile(
    r"^projects/(?P<project>[a-z0-9.:-]+)/serviceAccounts/"
    r"(?P<local>[a-z0-9-]+)@(?P<email_project>[a-z0-9.:-]+)\.iam\.gserviceaccount\.com$"
)

_API_ERRORS = (exceptions.GoogleAPICallError, exceptions.RetryError)


def random_suffix(length=RANDOM_SUFFIX_LENGTH):
    return "".join(random.choice(string.ascii_lowercase) for _ in range(length))


class GoogleCloudIAM(IAMBackend):
    """Backend implementation for Google Cloud IAM."""

    def __init__(self, config, iam_client=None, projects_client=None):
        self.project_id = config.service_account_project_id
        self.owner_id = config.owner_id
        self.prefix = config.service_account_prefix
        self.client = iam_client or iam_admin_v1.IAMClient()
        self._projects_client = projects_client
        logger.info(f"Initialized Google Cloud IAM backend for project '{self.project_id}'.")

    @property
    def projects_client(self):
        if self._projects_client is None:
            from google.cloud import resourcemanager_v3
            self._projects_client = resourcemanager_v3.ProjectsClient()
        return self._projects_client

    def test_connection(self):
        logger.info(f"Testing connection to Google Cloud IAM for project '{self.project_id}'.")
        try:
            request = types.ListServiceAccountsRequest(
                name=f"projects/{self.project_id}", page_size=1)
            next(iter(self.client.list_service_accounts(request=request)), None)
        except _API_ERRORS as e:
            raise BackendError(f"Backend connection test failed: {e}", cause=e) from e
        logger.info("Backend connection test succeeded.")

    def get_account_id_and_display_name(self, name, suffix=None):
        """
        Derive the account id and display name for a logical name.

        The account id is the (shortened) name with a random suffix, at most 30
        characters. The display name is '<owner id>/<name>', which is how
        accounts are found again and recognized as owned by this instance.
        """
        if len(name) < MIN_NAME_LENGTH:
            raise ValidationError(
                f"Service account name '{name}' is too short; set a name of at least "
                f"{MIN_NAME_LENGTH} characters")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(
                f"Service account name '{name}' is too long; use at most "
                f"{MAX_NAME_LENGTH} characters")

        display_name = f"{self.owner_id}/{name}"
        if len(display_name) > DISPLAY_NAME_MAX_LENGTH:
            raise ValidationError(
                f"Display name '{display_name}' exceeds {DISPLAY_NAME_MAX_LENGTH} characters")

        suffix = suffix or random_suffix()
        prefix = f"{self.prefix}-" if self.prefix else ""
        max_section_length = ACCOUNT_ID_MAX_LENGTH - len(suffix) - 1 - len(prefix)
        shortened = re.sub(r"[^a-z0-9-]", "-", name.lower())[:max(max_section_length, 0)].rstrip("-")
        if not shortened:
            raise ValidationError(
                f"Service account name '{name}' leaves no room for an account id")

        return f"{prefix}{shortened}-{suffix}", display_name

    def _full_name_for(self, account_id):
        email = f"{account_id}@{self.project_id}.iam.gserviceaccount.com"
        return f"projects/{self.project_id}/serviceAccounts/{email}"

    def _get_account(self, full_name):
        request = types.GetServiceAccountRequest(name=full_name)
        try:
            return self.client.get_service_account(request=request)
        except exceptions.NotFound as e:
            raise AccountNotFoundError(f"Service account {full_name} not found", cause=e) from e
        except _API_ERRORS as e:
            raise BackendError(f"Failed retrieving service account {full_name}: {e}", cause=e) from e

    def _account_exists(self, full_name):
        try:
            self._get_account(full_name)
        except AccountNotFoundError:
            return False
        return True

    def create_account(self, name):
        account_id, display_name = self.get_account_id_and_display_name(name)

        attempts = 1
        while self._account_exists(self._full_name_for(account_id)):
            if attempts >= MAX_CREATE_ATTEMPTS:
                raise BackendError(
                    f"Could not find a free account id for '{name}' after {attempts} attempts")
            logger.info(f"Account id '{account_id}' is already taken, generating another one.")
            account_id, display_name = self.get_account_id_and_display_name(name)
            attempts += 1

        request = types.CreateServiceAccountRequest(
            name=f"projects/{self.project_id}",
            account_id=account_id,
            service_account=types.ServiceAccount(display_name=display_name),
        )
        try:
            account = self.client.create_service_account(request=request)
        except _API_ERRORS as e:
            raise BackendError(f"Failed creating service account '{account_id}': {e}", cause=e) from e

        logger.info(f"Created service account {account.name}.")
        return AccountRef(name=account.name, email=account.email)

    def find_account(self, name):
        display_name = f"{self.owner_id}/{name}"
        request = types.ListServiceAccountsRequest(name=f"projects/{self.project_id}")
        try:
            matches = [
                account for account in self.client.list_service_accounts(request=request)
                if account.display_name == display_name
            ]
        except _API_ERRORS as e:
            raise BackendError(f"Failed listing service accounts: {e}", cause=e) from e

        if not matches:
            raise AccountNotFoundError(
                f"No service account with display name '{display_name}' exists in project "
                f"'{self.project_id}'")

        # unique ids are issued in increasing order, the highest is the most recent
        account = max(matches, key=lambda a: int(a.unique_id or 0))
        if len(matches) > 1:
            logger.warning(
                f"Found {len(matches)} service accounts with display name '{display_name}', "
                f"using most recent {account.name}.")
        return AccountRef(name=account.name, email=account.email)

    def validate_full_service_account_name(self, full_name):
        match = FULL_NAME_PATTERN.match(full_name or "")
        if not match:
            return False
        return match.group("project") == self.project_id and match.group("email_project") == self.project_id

    def validate_display_name(self, display_name):
        match = re.match(r"^(?P<owner>[^/]+)/(?P<name>.+)$", display_name or "")
        return bool(match) and match.group("owner") == self.owner_id

    def _ensure_owned(self, full_name):
        if not self.validate_full_service_account_name(full_name):
            raise PolicyViolationError(
                f"Service account {full_name} is not in governed project '{self.project_id}'")

        if self.prefix:
            local = FULL_NAME_PATTERN.match(full_name).group("local")
            if not local.startswith(f"{self.prefix}-"):
                raise PolicyViolationError(
                    f"Service account {full_name} does not carry prefix '{self.prefix}'")
            return

        account = self._get_account(full_name)
        if not self.validate_display_name(account.display_name):
            raise PolicyViolationError(
                f"Service account {full_name} with display name '{account.display_name}' "
                f"is not owned by '{self.owner_id}'")

    def create_key(self, full_name):
        self._ensure_owned(full_name)
        request = types.CreateServiceAccountKeyRequest(
            name=full_name,
            private_key_type=types.ServiceAccountPrivateKeyType.TYPE_GOOGLE_CREDENTIALS_FILE,
        )
        try:
            key = self.client.create_service_account_key(request=request)
        except _API_ERRORS as e:
            raise BackendError(f"Failed creating key for {full_name}: {e}", cause=e) from e

        logger.info(f"Created key {key.name}.")
        return KeyMaterial(name=key.name, private_key_data=key.private_key_data)

    def list_keys(self, full_name):
        request = types.ListServiceAccountKeysRequest(
            name=full_name,
            key_types=[types.ListServiceAccountKeysRequest.KeyType.USER_MANAGED],
        )
        try:
            response = self.client.list_service_account_keys(request=request)
        except _API_ERRORS as e:
            raise BackendError(f"Failed listing keys for {full_name}: {e}", cause=e) from e
        return [KeyRecord(name=key.name, created_at=key.valid_after_time or None) for key in response.keys]

    def delete_key(self, key_name):
        full_name = key_name.split("/keys/")[0]
        try:
            self._ensure_owned(full_name)
        except AccountNotFoundError:
            logger.warning(f"Service account {full_name} not found, key {key_name} is gone with it.")
            return False
        return self._delete_key(key_name)

    def _delete_key(self, key_name):
        request = types.DeleteServiceAccountKeyRequest(name=key_name)
        try:
            self.client.delete_service_account_key(request=request)
        except exceptions.NotFound:
            logger.warning(f"Key {key_name} not found, it may have been deleted already.")
            return False
        except _API_ERRORS as e:
            raise BackendError(f"Failed deleting key {key_name}: {e}", cause=e) from e
        logger.info(f"Deleted key {key_name}.")
        return True

    def purge_keys(self, full_name, purge_after_hours):
        self._ensure_owned(full_name)

        keys = [key for key in self.list_keys(full_name) if key.created_at is not None]
        if not keys:
            return 0

        # newest first; the newest key is never purged
        keys.sort(key=lambda k: k.created_at, reverse=True)
        threshold = datetime.now(timezone.utc) - timedelta(hours=purge_after_hours)

        deleted = 0
        for key in keys[1:]:
            if key.created_at < threshold:
                logger.info(
                    f"Deleting key {key.name} created at {key.created_at.isoformat()} because it "
                    f"is more than {purge_after_hours} hours old.")
                if self._delete_key(key.name):
                    deleted += 1
        return deleted

    def delete_account(self, full_name):
        try:
            self._ensure_owned(full_name)
        except AccountNotFoundError:
            logger.warning(f"Service account {full_name} not found, it may have been deleted already.")
            return False
        request = types.DeleteServiceAccountRequest(name=full_name)
        try:
            self.client.delete_service_account(request=request)
        except exceptions.NotFound:
            logger.warning(f"Service account {full_name} not found, it may have been deleted already.")
            return False
        except _API_ERRORS as e:
            raise BackendError(f"Failed deleting service account {full_name}: {e}", cause=e) from e
        logger.info(f"Deleted service account {full_name}.")
        return True

    def set_permissions(self, full_name, email, permissions):
        email = email or full_name.rsplit("/", 1)[-1]
        member = f"serviceAccount:{email}"
        missing = []

        for project in sorted({p.project for p in permissions}):
            try:
                policy = self.projects_client.get_iam_policy(resource=f"projects/{project}")
            except _API_ERRORS as e:
                raise BackendError(f"Failed reading IAM policy of project '{project}': {e}", cause=e) from e

            bound_roles = {binding.role for binding in policy.bindings if member in binding.members}
            wanted_roles = {p.role for p in permissions if p.project == project}
            for role in sorted(wanted_roles - bound_roles):
                # TODO: write the binding with set_iam_policy once etag conflicts are handled
                logger.info(f"Member {member} lacks role '{role}' in project '{project}'; not applied.")
                missing.append(Permission(project=project, role=role))
        return missing
