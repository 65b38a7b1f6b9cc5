import abc
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class AccountRef:
    """A cloud service account as the operator refers to it."""
    name: str
    email: str


@dataclass(frozen=True)
class KeyMaterial:
    """A freshly created key; private_key_data holds the raw key file bytes."""
    name: str
    private_key_data: bytes


@dataclass(frozen=True)
class KeyRecord:
    name: str
    created_at: Optional[datetime]


class IAMBackend(abc.ABC):
    """Abstract base class for a cloud identity backend."""

    @abc.abstractmethod
    def test_connection(self):
        """Verify the backend can be reached with the configured credentials."""
        pass

    @abc.abstractmethod
    def create_account(self, name):
        """Create a service account for a logical name and return its AccountRef."""
        pass

    @abc.abstractmethod
    def find_account(self, name):
        """Look up a pre-provisioned service account by logical name."""
        pass

    @abc.abstractmethod
    def create_key(self, full_name):
        """Create a new key for an owned service account."""
        pass

    @abc.abstractmethod
    def list_keys(self, full_name):
        """List the user managed keys of a service account."""
        pass

    @abc.abstractmethod
    def delete_key(self, key_name):
        """Delete a single key of an owned service account."""
        pass

    @abc.abstractmethod
    def purge_keys(self, full_name, purge_after_hours):
        """Delete keys older than the threshold, keeping the newest one."""
        pass

    @abc.abstractmethod
    def delete_account(self, full_name):
        """Delete an owned service account."""
        pass

    @abc.abstractmethod
    def set_permissions(self, full_name, email, permissions):
        """Check project role bindings against the requested permissions.

        Returns the permissions the account does not hold yet.
        """
        pass
