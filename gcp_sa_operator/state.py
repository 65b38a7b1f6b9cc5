"""Desired and persisted state of a managed resource.

The desired state is read from user annotations on every pass. The persisted
state is the operator's own memory, stored as JSON in a single annotation.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import List

from .config import parse_bool
from .errors import StateError

logger = logging.getLogger("gcp-service-account-operator.state")

ANNOTATION_PREFIX = "gcp-service-account-operator.io"
ANNOTATION_ENABLED = f"{ANNOTATION_PREFIX}/enabled"
ANNOTATION_NAME = f"{ANNOTATION_PREFIX}/name"
ANNOTATION_FILENAME = f"{ANNOTATION_PREFIX}/filename"
ANNOTATION_DISABLE_KEY_ROTATION = f"{ANNOTATION_PREFIX}/disable-key-rotation"
ANNOTATION_PERMISSIONS = f"{ANNOTATION_PREFIX}/permissions"
ANNOTATION_STATE = f"{ANNOTATION_PREFIX}/state"

DEFAULT_KEY_FILENAME = "service-account-key.json"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True, order=True)
class Permission:
    project: str
    role: str


@dataclass
class DesiredState:
    enabled: bool = False
    name: str = ""
    filename: str = DEFAULT_KEY_FILENAME
    disable_key_rotation: bool = False
    permissions: List[Permission] = field(default_factory=list)


@dataclass
class PersistedState:
    enabled: bool = False
    name: str = ""
    filename: str = ""
    disable_key_rotation: bool = False
    full_service_account_name: str = ""
    full_service_account_email: str = ""
    permissions: List[Permission] = field(default_factory=list)
    last_renewed: str = ""
    last_attempt: str = ""
    purged_keys: int = 0


# dataclass field -> json key
_STATE_KEYS = {
    "enabled": "enabled",
    "name": "serviceAccountName",
    "filename": "filename",
    "disable_key_rotation": "disableKeyRotation",
    "full_service_account_name": "fullServiceAccountName",
    "full_service_account_email": "fullServiceAccountEmail",
    "permissions": "permissions",
    "last_renewed": "lastRenewed",
    "last_attempt": "lastAttempt",
    "purged_keys": "purgedKeys",
}


def format_time(moment):
    """Format an aware datetime as RFC3339 in UTC."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value):
    """Parse an RFC3339 timestamp; empty or invalid values return the epoch."""
    if not value:
        return EPOCH
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError, AttributeError):
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_permissions(value):
    """Parse a JSON permission list, returning None when it is malformed."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if not isinstance(value, list):
        return None
    permissions = []
    for item in value:
        if not isinstance(item, dict):
            return None
        project = item.get("project")
        role = item.get("role")
        if not isinstance(project, str) or not isinstance(role, str) or not project or not role:
            return None
        permissions.append(Permission(project=project, role=role))
    return permissions


def extract_desired_state(annotations):
    """Read the user's intent from annotations, falling back to defaults."""
    annotations = annotations or {}

    permissions = []
    if ANNOTATION_PERMISSIONS in annotations:
        permissions = parse_permissions(annotations[ANNOTATION_PERMISSIONS])
        if permissions is None:
            logger.warning(
                f"Ignoring malformed {ANNOTATION_PERMISSIONS} annotation value.")
            permissions = []

    return DesiredState(
        enabled=parse_bool(annotations.get(ANNOTATION_ENABLED), False),
        name=(annotations.get(ANNOTATION_NAME) or "").strip(),
        filename=(annotations.get(ANNOTATION_FILENAME) or "").strip() or DEFAULT_KEY_FILENAME,
        disable_key_rotation=parse_bool(
            annotations.get(ANNOTATION_DISABLE_KEY_ROTATION), False),
        permissions=permissions,
    )


def decode_state(annotations):
    """Return the persisted state, or the zero state if absent or corrupt."""
    raw = (annotations or {}).get(ANNOTATION_STATE)
    if not raw:
        return PersistedState()

    try:
        document = json.loads(raw)
    except ValueError:
        logger.warning("Persisted state is not valid JSON, starting from empty state.")
        return PersistedState()
    if not isinstance(document, dict):
        return PersistedState()

    values = {}
    for attribute, key in _STATE_KEYS.items():
        if key not in document or document[key] is None:
            continue
        value = document[key]
        if attribute in ("enabled", "disable_key_rotation"):
            if isinstance(value, bool):
                values[attribute] = value
            elif isinstance(value, str):
                values[attribute] = parse_bool(value, False)
            else:
                return PersistedState()
        elif attribute == "permissions":
            permissions = parse_permissions(value)
            if permissions is None:
                return PersistedState()
            values[attribute] = permissions
        elif attribute == "purged_keys":
            if isinstance(value, bool) or not isinstance(value, int):
                return PersistedState()
            values[attribute] = value
        else:
            if not isinstance(value, str):
                return PersistedState()
            values[attribute] = value

    return PersistedState(**values)


def encode_state(state):
    """Serialize the persisted state to canonical JSON."""
    try:
        document = {key: getattr(state, attribute) for attribute, key in _STATE_KEYS.items()}
        document["permissions"] = [asdict(p) for p in state.permissions]
        return json.dumps(document, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError, AttributeError) as e:
        raise StateError(f"Failed to serialize persisted state: {e}") from e
