"""Process configuration, read once from the environment at startup."""

import enum
import os
from dataclasses import dataclass

from .errors import ConfigError

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class Mode(str, enum.Enum):
    """Controls what the operator is allowed to do in Google Cloud."""

    # create service accounts and rotate keys
    NORMAL = "normal"
    # create service accounts, set roles and rotate keys
    CONVENIENT = "convenient"
    # only look up pre-provisioned accounts and rotate their keys
    ROTATE_KEYS_ONLY = "rotate_keys_only"

    @property
    def creates_accounts(self):
        return self is not Mode.ROTATE_KEYS_ONLY

    @property
    def sets_permissions(self):
        return self is Mode.CONVENIENT


def parse_bool(value, default=False):
    """Parse a boolean the way annotations and env vars spell them."""
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in ("true", "t", "1", "yes", "y"):
        return True
    if normalized in ("false", "f", "0", "no", "n"):
        return False
    return default


@dataclass(frozen=True)
class Config:
    service_account_project_id: str
    mode: Mode = Mode.NORMAL
    local_project_id: str = ""
    service_account_prefix: str = ""
    key_rotation_after_hours: int = 168
    purge_keys_after_hours: int = 336
    allow_disable_key_rotation_override: bool = False
    watch_timeout_seconds: int = 300
    watch_retry_seconds: int = 30
    poll_interval_seconds: int = 900
    poll_initial_delay_seconds: int = 60
    metrics_port: int = 8000
    log_level: str = "INFO"
    backend_name: str = "google"

    @property
    def owner_id(self):
        """Identity embedded in display names of accounts this instance owns."""
        return self.local_project_id or self.service_account_project_id

    @classmethod
    def from_env(cls, environ=None):
        """Build a Config from environment variables.

        All problems are collected and raised together as a ConfigError.
        """
        env = os.environ if environ is None else environ
        problems = []

        project_id = env.get("SERVICE_ACCOUNT_PROJECT_ID", "").strip()
        if not project_id:
            problems.append("SERVICE_ACCOUNT_PROJECT_ID is required")

        mode_value = env.get("MODE", Mode.NORMAL.value).strip().lower()
        try:
            mode = Mode(mode_value)
        except ValueError:
            problems.append(
                f"MODE '{mode_value}' is not one of {', '.join(m.value for m in Mode)}")
            mode = Mode.NORMAL

        def positive_int(key, default):
            raw = env.get(key)
            if raw is None or raw.strip() == "":
                return default
            try:
                value = int(raw)
            except ValueError:
                problems.append(f"{key} must be an integer, got '{raw}'")
                return default
            if value <= 0:
                problems.append(f"{key} must be positive, got {value}")
                return default
            return value

        rotation_hours = positive_int("KEY_ROTATION_AFTER_HOURS", 168)
        purge_hours = positive_int("PURGE_KEYS_AFTER_HOURS", 336)
        if purge_hours <= rotation_hours:
            problems.append(
                "PURGE_KEYS_AFTER_HOURS must be larger than KEY_ROTATION_AFTER_HOURS")

        log_level = env.get("LOG_LEVEL", "INFO").upper()
        if log_level not in VALID_LOG_LEVELS:
            log_level = "INFO"

        config = cls(
            service_account_project_id=project_id,
            mode=mode,
            local_project_id=env.get("LOCAL_PROJECT_ID", "").strip(),
            service_account_prefix=env.get("SERVICE_ACCOUNT_PREFIX", "").strip(),
            key_rotation_after_hours=rotation_hours,
            purge_keys_after_hours=purge_hours,
            allow_disable_key_rotation_override=parse_bool(
                env.get("ALLOW_DISABLE_KEY_ROTATION_OVERRIDE"), False),
            watch_timeout_seconds=positive_int("WATCH_TIMEOUT_SECONDS", 300),
            watch_retry_seconds=positive_int("WATCH_RETRY_SECONDS", 30),
            poll_interval_seconds=positive_int("POLL_INTERVAL_SECONDS", 900),
            poll_initial_delay_seconds=positive_int("POLL_INITIAL_DELAY_SECONDS", 60),
            metrics_port=positive_int("METRICS_PORT", 8000),
            log_level=log_level,
            backend_name=env.get("BACKEND_NAME", "google").strip() or "google",
        )

        if problems:
            raise ConfigError(problems)
        return config
