"""Exception types raised by the operator."""


class OperatorError(Exception):
    """Base class for all errors the operator handles itself."""


class ConfigError(OperatorError):
    """Raised when the process configuration is missing or invalid."""

    def __init__(self, problems):
        self.problems = list(problems)
        super().__init__(f"Invalid configuration: {'; '.join(self.problems)}")


class StateError(OperatorError):
    """Raised when the persisted state cannot be serialized."""


class StoreError(OperatorError):
    """Raised when updating or re-reading a Kubernetes resource fails."""


class ValidationError(OperatorError):
    """Raised when a service account name is rejected before any API call."""


class PolicyViolationError(OperatorError):
    """Raised when an account is not owned by this operator instance.

    Retrying never helps, the identity will not change between passes.
    """


class BackendError(OperatorError):
    """Raised when a call to the IAM backend fails."""

    def __init__(self, message, cause=None):
        super().__init__(message)
        self.cause = cause


class AccountNotFoundError(BackendError):
    """Raised when no service account matches a lookup."""
