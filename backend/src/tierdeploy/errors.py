"""
Error types raised by the orchestrator components.
"""
from enum import Enum


class TierDeployError(Exception):
    """Base error for tierdeploy."""


class ConfigError(TierDeployError):
    """Declared configuration is missing or invalid."""


class ProvisionReason(str, Enum):
    INVALID_SPEC = "invalid_spec"
    QUOTA_EXCEEDED = "quota_exceeded"
    PROVIDER_FAILURE = "provider_failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


_RETRYABLE_PROVISION = {
    ProvisionReason.QUOTA_EXCEEDED,
    ProvisionReason.PROVIDER_FAILURE,
    ProvisionReason.TIMEOUT,
}


class ProvisionError(TierDeployError):
    """Cluster could not be brought to its declared state."""

    def __init__(self, reason: ProvisionReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)

    @property
    def retryable(self) -> bool:
        return self.reason in _RETRYABLE_PROVISION


class SecretNotFoundError(TierDeployError):
    """The store has no such key or property."""

    def __init__(self, key: str, prop: str):
        self.key = key
        self.property = prop
        super().__init__(f"secret {key}#{prop} not found")


class SecretStoreUnavailable(TierDeployError):
    """Transport-level failure talking to the secret store. Retryable."""


class SecretError(TierDeployError):
    """A bundle could not be materialized. Names the first key that failed."""

    def __init__(self, key: str, detail: str = ""):
        self.key = key
        self.detail = detail
        super().__init__(f"secret {key}: {detail}" if detail else f"secret {key}")


class RolloutFailure(str, Enum):
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    DEPENDENCY_NOT_READY = "dependency_not_ready"
    CANCELLED = "cancelled"


class RolloutError(TierDeployError):
    """A tier's rollout did not complete."""

    def __init__(self, reason: RolloutFailure, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class HealthGateError(TierDeployError):
    """Probe infrastructure could not be reached."""
