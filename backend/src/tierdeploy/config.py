"""
Configuration settings for the deployment orchestrator.
"""
import logging
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Application
    APP_NAME: str = Field(default="tierdeploy", description="Application name")
    APP_ENV: str = Field(default="dev", description="Environment: dev|staging|prod")

    # HTTP Configuration
    HTTP_PORT: int = Field(default=8002, description="Operator API port")

    # Kubernetes Configuration
    K8S_NAMESPACE: str = Field(default="default", description="Kubernetes namespace")
    K8S_CONTEXT: Optional[str] = Field(default=None, description="Kubernetes context")
    K8S_IN_CLUSTER: bool = Field(default=False, description="Running in cluster")

    # Infrastructure engine
    TERRAFORM_BIN: str = Field(default="terraform", description="Terraform executable")
    TERRAFORM_WORKDIR: str = Field(default="infra", description="Terraform root module directory")
    PROVISION_TIMEOUT_SECS: float = Field(default=1200, description="Cluster apply timeout")
    PROVISION_POLL_SECS: float = Field(default=15, description="Cluster status polling interval")
    PROVISION_MAX_ATTEMPTS: int = Field(default=3, ge=1, description="Attempts for retryable provisioning errors")
    PROVISION_BACKOFF_SECS: float = Field(default=10, description="Base delay for provisioning backoff")

    # Secret store
    SECRET_STORE_URL: str = Field(default="http://127.0.0.1:8200", description="Secret store base URL")
    SECRET_STORE_MOUNT: str = Field(default="secret", description="KV mount path")
    SECRET_STORE_TOKEN: Optional[str] = Field(default=None, description="Secret store token")
    SECRET_SYNC_TIMEOUT_SECS: float = Field(default=60, description="Whole-bundle sync timeout")
    SECRET_SYNC_MAX_ATTEMPTS: int = Field(default=3, ge=1, description="Attempts when the store is unreachable")
    SECRET_SYNC_BACKOFF_SECS: float = Field(default=1, description="Base delay for secret sync backoff")

    # Rollout
    ROLLOUT_TIMEOUT_SECS: float = Field(default=300, description="Per-tier rollout timeout")
    ROLLOUT_POLL_SECS: float = Field(default=5, description="Rollout status polling interval")
    ROLLOUT_TIMEOUT_RETRIES: int = Field(default=1, ge=0, description="Retries after a rollout timeout")
    ROLLOUT_MAX_UNAVAILABLE: int = Field(default=0, ge=0, description="Rolling update max unavailable")
    ROLLOUT_MAX_SURGE: int = Field(default=1, ge=0, description="Rolling update max surge")

    # Health gate
    HEALTH_WINDOW_SECS: float = Field(default=60, description="Health evaluation window")
    HEALTH_POLL_INTERVAL_SECS: float = Field(default=5, description="Probe sampling interval")
    HEALTH_CONFIRMATION_SECS: float = Field(default=30, description="Consecutive-ready confirmation period")
    HEALTH_GRACE_SECS: float = Field(default=15, description="Grace before zero readiness counts as unhealthy")
    HEALTH_PROBE_TIMEOUT_SECS: float = Field(default=3, description="Per-replica probe timeout")
    DEGRADED_PATIENCE_SECS: float = Field(default=120, description="How long a degraded tier may persist")

    # Declared state and audit
    DEPLOY_CONFIG_DIR: str = Field(default="environments", description="Directory of <environment>.yaml files")
    AUDIT_LOG_PATH: str = Field(default="rollouts.jsonl", description="Append-only rollout record file")
    STATE_PATH: str = Field(default="tierdeploy-state.json", description="Last orchestrator transition")

    # Service Configuration
    LOG_LEVEL: str = Field(default="info", description="Log level: info|debug|warning")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


def configure_logging(level: str) -> None:
    """Configure root logging for CLI and API entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Global settings instance
settings = Settings()
