"""
Adapters wiring the orchestrator to Kubernetes, Terraform and the secret store.
"""
from dataclasses import dataclass

from tierdeploy.audit import JsonlRolloutLog, StateFile
from tierdeploy.config import Settings
from tierdeploy.health import HealthGate
from tierdeploy.kube_client import KubeClient
from tierdeploy.models import RollingUpdate
from tierdeploy.orchestrator import DeploymentOrchestrator
from tierdeploy.provisioner import ProvisionerAdapter, TerraformEngine
from tierdeploy.release import ReleaseController
from tierdeploy.secret_store import HttpSecretStore
from tierdeploy.secrets_sync import SecretSynchronizer


@dataclass
class OrchestratorAdapters:
    """Concrete collaborators built from settings."""
    kube_client: KubeClient
    engine: TerraformEngine
    secret_store: HttpSecretStore
    log: JsonlRolloutLog
    state_file: StateFile


def build_adapters(settings: Settings) -> OrchestratorAdapters:
    return OrchestratorAdapters(
        kube_client=KubeClient(
            namespace=settings.K8S_NAMESPACE,
            in_cluster=settings.K8S_IN_CLUSTER,
            context=settings.K8S_CONTEXT,
        ),
        engine=TerraformEngine(
            workdir=settings.TERRAFORM_WORKDIR,
            binary=settings.TERRAFORM_BIN,
            timeout_s=settings.PROVISION_TIMEOUT_SECS,
        ),
        secret_store=HttpSecretStore(
            base_url=settings.SECRET_STORE_URL,
            token=settings.SECRET_STORE_TOKEN,
            mount=settings.SECRET_STORE_MOUNT,
        ),
        log=JsonlRolloutLog(settings.AUDIT_LOG_PATH),
        state_file=StateFile(settings.STATE_PATH),
    )


def build_orchestrator(settings: Settings, adapters: OrchestratorAdapters) -> DeploymentOrchestrator:
    kube = adapters.kube_client
    return DeploymentOrchestrator(
        provisioner=ProvisionerAdapter(
            adapters.engine,
            timeout_s=settings.PROVISION_TIMEOUT_SECS,
            poll_interval_s=settings.PROVISION_POLL_SECS,
            max_attempts=settings.PROVISION_MAX_ATTEMPTS,
            backoff_s=settings.PROVISION_BACKOFF_SECS,
        ),
        synchronizer=SecretSynchronizer(
            adapters.secret_store,
            kube,
            timeout_s=settings.SECRET_SYNC_TIMEOUT_SECS,
            max_attempts=settings.SECRET_SYNC_MAX_ATTEMPTS,
            backoff_s=settings.SECRET_SYNC_BACKOFF_SECS,
        ),
        releases=ReleaseController(
            kube,
            timeout_s=settings.ROLLOUT_TIMEOUT_SECS,
            poll_interval_s=settings.ROLLOUT_POLL_SECS,
            timeout_retries=settings.ROLLOUT_TIMEOUT_RETRIES,
        ),
        gate=HealthGate(
            kube,
            poll_interval_s=settings.HEALTH_POLL_INTERVAL_SECS,
            confirmation_s=settings.HEALTH_CONFIRMATION_SECS,
            grace_s=settings.HEALTH_GRACE_SECS,
            probe_timeout_s=settings.HEALTH_PROBE_TIMEOUT_SECS,
        ),
        log=adapters.log,
        strategy=RollingUpdate(
            max_unavailable=settings.ROLLOUT_MAX_UNAVAILABLE,
            max_surge=settings.ROLLOUT_MAX_SURGE,
        ),
        health_window_s=settings.HEALTH_WINDOW_SECS,
        degraded_patience_s=settings.DEGRADED_PATIENCE_SECS,
        state_file=adapters.state_file,
    )
