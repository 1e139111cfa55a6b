"""
Kubernetes client for orchestrator operations.
"""
import copy
import logging
from typing import Dict, List, Optional, Protocol

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from tierdeploy.errors import HealthGateError, RolloutError, RolloutFailure
from tierdeploy.kube_types import Replica, RolloutStatus
from tierdeploy.manifests import REVISION_ANNOTATION, TIER_LABEL, build_autoscaler, build_deployment, build_secret
from tierdeploy.models import ClusterHandle, ReleaseSpec, RollingUpdate, Tier

logger = logging.getLogger(__name__)

# API answers that mean the object itself was refused, not that the call failed
_REJECTION_STATUSES = {400, 403, 409, 422}


class WorkloadApi(Protocol):
    """Apply desired workload state / read replica readiness."""

    def apply_release(
        self, handle: ClusterHandle, spec: ReleaseSpec, strategy: RollingUpdate, secret_name: Optional[str]
    ) -> None: ...

    def rollout_status(self, handle: ClusterHandle, deployment: str) -> RolloutStatus: ...

    def list_replicas(self, handle: ClusterHandle, tier: Tier, image: Optional[str] = None) -> List[Replica]: ...

    def probe_replica(self, handle: ClusterHandle, replica: Replica) -> bool: ...


class SlotWriter(Protocol):
    def read_revision(self, handle: ClusterHandle, name: str) -> int: ...

    def write_slots(self, handle: ClusterHandle, name: str, values: Dict[str, str], revision: int) -> None: ...


def _pod_ready(pod) -> bool:
    for condition in (pod.status.conditions or []) if pod.status else []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def _pod_image(pod) -> str:
    containers = pod.spec.containers if pod.spec else None
    return containers[0].image if containers else ""


class KubeClient:
    """Kubernetes client for orchestrator operations."""

    def __init__(self, namespace: str, in_cluster: bool = True, context: Optional[str] = None):
        """
        Initialize Kubernetes client.

        Args:
            namespace: Target Kubernetes namespace
            in_cluster: Whether running inside cluster (default: True)
            context: Kubernetes context name (optional)
        """
        self.namespace = namespace
        self.in_cluster = in_cluster
        self._base = client.Configuration()
        self._clients: Dict[str, client.ApiClient] = {}

        try:
            if in_cluster:
                config.load_incluster_config(client_configuration=self._base)
            else:
                config.load_kube_config(context=context, client_configuration=self._base)
            logger.info(f"✅ Kubernetes configuration loaded for namespace: {namespace}")
        except Exception as e:
            logger.error(f"❌ Failed to load Kubernetes configuration: {e}")
            raise

    def _api_client(self, handle: ClusterHandle) -> client.ApiClient:
        api = self._clients.get(handle.name)
        if api is None:
            cfg = copy.deepcopy(self._base)
            if handle.endpoint:
                cfg.host = handle.endpoint
            api = client.ApiClient(configuration=cfg)
            self._clients[handle.name] = api
        return api

    def _apps(self, handle: ClusterHandle) -> client.AppsV1Api:
        return client.AppsV1Api(self._api_client(handle))

    def _core(self, handle: ClusterHandle) -> client.CoreV1Api:
        return client.CoreV1Api(self._api_client(handle))

    def _autoscaling(self, handle: ClusterHandle) -> client.AutoscalingV1Api:
        return client.AutoscalingV1Api(self._api_client(handle))

    def apply_release(
        self,
        handle: ClusterHandle,
        spec: ReleaseSpec,
        strategy: RollingUpdate,
        secret_name: Optional[str] = None,
    ) -> None:
        """
        Create or update the tier's Deployment and autoscaler.

        Raises:
            RolloutError: REJECTED when the API refuses the manifest
        """
        apps_v1 = self._apps(handle)
        autoscaling = self._autoscaling(handle)
        deployment = build_deployment(spec, strategy, self.namespace, secret_name)
        hpa = build_autoscaler(spec, self.namespace)

        try:
            if self._exists(apps_v1.read_namespaced_deployment, spec.workload_name):
                apps_v1.patch_namespaced_deployment(
                    name=spec.workload_name, namespace=self.namespace, body=deployment
                )
            else:
                apps_v1.create_namespaced_deployment(namespace=self.namespace, body=deployment)

            if self._exists(autoscaling.read_namespaced_horizontal_pod_autoscaler, spec.workload_name):
                autoscaling.patch_namespaced_horizontal_pod_autoscaler(
                    name=spec.workload_name, namespace=self.namespace, body=hpa
                )
            else:
                autoscaling.create_namespaced_horizontal_pod_autoscaler(namespace=self.namespace, body=hpa)
        except ApiException as e:
            if e.status in _REJECTION_STATUSES:
                logger.error(f"❌ Manifest for {spec.workload_name} rejected: {e.reason}")
                raise RolloutError(RolloutFailure.REJECTED, f"{e.status} {e.reason}") from e
            raise

        logger.info(f"✅ Applied {spec.image} to {spec.workload_name} in {handle.name}/{self.namespace}")

    def _exists(self, read, name: str) -> bool:
        try:
            read(name=name, namespace=self.namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    def rollout_status(self, handle: ClusterHandle, deployment: str) -> RolloutStatus:
        """
        Check deployment rollout status.

        Args:
            handle: Target cluster
            deployment: Deployment name

        Returns:
            RolloutStatus object
        """
        try:
            obj = self._apps(handle).read_namespaced_deployment(name=deployment, namespace=self.namespace)
        except ApiException as e:
            logger.error(f"Failed to get rollout status for {deployment}: {e}")
            raise

        status = obj.status
        return RolloutStatus(
            deployment=deployment,
            namespace=self.namespace,
            generation=obj.metadata.generation or 0,
            observed_generation=status.observed_generation or 0,
            ready_replicas=status.ready_replicas or 0,
            desired_replicas=obj.spec.replicas or 0,
            updated_replicas=status.updated_replicas or 0,
            replicas=status.replicas or 0,
            available_replicas=status.available_replicas or 0,
        )

    def list_replicas(self, handle: ClusterHandle, tier: Tier, image: Optional[str] = None) -> List[Replica]:
        """
        Get the pods backing a tier.

        Args:
            handle: Target cluster
            tier: Tier whose pods are listed
            image: When given, only pods running this image (the generation
                being gated); pods of older generations are left out

        Raises:
            HealthGateError: when the API server cannot be reached
        """
        try:
            pods = self._core(handle).list_namespaced_pod(
                namespace=self.namespace, label_selector=f"{TIER_LABEL}={tier.value}"
            )
        except Exception as e:
            raise HealthGateError(f"listing {tier.value} pods failed: {e}") from e

        replicas = []
        for pod in pods.items:
            # terminating
            if pod.metadata.deletion_timestamp is not None:
                continue
            pod_image = _pod_image(pod)
            if image is not None and pod_image != image:
                continue
            replicas.append(
                Replica(
                    name=pod.metadata.name,
                    namespace=pod.metadata.namespace,
                    phase=pod.status.phase if pod.status else "Unknown",
                    labels=pod.metadata.labels or {},
                    ready=_pod_ready(pod),
                    image=pod_image,
                    creation_timestamp=pod.metadata.creation_timestamp,
                )
            )
        return replicas

    def probe_replica(self, handle: ClusterHandle, replica: Replica) -> bool:
        """Re-read one pod's Ready condition, as reported by its readiness probe."""
        try:
            pod = self._core(handle).read_namespaced_pod_status(name=replica.name, namespace=replica.namespace)
        except ApiException as e:
            if e.status == 404:
                return False
            raise HealthGateError(f"probing {replica.name} failed: {e}") from e
        except Exception as e:
            raise HealthGateError(f"probing {replica.name} failed: {e}") from e
        return _pod_ready(pod)

    def read_revision(self, handle: ClusterHandle, name: str) -> int:
        """
        Get the revision last written to the bundle's Secret.

        Returns:
            The revision annotation, or 0 when the Secret does not exist yet
        """
        try:
            secret = self._core(handle).read_namespaced_secret(name=name, namespace=self.namespace)
        except ApiException as e:
            if e.status == 404:
                return 0
            raise

        annotations = (secret.metadata.annotations if secret.metadata else None) or {}
        try:
            return int(annotations.get(REVISION_ANNOTATION, 0))
        except ValueError:
            logger.warning(f"⚠️ Secret {name} has a malformed revision annotation, starting over")
            return 0

    def write_slots(self, handle: ClusterHandle, name: str, values: Dict[str, str], revision: int) -> None:
        """Replace the bundle's Secret in one write so readers never see a partial set."""
        core = self._core(handle)
        body = build_secret(name, self.namespace, values, revision)
        if self._exists(core.read_namespaced_secret, name):
            core.replace_namespaced_secret(name=name, namespace=self.namespace, body=body)
        else:
            core.create_namespaced_secret(namespace=self.namespace, body=body)
        logger.info(f"✅ Wrote {len(values)} slots to secret {name} (revision {revision})")
