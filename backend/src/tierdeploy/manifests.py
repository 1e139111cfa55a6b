"""
Build Kubernetes objects for a tier release.
"""
from typing import Dict, Optional

from kubernetes import client

from tierdeploy.models import ReleaseSpec, RollingUpdate

TIER_LABEL = "tierdeploy/tier"
REVISION_ANNOTATION = "tierdeploy/revision"


def labels_for(spec: ReleaseSpec) -> Dict[str, str]:
    return {"app": spec.workload_name, TIER_LABEL: spec.tier.value}


def _probe(path: str, port: int, initial_delay: int) -> client.V1Probe:
    return client.V1Probe(
        http_get=client.V1HTTPGetAction(path=path, port=port),
        initial_delay_seconds=initial_delay,
        period_seconds=5,
        failure_threshold=3,
    )


def build_deployment(
    spec: ReleaseSpec,
    strategy: RollingUpdate,
    namespace: str,
    secret_name: Optional[str] = None,
) -> client.V1Deployment:
    """Deployment with rolling-update bounds, probes and resources for one tier."""
    labels = labels_for(spec)

    container = client.V1Container(
        name=spec.workload_name,
        image=spec.image,
        image_pull_policy="IfNotPresent",
        ports=[client.V1ContainerPort(container_port=spec.port)],
        resources=client.V1ResourceRequirements(
            requests=dict(spec.resources.requests),
            limits=dict(spec.resources.limits),
        ),
        liveness_probe=_probe(spec.liveness_path, spec.port, initial_delay=15),
        readiness_probe=_probe(spec.readiness_path, spec.port, initial_delay=5),
    )
    if secret_name:
        container.env_from = [
            client.V1EnvFromSource(secret_ref=client.V1SecretEnvSource(name=secret_name))
        ]

    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(name=spec.workload_name, namespace=namespace, labels=labels),
        spec=client.V1DeploymentSpec(
            replicas=spec.replicas.min,
            selector=client.V1LabelSelector(match_labels=labels),
            strategy=client.V1DeploymentStrategy(
                type="RollingUpdate",
                rolling_update=client.V1RollingUpdateDeployment(
                    max_unavailable=strategy.max_unavailable,
                    max_surge=strategy.max_surge,
                ),
            ),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(containers=[container]),
            ),
        ),
    )


def build_autoscaler(spec: ReleaseSpec, namespace: str) -> client.V1HorizontalPodAutoscaler:
    """CPU-based autoscaler keeping the tier within its replica bounds."""
    return client.V1HorizontalPodAutoscaler(
        api_version="autoscaling/v1",
        kind="HorizontalPodAutoscaler",
        metadata=client.V1ObjectMeta(name=spec.workload_name, namespace=namespace, labels=labels_for(spec)),
        spec=client.V1HorizontalPodAutoscalerSpec(
            scale_target_ref=client.V1CrossVersionObjectReference(
                api_version="apps/v1", kind="Deployment", name=spec.workload_name
            ),
            min_replicas=spec.replicas.min,
            max_replicas=spec.replicas.max,
            target_cpu_utilization_percentage=spec.autoscaling.target_cpu_utilization,
        ),
    )


def build_secret(name: str, namespace: str, values: Dict[str, str], revision: int) -> client.V1Secret:
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            annotations={REVISION_ANNOTATION: str(revision)},
        ),
        type="Opaque",
        string_data=dict(values),
    )
