"""
Declared environment configuration.

Each environment is a YAML file, <DEPLOY_CONFIG_DIR>/<environment>.yaml,
validated with pydantic and turned into the immutable specs the
orchestrator works from.
"""
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from tierdeploy.errors import ConfigError
from tierdeploy.models import (
    TIER_ORDER,
    AutoscalingPolicy,
    ClusterSpec,
    NodeGroupBounds,
    ReleaseSpec,
    ReplicaBounds,
    ResourceRequirements,
    SecretBundle,
    SecretRef,
    Tier,
)

# Dependency order used when a release does not declare depends_on
DEFAULT_DEPENDENCIES: Dict[Tier, Tuple[Tier, ...]] = {
    Tier.DATABASE: (),
    Tier.BACKEND: (Tier.DATABASE,),
    Tier.FRONTEND: (Tier.BACKEND,),
}


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
class NodeGroupConfig(BaseModel):
    min: int = Field(..., ge=0)
    max: int = Field(..., ge=1)
    desired: int = Field(..., ge=0)

    @model_validator(mode="after")
    def _ordered(self):
        if not self.min <= self.desired <= self.max:
            raise ValueError("node group requires min <= desired <= max")
        return self


class ClusterConfig(BaseModel):
    name: str = Field(..., min_length=1)
    node_group: NodeGroupConfig
    instance_class: str
    availability_zones: List[str] = Field(..., min_length=1)
    kubernetes_version: str
    network_cidr: str
    private_endpoint: bool = True


class SecretRefConfig(BaseModel):
    key: str
    property: str
    slot: str


class SecretsConfig(BaseModel):
    name: str
    refresh_interval_secs: int = Field(default=3600, ge=1)
    refs: List[SecretRefConfig] = Field(default_factory=list)


class ReplicaConfig(BaseModel):
    min: int = Field(default=1, ge=1)
    max: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _ordered(self):
        if self.min > self.max:
            raise ValueError("replicas.min must not exceed replicas.max")
        return self


class ResourcesConfig(BaseModel):
    requests: Dict[str, str] = Field(default_factory=lambda: {"cpu": "100m", "memory": "128Mi"})
    limits: Dict[str, str] = Field(default_factory=lambda: {"cpu": "500m", "memory": "512Mi"})


class ReleaseConfig(BaseModel):
    image: str = Field(..., description="Image pinned by digest")
    replicas: ReplicaConfig = Field(default_factory=ReplicaConfig)
    resources: ResourcesConfig = Field(default_factory=ResourcesConfig)
    liveness_path: str = "/healthz"
    readiness_path: str = "/ready"
    port: int = Field(default=8080, ge=1, le=65535)
    depends_on: Optional[List[Tier]] = None
    target_cpu_utilization: int = Field(default=70, ge=1, le=100)
    secret_bundle: Optional[str] = None


class EnvironmentConfig(BaseModel):
    cluster: ClusterConfig
    secrets: Optional[SecretsConfig] = None
    releases: Dict[Tier, ReleaseConfig]


# -----------------------------------------------------------------------------
# Plan
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class DeploymentPlan:
    environment: str
    cluster: ClusterSpec
    secrets: Optional[SecretBundle]
    releases: Tuple[ReleaseSpec, ...]

    def release(self, tier: Tier) -> ReleaseSpec:
        for spec in self.releases:
            if spec.tier is tier:
                return spec
        raise ConfigError(f"{self.environment} declares no {tier.value} release")

    def validate(self) -> None:
        """Release specs are sane and every dependency is released earlier."""
        position = {spec.tier: i for i, spec in enumerate(self.releases)}
        for spec in self.releases:
            spec.validate()
            for dependency in spec.depends_on:
                if dependency not in position:
                    raise ConfigError(f"{spec.tier.value} depends on undeclared tier {dependency.value}")
                if position[dependency] > position[spec.tier]:
                    raise ConfigError(f"{spec.tier.value} depends on {dependency.value}, which is released later")
            if spec.secret_bundle and (self.secrets is None or self.secrets.name != spec.secret_bundle):
                raise ConfigError(f"{spec.tier.value} uses unknown secret bundle {spec.secret_bundle}")


def _release_spec(tier: Tier, cfg: ReleaseConfig) -> ReleaseSpec:
    depends_on = DEFAULT_DEPENDENCIES[tier] if cfg.depends_on is None else tuple(cfg.depends_on)
    return ReleaseSpec(
        tier=tier,
        image=cfg.image,
        replicas=ReplicaBounds(min=cfg.replicas.min, max=cfg.replicas.max),
        resources=ResourceRequirements(
            requests=tuple(sorted(cfg.resources.requests.items())),
            limits=tuple(sorted(cfg.resources.limits.items())),
        ),
        liveness_path=cfg.liveness_path,
        readiness_path=cfg.readiness_path,
        port=cfg.port,
        depends_on=depends_on,
        autoscaling=AutoscalingPolicy(target_cpu_utilization=cfg.target_cpu_utilization),
        secret_bundle=cfg.secret_bundle,
    )


def build_plan(environment: str, config: EnvironmentConfig) -> DeploymentPlan:
    cluster = config.cluster
    cluster_spec = ClusterSpec(
        name=cluster.name,
        node_group=NodeGroupBounds(
            min_count=cluster.node_group.min,
            max_count=cluster.node_group.max,
            desired_count=cluster.node_group.desired,
        ),
        instance_class=cluster.instance_class,
        availability_zones=tuple(cluster.availability_zones),
        kubernetes_version=cluster.kubernetes_version,
        network_cidr=cluster.network_cidr,
        private_endpoint=cluster.private_endpoint,
    )

    bundle = None
    if config.secrets is not None:
        bundle = SecretBundle(
            name=config.secrets.name,
            refs=tuple(SecretRef(key=r.key, property=r.property, slot=r.slot) for r in config.secrets.refs),
            refresh_interval=timedelta(seconds=config.secrets.refresh_interval_secs),
        )

    releases = tuple(_release_spec(tier, config.releases[tier]) for tier in TIER_ORDER if tier in config.releases)
    plan = DeploymentPlan(environment=environment, cluster=cluster_spec, secrets=bundle, releases=releases)
    plan.validate()
    return plan


def load_plan(environment: str, config_dir: str) -> DeploymentPlan:
    """
    Read and validate <config_dir>/<environment>.yaml.

    Raises:
        ConfigError: file missing, unparsable, or fails validation
    """
    path = Path(config_dir) / f"{environment}.yaml"
    if not path.is_file():
        raise ConfigError(f"no declared configuration for environment {environment!r} at {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        config = EnvironmentConfig.model_validate(data)
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: invalid YAML: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"{path}: {e}") from e
    return build_plan(environment, config)
