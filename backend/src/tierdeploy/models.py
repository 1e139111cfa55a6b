"""
Domain types for cluster, secret and release state.

Desired state (ClusterSpec, ReleaseSpec, SecretBundle) is immutable; it is
compared against what the cluster reports rather than edited in place.
"""
import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from tierdeploy.errors import ConfigError, ProvisionError, ProvisionReason


class Tier(str, Enum):
    DATABASE = "database"
    BACKEND = "backend"
    FRONTEND = "frontend"


TIER_ORDER: Tuple[Tier, ...] = (Tier.DATABASE, Tier.BACKEND, Tier.FRONTEND)

# name@sha256:<digest>; mutable tags are not accepted for releases
_DIGEST_REF = re.compile(r"^[a-z0-9][a-z0-9._/:-]*@sha256:[a-f0-9]{64}$")


# -----------------------------------------------------------------------------
# Cluster
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class NodeGroupBounds:
    min_count: int
    max_count: int
    desired_count: int


@dataclass(frozen=True)
class ClusterSpec:
    """Desired cluster topology. Equality is what decides no-op vs apply."""
    name: str
    node_group: NodeGroupBounds
    instance_class: str
    availability_zones: Tuple[str, ...]
    kubernetes_version: str
    network_cidr: str
    private_endpoint: bool = True

    def validate(self) -> None:
        bounds = self.node_group
        if not self.name:
            raise ProvisionError(ProvisionReason.INVALID_SPEC, "cluster name is required")
        if bounds.min_count < 0 or not bounds.min_count <= bounds.desired_count <= bounds.max_count:
            raise ProvisionError(
                ProvisionReason.INVALID_SPEC,
                f"node group requires min <= desired <= max, got "
                f"{bounds.min_count}/{bounds.desired_count}/{bounds.max_count}",
            )
        if not self.availability_zones:
            raise ProvisionError(ProvisionReason.INVALID_SPEC, "at least one availability zone is required")
        try:
            ipaddress.ip_network(self.network_cidr)
        except ValueError as e:
            raise ProvisionError(ProvisionReason.INVALID_SPEC, f"bad network CIDR: {e}") from e

    def to_vars(self) -> Dict[str, Any]:
        """Flatten into infrastructure variables."""
        return {
            "cluster_name": self.name,
            "node_min": self.node_group.min_count,
            "node_max": self.node_group.max_count,
            "node_desired": self.node_group.desired_count,
            "instance_class": self.instance_class,
            "availability_zones": list(self.availability_zones),
            "kubernetes_version": self.kubernetes_version,
            "network_cidr": self.network_cidr,
            "private_endpoint": self.private_endpoint,
        }

    @classmethod
    def from_vars(cls, data: Dict[str, Any]) -> "ClusterSpec":
        return cls(
            name=data["cluster_name"],
            node_group=NodeGroupBounds(
                min_count=int(data["node_min"]),
                max_count=int(data["node_max"]),
                desired_count=int(data["node_desired"]),
            ),
            instance_class=data["instance_class"],
            availability_zones=tuple(data["availability_zones"]),
            kubernetes_version=str(data["kubernetes_version"]),
            network_cidr=data["network_cidr"],
            private_endpoint=bool(data["private_endpoint"]),
        )


@dataclass(frozen=True)
class ClusterHandle:
    """Explicit reference to a provisioned cluster, passed to every cluster call."""
    name: str
    endpoint: str
    ready: Callable[[], bool] = field(compare=False, repr=False, default=lambda: True)

    def is_ready(self) -> bool:
        return self.ready()


# -----------------------------------------------------------------------------
# Secrets
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class SecretRef:
    key: str
    property: str
    slot: str


@dataclass(frozen=True)
class SecretBundle:
    name: str
    refs: Tuple[SecretRef, ...]
    refresh_interval: timedelta = timedelta(hours=1)


@dataclass(frozen=True)
class MaterializedBundle:
    """Runtime-visible form of a bundle. Only slot names are kept here."""
    name: str
    revision: int
    fetched_at: datetime
    slots: Tuple[str, ...]

    def age(self, now: datetime) -> timedelta:
        return now - self.fetched_at

    def is_stale(self, now: datetime, refresh_interval: timedelta) -> bool:
        return self.age(now) > refresh_interval


# -----------------------------------------------------------------------------
# Releases
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ReplicaBounds:
    min: int
    max: int


@dataclass(frozen=True)
class ResourceRequirements:
    requests: Tuple[Tuple[str, str], ...] = (("cpu", "100m"), ("memory", "128Mi"))
    limits: Tuple[Tuple[str, str], ...] = (("cpu", "500m"), ("memory", "512Mi"))


@dataclass(frozen=True)
class AutoscalingPolicy:
    target_cpu_utilization: int = 70


@dataclass(frozen=True)
class RollingUpdate:
    max_unavailable: int = 0
    max_surge: int = 1


@dataclass(frozen=True)
class ReleaseSpec:
    tier: Tier
    image: str
    replicas: ReplicaBounds
    resources: ResourceRequirements = ResourceRequirements()
    liveness_path: str = "/healthz"
    readiness_path: str = "/ready"
    port: int = 8080
    depends_on: Tuple[Tier, ...] = ()
    autoscaling: AutoscalingPolicy = AutoscalingPolicy()
    secret_bundle: Optional[str] = None

    def validate(self) -> None:
        if not _DIGEST_REF.match(self.image):
            raise ConfigError(f"{self.tier.value}: image must be pinned by digest, got {self.image!r}")
        if not 1 <= self.replicas.min <= self.replicas.max:
            raise ConfigError(
                f"{self.tier.value}: replica bounds require 1 <= min <= max, "
                f"got {self.replicas.min}/{self.replicas.max}"
            )
        if self.tier in self.depends_on:
            raise ConfigError(f"{self.tier.value}: tier cannot depend on itself")

    @property
    def workload_name(self) -> str:
        return self.tier.value


class RolloutOutcome(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


@dataclass(frozen=True)
class RolloutRecord:
    """One entry per release attempt in the append-only audit log."""
    timestamp: datetime
    tier: Tier
    image: str
    outcome: RolloutOutcome
    reason: str = ""
    attempt_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "tier": self.tier.value,
            "image": self.image,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "attempt_id": self.attempt_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RolloutRecord":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            tier=Tier(data["tier"]),
            image=data["image"],
            outcome=RolloutOutcome(data["outcome"]),
            reason=data.get("reason", ""),
            attempt_id=data.get("attempt_id", ""),
        )


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------
class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"


@dataclass(frozen=True)
class HealthVerdict:
    tier: Tier
    status: HealthStatus
    ready_replicas: int
    desired_replicas: int
    sampled_at: datetime

    @property
    def healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY
