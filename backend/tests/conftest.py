"""Shared fakes and fixtures."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from tierdeploy.audit import MemoryRolloutLog
from tierdeploy.errors import SecretNotFoundError, SecretStoreUnavailable
from tierdeploy.health import HealthGate
from tierdeploy.kube_types import Replica, RolloutStatus
from tierdeploy.models import (
    ClusterHandle,
    ClusterSpec,
    NodeGroupBounds,
    ReleaseSpec,
    ReplicaBounds,
    RollingUpdate,
    SecretBundle,
    SecretRef,
    Tier,
)
from tierdeploy.orchestrator import DeploymentOrchestrator
from tierdeploy.plan import DeploymentPlan
from tierdeploy.provisioner import ClusterObservation, ClusterStatus, ProvisionerAdapter
from tierdeploy.release import ReleaseController
from tierdeploy.secrets_sync import SecretSynchronizer


def image(name: str, n: int) -> str:
    return f"registry.example.com/shop/{name}@sha256:{n:064x}"


class FakeClock:
    """Monotonic clock whose sleep just moves time forward."""

    def __init__(self):
        self.t = 0.0
        self.epoch = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.t += seconds

    def now(self) -> datetime:
        return self.epoch + timedelta(seconds=self.t)


class FakeEngine:
    def __init__(self, endpoint: str = "https://k8s.example.com"):
        self.endpoint = endpoint
        self.clusters: Dict[str, ClusterObservation] = {}
        self.apply_calls: List[ClusterSpec] = []
        self.apply_errors: List[Exception] = []
        self.pending_polls = 0

    def observe(self, name: str) -> ClusterObservation:
        observed = self.clusters.get(name)
        if observed is None:
            return ClusterObservation(name=name, status=ClusterStatus.ABSENT)
        if observed.status is ClusterStatus.CREATING and self.pending_polls <= 0:
            observed = replace(observed, status=ClusterStatus.ACTIVE)
            self.clusters[name] = observed
        self.pending_polls -= 1
        return observed

    def apply(self, spec: ClusterSpec) -> None:
        self.apply_calls.append(spec)
        if self.apply_errors:
            raise self.apply_errors.pop(0)
        self.clusters[spec.name] = ClusterObservation(
            name=spec.name, status=ClusterStatus.CREATING, endpoint=self.endpoint, spec=spec
        )


class FakeSecretStore:
    def __init__(self, values: Optional[Dict[Tuple[str, str], str]] = None):
        self.values = dict(values or {})
        self.unavailable: Dict[str, int] = {}
        self.fetches: List[Tuple[str, str]] = []

    def fetch_secret(self, key: str, prop: str) -> str:
        self.fetches.append((key, prop))
        if self.unavailable.get(key, 0) > 0:
            self.unavailable[key] -= 1
            raise SecretStoreUnavailable(f"{key} unreachable")
        if (key, prop) not in self.values:
            raise SecretNotFoundError(key, prop)
        return self.values[(key, prop)]


class FakeWorkloads:
    """
    In-memory cluster.

    A tier runs whatever image was last applied. Images in never_ready never
    report ready replicas and, as with a real surge rollout, leave the previous
    generation's pods running and Ready; images in unhealthy roll out but
    fail probes.
    ready_fn, when set, decides the ready count for each readiness listing.
    """

    def __init__(self):
        self.specs: Dict[Tier, ReleaseSpec] = {}
        self.previous: Dict[Tier, ReleaseSpec] = {}
        self.applied: List[Tuple[Tier, str]] = []
        self.events: List[tuple] = []
        self.never_ready: set = set()
        self.unhealthy: set = set()
        self.partial: set = set()
        self.reject: set = set()
        self.ready_fn: Optional[Callable[[Tier, int], int]] = None
        self.slots: Dict[str, Tuple[Dict[str, str], int]] = {}
        self.fail_writes = False

    # WorkloadApi
    def apply_release(self, handle, spec, strategy, secret_name=None):
        from tierdeploy.errors import RolloutError, RolloutFailure

        if spec.image in self.reject:
            raise RolloutError(RolloutFailure.REJECTED, "422 Unprocessable Entity")
        if spec.tier in self.specs and self.specs[spec.tier].image not in self.never_ready:
            self.previous[spec.tier] = self.specs[spec.tier]
        self.specs[spec.tier] = spec
        self.applied.append((spec.tier, spec.image))
        self.events.append(("apply", spec.tier, spec.image))

    def _ready_count(self, tier: Tier) -> int:
        spec = self.specs.get(tier)
        if spec is None:
            return 0
        want = spec.replicas.min
        if self.ready_fn is not None:
            return self.ready_fn(tier, want)
        if spec.image in self.never_ready or spec.image in self.unhealthy:
            return 0
        if spec.image in self.partial:
            return max(want - 1, 1) if want > 1 else 0
        return want

    def _old_generation(self, tier: Tier) -> int:
        """Ready pods of the previous image that a stuck surge rollout leaves running."""
        spec = self.specs[tier]
        previous = self.previous.get(tier)
        if spec.image not in self.never_ready or previous is None:
            return 0
        return previous.replicas.min

    def rollout_status(self, handle, deployment):
        tier = Tier(deployment)
        spec = self.specs[tier]
        old = self._old_generation(tier)
        if spec.image in self.never_ready:
            # maxSurge=1: one new pod created, never Ready; old pods keep serving
            updated, available = 1, 0
        else:
            updated = available = spec.replicas.min
        return RolloutStatus(
            deployment=deployment,
            namespace="default",
            generation=1,
            observed_generation=1,
            ready_replicas=available + old,
            desired_replicas=spec.replicas.min,
            updated_replicas=updated,
            replicas=updated + old,
            available_replicas=available + old,
        )

    def list_replicas(self, handle, tier, image=None):
        spec = self.specs.get(tier)
        if spec is None:
            self.events.append(("sample", tier, 0, 0))
            return []
        total = max(spec.replicas.min, 1)
        ready = self._ready_count(tier)
        self.events.append(("sample", tier, ready, spec.replicas.min))
        replicas = [
            Replica(
                name=f"{tier.value}-{i}", namespace="default", phase="Running", labels={}, ready=i < ready, image=spec.image
            )
            for i in range(total)
        ]
        previous = self.previous.get(tier)
        replicas += [
            Replica(name=f"{tier.value}-old-{i}", namespace="default", phase="Running", labels={}, ready=True, image=previous.image)
            for i in range(self._old_generation(tier))
        ]
        if image is not None:
            replicas = [r for r in replicas if r.image == image]
        return replicas

    def probe_replica(self, handle, replica):
        return replica.ready

    # SlotWriter
    def read_revision(self, handle, name):
        return self.slots[name][1] if name in self.slots else 0

    def write_slots(self, handle, name, values, revision):
        if self.fail_writes:
            raise RuntimeError("api server unavailable")
        self.slots[name] = (dict(values), revision)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def handle():
    return ClusterHandle(name="shop-prod", endpoint="https://k8s.example.com")


@pytest.fixture
def cluster_spec():
    return ClusterSpec(
        name="shop-prod",
        node_group=NodeGroupBounds(min_count=2, max_count=10, desired_count=3),
        instance_class="m5.large",
        availability_zones=("eu-west-1a", "eu-west-1b"),
        kubernetes_version="1.29",
        network_cidr="10.20.0.0/16",
    )


@pytest.fixture
def bundle():
    return SecretBundle(
        name="shop-credentials",
        refs=(
            SecretRef(key="shop/db", property="password", slot="DB_PASSWORD"),
            SecretRef(key="shop/api", property="token", slot="API_TOKEN"),
        ),
        refresh_interval=timedelta(minutes=30),
    )


@pytest.fixture
def secret_store():
    return FakeSecretStore({("shop/db", "password"): "s3cret", ("shop/api", "token"): "t0ken"})


def release_specs(version: int = 2) -> Tuple[ReleaseSpec, ...]:
    return (
        ReleaseSpec(tier=Tier.DATABASE, image=image("db", version), replicas=ReplicaBounds(1, 1)),
        ReleaseSpec(
            tier=Tier.BACKEND,
            image=image("backend", version),
            replicas=ReplicaBounds(2, 6),
            depends_on=(Tier.DATABASE,),
            secret_bundle="shop-credentials",
        ),
        ReleaseSpec(
            tier=Tier.FRONTEND,
            image=image("frontend", version),
            replicas=ReplicaBounds(2, 4),
            depends_on=(Tier.BACKEND,),
        ),
    )


@pytest.fixture
def plan(cluster_spec, bundle):
    return DeploymentPlan(environment="prod", cluster=cluster_spec, secrets=bundle, releases=release_specs())


@pytest.fixture
def workloads():
    return FakeWorkloads()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def rollout_log():
    return MemoryRolloutLog()


@pytest.fixture
def make_orchestrator(clock, engine, secret_store, workloads, rollout_log):
    def _make(**overrides) -> DeploymentOrchestrator:
        gate = HealthGate(
            workloads,
            poll_interval_s=5,
            confirmation_s=30,
            grace_s=15,
            clock=clock,
            sleep=clock.sleep,
            now=clock.now,
        )
        options = dict(
            provisioner=ProvisionerAdapter(engine, poll_interval_s=15, clock=clock, sleep=clock.sleep),
            synchronizer=SecretSynchronizer(
                secret_store, workloads, now=clock.now, clock=clock, sleep=clock.sleep
            ),
            releases=ReleaseController(workloads, clock=clock, sleep=clock.sleep, now=clock.now),
            gate=gate,
            log=rollout_log,
            strategy=RollingUpdate(),
            health_window_s=60,
            degraded_patience_s=120,
            clock=clock,
            now=clock.now,
        )
        options.update(overrides)
        return DeploymentOrchestrator(**options)

    return _make
