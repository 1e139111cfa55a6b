"""
Release controller: apply one tier's manifest and wait for the new generation.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from tierdeploy.errors import RolloutError, RolloutFailure
from tierdeploy.kube_client import WorkloadApi
from tierdeploy.models import (
    ClusterHandle,
    HealthVerdict,
    ReleaseSpec,
    RollingUpdate,
    RolloutOutcome,
    RolloutRecord,
    Tier,
)

logger = logging.getLogger(__name__)

DependencyCheck = Callable[[Tier], HealthVerdict]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReleaseController:
    def __init__(
        self,
        workloads: WorkloadApi,
        timeout_s: float = 300,
        poll_interval_s: float = 5,
        timeout_retries: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utcnow,
    ):
        self.workloads = workloads
        self.timeout_s = timeout_s
        self.poll_interval_s = poll_interval_s
        self.timeout_retries = timeout_retries
        self._clock = clock
        self._sleep = sleep
        self._now = now

    def rollout(
        self,
        handle: ClusterHandle,
        spec: ReleaseSpec,
        strategy: RollingUpdate = RollingUpdate(),
        dependency_check: Optional[DependencyCheck] = None,
        secret_name: Optional[str] = None,
        cancelled: Callable[[], bool] = lambda: False,
    ) -> RolloutRecord:
        """
        Roll a tier to spec.image.

        Dependencies are checked with a fresh reading right before the apply.
        A timeout is retried timeout_retries times; rejection is not retried.
        Never rolls back on its own.

        Raises:
            RolloutError: DEPENDENCY_NOT_READY, REJECTED, TIMED_OUT or CANCELLED
        """
        self._check_dependencies(spec, dependency_check)

        attempts = 1 + self.timeout_retries
        for attempt in range(1, attempts + 1):
            logger.info(f"🚀 Rolling out {spec.tier.value} -> {spec.image} (attempt {attempt}/{attempts})")
            self.workloads.apply_release(handle, spec, strategy, secret_name)
            try:
                ready = self._wait_for_generation(handle, spec, cancelled)
                break
            except RolloutError as e:
                if e.reason is RolloutFailure.TIMED_OUT and attempt < attempts:
                    logger.warning(f"Rollout of {spec.tier.value} timed out, retrying: {e}")
                    continue
                raise

        return RolloutRecord(
            timestamp=self._now(),
            tier=spec.tier,
            image=spec.image,
            outcome=RolloutOutcome.SUCCEEDED,
            reason=f"{ready}/{spec.replicas.min} replicas ready",
        )

    def _check_dependencies(self, spec: ReleaseSpec, dependency_check: Optional[DependencyCheck]) -> None:
        if not spec.depends_on:
            return
        if dependency_check is None:
            raise RolloutError(RolloutFailure.DEPENDENCY_NOT_READY, "no way to verify dependencies")
        for dependency in spec.depends_on:
            verdict = dependency_check(dependency)
            if not verdict.healthy:
                raise RolloutError(
                    RolloutFailure.DEPENDENCY_NOT_READY,
                    f"{dependency.value} is {verdict.status.value} "
                    f"({verdict.ready_replicas}/{verdict.desired_replicas})",
                )

    def _wait_for_generation(self, handle: ClusterHandle, spec: ReleaseSpec, cancelled: Callable[[], bool]) -> int:
        deadline = self._clock() + self.timeout_s
        while True:
            status = self.workloads.rollout_status(handle, spec.workload_name)
            if status.new_generation_ready(spec.replicas.min):
                return status.available_replicas
            if cancelled():
                raise RolloutError(RolloutFailure.CANCELLED, f"stopped waiting on {spec.tier.value}")
            if self._clock() >= deadline:
                old = max(status.replicas - status.updated_replicas, 0)
                raise RolloutError(
                    RolloutFailure.TIMED_OUT,
                    f"{spec.tier.value}: {status.updated_replicas}/{spec.replicas.min} updated, "
                    f"{status.available_replicas} available, {old} old left after {self.timeout_s:.0f}s",
                )
            self._sleep(self.poll_interval_s)
