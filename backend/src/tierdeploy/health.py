"""
Health gate: turn repeated readiness samples into a verdict.

Pure observation, never writes to the cluster. A tier is Healthy only after
consecutive samples at or above the desired minimum span the whole
confirmation period, so a single good sample cannot pass the gate.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from tierdeploy.errors import HealthGateError
from tierdeploy.kube_client import WorkloadApi
from tierdeploy.models import ClusterHandle, HealthStatus, HealthVerdict, Tier

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Sample:
    ready: int
    total: int
    error: Optional[str] = None

    def passes(self, desired_min: int) -> bool:
        return self.error is None and self.ready >= desired_min

    @property
    def dead(self) -> bool:
        return self.error is not None or self.ready == 0


class HealthGate:
    def __init__(
        self,
        workloads: WorkloadApi,
        poll_interval_s: float = 5,
        confirmation_s: float = 30,
        grace_s: float = 15,
        probe_timeout_s: float = 3,
        max_workers: int = 8,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utcnow,
    ):
        self.workloads = workloads
        self.poll_interval_s = poll_interval_s
        self.confirmation_s = confirmation_s
        self.grace_s = grace_s
        self.probe_timeout_s = probe_timeout_s
        self.max_workers = max_workers
        self._clock = clock
        self._sleep = sleep
        self._now = now

    def sample(self, handle: ClusterHandle, tier: Tier, image: Optional[str] = None) -> Sample:
        """Probe every replica of a tier concurrently and count the ready ones.

        With an image, only replicas of that generation are counted.
        """
        try:
            replicas = self.workloads.list_replicas(handle, tier, image)
        except HealthGateError as e:
            logger.warning(f"⚠️ Probe infrastructure unreachable for {tier.value}: {e}")
            return Sample(ready=0, total=0, error=str(e))
        if not replicas:
            return Sample(ready=0, total=0)

        pool = ThreadPoolExecutor(max_workers=min(len(replicas), self.max_workers))
        try:
            futures = [pool.submit(self.workloads.probe_replica, handle, r) for r in replicas]
            done, not_done = wait(futures, timeout=self.probe_timeout_s)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        ready = 0
        failures = len(not_done)
        for future in done:
            exc = future.exception()
            if exc is not None:
                if not isinstance(exc, HealthGateError):
                    raise exc
                failures += 1
            elif future.result():
                ready += 1

        if failures == len(replicas):
            logger.warning(f"⚠️ All {failures} {tier.value} probes failed or timed out")
            return Sample(ready=0, total=len(replicas), error="all probes failed")
        return Sample(ready=ready, total=len(replicas))

    def snapshot(
        self, handle: ClusterHandle, tier: Tier, desired_min: int, image: Optional[str] = None
    ) -> HealthVerdict:
        """Single-sample verdict; used where a fresh reading is needed right now."""
        sample = self.sample(handle, tier, image)
        if sample.passes(desired_min):
            status = HealthStatus.HEALTHY
        elif sample.dead:
            status = HealthStatus.UNHEALTHY
        else:
            status = HealthStatus.DEGRADED
        return self._verdict(tier, status, sample.ready, desired_min)

    def evaluate(
        self,
        handle: ClusterHandle,
        tier: Tier,
        window_s: float,
        desired_min: int,
        cancelled: Callable[[], bool] = lambda: False,
        image: Optional[str] = None,
    ) -> HealthVerdict:
        """
        Sample at a fixed interval for up to window_s.

        Returns Healthy as soon as the confirmation period is satisfied.
        Otherwise Unhealthy if zero readiness or probe errors lasted past
        the grace period, else Degraded.
        """
        started = self._clock()
        streak_since: Optional[float] = None
        dead_since: Optional[float] = None
        last = Sample(ready=0, total=0)

        while not cancelled():
            tick = self._clock()
            last = self.sample(handle, tier, image)

            if last.passes(desired_min):
                dead_since = None
                if streak_since is None:
                    streak_since = tick
                if tick - streak_since >= self.confirmation_s:
                    logger.info(f"✅ {tier.value} healthy: {last.ready}/{desired_min} ready for {tick - streak_since:.0f}s")
                    return self._verdict(tier, HealthStatus.HEALTHY, last.ready, desired_min)
            else:
                streak_since = None
                if last.dead:
                    dead_since = tick if dead_since is None else dead_since
                else:
                    dead_since = None

            if tick - started >= window_s:
                break
            self._sleep(self.poll_interval_s)

        if dead_since is not None and self._clock() - dead_since >= self.grace_s:
            status = HealthStatus.UNHEALTHY
        else:
            status = HealthStatus.DEGRADED
        logger.warning(f"{tier.value} not confirmed healthy: {status.value} ({last.ready}/{desired_min} ready)")
        return self._verdict(tier, status, last.ready, desired_min)

    def _verdict(self, tier: Tier, status: HealthStatus, ready: int, desired: int) -> HealthVerdict:
        return HealthVerdict(
            tier=tier,
            status=status,
            ready_replicas=ready,
            desired_replicas=desired,
            sampled_at=self._now(),
        )
