"""
Deployment orchestrator: the top-level state machine.

    Init -> Provisioning -> SyncingSecrets -> Releasing(tier) -> Gating(tier)
         -> Promoted | RollingBack -> Failed | RolledBack

One sequential control loop per attempt. Tiers go strictly in dependency
order and the cluster only ever sees one mutating call at a time.
"""
import dataclasses
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from tierdeploy.audit import MemoryRolloutLog, StateFile
from tierdeploy.errors import ProvisionError, RolloutError, RolloutFailure, SecretError
from tierdeploy.health import HealthGate
from tierdeploy.models import (
    ClusterHandle,
    HealthStatus,
    HealthVerdict,
    ReleaseSpec,
    RollingUpdate,
    RolloutOutcome,
    RolloutRecord,
    Tier,
)
from tierdeploy.plan import DeploymentPlan
from tierdeploy.provisioner import ProvisionerAdapter
from tierdeploy.release import ReleaseController
from tierdeploy.secrets_sync import SecretSynchronizer

logger = logging.getLogger(__name__)

CANCELLED = "Cancelled"


class State(str, Enum):
    INIT = "Init"
    PROVISIONING = "Provisioning"
    SYNCING_SECRETS = "SyncingSecrets"
    RELEASING = "Releasing"
    GATING = "Gating"
    PROMOTED = "Promoted"
    ROLLING_BACK = "RollingBack"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


TERMINAL_STATES = {State.PROMOTED, State.FAILED, State.ROLLED_BACK}
EXIT_CODES = {State.PROMOTED: 0, State.FAILED: 1, State.ROLLED_BACK: 2}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Transition:
    state: State
    tier: Optional[Tier]
    at: datetime
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "tier": self.tier.value if self.tier else None,
            "at": self.at.isoformat(),
            "reason": self.reason,
        }


@dataclass
class OrchestrationResult:
    state: State
    reason: str
    attempt_id: str
    transitions: List[Transition] = field(default_factory=list)
    records: List[RolloutRecord] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.state]


class _Cancelled(Exception):
    pass


class DeploymentOrchestrator:
    def __init__(
        self,
        provisioner: ProvisionerAdapter,
        synchronizer: SecretSynchronizer,
        releases: ReleaseController,
        gate: HealthGate,
        log: MemoryRolloutLog,
        strategy: RollingUpdate = RollingUpdate(),
        health_window_s: float = 60,
        degraded_patience_s: float = 120,
        state_file: Optional[StateFile] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ):
        self.provisioner = provisioner
        self.synchronizer = synchronizer
        self.releases = releases
        self.gate = gate
        self.log = log
        self.strategy = strategy
        self.health_window_s = health_window_s
        self.degraded_patience_s = degraded_patience_s
        self.state_file = state_file
        self._clock = clock
        self._now = now
        self._cancel = threading.Event()
        self._transitions: List[Transition] = []
        self._attempt_id = ""
        self.state = State.INIT
        self.tier: Optional[Tier] = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    def cancel(self) -> None:
        """Ask the run to stop at its next safe checkpoint.

        Sticky: a request made before run() starts stops that run too.
        """
        logger.warning("Cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self, plan: DeploymentPlan) -> OrchestrationResult:
        """Drive one deployment attempt to Promoted, Failed or RolledBack."""
        self._start()
        logger.info(f"🚀 Deployment {self._attempt_id} of {plan.environment} starting")
        if self.cancelled:
            return self._finish(State.FAILED, CANCELLED)

        self._enter(State.PROVISIONING)
        try:
            handle = self.provisioner.ensure_cluster(plan.cluster, cancelled=self._cancel.is_set)
        except ProvisionError as e:
            if self.cancelled:
                return self._finish(State.FAILED, CANCELLED)
            return self._finish(State.FAILED, f"provisioning failed: {e}")
        except Exception as e:
            logger.exception("Unexpected error while provisioning")
            return self._finish(State.FAILED, f"provisioning failed: {e}")
        if self.cancelled:
            return self._finish(State.FAILED, CANCELLED)

        if plan.secrets is not None:
            self._enter(State.SYNCING_SECRETS)
            try:
                self.synchronizer.sync(handle, plan.secrets)
            except SecretError as e:
                return self._finish(State.FAILED, f"secret sync failed: {e}")
            except Exception as e:
                logger.exception("Unexpected error while syncing secrets")
                return self._finish(State.FAILED, f"secret sync failed: {e}")

        try:
            for spec in plan.releases:
                if self.cancelled:
                    return self._finish(State.FAILED, CANCELLED)
                failure = self._release_tier(handle, plan, spec)
                if failure is not None:
                    return self._roll_back(handle, plan, spec, failure)
        except _Cancelled:
            return self._finish(State.FAILED, CANCELLED)
        except SecretError as e:
            return self._finish(State.FAILED, f"secret refresh failed: {e}")

        return self._finish(State.PROMOTED, f"{len(plan.releases)} tiers released")

    def rollback(self, plan: DeploymentPlan, tier: Tier, reason: str = "manual rollback") -> OrchestrationResult:
        """Operator-triggered RollingBack for one tier."""
        self._start()
        self._enter(State.PROVISIONING)
        try:
            handle = self.provisioner.ensure_cluster(plan.cluster)
        except ProvisionError as e:
            return self._finish(State.FAILED, f"provisioning failed: {e}")
        except Exception as e:
            logger.exception("Unexpected error while provisioning")
            return self._finish(State.FAILED, f"provisioning failed: {e}")

        spec = plan.release(tier)
        current = self._current_image(tier) or spec.image
        return self._roll_back(handle, plan, dataclasses.replace(spec, image=current), reason)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "attempt_id": self._attempt_id,
            "state": self.state.value,
            "tier": self.tier.value if self.tier else None,
            "transitions": [t.to_dict() for t in self._transitions],
        }

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------
    def _release_tier(self, handle: ClusterHandle, plan: DeploymentPlan, spec: ReleaseSpec) -> Optional[str]:
        """Release and gate one tier. Returns a failure reason, or None when Healthy."""
        self._enter(State.RELEASING, spec.tier)
        secret_name = self._fresh_secret(handle, plan, spec)

        try:
            candidate = self.releases.rollout(
                handle,
                spec,
                self.strategy,
                dependency_check=self._dependency_check(handle, plan),
                secret_name=secret_name,
                cancelled=self._cancel.is_set,
            )
        except RolloutError as e:
            if e.reason is RolloutFailure.CANCELLED:
                self._record(spec, RolloutOutcome.FAILED, CANCELLED)
                raise _Cancelled() from e
            reason = f"rollout {e}"
            self._record(spec, RolloutOutcome.FAILED, reason)
            return reason
        except Exception as e:
            logger.exception(f"Unexpected error releasing {spec.tier.value}")
            reason = f"rollout error: {e}"
            self._record(spec, RolloutOutcome.FAILED, reason)
            return reason

        self._enter(State.GATING, spec.tier)
        verdict = self._gate(handle, spec, self._cancel.is_set)
        if self.cancelled:
            self._record(spec, RolloutOutcome.FAILED, CANCELLED)
            raise _Cancelled()
        if not verdict.healthy:
            reason = (
                f"health gate {verdict.status.value}: "
                f"{verdict.ready_replicas}/{verdict.desired_replicas} ready"
            )
            self._record(spec, RolloutOutcome.FAILED, reason)
            return reason

        self._record(spec, RolloutOutcome.SUCCEEDED, candidate.reason)
        return None

    def _roll_back(self, handle: ClusterHandle, plan: DeploymentPlan, spec: ReleaseSpec, reason: str) -> OrchestrationResult:
        self._enter(State.ROLLING_BACK, spec.tier, reason)
        good = self.log.last_known_good(spec.tier, exclude_image=spec.image)
        if good is None:
            return self._finish(State.FAILED, f"{reason}; no last-known-good image for {spec.tier.value}")

        restore = dataclasses.replace(spec, image=good.image)
        logger.info(f"↩️ Restoring {spec.tier.value} to {good.image}")
        try:
            secret_name = self._fresh_secret(handle, plan, restore)
            self.releases.rollout(
                handle,
                restore,
                self.strategy,
                dependency_check=self._dependency_check(handle, plan),
                secret_name=secret_name,
            )
        except Exception as e:
            failure = f"rollback to {good.image} failed: {e}"
            logger.error(f"❌ {failure}")
            self._record(restore, RolloutOutcome.FAILED, failure)
            return self._finish(State.FAILED, f"{reason}; {failure}")

        verdict = self._gate(handle, restore, lambda: False)
        if not verdict.healthy:
            failure = f"rollback to {good.image} not healthy ({verdict.status.value})"
            self._record(restore, RolloutOutcome.FAILED, failure)
            return self._finish(State.FAILED, f"{reason}; {failure}")

        self._record(restore, RolloutOutcome.ROLLED_BACK, f"restored after: {reason}")
        return self._finish(State.ROLLED_BACK, reason)

    def _gate(self, handle: ClusterHandle, spec: ReleaseSpec, cancelled: Callable[[], bool]) -> HealthVerdict:
        """Evaluate until a non-Degraded verdict, or Degraded outlasts its patience."""
        started = self._clock()
        while True:
            verdict = self.gate.evaluate(
                handle, spec.tier, self.health_window_s, spec.replicas.min, cancelled, image=spec.image
            )
            if verdict.status is not HealthStatus.DEGRADED or cancelled():
                return verdict
            if self._clock() - started >= self.degraded_patience_s:
                logger.warning(f"{spec.tier.value} degraded for {self.degraded_patience_s:.0f}s, giving up")
                return verdict
            logger.info(f"{spec.tier.value} degraded, re-evaluating")

    def _dependency_check(self, handle: ClusterHandle, plan: DeploymentPlan):
        def check(tier: Tier) -> HealthVerdict:
            return self.gate.snapshot(handle, tier, plan.release(tier).replicas.min)

        return check

    def _fresh_secret(self, handle: ClusterHandle, plan: DeploymentPlan, spec: ReleaseSpec) -> Optional[str]:
        if not spec.secret_bundle or plan.secrets is None:
            return None
        return self.synchronizer.ensure_fresh(handle, plan.secrets).name

    def _current_image(self, tier: Tier) -> Optional[str]:
        """Image of the tier's latest attempt, whatever its outcome."""
        latest = self.log.latest(tier)
        return latest.image if latest else None

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------
    def _start(self) -> None:
        self._transitions = []
        self._attempt_id = uuid.uuid4().hex[:12]
        self.state = State.INIT
        self.tier = None
        self._enter(State.INIT)

    def _enter(self, state: State, tier: Optional[Tier] = None, reason: str = "") -> None:
        self.state = state
        self.tier = tier
        transition = Transition(state=state, tier=tier, at=self._now(), reason=reason)
        self._transitions.append(transition)
        label = f"{state.value}({tier.value})" if tier else state.value
        logger.info(f"[{self._attempt_id}] -> {label}{': ' + reason if reason else ''}")
        if self.state_file is not None:
            self.state_file.save(self.snapshot())

    def _record(self, spec: ReleaseSpec, outcome: RolloutOutcome, reason: str) -> RolloutRecord:
        record = RolloutRecord(
            timestamp=self._now(),
            tier=spec.tier,
            image=spec.image,
            outcome=outcome,
            reason=reason,
            attempt_id=self._attempt_id,
        )
        self.log.append(record)
        return record

    def _finish(self, state: State, reason: str) -> OrchestrationResult:
        self._enter(state, self.tier if state is not State.PROMOTED else None, reason)
        if state is State.PROMOTED:
            logger.info(f"✅ Deployment {self._attempt_id} promoted")
        else:
            logger.error(f"❌ Deployment {self._attempt_id} ended {state.value}: {reason}")
        return OrchestrationResult(
            state=state,
            reason=reason,
            attempt_id=self._attempt_id,
            transitions=list(self._transitions),
            records=[r for r in self.log.records() if r.attempt_id == self._attempt_id],
        )
