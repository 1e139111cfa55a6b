"""
Provisioner adapter: bring a cluster to its declared topology.

The infrastructure engine is an idempotent "apply desired topology" black box
reached through InfraEngine. TerraformEngine drives the terraform CLI.
"""
import json
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from tenacity import Retrying, retry_if_exception, stop_after_attempt, stop_any, wait_exponential

from tierdeploy.errors import ProvisionError, ProvisionReason
from tierdeploy.models import ClusterHandle, ClusterSpec

logger = logging.getLogger(__name__)


class ClusterStatus(str, Enum):
    ABSENT = "ABSENT"
    CREATING = "CREATING"
    UPDATING = "UPDATING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ClusterObservation:
    """What the engine reports for a cluster name."""
    name: str
    status: ClusterStatus
    endpoint: str = ""
    spec: Optional[ClusterSpec] = None
    failure_reason: str = ""


class InfraEngine(Protocol):
    def observe(self, name: str) -> ClusterObservation: ...

    def apply(self, spec: ClusterSpec) -> None: ...


def classify_failure(message: str) -> ProvisionReason:
    """Map provider error text to a ProvisionError reason."""
    text = message.lower()
    if "quota" in text or "limitexceeded" in text or "insufficient capacity" in text:
        return ProvisionReason.QUOTA_EXCEEDED
    if "invalid" in text or "validation" in text or "unsupported" in text:
        return ProvisionReason.INVALID_SPEC
    return ProvisionReason.PROVIDER_FAILURE


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProvisionError) and exc.retryable


def _log_retry(retry_state) -> None:
    exc = retry_state.outcome.exception()
    logger.warning(
        f"Provisioning attempt {retry_state.attempt_number} failed ({exc}); "
        f"retrying in {retry_state.next_action.sleep:.0f}s"
    )


class ProvisionerAdapter:
    """Idempotent EnsureCluster on top of an InfraEngine."""

    def __init__(
        self,
        engine: InfraEngine,
        timeout_s: float = 1200,
        poll_interval_s: float = 15,
        max_attempts: int = 3,
        backoff_s: float = 10,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.engine = engine
        self.timeout_s = timeout_s
        self.poll_interval_s = poll_interval_s
        self.max_attempts = max_attempts
        self.backoff_s = backoff_s
        self._clock = clock
        self._sleep = sleep

    def ensure_cluster(self, spec: ClusterSpec, cancelled: Callable[[], bool] = lambda: False) -> ClusterHandle:
        """
        Bring the named cluster to spec and return a handle to it.

        Args:
            spec: Declared cluster topology
            cancelled: Checked at every poll and before every retry

        Raises:
            ProvisionError: invalid spec (never retried), CANCELLED, or a
                retryable reason after max_attempts
        """
        spec.validate()
        retrying = Retrying(
            stop=stop_any(stop_after_attempt(self.max_attempts), lambda retry_state: cancelled()),
            wait=wait_exponential(multiplier=self.backoff_s, max=self.backoff_s * 8),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        return retrying(self._ensure_once, spec, cancelled)

    def _ensure_once(self, spec: ClusterSpec, cancelled: Callable[[], bool]) -> ClusterHandle:
        observed = self.engine.observe(spec.name)
        if observed.status is ClusterStatus.ACTIVE and observed.spec == spec:
            logger.info(f"Cluster {spec.name} already matches declared spec, nothing to apply")
            return self._handle(observed)

        if cancelled():
            raise ProvisionError(ProvisionReason.CANCELLED, f"cluster {spec.name} not applied")
        logger.info(f"🚀 Applying cluster {spec.name} (observed {observed.status.value})")
        self.engine.apply(spec)

        deadline = self._clock() + self.timeout_s
        while True:
            observed = self.engine.observe(spec.name)
            if observed.status is ClusterStatus.ACTIVE and observed.spec in (None, spec):
                logger.info(f"✅ Cluster {spec.name} active at {observed.endpoint}")
                return self._handle(observed)
            if observed.status is ClusterStatus.FAILED:
                raise ProvisionError(classify_failure(observed.failure_reason), observed.failure_reason)
            if self._clock() >= deadline:
                raise ProvisionError(
                    ProvisionReason.TIMEOUT,
                    f"cluster {spec.name} not active after {self.timeout_s:.0f}s ({observed.status.value})",
                )
            if cancelled():
                logger.warning(f"Stopped waiting for cluster {spec.name} ({observed.status.value})")
                raise ProvisionError(ProvisionReason.CANCELLED, f"cluster {spec.name} still {observed.status.value}")
            self._sleep(self.poll_interval_s)

    def _handle(self, observed: ClusterObservation) -> ClusterHandle:
        name = observed.name

        def ready() -> bool:
            return self.engine.observe(name).status is ClusterStatus.ACTIVE

        return ClusterHandle(name=name, endpoint=observed.endpoint, ready=ready)


def _var_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


class TerraformEngine:
    """
    InfraEngine backed by a terraform root module.

    The module is expected to take the ClusterSpec variables (see
    ClusterSpec.to_vars) and to expose the outputs cluster_status,
    cluster_endpoint and cluster_spec.
    """

    def __init__(
        self,
        workdir: str,
        binary: str = "terraform",
        timeout_s: float = 1200,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.workdir = workdir
        self.binary = binary
        self.timeout_s = timeout_s
        self._runner = runner

    def _run(self, args: List[str], timeout: float) -> subprocess.CompletedProcess:
        env = os.environ.copy()
        env["TF_IN_AUTOMATION"] = "1"
        try:
            return self._runner(
                [self.binary, *args],
                cwd=self.workdir,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            raise ProvisionError(ProvisionReason.TIMEOUT, f"terraform {args[0]} exceeded {timeout:.0f}s") from e
        except OSError as e:
            logger.error(f"❌ Could not run {self.binary}: {e}")
            raise ProvisionError(ProvisionReason.PROVIDER_FAILURE, f"running {self.binary} failed: {e}") from e

    def apply(self, spec: ClusterSpec) -> None:
        args = ["apply", "-auto-approve", "-input=false", "-no-color"]
        args += [f"-var={key}={_var_value(value)}" for key, value in spec.to_vars().items()]
        result = self._run(args, self.timeout_s)
        if result.returncode != 0:
            message = result.stderr.strip()
            logger.error(f"❌ terraform apply failed for {spec.name}: {message[-500:]}")
            raise ProvisionError(classify_failure(message), message[-500:])

    def observe(self, name: str) -> ClusterObservation:
        result = self._run(["output", "-json", "-no-color"], timeout=60)
        if result.returncode != 0:
            raise ProvisionError(ProvisionReason.PROVIDER_FAILURE, result.stderr.strip()[-500:])

        try:
            outputs: Dict[str, Dict[str, Any]] = json.loads(result.stdout or "{}")
            values = {key: entry.get("value") for key, entry in outputs.items()}
            spec_vars = values.get("cluster_spec")
            if not values.get("cluster_status") or not spec_vars:
                return ClusterObservation(name=name, status=ClusterStatus.ABSENT)
            spec = ClusterSpec.from_vars(spec_vars)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ProvisionError(ProvisionReason.PROVIDER_FAILURE, f"unreadable terraform outputs: {e!r}") from e
        if spec.name != name:
            return ClusterObservation(name=name, status=ClusterStatus.ABSENT)

        try:
            status = ClusterStatus(str(values["cluster_status"]).upper())
        except ValueError:
            status = ClusterStatus.UPDATING
        return ClusterObservation(
            name=name,
            status=status,
            endpoint=values.get("cluster_endpoint") or "",
            spec=spec,
            failure_reason=values.get("cluster_failure_reason") or "",
        )
