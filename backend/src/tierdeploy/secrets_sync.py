"""
Secret synchronizer: materialize secret bundles into the cluster.

A bundle is written whole or not at all. Every value is fetched before the
single slot write, so a failed fetch leaves the previous materialization in place.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tierdeploy.errors import SecretError, SecretNotFoundError, SecretStoreUnavailable
from tierdeploy.kube_client import SlotWriter
from tierdeploy.models import ClusterHandle, MaterializedBundle, SecretBundle, SecretRef
from tierdeploy.secret_store import SecretStore

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecretSynchronizer:
    def __init__(
        self,
        store: SecretStore,
        writer: SlotWriter,
        timeout_s: float = 60,
        max_attempts: int = 3,
        backoff_s: float = 1,
        now: Callable[[], datetime] = utcnow,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.writer = writer
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.backoff_s = backoff_s
        self._now = now
        self._clock = clock
        self._sleep = sleep
        self._current: Dict[str, MaterializedBundle] = {}

    def current(self, name: str) -> Optional[MaterializedBundle]:
        return self._current.get(name)

    def sync(self, handle: ClusterHandle, bundle: SecretBundle) -> MaterializedBundle:
        """
        Fetch every ref and write them as one revision.

        Raises:
            SecretError: any ref could not be resolved; nothing was written
        """
        values = self._fetch_all(bundle)

        try:
            revision = self._last_revision(handle, bundle.name) + 1
            self.writer.write_slots(handle, bundle.name, values, revision)
        except Exception as e:
            raise SecretError(bundle.name, f"writing slots failed: {e}") from e

        materialized = MaterializedBundle(
            name=bundle.name,
            revision=revision,
            fetched_at=self._now(),
            slots=tuple(values),
        )
        self._current[bundle.name] = materialized
        logger.info(f"🔐 Synced bundle {bundle.name} revision {revision} ({len(values)} slots)")
        return materialized

    def _last_revision(self, handle: ClusterHandle, name: str) -> int:
        """Revision of the last write; read back from the cluster when this process has not written yet."""
        previous = self._current.get(name)
        if previous is not None:
            return previous.revision
        return self.writer.read_revision(handle, name)

    def ensure_fresh(self, handle: ClusterHandle, bundle: SecretBundle) -> MaterializedBundle:
        """Return the current materialization, re-syncing it first if missing or stale."""
        current = self._current.get(bundle.name)
        if current is not None and not current.is_stale(self._now(), bundle.refresh_interval):
            return current
        if current is not None:
            logger.info(f"Bundle {bundle.name} revision {current.revision} is stale, re-fetching")
        return self.sync(handle, bundle)

    def _fetch_all(self, bundle: SecretBundle) -> Dict[str, str]:
        deadline = self._clock() + self.timeout_s
        values: Dict[str, str] = {}
        for ref in bundle.refs:
            if self._clock() > deadline:
                raise SecretError(ref.key, f"bundle sync exceeded {self.timeout_s:.0f}s")
            values[ref.slot] = self._fetch(ref)
        return values

    def _fetch(self, ref: SecretRef) -> str:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_s, max=self.backoff_s * 8),
            retry=retry_if_exception_type(SecretStoreUnavailable),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return retrying(self.store.fetch_secret, ref.key, ref.property)
        except SecretNotFoundError as e:
            logger.error(f"❌ {e}")
            raise SecretError(ref.key, f"property {ref.property} not found") from e
        except SecretStoreUnavailable as e:
            logger.error(f"❌ Secret store unavailable after {self.max_attempts} attempts: {e}")
            raise SecretError(ref.key, str(e)) from e
