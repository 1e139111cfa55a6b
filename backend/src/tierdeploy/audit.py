"""
Append-only rollout history.

Records are only ever added. Rollback writes a new RolledBack entry; it
never rewrites the Failed one that caused it.
"""
import json
import logging
import os
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from tierdeploy.models import RolloutOutcome, RolloutRecord, Tier

logger = logging.getLogger(__name__)


class MemoryRolloutLog:
    def __init__(self, records: Iterable[RolloutRecord] = ()):
        self._records: List[RolloutRecord] = list(records)
        self._lock = threading.Lock()

    def append(self, record: RolloutRecord) -> None:
        with self._lock:
            self._records.append(record)
        logger.info(
            f"rollout record tier={record.tier.value} outcome={record.outcome.value} "
            f"image={record.image} reason={record.reason!r}"
        )

    def records(self) -> Tuple[RolloutRecord, ...]:
        with self._lock:
            return tuple(self._records)

    def history(self, tier: Tier) -> List[RolloutRecord]:
        return [r for r in self.records() if r.tier is tier]

    def latest(self, tier: Tier) -> Optional[RolloutRecord]:
        history = self.history(tier)
        return history[-1] if history else None

    def latest_by_tier(self) -> Dict[Tier, RolloutRecord]:
        latest: Dict[Tier, RolloutRecord] = {}
        for record in self.records():
            latest[record.tier] = record
        return latest

    def last_known_good(self, tier: Tier, exclude_image: Optional[str] = None) -> Optional[RolloutRecord]:
        """Most recent Succeeded record for the tier, skipping exclude_image."""
        for record in reversed(self.history(tier)):
            if record.outcome is RolloutOutcome.SUCCEEDED and record.image != exclude_image:
                return record
        return None


class StateFile:
    """Last orchestrator transition, so `status` can report it from another process."""

    def __init__(self, path: str):
        self.path = path

    def save(self, snapshot: Dict[str, Any]) -> None:
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as handle:
            json.dump(snapshot, handle, sort_keys=True)
        os.replace(tmp, self.path)

    def load(self) -> Optional[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return None
        with open(self.path, "r", encoding="utf-8") as handle:
            return json.load(handle)


class JsonlRolloutLog(MemoryRolloutLog):
    """Rollout history persisted as one JSON object per line."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(self._load(path))

    @staticmethod
    def _load(path: str) -> List[RolloutRecord]:
        if not os.path.exists(path):
            return []
        records = []
        with open(path, "r", encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(RolloutRecord.from_dict(json.loads(line)))
                except (ValueError, KeyError) as e:
                    logger.warning(f"Skipping unreadable rollout record {path}:{line_no}: {e}")
        return records

    def append(self, record: RolloutRecord) -> None:
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record.to_dict(), sort_keys=True) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        super().append(record)
