"""
Type definitions for observed Kubernetes workload state.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional


@dataclass
class Replica:
    """Pod belonging to a tier's workload."""
    name: str
    namespace: str
    phase: str
    labels: Dict[str, str]
    ready: bool = False
    image: str = ""
    creation_timestamp: Optional[datetime] = None


@dataclass
class RolloutStatus:
    """Deployment rollout status.

    ``replicas`` and ``ready_replicas`` count pods of every generation still
    running; ``updated_replicas`` and ``available_replicas`` are what the
    controller reports for the current template.
    """
    deployment: str
    namespace: str
    generation: int
    observed_generation: int
    ready_replicas: int
    desired_replicas: int
    updated_replicas: int
    replicas: int
    available_replicas: int

    @property
    def current(self) -> bool:
        """Controller has seen the latest spec."""
        return self.observed_generation >= self.generation

    def new_generation_ready(self, minimum: int) -> bool:
        """Same completion rule as ``kubectl rollout status``: no old pods left, enough new ones available."""
        return (
            self.current
            and self.updated_replicas >= minimum
            and self.replicas <= self.updated_replicas
            and self.available_replicas >= minimum
        )
