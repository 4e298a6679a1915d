"""
Type definitions for Kubernetes objects and the cluster gateway contract.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple
from datetime import datetime


@dataclass
class Pod:
    """Kubernetes Pod representation."""
    name: str
    namespace: str
    status: str
    labels: Dict[str, str]
    creation_timestamp: Optional[datetime] = None


@dataclass
class Container:
    """Container spec inside a Deployment's pod template."""
    name: str
    image: str


@dataclass(frozen=True)
class RolloutStrategy:
    """Rolling update parameters."""
    max_unavailable: int = 0
    max_surge: int = 1

    def __post_init__(self):
        if self.max_unavailable < 0 or self.max_surge < 0:
            raise ValueError("maxUnavailable and maxSurge must be non-negative")


@dataclass
class Deployment:
    """Kubernetes Deployment representation."""
    name: str
    namespace: str
    replicas: int
    ready_replicas: int
    labels: Dict[str, str]
    selector: Dict[str, str] = field(default_factory=dict)
    containers: List[Container] = field(default_factory=list)
    strategy: Optional[RolloutStrategy] = None

    @property
    def pod_selector(self) -> str:
        """Label selector string matching this Deployment's pods."""
        return ",".join(f"{key}={value}" for key, value in sorted(self.selector.items()))


@dataclass(frozen=True)
class Snapshot:
    """Pre-upgrade manifest written to disk for operator reference."""
    path: str
    manifest: bytes
    created_at: datetime


class RolloutOutcome(str, Enum):
    """Terminal state of a rollout attempt."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ClusterGateway(Protocol):
    """Operations the upgrade workflow needs from the cluster.

    Every method acts on the gateway's own namespace.
    """

    namespace: str

    def check_connectivity(self) -> None: ...

    def list_deployments(self, label_selector: str) -> List[Deployment]: ...

    def get_containers(self, deployment: str) -> List[Container]: ...

    def patch_strategy(self, deployment: str, max_unavailable: int, max_surge: int) -> None: ...

    def get_manifest(self, deployment: str) -> bytes: ...

    def set_image(self, deployment: str, container: str, image: str) -> None: ...

    def watch_rollout_status(self, deployment: str, timeout_s: int) -> RolloutOutcome: ...

    def list_pods(self, label_selector: Optional[str] = None) -> List[Pod]: ...

    def exec_in_pod(self, pod: str, command: List[str]) -> Tuple[int, str]: ...

    def get_pod_readiness(self, pod: str) -> bool: ...

    def rollout_undo(self, deployment: str) -> None: ...
