"""
Post-rollout health verification.

Probes run through in-pod exec so the verdict does not depend on the
ingress or service routing the workload itself provides.
"""
import logging
import time
from enum import Enum
from typing import Callable, List, Optional

from rollout_guard.errors import HealthCheckFailedError
from rollout_guard.kube_types import ClusterGateway, Deployment, Pod

logger = logging.getLogger(__name__)


class HealthVerdict(str, Enum):
    """Which health tier, if any, vouched for the workload."""
    HEALTHY_PRIMARY = "healthy_primary"
    HEALTHY_SECONDARY = "healthy_secondary"
    HEALTHY_READINESS = "healthy_readiness"
    UNHEALTHY = "unhealthy"

    @property
    def healthy(self) -> bool:
        return self is not HealthVerdict.UNHEALTHY


class HealthVerifier:
    """Tiered health check against one running pod of the workload.

    Each tier is tried once, in order, after a single settle delay:
    primary liveness path, legacy liveness path, pod readiness.
    """

    def __init__(
        self,
        gateway: ClusterGateway,
        fallback_selector: Optional[str] = None,
        port: int = 10254,
        primary_path: str = "/healthz",
        secondary_path: str = "/health",
        settle_s: float = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.fallback_selector = fallback_selector
        self.port = port
        self.primary_path = primary_path
        self.secondary_path = secondary_path
        self.settle_s = settle_s
        self.sleep = sleep

    def probe_command(self, path: str) -> List[str]:
        return ["curl", "-sf", f"http://localhost:{self.port}{path}"]

    def verify(self, deployment: Deployment) -> HealthVerdict:
        if self.settle_s > 0:
            self.sleep(self.settle_s)

        pod = self._pick_pod(deployment)
        if pod is None:
            logger.error(f"❌ No running pod found for {deployment.name}")
            return HealthVerdict.UNHEALTHY

        if self._probe(pod, self.primary_path):
            verdict = HealthVerdict.HEALTHY_PRIMARY
        elif self._probe(pod, self.secondary_path):
            verdict = HealthVerdict.HEALTHY_SECONDARY
        elif self._ready(pod):
            verdict = HealthVerdict.HEALTHY_READINESS
        else:
            verdict = HealthVerdict.UNHEALTHY

        if verdict.healthy:
            logger.info(f"✅ {deployment.name} healthy via pod {pod.name} ({verdict.value})")
        else:
            logger.error(f"❌ Post-upgrade health check failed for {deployment.name} (pod {pod.name})")
        return verdict

    def require_healthy(self, deployment: Deployment) -> HealthVerdict:
        verdict = self.verify(deployment)
        if not verdict.healthy:
            raise HealthCheckFailedError(
                "Post-upgrade health check failed",
                deployment=deployment.name,
                namespace=deployment.namespace,
            )
        return verdict

    def _pick_pod(self, deployment: Deployment) -> Optional[Pod]:
        selector = deployment.pod_selector or self.fallback_selector
        try:
            pods = self.gateway.list_pods(selector)
        except Exception as e:
            logger.error(f"Cannot list pods of {deployment.name}: {e}")
            return None
        running = [pod for pod in pods if pod.status == "Running"]
        return running[0] if running else None

    def _probe(self, pod: Pod, path: str) -> bool:
        try:
            exit_code, output = self.gateway.exec_in_pod(pod.name, self.probe_command(path))
        except Exception as e:
            logger.warning(f"⚠️ Probe {path} on {pod.name} could not run: {e}")
            return False
        if exit_code != 0:
            logger.warning(f"⚠️ Probe {path} on {pod.name} failed with exit code {exit_code}")
            return False
        logger.debug(f"Probe {path} on {pod.name}: {output.strip()}")
        return True

    def _ready(self, pod: Pod) -> bool:
        try:
            return self.gateway.get_pod_readiness(pod.name) is True
        except Exception as e:
            logger.warning(f"⚠️ Cannot read readiness of {pod.name}: {e}")
            return False
