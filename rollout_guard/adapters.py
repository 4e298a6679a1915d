"""
Adapters between the HTTP surface and the upgrade workflow.
"""
from typing import Any, Callable, Dict, List, Optional

from rollout_guard.config import Settings
from rollout_guard.kube_types import ClusterGateway, Deployment
from rollout_guard.versions import parse_image_version
from rollout_guard.workflow import UpgradeDecisions, UpgradeResult, UpgradeWorkflow


class KubeUpgradeAdapters:
    """Adapters for the rollout guard API."""

    def __init__(self, gateway: ClusterGateway, settings: Settings):
        self.gateway = gateway
        self.settings = settings

    def get_target_data(self, label_selector: str) -> Dict[str, Any]:
        """Describe upgrade candidates so a caller can pick deployment and container."""
        self.gateway.check_connectivity()
        deployments = self.gateway.list_deployments(label_selector)

        targets: List[Dict[str, Any]] = []
        for index, deployment in enumerate(deployments):
            containers = []
            for c_index, container in enumerate(deployment.containers):
                version = parse_image_version(container.image)
                containers.append({
                    "index": c_index,
                    "name": container.name,
                    "image": container.image,
                    "version": str(version) if version else None,
                })
            targets.append({
                "index": index,
                "name": deployment.name,
                "namespace": deployment.namespace,
                "replicas": deployment.replicas,
                "ready_replicas": deployment.ready_replicas,
                "containers": containers,
            })

        return {
            "namespace": self.gateway.namespace,
            "selector": label_selector,
            "deployments": targets,
            "total_deployments": len(targets),
        }

    def run_upgrade(
        self,
        image: str,
        decisions: UpgradeDecisions,
        label_selector: str,
        on_target: Optional[Callable[[Deployment], None]] = None,
    ) -> UpgradeResult:
        workflow = UpgradeWorkflow.from_settings(self.gateway, self.settings, label_selector=label_selector)
        return workflow.run(image, decisions, on_target=on_target)
