"""
Automatic and manual rollback.
"""
import logging

from rollout_guard.kube_types import ClusterGateway, Deployment

logger = logging.getLogger(__name__)


def manual_recipe(deployment: Deployment) -> str:
    """Command an operator can run to revert the deployment by hand."""
    return f"kubectl rollout undo deployment {deployment.name} -n {deployment.namespace}"


class RollbackCoordinator:
    """Reverts a deployment to its previous platform revision.

    The undo is issued once. A failure propagates as MutationFailedError and
    is not retried.
    """

    def __init__(self, gateway: ClusterGateway):
        self.gateway = gateway

    def rollback(self, deployment: Deployment, reason: str = "") -> None:
        logger.warning(f"⚠️ Initiating rollback of {deployment.name}: {reason or 'upgrade failed'}")
        self.gateway.rollout_undo(deployment.name)
        logger.info(f"✅ Rollback of {deployment.name} in {deployment.namespace} issued")
