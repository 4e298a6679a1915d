"""
Image update and rollout monitoring.
"""
import logging

from rollout_guard.errors import InvalidInputError
from rollout_guard.kube_types import ClusterGateway, Container, Deployment, RolloutOutcome

logger = logging.getLogger(__name__)


def validate_image(image: str | None, deployment: str | None = None, namespace: str | None = None) -> str:
    """Return the stripped image reference or raise InvalidInputError."""
    value = (image or "").strip()
    if not value:
        raise InvalidInputError("New image must be specified", deployment=deployment, namespace=namespace)
    if any(ch.isspace() for ch in value):
        raise InvalidInputError(
            f"Image reference contains whitespace: {value!r}",
            deployment=deployment,
            namespace=namespace,
        )
    return value


class RolloutController:
    """Sets the new image and waits for the platform to converge."""

    def __init__(self, gateway: ClusterGateway, timeout_s: int = 600):
        self.gateway = gateway
        self.timeout_s = timeout_s

    def run(self, deployment: Deployment, container: Container, image: str) -> RolloutOutcome:
        """
        Apply the image and block on the rollout.

        The set-image call is the point of no return: once it succeeded the
        outcome is reported, never acted on here.

        Raises:
            InvalidInputError: empty or malformed image
            MutationFailedError: the platform rejected the image update
        """
        image = validate_image(image, deployment.name, deployment.namespace)
        self.gateway.set_image(deployment.name, container.name, image)
        container.image = image

        logger.info(f"Monitoring rollout of {deployment.name} (timeout {self.timeout_s}s)...")
        try:
            outcome = self.gateway.watch_rollout_status(deployment.name, self.timeout_s)
        except Exception as e:
            # the image is already set; an unobservable rollout counts as failed
            logger.error(f"❌ Lost track of rollout of {deployment.name}: {e}")
            outcome = RolloutOutcome.FAILED

        if outcome is RolloutOutcome.SUCCEEDED:
            logger.info(f"✅ Rollout of {deployment.name} converged")
        else:
            logger.error(f"❌ Rollout of {deployment.name} ended with {outcome.value}")
        return outcome
