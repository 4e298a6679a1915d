"""
Error taxonomy for upgrade runs.
"""
from typing import List, Optional


class UpgradeError(Exception):
    """Base class for failures of an upgrade run.

    Carries the deployment, namespace and image involved so the final status
    line is actionable without the logs.
    """

    def __init__(
        self,
        message: str,
        deployment: Optional[str] = None,
        namespace: Optional[str] = None,
        image: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.deployment = deployment
        self.namespace = namespace
        self.image = image

    def context(self) -> str:
        parts = []
        if self.deployment:
            parts.append(f"deployment={self.deployment}")
        if self.namespace:
            parts.append(f"namespace={self.namespace}")
        if self.image:
            parts.append(f"image={self.image}")
        return " ".join(parts)

    def __str__(self) -> str:
        context = self.context()
        return f"{self.message} ({context})" if context else self.message


class NotFoundError(UpgradeError):
    """No deployment or container matched."""


class AmbiguousTargetError(UpgradeError):
    """Several candidates matched and no valid choice was supplied."""

    def __init__(self, message: str, candidates: List[str], **kwargs):
        super().__init__(message, **kwargs)
        self.candidates = list(candidates)


class InvalidInputError(UpgradeError):
    """The requested image reference is empty or malformed."""


class ConnectivityError(UpgradeError):
    """The cluster API could not be reached."""


class MutationFailedError(UpgradeError):
    """The platform rejected a patch, set-image or undo call.

    ``uncertain`` is set when the request may have reached the API server
    before the connection failed, so the write may have been applied.
    """

    def __init__(self, message: str, uncertain: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.uncertain = uncertain


class UpgradeInProgressError(UpgradeError):
    """Another upgrade of the same deployment is running."""


class RolloutFailedError(UpgradeError):
    """The rollout did not converge."""


class RolloutTimeoutError(RolloutFailedError):
    """The rollout did not converge within the platform timeout."""


class HealthCheckFailedError(UpgradeError):
    """Every post-rollout health tier failed."""


class SnapshotFailedError(UpgradeError):
    """The pre-upgrade manifest could not be captured."""
