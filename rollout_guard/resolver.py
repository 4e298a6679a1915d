"""
Selection of the deployment and container to upgrade.
"""
import logging
from typing import Callable, Sequence, Tuple, TypeVar, Union

from rollout_guard.errors import AmbiguousTargetError, NotFoundError
from rollout_guard.kube_types import ClusterGateway, Container, Deployment

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 0-based index or name of a candidate
Choice = Union[int, str, None]


def choose(candidates: Sequence[T], choice: Choice, name_of: Callable[[T], str], kind: str = "candidate") -> T:
    """
    Pick one entry of a non-empty candidate list.

    A single candidate is selected without looking at ``choice``. Otherwise
    ``choice`` must be an index into the list or the name of an entry.

    Raises:
        AmbiguousTargetError: several candidates and no usable choice
    """
    if len(candidates) == 1:
        return candidates[0]

    names = [name_of(candidate) for candidate in candidates]
    if isinstance(choice, int) and not isinstance(choice, bool):
        if 0 <= choice < len(candidates):
            return candidates[choice]
    elif isinstance(choice, str):
        if choice in names:
            return candidates[names.index(choice)]
        if choice.isdigit() and int(choice) < len(candidates):
            return candidates[int(choice)]

    if choice is None:
        message = f"Multiple {kind}s found, a selection is required"
    else:
        message = f"Invalid {kind} selection: {choice!r}"
    raise AmbiguousTargetError(message, candidates=names)


class TargetResolver:
    """Finds the single deployment and container an upgrade applies to."""

    def __init__(self, gateway: ClusterGateway):
        self.gateway = gateway

    def resolve(
        self,
        label_selector: str,
        deployment_choice: Choice = None,
        container_choice: Choice = None,
    ) -> Tuple[Deployment, Container]:
        namespace = self.gateway.namespace
        deployments = self.gateway.list_deployments(label_selector)
        if not deployments:
            raise NotFoundError(
                f"No deployment matches selector {label_selector}",
                namespace=namespace,
            )

        try:
            deployment = choose(deployments, deployment_choice, lambda d: d.name, kind="deployment")
        except AmbiguousTargetError as e:
            e.namespace = namespace
            raise
        logger.info(f"Detected Deployment: {deployment.name}")

        containers = deployment.containers or self.gateway.get_containers(deployment.name)
        if not containers:
            raise NotFoundError("Deployment has no containers", deployment=deployment.name, namespace=namespace)

        try:
            container = choose(containers, container_choice, lambda c: c.name, kind="container")
        except AmbiguousTargetError as e:
            e.deployment, e.namespace = deployment.name, namespace
            raise
        logger.info(f"Selected container {container.name}, current image: {container.image}")
        return deployment, container
