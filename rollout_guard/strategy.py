"""
Rolling update strategy configuration.
"""
import logging

from rollout_guard.kube_types import ClusterGateway, Deployment, RolloutStrategy

logger = logging.getLogger(__name__)

# Never drop below the desired replica count while new pods come up
SAFE_STRATEGY = RolloutStrategy(max_unavailable=0, max_surge=1)


class StrategyConfigurator:
    """Proposes and applies the safe rolling update strategy."""

    def __init__(self, gateway: ClusterGateway, strategy: RolloutStrategy = SAFE_STRATEGY):
        self.gateway = gateway
        self.strategy = strategy

    def propose(self, deployment: Deployment) -> RolloutStrategy:
        current = deployment.strategy
        logger.info(
            f"Recommended rolling update strategy for {deployment.name}: "
            f"maxUnavailable={self.strategy.max_unavailable}, maxSurge={self.strategy.max_surge} "
            f"(current: {current if current else 'platform default'})"
        )
        return self.strategy

    def apply(self, deployment: Deployment) -> None:
        """Patch the deployment's strategy; a rejected patch propagates as MutationFailedError."""
        self.gateway.patch_strategy(
            deployment.name,
            max_unavailable=self.strategy.max_unavailable,
            max_surge=self.strategy.max_surge,
        )
        deployment.strategy = self.strategy
