"""
Upgrade orchestration as an explicit state machine.

    IDLE -> TARGET_RESOLVED -> VERSION_CHECKED -> STRATEGY_CONFIGURED
         -> SNAPSHOTTED -> CONFIRMED_TO_UPDATE -> ROLLOUT_RUNNING
         -> ROLLOUT_SUCCEEDED -> HEALTH_CHECKING -> DONE
                                                 -> ROLLING_BACK -> DONE | ESCALATED
         -> ROLLOUT_FAILED -> ROLLING_BACK -> DONE | ESCALATED

A declined downgrade or update confirmation ends in CANCELLED, errors raised
before the image is set end in ABORTED. Neither performs a cluster write.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from rollout_guard.config import Settings
from rollout_guard.errors import (
    HealthCheckFailedError,
    MutationFailedError,
    RolloutFailedError,
    RolloutTimeoutError,
    UpgradeError,
)
from rollout_guard.health import HealthVerdict, HealthVerifier
from rollout_guard.kube_types import ClusterGateway, Container, Deployment, RolloutOutcome
from rollout_guard.resolver import Choice, TargetResolver
from rollout_guard.rollback import RollbackCoordinator, manual_recipe
from rollout_guard.rollout import RolloutController, validate_image
from rollout_guard.snapshot import SnapshotManager
from rollout_guard.strategy import StrategyConfigurator
from rollout_guard.versions import ImageVersion, compare_versions

logger = logging.getLogger(__name__)


class WorkflowState(str, Enum):
    IDLE = "idle"
    TARGET_RESOLVED = "target_resolved"
    VERSION_CHECKED = "version_checked"
    STRATEGY_CONFIGURED = "strategy_configured"
    SNAPSHOTTED = "snapshotted"
    CONFIRMED_TO_UPDATE = "confirmed_to_update"
    ROLLOUT_RUNNING = "rollout_running"
    ROLLOUT_SUCCEEDED = "rollout_succeeded"
    ROLLOUT_FAILED = "rollout_failed"
    HEALTH_CHECKING = "health_checking"
    ROLLING_BACK = "rolling_back"
    DONE = "done"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({
    WorkflowState.DONE,
    WorkflowState.ESCALATED,
    WorkflowState.CANCELLED,
    WorkflowState.ABORTED,
})


@dataclass
class UpgradeDecisions:
    """External answers the workflow needs, supplied up front."""
    deployment: Choice = None
    container: Choice = None
    confirm_downgrade: bool = False
    apply_strategy: bool = True
    confirm_update: bool = False


@dataclass
class UpgradeResult:
    """Record of one upgrade run."""
    namespace: str
    target_image: str
    state: WorkflowState = WorkflowState.IDLE
    transitions: List[WorkflowState] = field(default_factory=list)
    deployment: Optional[str] = None
    container: Optional[str] = None
    current_image: Optional[str] = None
    current_version: Optional[ImageVersion] = None
    target_version: Optional[ImageVersion] = None
    downgrade: bool = False
    strategy_applied: bool = False
    snapshot_path: Optional[str] = None
    rollout_outcome: Optional[RolloutOutcome] = None
    health_verdict: Optional[HealthVerdict] = None
    rolled_back: bool = False
    reason: Optional[str] = None
    error: Optional[UpgradeError] = None
    manual_rollback: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def status_line(self) -> str:
        target = f"deployment {self.deployment or '?'} in namespace {self.namespace} to {self.target_image}"
        if self.state is WorkflowState.DONE and self.rolled_back:
            return f"Upgrade of {target} failed ({self.error}); rolled back to the previous revision."
        if self.state is WorkflowState.DONE:
            verdict = self.health_verdict.value if self.health_verdict else "unknown"
            return f"Upgrade of {target} completed successfully (health: {verdict})."
        if self.state is WorkflowState.ESCALATED:
            return (
                f"Upgrade of {target} failed and automatic rollback failed ({self.error}). "
                f"Roll back manually: {self.manual_rollback}"
            )
        if self.state is WorkflowState.CANCELLED:
            return f"Upgrade of {target} canceled: {self.reason}. No changes were made."
        if self.state is WorkflowState.ABORTED and getattr(self.error, "uncertain", False):
            return (
                f"Upgrade of {target} aborted: {self.error}. The change may have been applied; "
                f"check the rollout and roll back manually if needed: {self.manual_rollback}"
            )
        if self.state is WorkflowState.ABORTED:
            return f"Upgrade of {target} aborted: {self.error}"
        return f"Upgrade of {target} is {self.state.value}."

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "status": self.status_line(),
            "transitions": [state.value for state in self.transitions],
            "namespace": self.namespace,
            "deployment": self.deployment,
            "container": self.container,
            "current_image": self.current_image,
            "target_image": self.target_image,
            "current_version": str(self.current_version) if self.current_version else None,
            "target_version": str(self.target_version) if self.target_version else None,
            "downgrade": self.downgrade,
            "strategy_applied": self.strategy_applied,
            "snapshot_path": self.snapshot_path,
            "rollout_outcome": self.rollout_outcome.value if self.rollout_outcome else None,
            "health_verdict": self.health_verdict.value if self.health_verdict else None,
            "rolled_back": self.rolled_back,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
            "manual_rollback": self.manual_rollback,
        }


class UpgradeWorkflow:
    """Runs one guarded upgrade against a cluster gateway."""

    def __init__(
        self,
        gateway: ClusterGateway,
        label_selector: str,
        resolver: Optional[TargetResolver] = None,
        strategy: Optional[StrategyConfigurator] = None,
        snapshots: Optional[SnapshotManager] = None,
        rollout: Optional[RolloutController] = None,
        health: Optional[HealthVerifier] = None,
        rollback: Optional[RollbackCoordinator] = None,
    ):
        self.gateway = gateway
        self.label_selector = label_selector
        self.resolver = resolver or TargetResolver(gateway)
        self.strategy = strategy or StrategyConfigurator(gateway)
        self.snapshots = snapshots or SnapshotManager(gateway)
        self.rollout = rollout or RolloutController(gateway)
        self.health = health or HealthVerifier(gateway, fallback_selector=label_selector)
        self.rollback = rollback or RollbackCoordinator(gateway)

    @classmethod
    def from_settings(cls, gateway: ClusterGateway, settings: Settings, label_selector: Optional[str] = None):
        selector = label_selector or settings.TARGET_SELECTOR
        return cls(
            gateway,
            label_selector=selector,
            snapshots=SnapshotManager(gateway, backup_dir=settings.BACKUP_DIR),
            rollout=RolloutController(gateway, timeout_s=settings.ROLLOUT_TIMEOUT_SECS),
            health=HealthVerifier(
                gateway,
                fallback_selector=selector,
                port=settings.HEALTH_PORT,
                primary_path=settings.HEALTH_PRIMARY_PATH,
                secondary_path=settings.HEALTH_SECONDARY_PATH,
                settle_s=settings.HEALTH_SETTLE_SECS,
            ),
        )

    def run(
        self,
        image: str,
        decisions: Optional[UpgradeDecisions] = None,
        on_target: Optional[Callable[[Deployment], None]] = None,
    ) -> UpgradeResult:
        """
        Run the upgrade to a terminal state.

        Args:
            image: New image reference
            decisions: External answers (choices and confirmations)
            on_target: Called with the resolved deployment before anything
                else touches it; raising UpgradeError aborts the run
        """
        decisions = decisions or UpgradeDecisions()
        result = UpgradeResult(namespace=self.gateway.namespace, target_image=(image or "").strip())
        logger.info(f"🚀 Starting upgrade in namespace {result.namespace} to image {result.target_image!r}")

        try:
            result.target_image = validate_image(image, namespace=result.namespace)
            self.gateway.check_connectivity()

            deployment, container = self.resolver.resolve(
                self.label_selector, decisions.deployment, decisions.container
            )
            self._record_target(result, deployment, container)
            if on_target is not None:
                on_target(deployment)
            self._transition(result, WorkflowState.TARGET_RESOLVED)

            check = compare_versions(container.image, result.target_image)
            result.current_version, result.target_version = check.current, check.target
            result.downgrade = check.downgrade
            self._transition(result, WorkflowState.VERSION_CHECKED)
            if check.downgrade and not decisions.confirm_downgrade:
                return self._finish(result, WorkflowState.CANCELLED, reason="major version downgrade not confirmed")

            self.strategy.propose(deployment)
            self._transition(result, WorkflowState.STRATEGY_CONFIGURED)

            result.snapshot_path = self.snapshots.capture(deployment).path
            self._transition(result, WorkflowState.SNAPSHOTTED)

            if not decisions.confirm_update:
                return self._finish(result, WorkflowState.CANCELLED, reason="update not confirmed")
            self._transition(result, WorkflowState.CONFIRMED_TO_UPDATE)

            if decisions.apply_strategy:
                self.strategy.apply(deployment)
                result.strategy_applied = True

            self._transition(result, WorkflowState.ROLLOUT_RUNNING)
            outcome = self.rollout.run(deployment, container, result.target_image)
        except UpgradeError as e:
            return self._finish(result, WorkflowState.ABORTED, error=e)
        except Exception as e:
            logger.exception(f"❌ Upgrade of {result.deployment or result.namespace} crashed: {e}")
            if result.state is WorkflowState.ROLLOUT_RUNNING:
                # set-image may have gone through
                error = MutationFailedError(
                    f"Image update failed: {e!r}",
                    uncertain=True,
                    deployment=result.deployment,
                    namespace=result.namespace,
                    image=result.target_image,
                )
            else:
                error = UpgradeError(
                    f"Unexpected failure: {e!r}",
                    deployment=result.deployment,
                    namespace=result.namespace,
                    image=result.target_image,
                )
            return self._finish(result, WorkflowState.ABORTED, error=error)

        result.rollout_outcome = outcome
        if outcome is not RolloutOutcome.SUCCEEDED:
            self._transition(result, WorkflowState.ROLLOUT_FAILED)
            error_class = RolloutTimeoutError if outcome is RolloutOutcome.TIMED_OUT else RolloutFailedError
            error = error_class(
                f"Rollout {outcome.value}",
                deployment=deployment.name,
                namespace=deployment.namespace,
                image=result.target_image,
            )
            return self._roll_back(result, deployment, error)

        self._transition(result, WorkflowState.ROLLOUT_SUCCEEDED)
        self._transition(result, WorkflowState.HEALTH_CHECKING)
        try:
            result.health_verdict = self.health.require_healthy(deployment)
        except HealthCheckFailedError as e:
            result.health_verdict = HealthVerdict.UNHEALTHY
            e.image = result.target_image
            return self._roll_back(result, deployment, e)
        except Exception as e:
            # past the point of no return every failure means rollback
            logger.exception(f"❌ Health verification of {deployment.name} crashed: {e}")
            result.health_verdict = HealthVerdict.UNHEALTHY
            error = HealthCheckFailedError(
                f"Health verification failed: {e!r}",
                deployment=deployment.name,
                namespace=deployment.namespace,
                image=result.target_image,
            )
            return self._roll_back(result, deployment, error)

        return self._finish(result, WorkflowState.DONE)

    def _roll_back(self, result: UpgradeResult, deployment: Deployment, cause: UpgradeError) -> UpgradeResult:
        self._transition(result, WorkflowState.ROLLING_BACK)
        try:
            self.rollback.rollback(deployment, reason=cause.message)
        except UpgradeError as e:
            logger.error(f"❌ Automatic rollback of {deployment.name} failed: {e}")
            return self._finish(result, WorkflowState.ESCALATED, error=e)
        except Exception as e:
            logger.exception(f"❌ Automatic rollback of {deployment.name} crashed: {e}")
            error = MutationFailedError(
                f"Rollout undo failed: {e!r}",
                deployment=deployment.name,
                namespace=deployment.namespace,
            )
            return self._finish(result, WorkflowState.ESCALATED, error=error)
        result.rolled_back = True
        return self._finish(result, WorkflowState.DONE, error=cause)

    def _record_target(self, result: UpgradeResult, deployment: Deployment, container: Container) -> None:
        result.deployment = deployment.name
        result.container = container.name
        result.current_image = container.image
        result.manual_rollback = manual_recipe(deployment)

    def _transition(self, result: UpgradeResult, state: WorkflowState) -> None:
        logger.info(f"[{result.deployment or result.namespace}] {result.state.value} -> {state.value}")
        result.state = state
        result.transitions.append(state)

    def _finish(
        self,
        result: UpgradeResult,
        state: WorkflowState,
        error: Optional[UpgradeError] = None,
        reason: Optional[str] = None,
    ) -> UpgradeResult:
        result.error = error
        result.reason = reason or (error.message if error else None)
        self._transition(result, state)

        line = result.status_line()
        if state is WorkflowState.DONE and not result.rolled_back:
            logger.info(f"✅ {line}")
        elif state is WorkflowState.CANCELLED:
            logger.info(line)
        else:
            logger.error(f"❌ {line}")

        if getattr(error, "uncertain", False):
            logger.warning(f"⚠️ The image update of {result.deployment} may have been applied. Check it and roll back if needed: {result.manual_rollback}")
        if result.manual_rollback:
            logger.info(f"To rollback manually at any time, use: {result.manual_rollback}")
        return result
