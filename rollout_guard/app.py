# app.py
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from rollout_guard import __version__
from rollout_guard.adapters import KubeUpgradeAdapters
from rollout_guard.config import settings
from rollout_guard.errors import (
    AmbiguousTargetError,
    ConnectivityError,
    InvalidInputError,
    NotFoundError,
    UpgradeError,
    UpgradeInProgressError,
)
from rollout_guard.kube_client import KubeClient
from rollout_guard.kube_types import ClusterGateway, Deployment
from rollout_guard.workflow import UpgradeDecisions, WorkflowState

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# FastAPI app
# -----------------------------------------------------------------------------
app = FastAPI(title="Rollout Guard", version=__version__)

ERROR_STATUS = {
    InvalidInputError: 400,
    NotFoundError: 404,
    AmbiguousTargetError: 409,
    UpgradeInProgressError: 409,
    ConnectivityError: 503,
}

# namespace/deployment pairs with an upgrade in flight
_active_upgrades: set[str] = set()
_active_lock = threading.Lock()

# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
class UpgradeRequest(BaseModel):
    namespace: str = Field(default_factory=lambda: settings.K8S_NAMESPACE, description="Target namespace")
    selector: Optional[str] = Field(default=None, description="Label selector of the workload family")
    image: str = Field(..., description="New image reference, e.g. registry/controller:v1.9.6")
    deployment: Optional[Union[int, str]] = Field(default=None, description="Deployment index or name")
    container: Optional[Union[int, str]] = Field(default=None, description="Container index or name")
    confirm_downgrade: bool = Field(default=False, description="Proceed on a major version downgrade")
    apply_strategy: bool = Field(default=True, description="Apply maxUnavailable=0/maxSurge=1")
    confirm_update: bool = Field(default=False, description="Final go-ahead for the image update")

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
GatewayFactory = Callable[[str], ClusterGateway]


def get_gateway_factory() -> GatewayFactory:
    """Build Kubernetes clients from the configured context."""
    def factory(namespace: str) -> ClusterGateway:
        return KubeClient(
            namespace=namespace,
            in_cluster=settings.K8S_IN_CLUSTER,
            context=settings.K8S_CONTEXT,
            kubectl=settings.KUBECTL_BIN,
            request_timeout_s=settings.REQUEST_TIMEOUT_SECS,
        )
    return factory


def _http_error(error: UpgradeError, body: Optional[dict] = None) -> HTTPException:
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(error, cls)), 500)
    detail = {"message": str(error), "error_type": type(error).__name__}
    if isinstance(error, AmbiguousTargetError):
        detail["candidates"] = error.candidates
    if body is not None:
        detail["result"] = body
    return HTTPException(status_code=status, detail=detail)

# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "healthy"}


@app.get("/api/targets")
def api_targets(
    namespace: str = Query(default=settings.K8S_NAMESPACE),
    selector: Optional[str] = Query(default=None),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
):
    """List deployments and containers eligible for an upgrade."""
    label_selector = selector or settings.TARGET_SELECTOR
    try:
        adapters = KubeUpgradeAdapters(gateway_factory(namespace), settings)
        return adapters.get_target_data(label_selector)
    except UpgradeError as e:
        logger.error(f"❌ Error listing targets in {namespace}: {e}")
        raise _http_error(e)


@app.post("/api/upgrade")
def api_upgrade(plan: UpgradeRequest, gateway_factory: GatewayFactory = Depends(get_gateway_factory)):
    """Run one guarded upgrade and return its result."""
    label_selector = plan.selector or settings.TARGET_SELECTOR
    claimed: list[str] = []

    def claim(deployment: Deployment) -> None:
        key = f"{deployment.namespace}/{deployment.name}"
        with _active_lock:
            if key in _active_upgrades:
                raise UpgradeInProgressError(
                    f"An upgrade is already running for {key}",
                    deployment=deployment.name,
                    namespace=deployment.namespace,
                )
            _active_upgrades.add(key)
        claimed.append(key)

    try:
        try:
            adapters = KubeUpgradeAdapters(gateway_factory(plan.namespace), settings)
        except UpgradeError as e:
            logger.error(f"❌ Kubernetes client initialization failed: {e}")
            raise _http_error(e)

        decisions = UpgradeDecisions(
            deployment=plan.deployment,
            container=plan.container,
            confirm_downgrade=plan.confirm_downgrade,
            apply_strategy=plan.apply_strategy,
            confirm_update=plan.confirm_update,
        )
        result = adapters.run_upgrade(plan.image, decisions, label_selector, on_target=claim)
    finally:
        with _active_lock:
            _active_upgrades.difference_update(claimed)

    if result.state is WorkflowState.ABORTED and result.error is not None:
        raise _http_error(result.error, result.to_dict())
    return result.to_dict()


def main() -> None:
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.HTTP_PORT)


if __name__ == "__main__":
    main()
