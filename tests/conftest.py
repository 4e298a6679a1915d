"""Shared fixtures: an in-memory cluster gateway that records every call."""

from __future__ import annotations

from typing import Any

import pytest

from rollout_guard.errors import MutationFailedError
from rollout_guard.kube_types import Container, Deployment, Pod, RolloutOutcome

MUTATING_CALLS = {"patch_strategy", "set_image", "rollout_undo"}


class FakeGateway:
    """Test double for the cluster gateway.

    ``calls`` keeps (operation, args) tuples in call order so tests can assert
    on sequencing. Behaviour is tuned through plain attributes.
    """

    def __init__(
        self,
        deployments: list[Deployment] | None = None,
        namespace: str = "ingress-nginx",
    ) -> None:
        self.namespace = namespace
        self.deployments = deployments if deployments is not None else [make_deployment()]
        self.pods = [Pod(name="controller-abc", namespace=namespace, status="Running", labels={})]
        self.rollout_outcome = RolloutOutcome.SUCCEEDED
        # path -> exit code; unknown paths fail
        self.probe_results: dict[str, int] = {"/healthz": 0}
        self.ready = False
        self.manifest = b"apiVersion: apps/v1\nkind: Deployment\n"
        self.fail_on: dict[str, Exception] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.fail_on:
            raise self.fail_on[name]

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def mutating_calls(self) -> list[str]:
        return [name for name in self.names() if name in MUTATING_CALLS]

    def check_connectivity(self) -> None:
        self._record("check_connectivity")

    def list_deployments(self, label_selector: str) -> list[Deployment]:
        self._record("list_deployments", label_selector)
        return self.deployments

    def get_containers(self, deployment: str) -> list[Container]:
        self._record("get_containers", deployment)
        for d in self.deployments:
            if d.name == deployment:
                return d.containers
        return []

    def patch_strategy(self, deployment: str, max_unavailable: int, max_surge: int) -> None:
        self._record("patch_strategy", deployment, max_unavailable, max_surge)

    def get_manifest(self, deployment: str) -> bytes:
        self._record("get_manifest", deployment)
        return self.manifest

    def set_image(self, deployment: str, container: str, image: str) -> None:
        self._record("set_image", deployment, container, image)

    def watch_rollout_status(self, deployment: str, timeout_s: int) -> RolloutOutcome:
        self._record("watch_rollout_status", deployment, timeout_s)
        return self.rollout_outcome

    def list_pods(self, label_selector: str | None = None) -> list[Pod]:
        self._record("list_pods", label_selector)
        return self.pods

    def exec_in_pod(self, pod: str, command: list[str]) -> tuple[int, str]:
        self._record("exec_in_pod", pod, tuple(command))
        url = command[-1]
        path = "/" + url.split("/", 3)[-1]
        code = self.probe_results.get(path, 22)
        return code, "ok" if code == 0 else ""

    def get_pod_readiness(self, pod: str) -> bool:
        self._record("get_pod_readiness", pod)
        return self.ready

    def rollout_undo(self, deployment: str) -> None:
        self._record("rollout_undo", deployment)


def make_deployment(
    name: str = "ingress-nginx-controller",
    image: str = "registry/controller:v1.9.5",
    containers: list[Container] | None = None,
    namespace: str = "ingress-nginx",
) -> Deployment:
    return Deployment(
        name=name,
        namespace=namespace,
        replicas=2,
        ready_replicas=2,
        labels={"app.kubernetes.io/name": "ingress-nginx"},
        selector={"app.kubernetes.io/name": "ingress-nginx", "app.kubernetes.io/component": "controller"},
        containers=containers if containers is not None else [Container(name="controller", image=image)],
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def undo_rejected() -> MutationFailedError:
    return MutationFailedError("Rollout undo rejected: no rollout history found")
