"""Tests for rollout_guard.workflow — the upgrade state machine end to end."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from conftest import FakeGateway, make_deployment
from rollout_guard.errors import (
    AmbiguousTargetError,
    ConnectivityError,
    HealthCheckFailedError,
    InvalidInputError,
    MutationFailedError,
    NotFoundError,
    RolloutFailedError,
    RolloutTimeoutError,
    SnapshotFailedError,
    UpgradeInProgressError,
)
from rollout_guard.health import HealthVerdict, HealthVerifier
from rollout_guard.kube_types import RolloutOutcome
from rollout_guard.snapshot import SnapshotManager
from rollout_guard.workflow import UpgradeDecisions, UpgradeWorkflow, WorkflowState

SELECTOR = "app.kubernetes.io/name=ingress-nginx"
NEW_IMAGE = "registry/controller:v1.9.6"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_workflow(gateway: FakeGateway, tmp_path: Path) -> UpgradeWorkflow:
    """Workflow with a temp backup dir and no settle delay."""
    return UpgradeWorkflow(
        gateway,
        label_selector=SELECTOR,
        snapshots=SnapshotManager(gateway, backup_dir=str(tmp_path)),
        health=HealthVerifier(gateway, fallback_selector=SELECTOR, settle_s=0),
    )


def _go(**overrides) -> UpgradeDecisions:
    return UpgradeDecisions(confirm_update=True, **overrides)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSuccessfulUpgrade:
    """A converging, healthy rollout ends in DONE without rollback."""

    def test_patch_upgrade_done(self, gateway: FakeGateway, tmp_path: Path) -> None:
        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.DONE
        assert result.health_verdict is HealthVerdict.HEALTHY_PRIMARY
        assert result.rollout_outcome is RolloutOutcome.SUCCEEDED
        assert result.rolled_back is False
        assert result.downgrade is False
        assert result.error is None
        assert "rollout_undo" not in gateway.names()
        assert result.transitions == [
            WorkflowState.TARGET_RESOLVED,
            WorkflowState.VERSION_CHECKED,
            WorkflowState.STRATEGY_CONFIGURED,
            WorkflowState.SNAPSHOTTED,
            WorkflowState.CONFIRMED_TO_UPDATE,
            WorkflowState.ROLLOUT_RUNNING,
            WorkflowState.ROLLOUT_SUCCEEDED,
            WorkflowState.HEALTH_CHECKING,
            WorkflowState.DONE,
        ]

    def test_snapshot_precedes_every_mutation(self, gateway: FakeGateway, tmp_path: Path) -> None:
        _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        names = gateway.names()
        assert names.index("get_manifest") < names.index("patch_strategy") < names.index("set_image")
        assert gateway.mutating_calls() == ["patch_strategy", "set_image"]

    def test_snapshot_file_written(self, gateway: FakeGateway, tmp_path: Path) -> None:
        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.snapshot_path is not None
        assert Path(result.snapshot_path).read_bytes() == gateway.manifest

    def test_strategy_can_be_skipped(self, gateway: FakeGateway, tmp_path: Path) -> None:
        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go(apply_strategy=False))

        assert result.state is WorkflowState.DONE
        assert result.strategy_applied is False
        assert gateway.mutating_calls() == ["set_image"]

    def test_status_line_and_recipe(self, gateway: FakeGateway, tmp_path: Path) -> None:
        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        line = result.status_line()
        assert "completed successfully" in line
        assert "ingress-nginx-controller" in line
        assert "ingress-nginx" in line
        assert NEW_IMAGE in line
        assert result.manual_rollback == (
            "kubectl rollout undo deployment ingress-nginx-controller -n ingress-nginx"
        )

    def test_image_is_stripped(self, gateway: FakeGateway, tmp_path: Path) -> None:
        _make_workflow(gateway, tmp_path).run(f" {NEW_IMAGE} ", _go())
        assert ("set_image", ("ingress-nginx-controller", "controller", NEW_IMAGE)) in gateway.calls


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    """Declined confirmations end in CANCELLED before any write."""

    def test_downgrade_declined(self, tmp_path: Path) -> None:
        gateway = FakeGateway(deployments=[make_deployment(image="registry/controller:v2.11.0")])

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go(confirm_downgrade=False))

        assert result.state is WorkflowState.CANCELLED
        assert result.downgrade is True
        assert gateway.mutating_calls() == []
        assert "get_manifest" not in gateway.names()
        assert "No changes were made" in result.status_line()

    def test_minor_decrease_does_not_gate(self, tmp_path: Path) -> None:
        gateway = FakeGateway(deployments=[make_deployment(image="registry/controller:v1.11.0")])

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.downgrade is False
        assert result.state is WorkflowState.DONE

    def test_downgrade_confirmed_proceeds(self, tmp_path: Path) -> None:
        gateway = FakeGateway(deployments=[make_deployment(image="registry/controller:v2.0.0")])

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go(confirm_downgrade=True))

        assert result.downgrade is True
        assert result.state is WorkflowState.DONE

    def test_update_not_confirmed(self, gateway: FakeGateway, tmp_path: Path) -> None:
        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, UpgradeDecisions())

        assert result.state is WorkflowState.CANCELLED
        assert "set_image" not in gateway.names()
        assert gateway.mutating_calls() == []
        assert result.snapshot_path is not None
        assert result.transitions[-2] is WorkflowState.SNAPSHOTTED

    def test_unknown_versions_skip_gate(self, tmp_path: Path) -> None:
        gateway = FakeGateway(deployments=[make_deployment(image="registry/controller:latest")])

        result = _make_workflow(gateway, tmp_path).run("registry/controller:v0.1.0", _go())

        assert result.downgrade is False
        assert result.current_version is None
        assert result.state is WorkflowState.DONE


# ---------------------------------------------------------------------------
# Aborts before mutation
# ---------------------------------------------------------------------------


class TestAborts:
    """Pre-mutation failures abort with nothing to roll back."""

    def test_empty_image(self, gateway: FakeGateway, tmp_path: Path) -> None:
        result = _make_workflow(gateway, tmp_path).run("  ", _go())

        assert result.state is WorkflowState.ABORTED
        assert isinstance(result.error, InvalidInputError)
        assert gateway.calls == []

    def test_cluster_unreachable(self, gateway: FakeGateway, tmp_path: Path) -> None:
        gateway.fail_on["check_connectivity"] = ConnectivityError("Cannot connect to Kubernetes cluster.")

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.ABORTED
        assert isinstance(result.error, ConnectivityError)
        assert gateway.names() == ["check_connectivity"]

    def test_no_target(self, tmp_path: Path) -> None:
        gateway = FakeGateway(deployments=[])

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.ABORTED
        assert isinstance(result.error, NotFoundError)
        assert result.manual_rollback is None

    def test_ambiguous_target(self, tmp_path: Path) -> None:
        gateway = FakeGateway(deployments=[make_deployment("a"), make_deployment("b")])

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.ABORTED
        assert isinstance(result.error, AmbiguousTargetError)
        assert result.error.candidates == ["a", "b"]

    def test_injected_choice_resolves_ambiguity(self, tmp_path: Path) -> None:
        gateway = FakeGateway(deployments=[make_deployment("a"), make_deployment("b")])

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go(deployment="b"))

        assert result.state is WorkflowState.DONE
        assert result.deployment == "b"

    def test_snapshot_failure(self, gateway: FakeGateway, tmp_path: Path) -> None:
        gateway.fail_on["get_manifest"] = ConnectivityError("kubectl get failed")

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.ABORTED
        assert isinstance(result.error, SnapshotFailedError)
        assert gateway.mutating_calls() == []

    def test_rejected_strategy_patch(self, gateway: FakeGateway, tmp_path: Path) -> None:
        gateway.fail_on["patch_strategy"] = MutationFailedError("Strategy patch rejected: 422 Unprocessable Entity")

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.ABORTED
        assert "422" in str(result.error)
        assert "set_image" not in gateway.names()

    def test_rejected_set_image(self, gateway: FakeGateway, tmp_path: Path) -> None:
        gateway.fail_on["set_image"] = MutationFailedError("Image update rejected: 409 Conflict")

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.ABORTED
        assert isinstance(result.error, MutationFailedError)
        assert gateway.names().count("set_image") == 1
        assert "rollout_undo" not in gateway.names()

    def test_uncertain_set_image_reports_recipe(self, gateway: FakeGateway, tmp_path: Path) -> None:
        gateway.fail_on["set_image"] = MutationFailedError(
            "Image update outcome unknown: Connection aborted.", uncertain=True
        )

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.ABORTED
        line = result.status_line()
        assert "may have been applied" in line
        assert result.manual_rollback in line
        assert "rollout_undo" not in gateway.names()

    def test_unexpected_set_image_crash_is_uncertain(self, gateway: FakeGateway, tmp_path: Path) -> None:
        gateway.fail_on["set_image"] = RuntimeError("socket closed")

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.ABORTED
        assert isinstance(result.error, MutationFailedError)
        assert result.error.uncertain is True
        assert "socket closed" in str(result.error)

    def test_target_hook_refusal_aborts_before_any_write(self, gateway: FakeGateway, tmp_path: Path) -> None:
        seen = []

        def busy(deployment) -> None:
            seen.append(deployment.name)
            raise UpgradeInProgressError("An upgrade is already running", deployment=deployment.name)

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go(), on_target=busy)

        assert seen == ["ingress-nginx-controller"]
        assert result.state is WorkflowState.ABORTED
        assert isinstance(result.error, UpgradeInProgressError)
        assert "get_manifest" not in gateway.names()
        assert gateway.mutating_calls() == []
        assert list(tmp_path.iterdir()) == []


# ---------------------------------------------------------------------------
# Rollback paths
# ---------------------------------------------------------------------------


class TestRollback:
    """Failed rollouts and unhealthy workloads are rolled back once."""

    @pytest.mark.parametrize(
        ("outcome", "error_type"),
        [(RolloutOutcome.FAILED, RolloutFailedError), (RolloutOutcome.TIMED_OUT, RolloutTimeoutError)],
    )
    def test_non_converging_rollout(self, gateway: FakeGateway, tmp_path: Path, outcome, error_type) -> None:
        gateway.rollout_outcome = outcome

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.DONE
        assert result.rolled_back is True
        assert type(result.error) is error_type
        assert gateway.names().count("rollout_undo") == 1
        assert gateway.names().count("set_image") == 1
        assert "exec_in_pod" not in gateway.names()
        assert WorkflowState.ROLLOUT_FAILED in result.transitions
        assert WorkflowState.HEALTH_CHECKING not in result.transitions

    def test_unhealthy_after_convergence(self, gateway: FakeGateway, tmp_path: Path) -> None:
        gateway.probe_results = {}
        gateway.ready = False

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.DONE
        assert result.rolled_back is True
        assert result.health_verdict is HealthVerdict.UNHEALTHY
        assert isinstance(result.error, HealthCheckFailedError)
        assert gateway.names().count("rollout_undo") == 1
        assert "rolled back" in result.status_line()
        assert result.transitions[-3:] == [
            WorkflowState.HEALTH_CHECKING,
            WorkflowState.ROLLING_BACK,
            WorkflowState.DONE,
        ]

    def test_secondary_probe_avoids_rollback(self, gateway: FakeGateway, tmp_path: Path) -> None:
        gateway.probe_results = {"/health": 0}

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.health_verdict is HealthVerdict.HEALTHY_SECONDARY
        assert "rollout_undo" not in gateway.names()

    def test_failed_undo_escalates(self, gateway: FakeGateway, tmp_path: Path, undo_rejected) -> None:
        gateway.probe_results = {}
        gateway.fail_on["rollout_undo"] = undo_rejected

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.ESCALATED
        assert result.rolled_back is False
        assert result.error is undo_rejected
        assert gateway.names().count("rollout_undo") == 1
        assert result.manual_rollback in result.status_line()

    def test_exec_crash_still_rolls_back(self, gateway: FakeGateway, tmp_path: Path) -> None:
        gateway.fail_on["exec_in_pod"] = KeyError("status")
        gateway.ready = False

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.DONE
        assert result.rolled_back is True
        assert result.health_verdict is HealthVerdict.UNHEALTHY
        assert gateway.names().count("rollout_undo") == 1

    def test_health_crash_rolls_back(self, gateway: FakeGateway, tmp_path: Path) -> None:
        class CrashingVerifier(HealthVerifier):
            def verify(self, deployment):
                raise TypeError("'NoneType' object is not subscriptable")

        workflow = UpgradeWorkflow(
            gateway,
            label_selector=SELECTOR,
            snapshots=SnapshotManager(gateway, backup_dir=str(tmp_path)),
            health=CrashingVerifier(gateway, settle_s=0),
        )

        result = workflow.run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.DONE
        assert result.rolled_back is True
        assert isinstance(result.error, HealthCheckFailedError)
        assert "NoneType" in str(result.error)
        assert gateway.names().count("rollout_undo") == 1

    def test_undo_crash_escalates(self, gateway: FakeGateway, tmp_path: Path) -> None:
        gateway.probe_results = {}
        gateway.fail_on["rollout_undo"] = subprocess.TimeoutExpired(cmd="kubectl", timeout=30)

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.ESCALATED
        assert isinstance(result.error, MutationFailedError)
        assert result.manual_rollback in result.status_line()

    def test_undo_timeout_escalates(self, gateway: FakeGateway, tmp_path: Path) -> None:
        gateway.rollout_outcome = RolloutOutcome.TIMED_OUT
        gateway.fail_on["rollout_undo"] = MutationFailedError(
            "Rollout undo did not complete: kubectl rollout timed out after 30s"
        )

        result = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go())

        assert result.state is WorkflowState.ESCALATED
        assert "timed out" in result.status_line()
        assert gateway.names().count("rollout_undo") == 1



def test_to_dict_is_serialisable(gateway: FakeGateway, tmp_path: Path) -> None:
    body = _make_workflow(gateway, tmp_path).run(NEW_IMAGE, _go()).to_dict()

    assert body["state"] == "done"
    assert body["current_version"] == "v1.9.5"
    assert body["target_version"] == "v1.9.6"
    assert body["health_verdict"] == "healthy_primary"
    assert body["transitions"][0] == "target_resolved"
