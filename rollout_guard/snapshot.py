"""
Pre-upgrade manifest backups.
"""
import logging
import os
from datetime import datetime
from typing import Callable

from rollout_guard.errors import SnapshotFailedError, UpgradeError
from rollout_guard.kube_types import ClusterGateway, Deployment, Snapshot

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


class SnapshotManager:
    """Writes the current deployment manifest to a uniquely named file.

    The file is for operators; rollbacks go through the platform's revision
    history instead of replaying it.
    """

    def __init__(self, gateway: ClusterGateway, backup_dir: str = ".", clock: Callable[[], datetime] = datetime.now):
        self.gateway = gateway
        self.backup_dir = backup_dir
        self.clock = clock

    def capture(self, deployment: Deployment) -> Snapshot:
        created_at = self.clock()
        try:
            manifest = self.gateway.get_manifest(deployment.name)
        except UpgradeError as e:
            raise SnapshotFailedError(
                f"Cannot fetch manifest: {e.message}",
                deployment=deployment.name,
                namespace=deployment.namespace,
            ) from e

        base = f"{deployment.name}-backup-{created_at.strftime(TIMESTAMP_FORMAT)}"
        try:
            os.makedirs(self.backup_dir, exist_ok=True)
            path = self._write_exclusive(base, manifest)
        except OSError as e:
            logger.error(f"❌ Failed to write backup of {deployment.name}: {e}")
            raise SnapshotFailedError(
                f"Cannot write backup: {e}",
                deployment=deployment.name,
                namespace=deployment.namespace,
            ) from e

        logger.info(f"Deployment backed up as {path}")
        return Snapshot(path=path, manifest=manifest, created_at=created_at)

    def _write_exclusive(self, base: str, manifest: bytes) -> str:
        suffix = 0
        while True:
            name = f"{base}.yaml" if suffix == 0 else f"{base}-{suffix}.yaml"
            path = os.path.join(self.backup_dir, name)
            try:
                with open(path, "xb") as f:
                    f.write(manifest)
                return path
            except FileExistsError:
                suffix += 1
