from __future__ import annotations

import logging

from kubernetes import client
from kubernetes.client import ApiException

from .k8s import format_api_exception_message
from .log import restore_logger
from .models import RestoreStatus, RestoreVolumeInfo, VolumeSnapshotRestore
from .snapshots import (
    DEFAULT_VALIDATE_INTERVAL_SECONDS,
    DEFAULT_VALIDATE_TIMEOUT_SECONDS,
    Snapshot,
    SnapshotProvider,
)

logger = logging.getLogger(__name__)


class ClaimLookupError(RuntimeError):
    """Raised when a snapshot's source PVC cannot be resolved to a bound claim."""


class VolumeEnumerator:
    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        snapshots: SnapshotProvider,
        validate_interval_seconds: float = DEFAULT_VALIDATE_INTERVAL_SECONDS,
        validate_timeout_seconds: float = DEFAULT_VALIDATE_TIMEOUT_SECONDS,
    ) -> None:
        self.core_api = core_api
        self.snapshots = snapshots
        self.validate_interval_seconds = validate_interval_seconds
        self.validate_timeout_seconds = validate_timeout_seconds

    def enumerate(self, restore: VolumeSnapshotRestore) -> list[RestoreVolumeInfo]:
        """Resolve the restore source and merge its claims into the status volumes.

        Records already present for a (PVC, namespace) pair are left untouched, so
        running this again after a partial run only appends the missing claims.
        Returns the records appended by this call.
        """
        log = restore_logger(logger, restore)
        name = restore.spec.source_name
        namespace = restore.spec.source_namespace
        if restore.spec.group_snapshot:
            log.info("Resolving group snapshot %s/%s", namespace, name)
            snapshot_list = self.snapshots.get_snapshots_for_group(name, namespace)
        else:
            log.info("Resolving snapshot %s/%s", namespace, name)
            snapshot = self.snapshots.get_snapshot(name, namespace)
            self.snapshots.validate_snapshot(
                name,
                namespace,
                retry_interval_seconds=self.validate_interval_seconds,
                timeout_seconds=self.validate_timeout_seconds,
            )
            snapshot_list = [snapshot]

        appended: list[RestoreVolumeInfo] = []
        for snapshot in snapshot_list:
            pvc = self._read_bound_claim(snapshot)
            pvc_name = pvc.metadata.name
            pvc_namespace = pvc.metadata.namespace or snapshot.namespace
            if restore.volume_for(pvc_name, pvc_namespace) is not None:
                continue

            record = RestoreVolumeInfo(
                volume=pvc.spec.volume_name,
                pvc=pvc_name,
                namespace=pvc_namespace,
                snapshot=snapshot.snapshot_data,
                restore_status=RestoreStatus.INITIAL,
            )
            restore.status.volumes.append(record)
            appended.append(record)
            log.debug("Added volume %s for PVC %s/%s", record.volume, pvc_namespace, pvc_name)
        return appended

    def _read_bound_claim(self, snapshot: Snapshot) -> client.V1PersistentVolumeClaim:
        try:
            pvc = self.core_api.read_namespaced_persistent_volume_claim(
                name=snapshot.pvc_name,
                namespace=snapshot.namespace,
            )
        except ApiException as error:
            raise ClaimLookupError(
                format_api_exception_message(
                    operation=f"get PVC {snapshot.namespace}/{snapshot.pvc_name} for snapshot {snapshot.name}",
                    hint="The snapshot's source claim must still exist to restore in place.",
                    error=error,
                )
            ) from error

        if pvc.spec is None or not pvc.spec.volume_name:
            raise ClaimLookupError(
                f"PVC {snapshot.namespace}/{snapshot.pvc_name} for snapshot {snapshot.name} is not bound to a volume"
            )
        return pvc
