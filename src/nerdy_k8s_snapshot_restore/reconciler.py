from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable

from kubernetes import client
from kubernetes.client import ApiException

from .annotations import ClaimAnnotationGuard
from .driver import RestoreDriver, RestoreDriverError
from .eviction import PodEvictionCoordinator
from .events import EventRecorder
from .k8s import error_message, is_not_found
from .log import restore_logger
from .models import (
    API_GROUP,
    API_VERSION,
    PLURAL,
    RestoreStatus,
    VolumeSnapshotRestore,
    status_text,
)
from .volumes import VolumeEnumerator

DEFAULT_REQUEUE_SECONDS = 10

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    requeue: bool = False
    requeue_after: float | None = None


class InvalidRestoreStatusError(RuntimeError):
    """Raised for a status value the state machine does not know."""


class SnapshotRestoreReconciler:
    def __init__(
        self,
        *,
        custom_api: client.CustomObjectsApi,
        driver: RestoreDriver,
        enumerator: VolumeEnumerator,
        guard: ClaimAnnotationGuard,
        evictor: PodEvictionCoordinator,
        recorder: EventRecorder,
        requeue_seconds: float = DEFAULT_REQUEUE_SECONDS,
    ) -> None:
        self.custom_api = custom_api
        self.driver = driver
        self.enumerator = enumerator
        self.guard = guard
        self.evictor = evictor
        self.recorder = recorder
        self.requeue_seconds = requeue_seconds

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Run one pass for the named restore.

        Errors are raised to the caller, which retries after a short delay. The
        object being gone is the only condition treated as final.
        """
        logger.debug("Reconciling VolumeSnapshotRestore %s/%s", namespace, name)
        try:
            body = self.custom_api.get_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION,
                namespace=namespace,
                plural=PLURAL,
                name=name,
            )
        except ApiException as error:
            if is_not_found(error):
                return ReconcileResult()
            raise

        restore = VolumeSnapshotRestore.from_dict(body)

        if restore.is_deleting():
            if restore.has_finalizer():
                self._handle_delete(restore)
            return ReconcileResult()

        if not restore.has_finalizer():
            restore.add_finalizer()
            self._update(restore)
            return ReconcileResult(requeue=True)

        self.handle(restore)
        if restore.status.status == RestoreStatus.SUCCESSFUL:
            return ReconcileResult()
        return ReconcileResult(requeue_after=self.requeue_seconds)

    def handle(self, restore: VolumeSnapshotRestore) -> None:
        log = restore_logger(logger, restore)
        status = restore.status.status
        if status == RestoreStatus.SUCCESSFUL:
            return

        handlers: dict[Any, Callable[[VolumeSnapshotRestore], None]] = {
            RestoreStatus.INITIAL: self._handle_initial,
            RestoreStatus.PENDING: self._handle_start_restore,
            RestoreStatus.IN_PROGRESS: self._handle_start_restore,
            RestoreStatus.STAGED: self._handle_final,
            RestoreStatus.FAILED: self.driver.cleanup_restore_objects,
        }
        failure: Exception | None = None
        try:
            handler = handlers.get(status)
            if handler is None:
                raise InvalidRestoreStatusError(f"invalid stage for volume snapshot restore: {status_text(status)}")
            handler(restore)
        except Exception as error:  # pylint: disable=broad-except
            failure = error
            log.error("Error handling %s stage: %s", status_text(status), error_message(error))
            self.recorder.warning(restore, RestoreStatus.FAILED.value, error_message(error))

        self._update(restore)
        if failure is not None:
            raise failure

        if restore.status.status == RestoreStatus.SUCCESSFUL:
            self.recorder.normal(restore, RestoreStatus.SUCCESSFUL.value, "Snapshot in-place restore completed")

    def _handle_initial(self, restore: VolumeSnapshotRestore) -> None:
        log = restore_logger(logger, restore)
        log.info("Starting in-place restore from snapshot %s", restore.spec.source_name)
        self.enumerator.enumerate(restore)
        restore.status.status = RestoreStatus.PENDING

    def _handle_start_restore(self, restore: VolumeSnapshotRestore) -> None:
        log = restore_logger(logger, restore)
        if restore.status.status == RestoreStatus.PENDING:
            log.info("Preparing volumes for snapshot restore %s", restore.spec.source_name)
            try:
                self.driver.start_restore(restore)
            except Exception as error:  # pylint: disable=broad-except
                raise RestoreDriverError(
                    f"Error starting snapshot restore for volumes: {error_message(error)}"
                ) from error
            restore.status.status = RestoreStatus.IN_PROGRESS
            # Persist now so a restart after the driver accepted the restore never starts it twice.
            self._update(restore)

        previous = {volume.key: volume.restore_status for volume in restore.status.volumes}
        if restore.status.volumes:
            self.driver.get_restore_status(restore)

        in_progress = False
        for volume in restore.status.volumes:
            if volume.restore_status == RestoreStatus.FAILED:
                self.recorder.warning(
                    restore,
                    RestoreStatus.FAILED.value,
                    f"Error restoring volume {volume.pvc}: {volume.reason}",
                )
                raise RestoreDriverError(f"restore failed for volume: {volume.pvc}")
            if volume.restore_status == RestoreStatus.SUCCESSFUL:
                if previous.get(volume.key) != RestoreStatus.SUCCESSFUL:
                    self.recorder.normal(
                        restore,
                        RestoreStatus.SUCCESSFUL.value,
                        f"Volume {volume.pvc} restored successfully",
                    )
                continue
            log.info("Volume restore for PVC %s is in %s state", volume.pvc, status_text(volume.restore_status))
            in_progress = True

        if in_progress:
            return

        self.evictor.pods_for_volumes(restore.status.volumes)
        restore.status.status = RestoreStatus.STAGED

    def _handle_final(self, restore: VolumeSnapshotRestore) -> None:
        log = restore_logger(logger, restore)
        volumes = restore.status.volumes

        # Check every workload before touching any claim, then list again once the
        # annotation keeps new pods off the claims.
        self.evictor.pods_for_volumes(volumes)
        self.guard.mark_claims(volumes)
        pods = self.evictor.pods_for_volumes(volumes)
        log.info("Deleting %d pod(s) using restored volumes", len(pods))
        self.evictor.evict(pods)

        try:
            self.driver.complete_restore(restore)
        except Exception as error:  # pylint: disable=broad-except
            self._release_claims(restore)
            restore.status.status = RestoreStatus.FAILED
            raise RestoreDriverError(f"failed to restore pvc: {error_message(error)}") from error

        self.guard.unmark_claims(volumes)
        restore.status.status = RestoreStatus.SUCCESSFUL

    def _handle_delete(self, restore: VolumeSnapshotRestore) -> None:
        log = restore_logger(logger, restore)
        try:
            self.driver.cleanup_restore_objects(restore)
        except Exception as error:  # pylint: disable=broad-except
            log.error("Cleanup of restore objects failed: %s", error_message(error))
            self.recorder.warning(restore, "CleanupFailed", error_message(error))

        # Claims are only annotated while Staged, or left behind by a failed completion.
        if restore.status.status in (RestoreStatus.STAGED, RestoreStatus.FAILED):
            self._release_claims(restore)

        restore.remove_finalizer()
        self._update(restore)
        log.info("Removed cleanup finalizer")

    def _release_claims(self, restore: VolumeSnapshotRestore) -> None:
        try:
            self.guard.unmark_claims(restore.status.volumes)
        except Exception as error:  # pylint: disable=broad-except
            restore_logger(logger, restore).error("Unable to unmark PVCs for restore: %s", error_message(error))

    def _update(self, restore: VolumeSnapshotRestore) -> None:
        response = self.custom_api.replace_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=restore.namespace,
            plural=PLURAL,
            name=restore.name,
            body=restore.to_dict(),
        )
        # Later updates in the same pass must carry the new resourceVersion.
        if isinstance(response, dict):
            resource_version = (response.get("metadata") or {}).get("resourceVersion")
            if resource_version:
                restore.metadata["resourceVersion"] = resource_version
