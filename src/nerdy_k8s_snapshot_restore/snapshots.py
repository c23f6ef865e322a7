from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any

from kubernetes import client
from kubernetes.client import ApiException

from .k8s import format_api_exception_message

SNAPSHOT_GROUP = "volumesnapshot.external-storage.k8s.io"
SNAPSHOT_VERSION = "v1"
SNAPSHOT_PLURAL = "volumesnapshots"
GROUP_SNAPSHOT_GROUP = "stork.libopenstorage.org"
GROUP_SNAPSHOT_VERSION = "v1alpha1"
GROUP_SNAPSHOT_PLURAL = "groupvolumesnapshots"

DEFAULT_VALIDATE_TIMEOUT_SECONDS = 60
DEFAULT_VALIDATE_INTERVAL_SECONDS = 5

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot:
    name: str
    namespace: str
    pvc_name: str
    snapshot_data: str


class SnapshotResolutionError(RuntimeError):
    """Raised when a snapshot or group snapshot cannot be resolved."""


class SnapshotNotReadyError(TimeoutError):
    """Raised when a snapshot does not report Ready within the validation window."""


class SnapshotProvider:
    def __init__(self, custom_api: client.CustomObjectsApi) -> None:
        self.custom_api = custom_api

    def get_snapshot(self, name: str, namespace: str) -> Snapshot:
        body = self._read_snapshot(name, namespace)
        spec = body.get("spec") or {}
        metadata = body.get("metadata") or {}
        pvc_name = spec.get("persistentVolumeClaimName") or ""
        if not pvc_name:
            raise SnapshotResolutionError(f"snapshot {namespace}/{name} does not reference a PVC")
        return Snapshot(
            name=metadata.get("name") or name,
            namespace=metadata.get("namespace") or namespace,
            pvc_name=pvc_name,
            snapshot_data=spec.get("snapshotDataName") or "",
        )

    def validate_snapshot(
        self,
        name: str,
        namespace: str,
        *,
        retry_interval_seconds: float = DEFAULT_VALIDATE_INTERVAL_SECONDS,
        timeout_seconds: float = DEFAULT_VALIDATE_TIMEOUT_SECONDS,
    ) -> None:
        deadline = time.time() + timeout_seconds
        last_state = "no conditions reported"
        while True:
            body = self._read_snapshot(name, namespace)
            conditions = (body.get("status") or {}).get("conditions") or []
            for condition in conditions:
                if condition.get("status") != "True":
                    continue
                if condition.get("type") == "Ready":
                    return
                if condition.get("type") == "Error":
                    message = condition.get("message") or condition.get("reason") or "unknown error"
                    raise SnapshotResolutionError(f"snapshot {namespace}/{name} failed: {message}")
            if conditions:
                latest = conditions[-1]
                last_state = f"{latest.get('type')}={latest.get('status')}"

            if time.time() >= deadline:
                break
            logger.debug("Snapshot %s/%s is not ready yet (%s)", namespace, name, last_state)
            time.sleep(retry_interval_seconds)

        raise SnapshotNotReadyError(
            f"snapshot {namespace}/{name} is not complete after {timeout_seconds}s ({last_state})"
        )

    def get_snapshots_for_group(self, name: str, namespace: str) -> list[Snapshot]:
        try:
            group = self.custom_api.get_namespaced_custom_object(
                group=GROUP_SNAPSHOT_GROUP,
                version=GROUP_SNAPSHOT_VERSION,
                namespace=namespace,
                plural=GROUP_SNAPSHOT_PLURAL,
                name=name,
            )
        except ApiException as error:
            raise SnapshotResolutionError(
                format_api_exception_message(
                    operation=f"get group snapshot {namespace}/{name}",
                    hint="Verify the group snapshot exists in the source namespace.",
                    error=error,
                )
            ) from error

        members = (group.get("status") or {}).get("volumeSnapshots") or []
        names = [member.get("volumeSnapshotName") for member in members if member.get("volumeSnapshotName")]
        if not names:
            raise SnapshotResolutionError(f"group snapshot {namespace}/{name} has 0 snapshots")
        return [self.get_snapshot(member_name, namespace) for member_name in names]

    def _read_snapshot(self, name: str, namespace: str) -> dict[str, Any]:
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=SNAPSHOT_GROUP,
                version=SNAPSHOT_VERSION,
                namespace=namespace,
                plural=SNAPSHOT_PLURAL,
                name=name,
            )
        except ApiException as error:
            raise SnapshotResolutionError(
                format_api_exception_message(
                    operation=f"get snapshot {namespace}/{name}",
                    hint="Verify the snapshot exists in the source namespace.",
                    error=error,
                )
            ) from error
