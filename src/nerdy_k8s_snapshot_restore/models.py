from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

API_GROUP = "nerdy-k8s.io"
API_VERSION = "v1alpha1"
KIND = "VolumeSnapshotRestore"
PLURAL = "volumesnapshotrestores"
FINALIZER_CLEANUP = "nerdy-k8s.io/finalizer-cleanup"


class RestoreStatus(str, Enum):
    INITIAL = "Initial"
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    STAGED = "Staged"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"


def parse_status(value: str | None) -> RestoreStatus | str:
    """Map a raw status string onto RestoreStatus.

    Empty or missing values mean ``Initial``. Unrecognised values are returned
    verbatim so callers can report them instead of silently resetting progress.
    """
    if not value:
        return RestoreStatus.INITIAL
    try:
        return RestoreStatus(value)
    except ValueError:
        return value


def status_text(value: RestoreStatus | str) -> str:
    return value.value if isinstance(value, RestoreStatus) else str(value)


@dataclass(frozen=True)
class RestoreSpec:
    source_name: str
    source_namespace: str
    group_snapshot: bool = False


@dataclass
class RestoreVolumeInfo:
    volume: str
    pvc: str
    namespace: str
    snapshot: str
    restore_status: RestoreStatus | str = RestoreStatus.INITIAL
    reason: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return self.pvc, self.namespace

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RestoreVolumeInfo:
        return cls(
            volume=data.get("volume", ""),
            pvc=data.get("pvc", ""),
            namespace=data.get("namespace", ""),
            snapshot=data.get("snapshot", ""),
            restore_status=parse_status(data.get("restoreStatus")),
            reason=data.get("reason", "") or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "volume": self.volume,
            "pvc": self.pvc,
            "namespace": self.namespace,
            "snapshot": self.snapshot,
            "restoreStatus": status_text(self.restore_status),
            "reason": self.reason,
        }


@dataclass
class RestoreStatusBlock:
    status: RestoreStatus | str = RestoreStatus.INITIAL
    volumes: list[RestoreVolumeInfo] = field(default_factory=list)


@dataclass
class VolumeSnapshotRestore:
    metadata: dict[str, Any]
    spec: RestoreSpec
    status: RestoreStatusBlock = field(default_factory=RestoreStatusBlock)

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "")

    @property
    def uid(self) -> str:
        return self.metadata.get("uid", "")

    @property
    def finalizers(self) -> list[str]:
        return list(self.metadata.get("finalizers") or [])

    def is_deleting(self) -> bool:
        return bool(self.metadata.get("deletionTimestamp"))

    def has_finalizer(self, finalizer: str = FINALIZER_CLEANUP) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str = FINALIZER_CLEANUP) -> None:
        if not self.has_finalizer(finalizer):
            self.metadata["finalizers"] = [*self.finalizers, finalizer]

    def remove_finalizer(self, finalizer: str = FINALIZER_CLEANUP) -> None:
        self.metadata["finalizers"] = [item for item in self.finalizers if item != finalizer]

    def volume_for(self, pvc: str, namespace: str) -> RestoreVolumeInfo | None:
        for volume in self.status.volumes:
            if volume.key == (pvc, namespace):
                return volume
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VolumeSnapshotRestore:
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        return cls(
            metadata=deepcopy(data.get("metadata") or {}),
            spec=RestoreSpec(
                source_name=spec.get("sourceName", ""),
                source_namespace=spec.get("sourceNamespace", ""),
                group_snapshot=bool(spec.get("groupSnapshot", False)),
            ),
            status=RestoreStatusBlock(
                status=parse_status(status.get("status")),
                volumes=[RestoreVolumeInfo.from_dict(item) for item in status.get("volumes") or []],
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": KIND,
            "metadata": deepcopy(self.metadata),
            "spec": {
                "sourceName": self.spec.source_name,
                "sourceNamespace": self.spec.source_namespace,
                "groupSnapshot": self.spec.group_snapshot,
            },
            "status": {
                "status": status_text(self.status.status),
                "volumes": [volume.to_dict() for volume in self.status.volumes],
            },
        }
