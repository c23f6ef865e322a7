from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from nerdy_k8s_snapshot_restore.models import RestoreStatus, RestoreVolumeInfo, VolumeSnapshotRestore
from nerdy_k8s_snapshot_restore.snapshots import Snapshot, SnapshotNotReadyError
from nerdy_k8s_snapshot_restore.volumes import ClaimLookupError, VolumeEnumerator


def _restore(*, group: bool = False) -> VolumeSnapshotRestore:
    return VolumeSnapshotRestore.from_dict(
        {
            "metadata": {"name": "restore-1", "namespace": "ns1"},
            "spec": {"sourceName": "snap1", "sourceNamespace": "ns1", "groupSnapshot": group},
        }
    )


def _pvc(name: str, *, namespace: str = "ns1", volume_name: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, annotations=None),
        spec=SimpleNamespace(volume_name=volume_name if volume_name is not None else f"pv-{name}"),
    )


def _snapshot(name: str, pvc_name: str) -> Snapshot:
    return Snapshot(name=name, namespace="ns1", pvc_name=pvc_name, snapshot_data=f"data-{name}")


def _enumerator(*, snapshots: Mock, core_api: Mock | None = None) -> VolumeEnumerator:
    if core_api is None:
        core_api = Mock()
        core_api.read_namespaced_persistent_volume_claim.side_effect = lambda *, name, namespace: _pvc(
            name, namespace=namespace
        )
    return VolumeEnumerator(
        core_api=core_api,
        snapshots=snapshots,
        validate_interval_seconds=1,
        validate_timeout_seconds=3,
    )


def test_enumerate_with_single_snapshot_validates_and_appends_one_record() -> None:
    snapshots = Mock()
    snapshots.get_snapshot.return_value = _snapshot("snap1", "pvc-a")
    restore = _restore()

    appended = _enumerator(snapshots=snapshots).enumerate(restore)

    snapshots.validate_snapshot.assert_called_once_with(
        "snap1",
        "ns1",
        retry_interval_seconds=1,
        timeout_seconds=3,
    )
    assert appended == restore.status.volumes
    assert restore.status.volumes == [
        RestoreVolumeInfo(
            volume="pv-pvc-a",
            pvc="pvc-a",
            namespace="ns1",
            snapshot="data-snap1",
            restore_status=RestoreStatus.INITIAL,
        )
    ]


def test_enumerate_with_group_snapshot_resolves_all_members_without_validation() -> None:
    snapshots = Mock()
    snapshots.get_snapshots_for_group.return_value = [_snapshot("snap-a", "pvc-a"), _snapshot("snap-b", "pvc-b")]
    restore = _restore(group=True)

    _enumerator(snapshots=snapshots).enumerate(restore)

    snapshots.validate_snapshot.assert_not_called()
    assert [volume.pvc for volume in restore.status.volumes] == ["pvc-a", "pvc-b"]


def test_enumerate_with_partial_prior_run_keeps_existing_record_and_appends_missing() -> None:
    snapshots = Mock()
    snapshots.get_snapshots_for_group.return_value = [_snapshot("snap-a", "pvc-a"), _snapshot("snap-b", "pvc-b")]
    restore = _restore(group=True)
    existing = RestoreVolumeInfo(
        volume="pv-old",
        pvc="pvc-a",
        namespace="ns1",
        snapshot="data-old",
        restore_status=RestoreStatus.IN_PROGRESS,
        reason="kept",
    )
    restore.status.volumes.append(existing)
    enumerator = _enumerator(snapshots=snapshots)

    appended = enumerator.enumerate(restore)
    enumerator.enumerate(restore)

    assert [volume.pvc for volume in appended] == ["pvc-b"]
    assert len(restore.status.volumes) == 2
    assert restore.status.volumes[0] is existing
    assert existing.volume == "pv-old"
    assert existing.reason == "kept"
    keys = [volume.key for volume in restore.status.volumes]
    assert len(keys) == len(set(keys))


def test_enumerate_with_missing_claim_raises_claim_lookup_error() -> None:
    snapshots = Mock()
    snapshots.get_snapshot.return_value = _snapshot("snap1", "pvc-a")
    core_api = Mock()
    core_api.read_namespaced_persistent_volume_claim.side_effect = ApiException(status=404, reason="Not Found")
    restore = _restore()

    with pytest.raises(ClaimLookupError, match="ns1/pvc-a"):
        _enumerator(snapshots=snapshots, core_api=core_api).enumerate(restore)

    assert restore.status.volumes == []


def test_enumerate_with_unbound_claim_raises_claim_lookup_error() -> None:
    snapshots = Mock()
    snapshots.get_snapshot.return_value = _snapshot("snap1", "pvc-a")
    core_api = Mock()
    core_api.read_namespaced_persistent_volume_claim.return_value = _pvc("pvc-a", volume_name="")

    with pytest.raises(ClaimLookupError, match="not bound"):
        _enumerator(snapshots=snapshots, core_api=core_api).enumerate(_restore())


def test_enumerate_with_snapshot_not_ready_propagates_timeout() -> None:
    snapshots = Mock()
    snapshots.get_snapshot.return_value = _snapshot("snap1", "pvc-a")
    snapshots.validate_snapshot.side_effect = SnapshotNotReadyError("snapshot ns1/snap1 is not complete")
    restore = _restore()

    with pytest.raises(SnapshotNotReadyError):
        _enumerator(snapshots=snapshots).enumerate(restore)

    assert restore.status.volumes == []
