from __future__ import annotations

from typing import TYPE_CHECKING, Iterator
from unittest.mock import Mock

import pytest

from nerdy_k8s_snapshot_restore.crd import V1_API_VERSION, CrdRegistrar
from nerdy_k8s_snapshot_restore.driver import RestoreDriver
from nerdy_k8s_snapshot_restore.events import EventRecorder
from nerdy_k8s_snapshot_restore.k8s import KubernetesClients, load_kubernetes_clients
from nerdy_k8s_snapshot_restore.models import API_GROUP, API_VERSION, FINALIZER_CLEANUP, KIND, PLURAL
from nerdy_k8s_snapshot_restore.reconciler import ReconcileResult, SnapshotRestoreReconciler

if TYPE_CHECKING:
    from .conftest import KindClusterContext

pytestmark = pytest.mark.integration


@pytest.fixture(scope="module")
def clients(kind_cluster: "KindClusterContext") -> Iterator[KubernetesClients]:
    loaded = load_kubernetes_clients(
        kubeconfig_path=str(kind_cluster.kubeconfig_path),
        context=None,
        in_cluster=False,
    )
    try:
        yield loaded
    finally:
        loaded.api_client.close()


@pytest.fixture(scope="module")
def registered_crd(clients: KubernetesClients) -> str:
    return CrdRegistrar(api_client=clients.api_client, version_api=clients.version_api).register()


def _reconciler(clients: KubernetesClients, driver: RestoreDriver) -> SnapshotRestoreReconciler:
    return SnapshotRestoreReconciler(
        custom_api=clients.custom_api,
        driver=driver,
        enumerator=Mock(),
        guard=Mock(),
        evictor=Mock(),
        recorder=EventRecorder(clients.core_api),
    )


def _create_restore(clients: KubernetesClients, namespace: str, name: str, status: str) -> None:
    clients.custom_api.create_namespaced_custom_object(
        group=API_GROUP,
        version=API_VERSION,
        namespace=namespace,
        plural=PLURAL,
        body={
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": KIND,
            "metadata": {"name": name},
            "spec": {"sourceName": "missing-snapshot", "sourceNamespace": namespace},
            "status": {"status": status, "volumes": []},
        },
    )


def _read_restore(clients: KubernetesClients, namespace: str, name: str) -> dict:
    return clients.custom_api.get_namespaced_custom_object(
        group=API_GROUP,
        version=API_VERSION,
        namespace=namespace,
        plural=PLURAL,
        name=name,
    )


def test_crd_registration_is_idempotent_on_live_cluster(clients: KubernetesClients, registered_crd: str) -> None:
    assert registered_crd == V1_API_VERSION
    assert CrdRegistrar(api_client=clients.api_client, version_api=clients.version_api).register() == V1_API_VERSION


def test_finalizer_is_added_then_released_after_cleanup(
    kind_cluster: "KindClusterContext",
    clients: KubernetesClients,
    registered_crd: str,
) -> None:
    namespace = kind_cluster.namespace
    driver = Mock(spec=RestoreDriver)
    reconciler = _reconciler(clients, driver)
    _create_restore(clients, namespace, "lifecycle", "Failed")

    assert reconciler.reconcile(namespace, "lifecycle") == ReconcileResult(requeue=True)
    body = _read_restore(clients, namespace, "lifecycle")
    if FINALIZER_CLEANUP not in (body["metadata"].get("finalizers") or []):
        pytest.fail(f"Finalizer was not persisted.\nDiagnostics:\n{kind_cluster.collect_diagnostics()}")

    reconciler.reconcile(namespace, "lifecycle")
    driver.cleanup_restore_objects.assert_called_once()

    clients.custom_api.delete_namespaced_custom_object(
        group=API_GROUP,
        version=API_VERSION,
        namespace=namespace,
        plural=PLURAL,
        name="lifecycle",
    )
    assert _read_restore(clients, namespace, "lifecycle")["metadata"].get("deletionTimestamp")

    assert reconciler.reconcile(namespace, "lifecycle") == ReconcileResult()
    assert driver.cleanup_restore_objects.call_count == 2
    assert reconciler.reconcile(namespace, "lifecycle") == ReconcileResult()
