from __future__ import annotations

import logging
import sys

import kopf

from nerdy_k8s_snapshot_restore.annotations import ClaimAnnotationGuard
from nerdy_k8s_snapshot_restore.config import AppConfig, validate_config
from nerdy_k8s_snapshot_restore.crd import CrdRegistrar
from nerdy_k8s_snapshot_restore.driver import load_driver
from nerdy_k8s_snapshot_restore.eviction import PodEvictionCoordinator
from nerdy_k8s_snapshot_restore.events import EventRecorder
from nerdy_k8s_snapshot_restore.handlers import RestoreOperator
from nerdy_k8s_snapshot_restore.k8s import KubernetesClients, load_kubernetes_clients
from nerdy_k8s_snapshot_restore.log import configure_logging
from nerdy_k8s_snapshot_restore.reconciler import SnapshotRestoreReconciler
from nerdy_k8s_snapshot_restore.snapshots import SnapshotProvider
from nerdy_k8s_snapshot_restore.volumes import VolumeEnumerator

logger = logging.getLogger("nerdy_k8s_snapshot_restore")


def build_operator(config: AppConfig, clients: KubernetesClients) -> RestoreOperator:
    reconciler = SnapshotRestoreReconciler(
        custom_api=clients.custom_api,
        driver=load_driver(config.driver),
        enumerator=VolumeEnumerator(
            core_api=clients.core_api,
            snapshots=SnapshotProvider(clients.custom_api),
            validate_interval_seconds=config.snapshot_validate_interval_seconds,
            validate_timeout_seconds=config.snapshot_validate_timeout_seconds,
        ),
        guard=ClaimAnnotationGuard(clients.core_api),
        evictor=PodEvictionCoordinator(
            core_api=clients.core_api,
            scheduler_name=config.scheduler_name,
            delete_timeout_seconds=config.pod_delete_timeout_seconds,
            force_delete_timeout_seconds=config.pod_force_delete_timeout_seconds,
            poll_interval_seconds=config.pod_poll_interval_seconds,
        ),
        recorder=EventRecorder(clients.core_api),
        requeue_seconds=config.requeue_seconds,
    )
    return RestoreOperator(
        reconciler=reconciler,
        clients=clients,
        workers=config.workers,
        requeue_error_seconds=config.requeue_error_seconds,
    )


def main(config: AppConfig | None = None) -> int:
    config = config or AppConfig()
    configure_logging(config.log_level, config.log_json)
    try:
        validate_config(config)
        clients = load_kubernetes_clients(
            kubeconfig_path=config.kubeconfig_path,
            context=config.context,
            in_cluster=config.in_cluster,
        )
        CrdRegistrar(
            api_client=clients.api_client,
            version_api=clients.version_api,
            timeout_seconds=config.crd_timeout_seconds,
            interval_seconds=config.crd_interval_seconds,
        ).register()
        registry = kopf.OperatorRegistry()
        build_operator(config, clients).register(registry)
    except Exception:  # pylint: disable=broad-except
        logger.exception("Snapshot restore controller failed to start")
        return 1

    # kopf handles SIGTERM/SIGINT and returns once the operator has stopped.
    if config.watch_namespace:
        kopf.run(registry=registry, standalone=True, namespaces=[config.watch_namespace])
    else:
        kopf.run(registry=registry, standalone=True, clusterwide=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
