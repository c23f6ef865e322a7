from __future__ import annotations

import logging

import kopf

from .k8s import KubernetesClients, error_message
from .models import API_GROUP, API_VERSION, PLURAL
from .reconciler import ReconcileResult, SnapshotRestoreReconciler

DEFAULT_WORKERS = 4
DEFAULT_REQUEUE_ERROR_SECONDS = 2
IMMEDIATE_REQUEUE_SECONDS = 1

logger = logging.getLogger(__name__)


class RestoreOperator:
    """kopf handlers that drive ``SnapshotRestoreReconciler``.

    Every requeue the reconciler asks for becomes a ``kopf.TemporaryError`` so
    kopf calls the same handler again after the delay. The reconciler owns the
    cleanup finalizer; kopf only keeps its progress in annotations.
    """

    def __init__(
        self,
        *,
        reconciler: SnapshotRestoreReconciler,
        clients: KubernetesClients,
        workers: int = DEFAULT_WORKERS,
        requeue_error_seconds: float = DEFAULT_REQUEUE_ERROR_SECONDS,
    ) -> None:
        if workers <= 0:
            raise ValueError("workers must be positive")
        self.reconciler = reconciler
        self.clients = clients
        self.workers = workers
        self.requeue_error_seconds = requeue_error_seconds

    def register(self, registry: kopf.OperatorRegistry) -> None:
        kopf.on.startup(registry=registry)(self.configure)
        kopf.on.login(registry=registry)(self.login)
        kopf.on.resume(API_GROUP, API_VERSION, PLURAL, registry=registry)(self.reconcile)
        kopf.on.create(API_GROUP, API_VERSION, PLURAL, registry=registry)(self.reconcile)
        # optional: the reconciler's own finalizer holds the object until cleanup is done.
        kopf.on.delete(API_GROUP, API_VERSION, PLURAL, optional=True, registry=registry)(self.delete)

    def configure(self, settings: kopf.OperatorSettings, **_) -> None:
        # Restore events are recorded by EventRecorder, not by kopf's log posting.
        settings.posting.enabled = False
        settings.execution.max_workers = self.workers
        # status is rewritten wholesale on every update, so kopf state lives in annotations.
        settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=API_GROUP)
        settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(prefix=API_GROUP)
        logger.info("Restore operator configured with %d worker(s)", self.workers)

    def login(self, **_) -> kopf.ConnectionInfo:
        """Reuse the credentials already loaded for the kubernetes client."""
        config = self.clients.api_client.configuration
        scheme = token = None
        header = config.get_api_key_with_prefix("authorization")
        if header:
            scheme, _, token = header.partition(" ")
            if not token:
                scheme, token = None, scheme
        return kopf.ConnectionInfo(
            server=config.host,
            ca_path=config.ssl_ca_cert,
            insecure=not config.verify_ssl,
            username=config.username or None,
            password=config.password or None,
            scheme=scheme,
            token=token,
            certificate_path=config.cert_file,
            private_key_path=config.key_file,
        )

    def reconcile(self, namespace: str, name: str, **_) -> None:
        result = self._run(namespace, name)
        if result.requeue:
            raise kopf.TemporaryError("restore requeued", delay=IMMEDIATE_REQUEUE_SECONDS)
        if result.requeue_after:
            raise kopf.TemporaryError(f"restore requeued in {result.requeue_after}s", delay=result.requeue_after)

    def delete(self, namespace: str, name: str, **_) -> None:
        self._run(namespace, name)

    def _run(self, namespace: str, name: str) -> ReconcileResult:
        try:
            return self.reconciler.reconcile(namespace, name)
        except Exception as error:  # pylint: disable=broad-except
            logger.error(
                "Reconcile of %s/%s failed, retrying in %ss: %s",
                namespace,
                name,
                self.requeue_error_seconds,
                error_message(error),
            )
            raise kopf.TemporaryError(error_message(error), delay=self.requeue_error_seconds) from error
