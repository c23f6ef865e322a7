from __future__ import annotations

import logging
from typing import Iterable

from kubernetes import client
from kubernetes.client import ApiException

from .k8s import format_api_exception_message
from .models import RestoreVolumeInfo

# Schedulers must not place workloads on a claim carrying this annotation.
RESTORE_ANNOTATION = "stork.libopenstorage.org/restore-in-progress"

logger = logging.getLogger(__name__)


class ClaimAnnotationError(RuntimeError):
    """Raised when the restore annotation cannot be read or written on a PVC."""


class ClaimAnnotationGuard:
    def __init__(self, core_api: client.CoreV1Api) -> None:
        self.core_api = core_api

    def mark_claims(self, volumes: Iterable[RestoreVolumeInfo]) -> None:
        for volume in volumes:
            self.mark_claim(volume.pvc, volume.namespace)

    def unmark_claims(self, volumes: Iterable[RestoreVolumeInfo]) -> None:
        for volume in volumes:
            self.unmark_claim(volume.pvc, volume.namespace)

    def mark_claim(self, pvc_name: str, namespace: str) -> None:
        pvc = self._read_claim(pvc_name, namespace)
        annotations = dict(pvc.metadata.annotations or {})
        if annotations.get(RESTORE_ANNOTATION) == "true":
            return
        annotations[RESTORE_ANNOTATION] = "true"
        pvc.metadata.annotations = annotations
        self._replace_claim(pvc, pvc_name, namespace)
        logger.info("Marked PVC %s/%s for in-place restore", namespace, pvc_name, extra={"pvc": pvc_name})

    def unmark_claim(self, pvc_name: str, namespace: str) -> None:
        pvc = self._read_claim(pvc_name, namespace)
        annotations = pvc.metadata.annotations
        if not annotations:
            logger.warning("No annotations found on PVC %s/%s", namespace, pvc_name, extra={"pvc": pvc_name})
            return
        if RESTORE_ANNOTATION not in annotations:
            logger.warning(
                "Restore annotation not found on PVC %s/%s", namespace, pvc_name, extra={"pvc": pvc_name}
            )
            return

        pvc.metadata.annotations = {key: value for key, value in annotations.items() if key != RESTORE_ANNOTATION}
        self._replace_claim(pvc, pvc_name, namespace)
        logger.info("Removed restore annotation from PVC %s/%s", namespace, pvc_name, extra={"pvc": pvc_name})

    def _read_claim(self, pvc_name: str, namespace: str) -> client.V1PersistentVolumeClaim:
        try:
            return self.core_api.read_namespaced_persistent_volume_claim(name=pvc_name, namespace=namespace)
        except ApiException as error:
            raise ClaimAnnotationError(
                format_api_exception_message(operation=f"get PVC {namespace}/{pvc_name}", hint="", error=error)
            ) from error

    def _replace_claim(self, pvc: client.V1PersistentVolumeClaim, pvc_name: str, namespace: str) -> None:
        # replace carries resourceVersion, so a concurrent edit surfaces as a 409 here.
        try:
            self.core_api.replace_namespaced_persistent_volume_claim(name=pvc_name, namespace=namespace, body=pvc)
        except ApiException as error:
            raise ClaimAnnotationError(
                format_api_exception_message(
                    operation=f"update PVC {namespace}/{pvc_name}",
                    hint="The claim may have been modified concurrently; it is retried on the next reconcile.",
                    error=error,
                )
            ) from error
