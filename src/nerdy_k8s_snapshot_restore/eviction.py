from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
import threading
import time
from typing import Iterable

from kubernetes import client
from kubernetes.client import ApiException

from .k8s import error_message, format_api_exception_message, is_not_found
from .models import RestoreVolumeInfo

DEFAULT_SCHEDULER_NAME = "stork"
DEFAULT_DELETE_TIMEOUT_SECONDS = 120
DEFAULT_FORCE_DELETE_TIMEOUT_SECONDS = 30
DEFAULT_POLL_INTERVAL_SECONDS = 2
_TERMINAL_POD_PHASES = {"Succeeded", "Failed"}

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PodEvictionFailure:
    namespace: str
    name: str
    reason: str

    def __str__(self) -> str:
        return f"pod {self.namespace}/{self.name}: {self.reason}"


class PodLookupError(RuntimeError):
    """Raised when the pods bound to a PVC cannot be listed."""


class PodSchedulerMismatchError(RuntimeError):
    """Raised when a pod using a restored PVC was not placed by the expected scheduler."""

    def __init__(self, *, scheduler_name: str, pods: list[str]) -> None:
        super().__init__(
            f"application not scheduled by {scheduler_name} scheduler: {', '.join(pods)}. "
            f"Reschedule these pods with schedulerName={scheduler_name} before restoring in place."
        )
        self.scheduler_name = scheduler_name
        self.pods = pods


class PodEvictionError(RuntimeError):
    """Aggregate of every pod that could not be removed."""

    def __init__(self, failures: list[PodEvictionFailure]) -> None:
        rendered = "; ".join(str(failure) for failure in failures)
        super().__init__(f"{len(failures)} pod(s) could not be deleted: {rendered}")
        self.failures = failures


class PodEvictionCoordinator:
    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        scheduler_name: str = DEFAULT_SCHEDULER_NAME,
        delete_timeout_seconds: float = DEFAULT_DELETE_TIMEOUT_SECONDS,
        force_delete_timeout_seconds: float = DEFAULT_FORCE_DELETE_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.core_api = core_api
        self.scheduler_name = scheduler_name
        self.delete_timeout_seconds = delete_timeout_seconds
        self.force_delete_timeout_seconds = force_delete_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def pods_using_claim(self, pvc_name: str, namespace: str) -> list[client.V1Pod]:
        try:
            response = self.core_api.list_namespaced_pod(namespace=namespace)
        except ApiException as error:
            raise PodLookupError(
                format_api_exception_message(
                    operation=f"list pods using PVC {namespace}/{pvc_name}",
                    hint="Verify RBAC allows list on pods.",
                    error=error,
                )
            ) from error

        pods: list[client.V1Pod] = []
        for pod in response.items or []:
            if pod.status is not None and pod.status.phase in _TERMINAL_POD_PHASES:
                continue
            volumes = pod.spec.volumes if pod.spec is not None else None
            for declared_volume in volumes or []:
                pvc_reference = declared_volume.persistent_volume_claim
                if pvc_reference is not None and pvc_reference.claim_name == pvc_name:
                    pods.append(pod)
                    break
        return pods

    def pods_for_volumes(self, volumes: Iterable[RestoreVolumeInfo]) -> list[client.V1Pod]:
        """Collect the pods bound to every volume and check they can be evicted safely."""
        pods: list[client.V1Pod] = []
        seen: set[str] = set()
        for volume in volumes:
            for pod in self.pods_using_claim(volume.pvc, volume.namespace):
                uid = pod.metadata.uid or f"{pod.metadata.namespace}/{pod.metadata.name}"
                if uid in seen:
                    continue
                seen.add(uid)
                pods.append(pod)
        self.ensure_scheduled_by_expected_scheduler(pods)
        return pods

    def ensure_scheduled_by_expected_scheduler(self, pods: Iterable[client.V1Pod]) -> None:
        mismatched = [
            f"{pod.metadata.namespace}/{pod.metadata.name}"
            for pod in pods
            if (pod.spec.scheduler_name or "default-scheduler") != self.scheduler_name
        ]
        if mismatched:
            raise PodSchedulerMismatchError(scheduler_name=self.scheduler_name, pods=mismatched)

    def evict(self, pods: list[client.V1Pod]) -> None:
        if not pods:
            return

        delete_failures: list[PodEvictionFailure] = []
        for pod in pods:
            try:
                self._delete_pod(pod, force=False)
            except ApiException as error:
                delete_failures.append(_failure(pod, f"graceful delete failed: {error_message(error)}"))
        if delete_failures:
            raise PodEvictionError(delete_failures)

        failures: list[PodEvictionFailure] = []
        failures_lock = threading.Lock()

        def _record(failure: PodEvictionFailure) -> None:
            with failures_lock:
                failures.append(failure)

        with ThreadPoolExecutor(max_workers=len(pods), thread_name_prefix="pod-evict") as executor:
            for pod in pods:
                executor.submit(self._ensure_pod_deleted, pod, _record)

        if failures:
            raise PodEvictionError(failures)

    def _ensure_pod_deleted(self, pod: client.V1Pod, record) -> None:
        name, namespace = pod.metadata.name, pod.metadata.namespace
        try:
            if self.wait_for_pod_deletion(pod, self.delete_timeout_seconds):
                logger.debug("Deleted pod %s/%s", namespace, name, extra={"pod_namespace": namespace, "pod_name": name})
                return

            logger.error(
                "Pod %s/%s was not deleted within %ss, force deleting",
                namespace,
                name,
                self.delete_timeout_seconds,
                extra={"pod_namespace": namespace, "pod_name": name},
            )
            try:
                self._delete_pod(pod, force=True)
            except ApiException as error:
                logger.error("Error force deleting pod %s/%s: %s", namespace, name, error_message(error))
                record(_failure(pod, f"force delete failed: {error_message(error)}"))
                return

            if not self.wait_for_pod_deletion(pod, self.force_delete_timeout_seconds):
                logger.error("Failed to forcefully delete pod %s/%s", namespace, name)
                record(
                    _failure(
                        pod,
                        f"still present {self.force_delete_timeout_seconds}s after force delete",
                    )
                )
        except Exception as error:  # pylint: disable=broad-except
            logger.exception("Unexpected error while deleting pod %s/%s", namespace, name)
            record(_failure(pod, f"unexpected error: {error_message(error)}"))

    def wait_for_pod_deletion(self, pod: client.V1Pod, timeout_seconds: float) -> bool:
        """Poll until the pod instance (matched by UID) is gone or ``timeout_seconds`` pass."""
        deadline = time.time() + timeout_seconds
        while True:
            try:
                current = self.core_api.read_namespaced_pod(name=pod.metadata.name, namespace=pod.metadata.namespace)
            except ApiException as error:
                if is_not_found(error):
                    return True
                # An unreadable pod counts as still present until the deadline.
                logger.warning(
                    "Unable to read pod %s/%s while waiting for deletion: %s",
                    pod.metadata.namespace,
                    pod.metadata.name,
                    error_message(error),
                )
            else:
                if current.metadata is None or current.metadata.uid != pod.metadata.uid:
                    return True
            if time.time() >= deadline:
                return False
            time.sleep(self.poll_interval_seconds)

    def _delete_pod(self, pod: client.V1Pod, *, force: bool) -> None:
        kwargs = {"grace_period_seconds": 0} if force else {}
        try:
            self.core_api.delete_namespaced_pod(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
                body=client.V1DeleteOptions(**kwargs),
                **kwargs,
            )
        except ApiException as error:
            if is_not_found(error):
                return
            raise


def _failure(pod: client.V1Pod, reason: str) -> PodEvictionFailure:
    return PodEvictionFailure(namespace=pod.metadata.namespace, name=pod.metadata.name, reason=reason)
