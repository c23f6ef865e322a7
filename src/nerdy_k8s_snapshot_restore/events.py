from __future__ import annotations

from datetime import UTC, datetime
import logging
import uuid

from kubernetes import client
from kubernetes.client import ApiException

from .k8s import error_message
from .models import API_GROUP, API_VERSION, KIND, VolumeSnapshotRestore

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
DEFAULT_COMPONENT = "nerdy-k8s-snapshot-restore"

logger = logging.getLogger(__name__)


class EventRecorder:
    def __init__(self, core_api: client.CoreV1Api, component: str = DEFAULT_COMPONENT) -> None:
        self.core_api = core_api
        self.component = component

    def normal(self, restore: VolumeSnapshotRestore, reason: str, message: str) -> None:
        self.event(restore, EVENT_TYPE_NORMAL, reason, message)

    def warning(self, restore: VolumeSnapshotRestore, reason: str, message: str) -> None:
        self.event(restore, EVENT_TYPE_WARNING, reason, message)

    def event(self, restore: VolumeSnapshotRestore, event_type: str, reason: str, message: str) -> None:
        now = datetime.now(tz=UTC)
        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                name=f"{restore.name}.{uuid.uuid4().hex[:16]}",
                namespace=restore.namespace,
            ),
            involved_object=client.V1ObjectReference(
                api_version=f"{API_GROUP}/{API_VERSION}",
                kind=KIND,
                name=restore.name,
                namespace=restore.namespace,
                uid=restore.uid or None,
                resource_version=restore.metadata.get("resourceVersion"),
            ),
            type=event_type,
            reason=reason,
            message=message,
            count=1,
            first_timestamp=now,
            last_timestamp=now,
            source=client.V1EventSource(component=self.component),
            reporting_component=self.component,
        )
        try:
            self.core_api.create_namespaced_event(namespace=restore.namespace, body=body)
        except ApiException as error:
            # Events are informational; losing one must not fail reconciliation.
            logger.warning(
                "Unable to record %s event %s for %s %s/%s: %s",
                event_type,
                reason,
                KIND,
                restore.namespace,
                restore.name,
                error_message(error),
            )
