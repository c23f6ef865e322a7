from __future__ import annotations

from datetime import UTC, datetime
import json
import logging
import sys
from typing import Any, MutableMapping

from .models import KIND, VolumeSnapshotRestore

_CONTEXT_FIELDS = ("restore_namespace", "restore_name", "pod_namespace", "pod_name", "pvc")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field_name in _CONTEXT_FIELDS:
            if hasattr(record, field_name):
                payload[field_name] = getattr(record, field_name)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    handler = logging.StreamHandler(sys.stdout)
    if json_logs:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s | %(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())
    # The client logs every request body at DEBUG.
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


class RestoreLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return f"{KIND} {extra['restore_namespace']}/{extra['restore_name']}: {msg}", kwargs


def restore_logger(logger: logging.Logger, restore: VolumeSnapshotRestore) -> RestoreLoggerAdapter:
    return RestoreLoggerAdapter(
        logger,
        {"restore_namespace": restore.namespace, "restore_name": restore.name},
    )
