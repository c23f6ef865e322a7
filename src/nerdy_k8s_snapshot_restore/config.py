from __future__ import annotations

from dataclasses import dataclass
import os


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppConfig:
    kubeconfig_path: str | None = os.getenv("NKSR_KUBECONFIG") or None
    context: str | None = os.getenv("NKSR_KUBE_CONTEXT") or None
    in_cluster: bool = _env_flag("NKSR_IN_CLUSTER", "true")
    watch_namespace: str | None = os.getenv("NKSR_WATCH_NAMESPACE") or None
    workers: int = int(os.getenv("NKSR_WORKERS", "4"))
    driver: str = os.getenv("NKSR_DRIVER", "")
    scheduler_name: str = os.getenv("NKSR_SCHEDULER_NAME", "stork")
    requeue_seconds: float = float(os.getenv("NKSR_REQUEUE_SECONDS", "10"))
    requeue_error_seconds: float = float(os.getenv("NKSR_REQUEUE_ERROR_SECONDS", "2"))
    pod_delete_timeout_seconds: float = float(os.getenv("NKSR_POD_DELETE_TIMEOUT_SECONDS", "120"))
    pod_force_delete_timeout_seconds: float = float(os.getenv("NKSR_POD_FORCE_DELETE_TIMEOUT_SECONDS", "30"))
    pod_poll_interval_seconds: float = float(os.getenv("NKSR_POD_POLL_INTERVAL_SECONDS", "2"))
    snapshot_validate_timeout_seconds: float = float(os.getenv("NKSR_SNAPSHOT_VALIDATE_TIMEOUT_SECONDS", "60"))
    snapshot_validate_interval_seconds: float = float(os.getenv("NKSR_SNAPSHOT_VALIDATE_INTERVAL_SECONDS", "5"))
    crd_timeout_seconds: float = float(os.getenv("NKSR_CRD_TIMEOUT_SECONDS", "60"))
    crd_interval_seconds: float = float(os.getenv("NKSR_CRD_INTERVAL_SECONDS", "5"))
    log_level: str = os.getenv("NKSR_LOG_LEVEL", "INFO")
    log_json: bool = _env_flag("NKSR_LOG_JSON", "false")


_POSITIVE_FIELDS = (
    "workers",
    "requeue_seconds",
    "requeue_error_seconds",
    "pod_delete_timeout_seconds",
    "pod_force_delete_timeout_seconds",
    "pod_poll_interval_seconds",
    "snapshot_validate_timeout_seconds",
    "snapshot_validate_interval_seconds",
    "crd_timeout_seconds",
    "crd_interval_seconds",
)


def validate_config(config: AppConfig) -> None:
    for field_name in _POSITIVE_FIELDS:
        if getattr(config, field_name) <= 0:
            raise ValueError(f"{field_name} must be positive")
    if not config.driver.strip():
        raise ValueError("NKSR_DRIVER must name a restore driver as 'package.module:ClassName'")
