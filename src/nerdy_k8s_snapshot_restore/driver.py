from __future__ import annotations

from abc import ABC, abstractmethod
import importlib

from .models import VolumeSnapshotRestore


class RestoreDriverError(RuntimeError):
    """Raised by drivers when the storage backend rejects a restore operation."""


class DriverLoadError(RuntimeError):
    """Raised when the configured restore driver cannot be imported."""


class RestoreDriver(ABC):
    """Data-plane operations for an in-place snapshot restore.

    Every method receives the restore object and may mutate it in place; the
    controller persists the object after each call. ``get_restore_status`` is
    expected to update ``restore_status`` and ``reason`` on each entry of
    ``restore.status.volumes``.
    """

    @abstractmethod
    def start_restore(self, restore: VolumeSnapshotRestore) -> None:
        ...

    @abstractmethod
    def get_restore_status(self, restore: VolumeSnapshotRestore) -> None:
        ...

    @abstractmethod
    def complete_restore(self, restore: VolumeSnapshotRestore) -> None:
        ...

    @abstractmethod
    def cleanup_restore_objects(self, restore: VolumeSnapshotRestore) -> None:
        """Remove backend objects created for the restore. Must be idempotent."""


def load_driver(import_path: str) -> RestoreDriver:
    module_name, separator, class_name = import_path.strip().partition(":")
    if not separator or not module_name or not class_name:
        raise DriverLoadError(f"driver path '{import_path}' must look like 'package.module:ClassName'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as error:
        raise DriverLoadError(f"unable to import driver module '{module_name}': {error}") from error

    driver_class = getattr(module, class_name, None)
    if driver_class is None:
        raise DriverLoadError(f"driver module '{module_name}' has no attribute '{class_name}'")

    driver = driver_class()
    if not isinstance(driver, RestoreDriver):
        raise DriverLoadError(f"'{import_path}' is not a RestoreDriver implementation")
    return driver
