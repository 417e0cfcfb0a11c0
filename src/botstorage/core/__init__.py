"""Engine-agnostic storage primitives."""

from .config import StorageConfig, load_storage_config
from .exceptions import (
    DUPLICATE_KEY_CODE,
    BotStorageError,
    ConflictError,
    CriticalError,
    InvalidCursorError,
    PermanentError,
    StorageConfigError,
    StorageNetworkError,
    TransientError,
)
from .health import HealthMonitor, HealthMonitorConfig, HealthReport
from .pagination import IdCursor, Page, SkipCursor, WatermarkCursor
from .signing import Signer, canonicalize

__all__ = [
    "DUPLICATE_KEY_CODE",
    "BotStorageError",
    "ConflictError",
    "CriticalError",
    "HealthMonitor",
    "HealthMonitorConfig",
    "HealthReport",
    "IdCursor",
    "InvalidCursorError",
    "Page",
    "PermanentError",
    "Signer",
    "SkipCursor",
    "StorageConfig",
    "StorageConfigError",
    "StorageNetworkError",
    "TransientError",
    "WatermarkCursor",
    "canonicalize",
    "load_storage_config",
]
