from .device_store import DeviceStore, FileDeviceStore, InMemoryDeviceStore
from .local_store import CachedDecision, LocalConsentStore
from .sync_client import SyncClient, SyncResult

__all__ = [
    "CachedDecision",
    "DeviceStore",
    "FileDeviceStore",
    "InMemoryDeviceStore",
    "LocalConsentStore",
    "SyncClient",
    "SyncResult",
]
