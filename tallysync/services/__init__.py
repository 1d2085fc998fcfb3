from .api import DeviceApi
from .http_transport import HttpTransport
from .sync import SyncService
from .transport import InMemoryTransport, Transport

__all__ = ["DeviceApi", "HttpTransport", "InMemoryTransport", "SyncService", "Transport"]
