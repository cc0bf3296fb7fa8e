from .gateway import StorageGateway
from .queue_ops import QueueMessage
from .settings import ConfigUpdateHandler, StorageSettings

__all__ = [
    "ConfigUpdateHandler",
    "QueueMessage",
    "StorageGateway",
    "StorageSettings",
]
