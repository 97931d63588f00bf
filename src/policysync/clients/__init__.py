from policysync.clients.base import ObjectStore, ResourceMapping, WatchEvent
from policysync.clients.kubernetes import KubernetesObjectStore, translate_api_error

__all__ = [
    "KubernetesObjectStore",
    "ObjectStore",
    "ResourceMapping",
    "WatchEvent",
    "translate_api_error",
]
