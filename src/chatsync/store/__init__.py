from .blobs import BlobStore
from .gateway import PersistenceGateway

__all__ = [
    "BlobStore",
    "PersistenceGateway",
]
