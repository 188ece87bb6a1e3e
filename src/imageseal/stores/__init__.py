"""Store backends for image blobs, image records and public-key profiles."""

from __future__ import annotations

from dataclasses import dataclass

from imageseal.config import EngineConfig
from imageseal.stores.base import (
    BlobStore,
    ImageRecord,
    KeyProfileStore,
    RecordStore,
    UserKeyRecord,
)
from imageseal.stores.local import LocalBlobStore, LocalKeyProfileStore, LocalRecordStore
from imageseal.stores.memory import MemoryBlobStore, MemoryKeyProfileStore, MemoryRecordStore

__all__ = [
    "BlobStore",
    "ImageRecord",
    "KeyProfileStore",
    "RecordStore",
    "UserKeyRecord",
    "StoreBundle",
    "open_stores",
]


@dataclass
class StoreBundle:
    """The three stores an engine is wired with."""

    blobs: BlobStore
    records: RecordStore
    keys: KeyProfileStore


def open_stores(config: EngineConfig) -> StoreBundle:
    """Build the store backend named by the configuration.

    Args:
        config: Engine configuration (store_backend, store_dir)

    Returns:
        StoreBundle with fresh store instances
    """
    if config.store_backend == "local":
        root = config.store_dir
        root.mkdir(parents=True, exist_ok=True)
        return StoreBundle(
            blobs=LocalBlobStore(root),
            records=LocalRecordStore(root),
            keys=LocalKeyProfileStore(root),
        )

    return StoreBundle(
        blobs=MemoryBlobStore(),
        records=MemoryRecordStore(),
        keys=MemoryKeyProfileStore(),
    )
