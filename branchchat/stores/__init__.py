# pyright: reportUnusedImport=false
# flake8: noqa

from .storage import (
    StorageInterface,
    MemoryStorage,
    JsonFileStorage,
    create_storage,
)

from .conversation_tree import (
    ConversationTreeStore,
    TreeLocks,
)
