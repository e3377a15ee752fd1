"""
Storage interface and implementations for conversation trees.

The conversation tree store persists its trees through an injected
object with two asynchronous operations, reading and writing the
whole list of records of a collection. Records are plain dicts
(JSON-compatible data).
"""

from abc import ABC, abstractmethod
import asyncio
import copy
import json
from pathlib import Path
from typing import Any

from branchchat.config.config import StorageSettings
from branchchat.errors import StorageError


class StorageInterface(ABC):
    """Abstract base class for the storage of record collections."""

    @abstractmethod
    async def read(self, key: str) -> list[dict[str, Any]]:
        """Read the records of a collection. A collection never
        written returns an empty list."""
        pass

    @abstractmethod
    async def write(self, key: str, records: list[dict[str, Any]]) -> None:
        """Replace the records of a collection."""
        pass


class MemoryStorage(StorageInterface):
    """Keeps collections in memory. Used for tests and for sessions
    that need not survive the process."""

    def __init__(self) -> None:
        self.collections: dict[str, list[dict[str, Any]]] = {}

    async def read(self, key: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self.collections.get(key, []))

    async def write(self, key: str, records: list[dict[str, Any]]) -> None:
        self.collections[key] = copy.deepcopy(records)


class JsonFileStorage(StorageInterface):
    """
    Stores each collection as a JSON file in a folder.

    File operations run in the default executor. Errors of the file
    system or of the JSON decoder are raised as StorageError.
    """

    def __init__(self, folder: str | Path):
        self.folder = Path(folder)

    def _file(self, key: str) -> Path:
        return self.folder / f"{key}.json"

    def _read_sync(self, key: str) -> list[dict[str, Any]]:
        file_path: Path = self._file(key)
        if not file_path.exists():
            return []
        try:
            data: Any = json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(
                f"Could not read collection {key} from {file_path}: {e}"
            ) from e
        if not isinstance(data, list):
            raise StorageError(
                f"Collection {key} in {file_path} is not a list"
            )
        return data

    def _write_sync(
        self, key: str, records: list[dict[str, Any]]
    ) -> None:
        file_path: Path = self._file(key)
        temp_path: Path = file_path.with_suffix(".tmp")
        try:
            self.folder.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(
                json.dumps(records, ensure_ascii=False, indent=1),
                encoding="utf-8",
            )
            temp_path.replace(file_path)
        except (OSError, TypeError) as e:
            raise StorageError(
                f"Could not write collection {key} to {file_path}: {e}"
            ) from e

    async def read(self, key: str) -> list[dict[str, Any]]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read_sync, key)

    async def write(self, key: str, records: list[dict[str, Any]]) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_sync, key, records)


def create_storage(settings: StorageSettings) -> StorageInterface:
    """Create the storage object selected in the settings."""
    match settings.backend:
        case "memory":
            return MemoryStorage()
        case "json":
            return JsonFileStorage(settings.folder)
        case _:
            raise ValueError(
                f"Unknown storage backend: {settings.backend}"
            )
