"""
Data models shared by the extension system: the manifest describing
an extension, and the message object passed to its hooks.

A manifest is read from the file manifest.json in the folder of the
extension:

```json
{
    "id": "dice-roller",
    "name": "Dice roller",
    "version": "1.0.0",
    "description": "Rolls dice on request",
    "author": "someone",
    "main": "main.py",
    "category": "tool",
    "permissions": ["tool_registration"]
}
```
"""

from datetime import datetime
from enum import Enum
import json
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError

from branchchat.errors import ManifestError

MANIFEST_FILE = "manifest.json"


class ExtensionCategory(str, Enum):
    TOOL = "tool"
    WORKFLOW = "workflow"
    UTILITY = "utility"
    INTEGRATION = "integration"
    EXTENSION = "extension"


class ExtensionPermission(str, Enum):
    """Capabilities an extension may request in its manifest."""

    READ_MESSAGES = "read_messages"
    WRITE_MESSAGES = "write_messages"
    LOCAL_STORAGE = "local_storage"
    TOOL_REGISTRATION = "tool_registration"


class ExtensionManifest(BaseModel):
    """
    Description of an extension.

    Attributes:
        id: lowercase letters, digits and hyphens
        name: display name
        version: MAJOR.MINOR.PATCH
        description: what the extension does
        author: author of the extension
        main: the entry file, relative to the extension folder
        category: the kind of extension
        permissions: the capabilities granted to the extension
        enabled: enable the extension when loaded
    """

    id: str = Field(..., min_length=1, pattern=r"^[a-z0-9-]+$")
    name: str = Field(..., min_length=1)
    version: str = Field(..., pattern=r"^\d+\.\d+\.\d+$")
    description: str = ""
    author: str = ""
    main: str = Field(default="main.py", min_length=1)
    category: ExtensionCategory = ExtensionCategory.EXTENSION
    permissions: list[ExtensionPermission] = Field(default_factory=list)
    enabled: bool = True

    # folder of the extension, set when read from file
    path: Path | None = Field(default=None, exclude=True)

    def has_permission(self, permission: ExtensionPermission) -> bool:
        return permission in self.permissions

    @property
    def entry_file(self) -> Path:
        folder: Path = self.path or Path(".")
        return folder / self.main


def read_manifest(folder: str | Path) -> ExtensionManifest:
    """Read and validate the manifest of the extension in folder.

    Raises:
        ManifestError: if the manifest is missing or invalid
    """
    folder = Path(folder)
    file_path: Path = folder / MANIFEST_FILE
    try:
        data: Any = json.loads(file_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ManifestError(f"No manifest in {folder}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ManifestError(f"Cannot read {file_path}: {e}") from e
    if not isinstance(data, dict):
        raise ManifestError(f"{file_path} is not a JSON object")

    try:
        manifest = ExtensionManifest.model_validate(data)
    except ValidationError as e:
        raise ManifestError(f"Invalid manifest {file_path}:\n{e}") from e

    manifest.path = folder
    if not manifest.entry_file.is_file():
        raise ManifestError(
            f"Entry file {manifest.main} of {manifest.id} not found"
        )
    return manifest


MessageRole = Literal["user", "assistant", "system"]


class MessageContext(BaseModel):
    """The message passed through the on_message and on_response
    hooks. Hooks return a message, usually a modified copy."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)
    tree_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
