"""
Discovery and loading of extensions from a folder.

Each extension lives in a subfolder containing manifest.json and the
entry file named in the manifest:

    extensions/
        dice-roller/
            manifest.json
            main.py

The entry file is imported as a module that is not registered in
sys.modules. Its hooks are either module-level functions named after
the hooks (on_load, on_message, ...), or the methods of an
`ExtensionHooks` object that the module exposes as `extension`, or
returns from a `create_extension()` function.

Note:
    Loading an extension executes its code in the application
    process. Extensions are only given an ExtensionAPI object, but
    the interpreter does not prevent an extension from importing
    other modules. Only load extensions from trusted sources.
"""

import importlib.util
from pathlib import Path
from types import ModuleType
from typing import Any, NamedTuple

from branchchat.errors import ExtensionFailure, ManifestError
from branchchat.loggers import LoggerBase, ConsoleLogger

from .hooks import Extension, ExtensionHooks, ExtensionRegistry, ModuleHooks
from .manifest import ExtensionManifest, read_manifest


class DiscoveryResult(NamedTuple):
    found: list[ExtensionManifest]
    errors: list[tuple[str, str]]


class ExtensionLoader:
    """Finds extension manifests and imports extension modules."""

    def __init__(self, logger: LoggerBase = ConsoleLogger()) -> None:
        self.logger = logger

    def discover(self, folder: str | Path) -> DiscoveryResult:
        """Read the manifests of the subfolders of folder. Invalid
        manifests are reported in the errors of the result."""
        folder = Path(folder)
        found: list[ExtensionManifest] = []
        errors: list[tuple[str, str]] = []
        if not folder.is_dir():
            self.logger.warning(f"Extension folder {folder} not found")
            return DiscoveryResult(found, errors)

        ids: set[str] = set()
        for subfolder in sorted(p for p in folder.iterdir() if p.is_dir()):
            try:
                manifest: ExtensionManifest = read_manifest(subfolder)
            except ManifestError as e:
                self.logger.warning(str(e))
                errors.append((str(subfolder), str(e)))
                continue
            if manifest.id in ids:
                message = f"Duplicate extension id '{manifest.id}'"
                self.logger.warning(message)
                errors.append((str(subfolder), message))
                continue
            ids.add(manifest.id)
            found.append(manifest)
        return DiscoveryResult(found, errors)

    def load(self, manifest: ExtensionManifest) -> ExtensionHooks:
        """Import the entry file of an extension and return its
        hooks.

        Raises:
            ExtensionFailure: if the module cannot be imported
        """
        module_name: str = (
            "branchchat_extension_" + manifest.id.replace("-", "_")
        )
        spec = importlib.util.spec_from_file_location(
            module_name, manifest.entry_file
        )
        if spec is None or spec.loader is None:
            raise ExtensionFailure(
                manifest.id, f"cannot import {manifest.entry_file}"
            )
        module: ModuleType = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            raise ExtensionFailure(
                manifest.id, f"error importing {manifest.main}: {e}"
            ) from e

        candidate: Any = getattr(module, "extension", None)
        factory: Any = getattr(module, "create_extension", None)
        if candidate is None and callable(factory):
            candidate = factory()
        if isinstance(candidate, ExtensionHooks):
            return candidate
        return ModuleHooks(module)

    async def load_folder(
        self, folder: str | Path, registry: ExtensionRegistry
    ) -> list[Extension]:
        """Discover, load and register the extensions of a folder.
        Extensions that fail to load are logged and skipped."""
        loaded: list[Extension] = []
        for manifest in self.discover(folder).found:
            try:
                hooks: ExtensionHooks = self.load(manifest)
            except ExtensionFailure as e:
                self.logger.error(str(e))
                continue
            extension: Extension | None = await registry.register(
                manifest, hooks
            )
            if extension is not None:
                loaded.append(extension)
        return loaded
