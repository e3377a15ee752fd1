"""
Extension lifecycle, extension API, and hook dispatch.

An extension is a manifest plus an object implementing some of the
hooks of `ExtensionHooks`. All hooks are optional and may be plain or
coroutine functions:

    on_load(context)            when the extension is registered
    on_enable(context)          when it is enabled
    on_disable(context)         when it is disabled
    on_message(message, context) -> message
                                before the pipeline uses user input
    on_response(message, context) -> message
                                after the model response is parsed
    on_settings_change(settings, context)
                                when its configuration is changed
    on_unload(context)          when it is removed

Extensions only see the `ExtensionContext` passed to the hooks. Its
`api` member (`ExtensionAPI`) is the surface through which an
extension interacts with the application; its methods check the
permissions granted in the manifest.

The `HookDispatcher` runs the message hooks of the enabled extensions
in registration order. Only extensions granted the read_messages
or write_messages permission see the messages, and only those granted
write_messages may change them. Each hook receives a copy of the message
returned by the previous hook. A hook that raises is logged, and the
next hook receives the message the failing hook received.
"""

from collections.abc import Awaitable
from datetime import datetime
import copy
import inspect
from pathlib import Path
from types import ModuleType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from branchchat.errors import ExtensionFailure, ExtensionPermissionError
from branchchat.loggers import LoggerBase, ConsoleLogger

from .manifest import (
    ExtensionManifest,
    ExtensionPermission,
    MessageContext,
)
from .tools import FunctionTool, Tool, ToolRegistry

HOOK_NAMES: tuple[str, ...] = (
    "on_load",
    "on_enable",
    "on_disable",
    "on_message",
    "on_response",
    "on_settings_change",
    "on_unload",
)


async def _resolve(value: Any | Awaitable[Any]) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ExtensionAPI:
    """
    The functions made available to an extension.

    Args:
        manifest: the manifest of the extension (for permissions)
        tools: the tool registry of the application
        config: the initial configuration of the extension
        logger: the application logger
    """

    def __init__(
        self,
        manifest: ExtensionManifest,
        tools: ToolRegistry,
        config: dict[str, Any] | None = None,
        logger: LoggerBase = ConsoleLogger(),
    ) -> None:
        self._manifest = manifest
        self._tools = tools
        self._config: dict[str, Any] = copy.deepcopy(config or {})
        self._storage: dict[str, Any] = {}
        self._logger = logger

    @property
    def extension_id(self) -> str:
        return self._manifest.id

    def _require(self, permission: ExtensionPermission) -> None:
        if not self._manifest.has_permission(permission):
            raise ExtensionPermissionError(
                self._manifest.id,
                f"permission '{permission.value}' not granted",
            )

    # tools
    def register_tool(
        self, name: str, tool: Tool | Any, description: str = ""
    ) -> None:
        """Register a Tool object, or a function of (context, params)."""
        self._require(ExtensionPermission.TOOL_REGISTRATION)
        if not isinstance(tool, Tool):
            if not callable(tool):
                raise ExtensionFailure(
                    self._manifest.id, f"tool '{name}' is not callable"
                )
            tool = FunctionTool(name, tool, description)
        self._tools.register(name, tool, owner=self._manifest.id)

    def unregister_tool(self, name: str) -> bool:
        self._require(ExtensionPermission.TOOL_REGISTRATION)
        if self._tools.owner_of(name) != self._manifest.id:
            return False
        return self._tools.unregister(name)

    # configuration
    def get_config(self) -> dict[str, Any]:
        return copy.deepcopy(self._config)

    def set_config(self, config: dict[str, Any]) -> None:
        self._config = copy.deepcopy(config)

    def update_config(self, updates: dict[str, Any]) -> None:
        self._config.update(copy.deepcopy(updates))

    # storage, scoped to the extension
    def get_storage(self, key: str, default: Any = None) -> Any:
        self._require(ExtensionPermission.LOCAL_STORAGE)
        return copy.deepcopy(self._storage.get(key, default))

    def set_storage(self, key: str, value: Any) -> None:
        self._require(ExtensionPermission.LOCAL_STORAGE)
        self._storage[key] = copy.deepcopy(value)

    def remove_storage(self, key: str) -> None:
        self._require(ExtensionPermission.LOCAL_STORAGE)
        self._storage.pop(key, None)

    # logging
    def log(self, message: str, level: str = "info") -> None:
        text: str = f"[{self._manifest.id}] {message}"
        match level:
            case "error":
                self._logger.error(text)
            case "warning" | "warn":
                self._logger.warning(text)
            case _:
                self._logger.info(text)


class ExtensionContext(BaseModel):
    """Passed to every hook of an extension."""

    extension_id: str
    path: Path | None = None
    manifest: ExtensionManifest
    api: ExtensionAPI
    enabled: bool = False

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def config(self) -> dict[str, Any]:
        return self.api.get_config()


class ExtensionHooks:
    """
    Base class of extension objects. Override the hooks the extension
    needs; the others do nothing.
    """

    def on_load(self, context: ExtensionContext) -> Any:
        return None

    def on_enable(self, context: ExtensionContext) -> Any:
        return None

    def on_disable(self, context: ExtensionContext) -> Any:
        return None

    def on_message(
        self, message: MessageContext, context: ExtensionContext
    ) -> MessageContext | Awaitable[MessageContext]:
        return message

    def on_response(
        self, message: MessageContext, context: ExtensionContext
    ) -> MessageContext | Awaitable[MessageContext]:
        return message

    def on_settings_change(
        self, settings: dict[str, Any], context: ExtensionContext
    ) -> Any:
        return None

    def on_unload(self, context: ExtensionContext) -> Any:
        return None


class ModuleHooks(ExtensionHooks):
    """Hooks defined as module-level functions of an extension
    module."""

    def __init__(self, module: ModuleType) -> None:
        self.module = module

    def _hook(self, name: str) -> Any:
        hook: Any = getattr(self.module, name, None)
        return hook if callable(hook) else None

    def on_load(self, context: ExtensionContext) -> Any:
        hook = self._hook("on_load")
        return hook(context) if hook else None

    def on_enable(self, context: ExtensionContext) -> Any:
        hook = self._hook("on_enable")
        return hook(context) if hook else None

    def on_disable(self, context: ExtensionContext) -> Any:
        hook = self._hook("on_disable")
        return hook(context) if hook else None

    def on_message(
        self, message: MessageContext, context: ExtensionContext
    ) -> MessageContext | Awaitable[MessageContext]:
        hook = self._hook("on_message")
        return hook(message, context) if hook else message

    def on_response(
        self, message: MessageContext, context: ExtensionContext
    ) -> MessageContext | Awaitable[MessageContext]:
        hook = self._hook("on_response")
        return hook(message, context) if hook else message

    def on_settings_change(
        self, settings: dict[str, Any], context: ExtensionContext
    ) -> Any:
        hook = self._hook("on_settings_change")
        return hook(settings, context) if hook else None

    def on_unload(self, context: ExtensionContext) -> Any:
        hook = self._hook("on_unload")
        return hook(context) if hook else None


class Extension(BaseModel):
    """A registered extension."""

    manifest: ExtensionManifest
    hooks: ExtensionHooks
    context: ExtensionContext
    enabled: bool = False
    error: str | None = None
    load_time: datetime = Field(default_factory=datetime.now)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def id(self) -> str:
        return self.manifest.id


class ExtensionRegistry:
    """
    The extensions of the application, in registration order.

    Lifecycle operations return False (or None) and log the error
    when an extension hook raises; they do not propagate extension
    errors.
    """

    def __init__(
        self,
        tools: ToolRegistry | None = None,
        logger: LoggerBase = ConsoleLogger(),
    ) -> None:
        self.tools: ToolRegistry = (
            ToolRegistry(logger) if tools is None else tools
        )
        self.logger = logger
        self._extensions: dict[str, Extension] = {}

    def _report(self, extension_id: str, hook: str, e: Exception) -> str:
        failure = ExtensionFailure(extension_id, f"{hook} failed: {e}")
        self.logger.error(str(failure))
        return str(failure)

    async def register(
        self,
        manifest: ExtensionManifest,
        hooks: ExtensionHooks,
        config: dict[str, Any] | None = None,
    ) -> Extension | None:
        """Register an extension and call its on_load hook. The
        extension is enabled if its manifest says so."""
        if manifest.id in self._extensions:
            self.logger.warning(
                f"Extension '{manifest.id}' already registered"
            )
            return None

        api = ExtensionAPI(manifest, self.tools, config, self.logger)
        extension = Extension(
            manifest=manifest,
            hooks=hooks,
            context=ExtensionContext(
                extension_id=manifest.id,
                path=manifest.path,
                manifest=manifest,
                api=api,
            ),
        )
        try:
            await _resolve(hooks.on_load(extension.context))
        except Exception as e:
            self._report(manifest.id, "on_load", e)
            self.tools.unregister_owner(manifest.id)
            return None

        self._extensions[manifest.id] = extension
        self.logger.info(
            f"Extension '{manifest.id}' {manifest.version} loaded"
        )
        if manifest.enabled:
            await self.enable(manifest.id)
        return extension

    async def enable(self, extension_id: str) -> bool:
        extension: Extension | None = self._extensions.get(extension_id)
        if extension is None:
            return False
        if extension.enabled:
            return True
        try:
            await _resolve(extension.hooks.on_enable(extension.context))
        except Exception as e:
            extension.error = self._report(extension_id, "on_enable", e)
            return False
        extension.enabled = True
        extension.context.enabled = True
        return True

    async def disable(self, extension_id: str) -> bool:
        extension: Extension | None = self._extensions.get(extension_id)
        if extension is None:
            return False
        if not extension.enabled:
            return True
        extension.enabled = False
        extension.context.enabled = False
        try:
            await _resolve(extension.hooks.on_disable(extension.context))
        except Exception as e:
            extension.error = self._report(extension_id, "on_disable", e)
            return False
        return True

    async def unload(self, extension_id: str) -> bool:
        """Disable and remove an extension, and unregister its
        tools."""
        extension: Extension | None = self._extensions.get(extension_id)
        if extension is None:
            return False
        await self.disable(extension_id)
        try:
            await _resolve(extension.hooks.on_unload(extension.context))
        except Exception as e:
            self._report(extension_id, "on_unload", e)
        self.tools.unregister_owner(extension_id)
        del self._extensions[extension_id]
        return True

    async def update_settings(
        self, extension_id: str, settings: dict[str, Any]
    ) -> bool:
        extension: Extension | None = self._extensions.get(extension_id)
        if extension is None:
            return False
        extension.context.api.update_config(settings)
        try:
            await _resolve(
                extension.hooks.on_settings_change(
                    copy.deepcopy(settings), extension.context
                )
            )
        except Exception as e:
            extension.error = self._report(
                extension_id, "on_settings_change", e
            )
            return False
        return True

    def get(self, extension_id: str) -> Extension | None:
        return self._extensions.get(extension_id)

    @property
    def extensions(self) -> list[Extension]:
        return list(self._extensions.values())

    @property
    def enabled_extensions(self) -> list[Extension]:
        return [e for e in self._extensions.values() if e.enabled]

    def __len__(self) -> int:
        return len(self._extensions)


class HookDispatcher:
    """
    Runs the message hooks of the enabled extensions.

    Args:
        registry: the extension registry
        annotate_errors: append a note to the content of responses
            when a hook fails
        logger: logger for hook failures
    """

    def __init__(
        self,
        registry: ExtensionRegistry,
        annotate_errors: bool = False,
        logger: LoggerBase = ConsoleLogger(),
    ) -> None:
        self.registry = registry
        self.annotate_errors = annotate_errors
        self.logger = logger

    async def _dispatch(
        self, hook_name: str, message: MessageContext
    ) -> tuple[MessageContext, list[str]]:
        failed: list[str] = []
        for extension in self.registry.enabled_extensions:
            manifest: ExtensionManifest = extension.manifest
            can_write: bool = manifest.has_permission(
                ExtensionPermission.WRITE_MESSAGES
            )
            if not can_write and not manifest.has_permission(
                ExtensionPermission.READ_MESSAGES
            ):
                continue
            hook = getattr(extension.hooks, hook_name)
            try:
                result: Any = await _resolve(
                    hook(message.model_copy(deep=True), extension.context)
                )
                if result is None:
                    continue
                if not isinstance(result, MessageContext):
                    raise TypeError(
                        f"returned {type(result).__name__}, "
                        "not a MessageContext"
                    )
                if not can_write:
                    if result != message:
                        self.logger.warning(
                            f"Extension {extension.id} may not modify "
                            "messages, changes ignored"
                        )
                    continue
                message = result
            except Exception as e:
                failure = ExtensionFailure(
                    extension.id, f"{hook_name} failed: {e}"
                )
                self.logger.error(str(failure))
                failed.append(extension.id)
        return message, failed

    async def on_message(self, message: MessageContext) -> MessageContext:
        result, _ = await self._dispatch("on_message", message)
        return result

    async def on_response(self, message: MessageContext) -> MessageContext:
        result, failed = await self._dispatch("on_response", message)
        if failed and self.annotate_errors:
            note: str = ", ".join(failed)
            result = result.model_copy(
                update={
                    "content": result.content
                    + f"\n\n[extension error: {note}]"
                }
            )
        return result
