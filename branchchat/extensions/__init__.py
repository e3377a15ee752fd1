# pyright: reportUnusedImport=false
# flake8: noqa

from .manifest import (
    ExtensionCategory,
    ExtensionPermission,
    ExtensionManifest,
    MessageContext,
    read_manifest,
)

from .tools import (
    Tool,
    FunctionTool,
    ToolRegistry,
    ToolExecutionContext,
    ToolCall,
    ToolCallResult,
    ToolCallDetector,
    ToolCallProcessor,
    parse_tool_params,
    format_tool_result,
)

from .hooks import (
    ExtensionAPI,
    ExtensionContext,
    ExtensionHooks,
    ModuleHooks,
    Extension,
    ExtensionRegistry,
    HookDispatcher,
)

from .loader import (
    DiscoveryResult,
    ExtensionLoader,
)
