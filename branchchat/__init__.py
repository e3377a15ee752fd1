"""
branchchat - Conversations with branching history and variable state.

This package drives multi-turn conversations in which the user can
return to any earlier turn and continue from there. The variables set
by the conversation are stored with each turn, as a snapshot or as a
diff, and restored when a branch is resumed. Each message is processed
by a pipeline of stages with declared input and output fields.

Public API
----------
Configuration:
    ConfigSettings: Settings read from branchchat.toml
    create_default_config_file: Create or reset the configuration file
    load_settings: Read the settings from a file

Conversation trees:
    ConversationTreeStore: Persistence of trees and branch switching
    BranchStateManager: Snapshot/diff storage of the variable state
    MemoryStorage, JsonFileStorage: Storage of the trees

Pipelines:
    PipelineEngine: Runs a chain of stages over a shared context
    StageDescriptor: Declaration of a stage
    create_dialogue_pipeline: The built-in dialogue pipeline
    DialogueService: Processes user messages in conversation trees

Extensions:
    ExtensionRegistry, ExtensionLoader, HookDispatcher

Example
-------
    >>> import asyncio
    >>> import branchchat as bc
    >>> service = bc.DialogueService.from_settings(bc.ConfigSettings())
    >>> asyncio.run(service.start_conversation("alice"))
    >>> reply = asyncio.run(service.send_message("alice", "Hello"))
"""

from .config.config import (
    ConfigSettings,
    create_default_config_file,
    load_settings,
)
from .state.manager import BranchStateManager, VariableStore
from .stores.storage import MemoryStorage, JsonFileStorage
from .stores.conversation_tree import ConversationTreeStore, TreeLocks
from .pipeline.base import StageDescriptor, PipelineStage
from .pipeline.engine import PipelineEngine, PipelineResult
from .pipeline.dialogue import (
    create_dialogue_pipeline,
    DialogueService,
    DialogueReply,
)
from .extensions.hooks import ExtensionRegistry, HookDispatcher
from .extensions.loader import ExtensionLoader

__version__ = "0.1.0"

# Define public API
__all__ = [
    # Configuration
    "ConfigSettings",
    "create_default_config_file",
    "load_settings",
    # Conversation trees
    "BranchStateManager",
    "VariableStore",
    "MemoryStorage",
    "JsonFileStorage",
    "ConversationTreeStore",
    "TreeLocks",
    # Pipelines
    "StageDescriptor",
    "PipelineStage",
    "PipelineEngine",
    "PipelineResult",
    "create_dialogue_pipeline",
    "DialogueService",
    "DialogueReply",
    # Extensions
    "ExtensionRegistry",
    "HookDispatcher",
    "ExtensionLoader",
]
