"""
The dialogue pipeline and the session service using it.

`create_dialogue_pipeline` wires the built-in stages into a
`PipelineEngine`:

    START                 ---> validate_input
    validate_input        ---> message_hooks
    message_hooks         ---> build_prompt
    build_prompt          ---> retrieve_knowledge
    retrieve_knowledge    ---> generate
    generate              ---> parse_response
    parse_response        ---> response_hooks
    response_hooks        ---> END

The `DialogueService` processes a user message in a conversation
tree: it restores the variable state of the turn being continued,
runs the pipeline, applies the variable updates of the response to
the live variables, and appends the new turn to the tree. When the
pipeline fails, nothing is stored and the reply carries a message
naming the failing stage.

```python
service = DialogueService.from_settings(ConfigSettings())
await service.start_conversation("alice")
reply = await service.send_message("alice", "Hello!")
print(reply.response)
```
"""

import asyncio
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, Field

from langchain_core.language_models import BaseChatModel
from langchain_core.retrievers import BaseRetriever

from branchchat.config.config import (
    ConfigSettings,
    ModelSettings,
    PipelineSettings,
    StatePolicySettings,
)
from branchchat.extensions.hooks import ExtensionRegistry, HookDispatcher
from branchchat.extensions.loader import ExtensionLoader
from branchchat.extensions.tools import ToolCallProcessor
from branchchat.loggers import LoggerBase, ConsoleLogger
from branchchat.models import create_chat_model
from branchchat.state.codec import VariableState
from branchchat.state.manager import BranchStateManager, VariableStore
from branchchat.state.turns import ConversationTree, ParsedFields, Turn
from branchchat.stores.conversation_tree import (
    ConversationTreeStore,
    TreeLocks,
)
from branchchat.stores.storage import StorageInterface, create_storage

from .base import StageDescriptor
from .engine import PipelineEngine, PipelineResult
from .stages import (
    KnowledgeStage,
    MessageHooksStage,
    ModelStage,
    PromptStage,
    ResponseHooksStage,
    ResponseParsingStage,
    UserInputStage,
    VariableUpdate,
    model_retry_policy,
)


def create_dialogue_pipeline(
    llm: BaseChatModel,
    *,
    model_settings: ModelSettings | None = None,
    pipeline_settings: PipelineSettings | None = None,
    retriever: BaseRetriever | None = None,
    dispatcher: HookDispatcher | None = None,
    tools: ToolCallProcessor | None = None,
    on_chunk: Callable[[str], Any] | None = None,
    logger: LoggerBase = ConsoleLogger(),
) -> PipelineEngine:
    """
    Create the dialogue pipeline.

    Args:
        llm: the chat model
        model_settings: streaming, timeout and retries of the model
        pipeline_settings: prompts, messages, limits
        retriever: optional retriever of knowledge
        dispatcher: optional dispatcher of extension hooks
        tools: optional processor of tool calls
        on_chunk: called with streamed text chunks
        logger: logger

    Returns:
        the compiled pipeline engine. Initial fields of a run are
        tree_id, user_input, history and variables.
    """
    model_settings = model_settings or ModelSettings()
    pipeline_settings = pipeline_settings or PipelineSettings()

    stages: list[StageDescriptor] = [
        StageDescriptor(
            stage_id="validate_input",
            stage=UserInputStage(pipeline_settings),
            input_fields=["user_input"],
            output_fields=["user_input"],
            next=["message_hooks"],
        ),
        StageDescriptor(
            stage_id="message_hooks",
            stage=MessageHooksStage(dispatcher),
            input_fields=["tree_id", "user_input"],
            output_fields=["user_input"],
            next=["build_prompt"],
        ),
        StageDescriptor(
            stage_id="build_prompt",
            stage=PromptStage(pipeline_settings),
            input_fields=["user_input", "history", "variables"],
            output_fields=["system_message", "user_message", "chat_history"],
            next=["retrieve_knowledge"],
        ),
        StageDescriptor(
            stage_id="retrieve_knowledge",
            stage=KnowledgeStage(retriever, pipeline_settings, logger),
            input_fields=["user_input", "user_message"],
            output_fields=["user_message", "knowledge"],
            rename={"user_input": "query"},
            next=["generate"],
        ),
        StageDescriptor(
            stage_id="generate",
            stage=ModelStage(llm, model_settings, on_chunk, logger),
            input_fields=["system_message", "user_message", "chat_history"],
            output_fields=["full_response", "token_usage", "model_name"],
            next=["parse_response"],
            retry_policy=model_retry_policy(model_settings),
        ),
        StageDescriptor(
            stage_id="parse_response",
            stage=ResponseParsingStage(),
            input_fields=["full_response"],
            output_fields=[
                "response",
                "reasoning",
                "next_prompts",
                "event",
                "variable_updates",
            ],
            next=["response_hooks"],
        ),
        StageDescriptor(
            stage_id="response_hooks",
            stage=ResponseHooksStage(dispatcher, tools),
            input_fields=["tree_id", "response", "history"],
            output_fields=["response", "tool_results"],
        ),
    ]
    return PipelineEngine(stages, logger=logger)


class DialogueReply(BaseModel):
    """The outcome of a user message."""

    tree_id: str
    status: Literal["completed", "failed", "cancelled"]
    turn_id: str | None = None
    response: str = ""
    reasoning: str | None = None
    next_prompts: list[str] = Field(default_factory=list)
    event: str | None = None
    tool_results: list[dict[str, Any]] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    token_usage: dict[str, int] = Field(default_factory=dict)
    failed_stage: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"


def history_from_path(path: list[Turn]) -> list[tuple[str, str]]:
    """The exchanges of a path as (role, content) messages."""
    history: list[tuple[str, str]] = []
    for turn in path:
        if turn.is_root:
            continue
        if turn.user_input:
            history.append(("user", turn.user_input))
        if turn.response:
            history.append(("assistant", turn.response))
    return history


def apply_variable_updates(
    state: VariableState,
    updates: list[VariableUpdate],
    logger: LoggerBase,
) -> VariableState:
    """Return the state with the updates assigned. An update that
    cannot be assigned (a path indexing a list out of range, for
    example) is logged and skipped. The given state is not modified."""
    variables = VariableStore(state)
    for update in updates:
        try:
            variables.set(update.path, update.new_value)
        except ValueError as e:
            logger.warning(f"Variable update skipped: {e}")
            continue
        logger.info(
            f"Variable {update.path} set to {update.new_value!r}"
            + (f" ({update.reason})" if update.reason else "")
        )
    return variables.snapshot()


class DialogueService:
    """
    Processes user messages in conversation trees.

    Each tree has its own live variables, held by the state manager
    of its session store. Messages of the same tree are processed one
    at a time under the lock of the tree.

    Args:
        storage: the storage of the trees
        engine: the dialogue pipeline
        policy: the snapshot policy of the variable state
        collection: the storage key of the trees
        locks: the per-tree locks (created if None)
        registry: the extension registry feeding the pipeline hooks
        logger: logger
    """

    def __init__(
        self,
        storage: StorageInterface,
        engine: PipelineEngine,
        *,
        policy: StatePolicySettings | None = None,
        collection: str = "dialogue_trees",
        locks: TreeLocks | None = None,
        registry: ExtensionRegistry | None = None,
        logger: LoggerBase = ConsoleLogger(),
    ) -> None:
        self.storage = storage
        self.engine = engine
        self.policy: StatePolicySettings = policy or StatePolicySettings()
        self.collection = collection
        self.locks: TreeLocks = TreeLocks() if locks is None else locks
        self.registry: ExtensionRegistry | None = registry
        self.logger = logger
        self._collection_lock = asyncio.Lock()
        self._sessions: dict[str, ConversationTreeStore] = {}
        # trees whose live variables were restored in this process
        self._activated: set[str] = set()

    @classmethod
    def from_settings(
        cls,
        settings: ConfigSettings,
        *,
        storage: StorageInterface | None = None,
        llm: BaseChatModel | None = None,
        retriever: BaseRetriever | None = None,
        registry: ExtensionRegistry | None = None,
        on_chunk: Callable[[str], Any] | None = None,
        logger: LoggerBase = ConsoleLogger(),
    ) -> 'DialogueService':
        """Build the service and its pipeline from the settings. The
        model, storage and extension registry may be overridden (for
        example, for testing)."""
        if registry is None:
            registry = ExtensionRegistry(logger=logger)
        dispatcher = HookDispatcher(
            registry,
            annotate_errors=settings.pipeline.annotate_extension_errors,
            logger=logger,
        )
        tools = ToolCallProcessor(
            registry.tools,
            append_summary=settings.pipeline.append_tool_summary,
            logger=logger,
        )
        engine: PipelineEngine = create_dialogue_pipeline(
            llm or create_chat_model(settings.model),
            model_settings=settings.model,
            pipeline_settings=settings.pipeline,
            retriever=retriever,
            dispatcher=dispatcher,
            tools=tools,
            on_chunk=on_chunk,
            logger=logger,
        )
        return cls(
            create_storage(settings.storage) if storage is None else storage,
            engine,
            policy=settings.state,
            collection=settings.storage.collection,
            registry=registry,
            logger=logger,
        )

    async def load_extensions(self, folder: str) -> list[str]:
        """Load the extensions of a folder into the registry of the
        service. Returns the ids of the loaded extensions."""
        if self.registry is None:
            self.registry = ExtensionRegistry(logger=self.logger)
        loader = ExtensionLoader(self.logger)
        loaded = await loader.load_folder(folder, self.registry)
        return [e.id for e in loaded]

    def session(self, tree_id: str) -> ConversationTreeStore:
        """The store holding the live variables of a tree."""
        store: ConversationTreeStore | None = self._sessions.get(tree_id)
        if store is None:
            store = ConversationTreeStore(
                self.storage,
                BranchStateManager(
                    self.policy, VariableStore(), logger=self.logger
                ),
                collection=self.collection,
                collection_lock=self._collection_lock,
                logger=self.logger,
            )
            self._sessions[tree_id] = store
        return store

    async def start_conversation(self, owner_id: str) -> ConversationTree:
        """Create (or replace) the tree of an owner."""
        async with self.locks.get(owner_id):
            tree: ConversationTree = await self.session(
                owner_id
            ).create_tree(owner_id)
            self._activated.add(tree.tree_id)
            return tree

    async def switch_branch(
        self, tree_id: str, turn_id: str
    ) -> ConversationTree | None:
        async with self.locks.get(tree_id):
            tree = await self.session(tree_id).switch_branch(
                tree_id, turn_id
            )
            if tree is not None:
                self._activated.add(tree_id)
            return tree

    async def delete_turn(
        self, tree_id: str, turn_id: str
    ) -> ConversationTree | None:
        async with self.locks.get(tree_id):
            return await self.session(tree_id).delete_turn(tree_id, turn_id)

    async def clear_history(self, tree_id: str) -> ConversationTree | None:
        async with self.locks.get(tree_id):
            return await self.session(tree_id).clear_history(tree_id)

    def get_variables(self, tree_id: str) -> VariableState:
        """A copy of the live variables of a tree."""
        return self.session(tree_id).state_manager.variables.snapshot()

    def _failure(self, tree_id: str, message: str) -> DialogueReply:
        self.logger.warning(message)
        return DialogueReply(tree_id=tree_id, status="failed", error=message)

    async def send_message(
        self,
        tree_id: str,
        user_input: str,
        parent_turn_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> DialogueReply:
        """
        Process a user message as a new turn.

        Args:
            tree_id: the conversation tree
            user_input: the text of the user
            parent_turn_id: the turn continued (defaults to the
                current turn of the tree)
            cancel_event: set to cancel the processing between stages

        Returns:
            a DialogueReply. Failures are reported in the reply.
        """
        async with self.locks.get(tree_id):
            store: ConversationTreeStore = self.session(tree_id)
            tree: ConversationTree | None = await store.get_tree(tree_id)
            if tree is None:
                return self._failure(
                    tree_id, f"Conversation tree {tree_id} not found"
                )
            parent_id: str = parent_turn_id or tree.current_turn_id
            if tree.find_turn(parent_id) is None:
                return self._failure(
                    tree_id, f"Turn {parent_id} not found in {tree_id}"
                )

            if (
                parent_id != tree.current_turn_id
                or tree_id not in self._activated
            ):
                switched = await store.switch_branch(tree_id, parent_id)
                if switched is None:
                    return self._failure(
                        tree_id, f"Cannot continue turn {parent_id}"
                    )
                tree = switched
                self._activated.add(tree_id)

            variables: VariableStore = store.state_manager.variables
            result: PipelineResult = await self.engine.run(
                {
                    "tree_id": tree_id,
                    "user_input": user_input,
                    "history": history_from_path(tree.path_to(parent_id)),
                    "variables": variables.snapshot(),
                },
                cancel_event=cancel_event,
            )
            if not result.ok:
                return DialogueReply(
                    tree_id=tree_id,
                    status=result.status,
                    failed_stage=result.failed_stage,
                    error=result.error_message,
                )

            context: dict[str, Any] = result.context
            previous: VariableState = variables.snapshot()
            updated: VariableState = apply_variable_updates(
                previous, context.get("variable_updates", []), self.logger
            )
            parsed = ParsedFields(
                next_prompts=context.get("next_prompts", []),
                event=context.get("event"),
                tool_results=context.get("tool_results", []),
            )
            # the turn records the live variables against its parent
            variables.load(updated)
            turn_id: str | None = None
            try:
                turn_id = await store.add_turn(
                    tree_id,
                    parent_id,
                    user_input=user_input,
                    response=context.get("response", ""),
                    full_response=context.get("full_response", ""),
                    reasoning=context.get("reasoning"),
                    parsed=parsed,
                )
            finally:
                if turn_id is None:
                    variables.load(previous)
            if turn_id is None:
                return self._failure(
                    tree_id, f"Turn could not be added to {tree_id}"
                )

            return DialogueReply(
                tree_id=tree_id,
                status="completed",
                turn_id=turn_id,
                response=context.get("response", ""),
                reasoning=context.get("reasoning"),
                next_prompts=parsed.next_prompts,
                event=parsed.event,
                tool_results=parsed.tool_results,
                variables=variables.snapshot(),
                token_usage=context.get("token_usage", {}),
            )
