"""
The stages of the dialogue pipeline.

Each stage is a `PipelineStage` configured at construction with the
objects it needs (settings, model, retriever, hook dispatcher) and
called with the fields it declared:

    UserInputStage         user_input -> user_input
    MessageHooksStage      tree_id, user_input -> user_input
    PromptStage            user_input, history, variables
                           -> system_message, user_message, chat_history
    KnowledgeStage         query, user_message -> user_message, knowledge
    ModelStage             system_message, user_message, chat_history
                           -> full_response, token_usage, model_name
    ResponseParsingStage   full_response -> response, reasoning,
                           next_prompts, event, variable_updates
    ResponseHooksStage     tree_id, response, history
                           -> response, tool_results

The parsing of model responses is also available as the function
`parse_response`. It recognizes the following markup:

    <think>...</think>, <thinking>...</thinking>   reasoning
    <next_prompts>...</next_prompts>               suggested inputs,
                                                   one per line
    <event>...</event>                             a control event
    _.set('path', old, new[, 'reason']);           variable update
    {{setvar::path::value}}                        variable update
    <UpdateVariable>...</UpdateVariable>           block of updates

All markup is removed from the text shown to the user.
"""

# LangGraph missing type stubs
# pyright: reportMissingTypeStubs=false

import asyncio
from collections.abc import Callable
import inspect
import json
import re
from typing import Any, Literal

from pydantic import BaseModel, Field

from langchain_core.documents import Document
from langchain_core.language_models import BaseChatModel
from langchain_core.prompts import PromptTemplate
from langchain_core.retrievers import BaseRetriever

from langgraph.types import RetryPolicy

from branchchat.config.config import ModelSettings, PipelineSettings
from branchchat.errors import InputRejected, PipelineCancelled
from branchchat.extensions.hooks import HookDispatcher
from branchchat.extensions.manifest import MessageContext
from branchchat.extensions.tools import (
    ToolCallProcessor,
    ToolCallResult,
    ToolProcessingResult,
)
from branchchat.loggers import LoggerBase, ConsoleLogger

from .base import PipelineStage, StageFields

ChatHistory = list[tuple[str, str]]


# -----------------------------------------------------------------
# Input


class UserInputStage(PipelineStage):
    """Normalizes the user input and rejects empty or overlong
    messages."""

    def __init__(self, settings: PipelineSettings | None = None):
        self.settings = settings or PipelineSettings()

    async def arun(self, fields: StageFields) -> StageFields:
        text: str = str(fields.get("user_input") or "").strip()
        if not text:
            raise InputRejected(self.settings.MSG_EMPTY_QUERY)
        if len(text.split()) > self.settings.max_query_word_count:
            raise InputRejected(self.settings.MSG_LONG_QUERY)
        return {"user_input": text}


class MessageHooksStage(PipelineStage):
    """Passes the user input through the on_message hooks."""

    def __init__(self, dispatcher: HookDispatcher | None = None):
        self.dispatcher = dispatcher

    async def arun(self, fields: StageFields) -> StageFields:
        text: str = fields.get("user_input", "")
        if self.dispatcher is None:
            return {"user_input": text}
        message: MessageContext = await self.dispatcher.on_message(
            MessageContext(
                role="user", content=text, tree_id=fields.get("tree_id")
            )
        )
        return {"user_input": message.content}


# -----------------------------------------------------------------
# Prompt


def render_variables(variables: dict[str, Any]) -> str:
    """Text of the variables for the prompt, empty if there are
    none."""
    if not variables:
        return ""
    dump: str = json.dumps(
        variables, ensure_ascii=False, indent=2, default=str
    )
    return f"Current variables:\n{dump}\n\n"


def history_window(history: ChatHistory, turns: int) -> ChatHistory:
    """The messages of the last `turns` exchanges. An exchange starts
    with a user message."""
    if turns <= 0:
        return []
    starts: list[int] = [
        i for i, (role, _) in enumerate(history) if role == "user"
    ]
    if len(starts) <= turns:
        return list(history)
    return history[starts[-turns]:]


class PromptStage(PipelineStage):
    """Builds the system message, the user message, and the history
    window sent to the model."""

    def __init__(self, settings: PipelineSettings | None = None):
        self.settings = settings or PipelineSettings()
        self.template = PromptTemplate.from_template(
            self.settings.PROMPT_TEMPLATE
        )

    async def arun(self, fields: StageFields) -> StageFields:
        history: ChatHistory = list(fields.get("history") or [])
        window: int = self.settings.history_length
        return {
            "system_message": self.settings.SYSTEM_MESSAGE,
            "user_message": self.template.format(
                variables=render_variables(fields.get("variables") or {}),
                query=fields.get("user_input", ""),
            ),
            "chat_history": history_window(history, window),
        }


class KnowledgeStage(PipelineStage):
    """
    Adds retrieved content to the user message. Without a retriever,
    or when nothing is retrieved, the message passes unchanged.
    Retrieval errors are logged and the message passes unchanged.
    """

    def __init__(
        self,
        retriever: BaseRetriever | None = None,
        settings: PipelineSettings | None = None,
        logger: LoggerBase = ConsoleLogger(),
    ):
        self.retriever = retriever
        self.settings = settings or PipelineSettings()
        self.template = PromptTemplate.from_template(
            self.settings.KNOWLEDGE_TEMPLATE
        )
        self.logger = logger

    async def arun(self, fields: StageFields) -> StageFields:
        message: str = fields.get("user_message", "")
        query: str = fields.get("query", "")
        unchanged: StageFields = {"user_message": message, "knowledge": ""}
        if self.retriever is None or not query:
            return unchanged

        try:
            documents: list[Document] = await self.retriever.ainvoke(query)
        except Exception as e:
            self.logger.error(f"Error retrieving knowledge:\n{e}")
            return unchanged

        knowledge: str = "\n-----\n".join(
            d.page_content for d in documents if d.page_content
        )
        if not knowledge:
            return unchanged
        return {
            "user_message": self.template.format(
                context=knowledge, message=message
            ),
            "knowledge": knowledge,
        }


# -----------------------------------------------------------------
# Model


def _message_text(message: Any) -> str:
    content: Any = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part if isinstance(part, str) else str(part.get("text", ""))
            for part in content
            if isinstance(part, (str, dict))
        )
    return str(content)


def _add_usage(total: dict[str, int], usage: Any) -> None:
    if not usage:
        return
    for key in ("input_tokens", "output_tokens", "total_tokens"):
        value: Any = usage.get(key) if isinstance(usage, dict) else None
        if isinstance(value, int):
            total[key] = total.get(key, 0) + value


def _retry_model_error(exc: Exception) -> bool:
    return not isinstance(exc, (PipelineCancelled, ValueError, TypeError))


def model_retry_policy(settings: ModelSettings) -> RetryPolicy | None:
    """The retry policy of the model stage, None if the settings
    require a single attempt."""
    if settings.max_retries <= 1:
        return None
    return RetryPolicy(
        max_attempts=settings.max_retries,
        initial_interval=1.0,
        retry_on=_retry_model_error,
    )


class ModelStage(PipelineStage):
    """
    Calls the language model.

    Args:
        llm: the chat model
        settings: model settings (streaming, timeout)
        on_chunk: called with each streamed text chunk (may be a
            coroutine function)
        logger: logger
    """

    def __init__(
        self,
        llm: BaseChatModel,
        settings: ModelSettings | None = None,
        on_chunk: Callable[[str], Any] | None = None,
        logger: LoggerBase = ConsoleLogger(),
    ):
        self.llm = llm
        self.settings = settings or ModelSettings()
        self.on_chunk = on_chunk
        self.logger = logger

    async def _generate(
        self, messages: ChatHistory
    ) -> tuple[str, dict[str, int]]:
        usage: dict[str, int] = {}
        if not self.settings.streaming:
            response = await self.llm.ainvoke(messages)
            _add_usage(usage, getattr(response, "usage_metadata", None))
            return _message_text(response), usage

        chunks: list[str] = []
        async for chunk in self.llm.astream(messages):
            text: str = _message_text(chunk)
            chunks.append(text)
            _add_usage(usage, getattr(chunk, "usage_metadata", None))
            if self.on_chunk is not None and text:
                result = self.on_chunk(text)
                if inspect.isawaitable(result):
                    await result
        return "".join(chunks), usage

    async def arun(self, fields: StageFields) -> StageFields:
        messages: ChatHistory = []
        if fields.get("system_message"):
            messages.append(("system", fields["system_message"]))
        messages.extend(fields.get("chat_history") or [])
        messages.append(("user", fields.get("user_message", "")))

        try:
            text, usage = await asyncio.wait_for(
                self._generate(messages), timeout=self.settings.timeout
            )
        except asyncio.TimeoutError:
            self.logger.error(
                f"Model did not respond in {self.settings.timeout}s"
            )
            raise

        return {
            "full_response": text,
            "token_usage": usage,
            "model_name": self.settings.model,
        }


# -----------------------------------------------------------------
# Response


class VariableUpdate(BaseModel):
    """A variable assignment found in a model response."""

    path: str
    new_value: Any = None
    old_value: Any = None
    reason: str | None = None
    source: Literal["set", "setvar"] = "set"


class ParsedResponse(BaseModel):
    response: str = ""
    reasoning: str | None = None
    next_prompts: list[str] = Field(default_factory=list)
    event: str | None = None
    variable_updates: list[VariableUpdate] = Field(default_factory=list)


_THINK_RE = re.compile(r"<(think|thinking)>(.*?)</\1>", re.S | re.I)
_NEXT_PROMPTS_RE = re.compile(
    r"<next_prompts>(.*?)</next_prompts>", re.S | re.I
)
_EVENT_RE = re.compile(r"<event>(.*?)</event>", re.S | re.I)
_UPDATE_BLOCK_RE = re.compile(
    r"<UpdateVariable>.*?</UpdateVariable>", re.S | re.I
)
_SET_RE = re.compile(
    r"""_\.set\s*\(\s*["'`]([^"'`]+)["'`]\s*,\s*([^,]+?)\s*,"""
    r"""\s*([^,)]+?)\s*(?:,\s*["'`]([^"'`]*)["'`]\s*)?\)\s*;?"""
)
_SETVAR_RE = re.compile(r"\{\{setvar::([^:}]+)::(.*?)\}\}")
_BULLET_RE = re.compile(r"^(?:[-*•]|\d+[.)])\s*")


def parse_value(text: str) -> Any:
    """Convert the text of a value: quoted strings, numbers,
    booleans, null, JSON; otherwise the text itself."""
    value: str = text.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'`":
        return value[1:-1]
    if re.fullmatch(r"-?\d+", value):
        return int(value)
    if re.fullmatch(r"-?\d+\.\d*", value):
        return float(value)
    if value == "true":
        return True
    if value == "false":
        return False
    if value in ("null", "undefined", "None"):
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def parse_variable_updates(text: str) -> list[VariableUpdate]:
    """The variable updates of a text, in order of appearance.
    Updates without a variable name are dropped."""
    found: list[tuple[int, VariableUpdate]] = []
    for m in _SET_RE.finditer(text):
        found.append(
            (
                m.start(),
                VariableUpdate(
                    path=m.group(1).strip(),
                    old_value=parse_value(m.group(2)),
                    new_value=parse_value(m.group(3)),
                    reason=m.group(4).strip() if m.group(4) else None,
                    source="set",
                ),
            )
        )
    for m in _SETVAR_RE.finditer(text):
        found.append(
            (
                m.start(),
                VariableUpdate(
                    path=m.group(1).strip(),
                    new_value=parse_value(m.group(2)),
                    source="setvar",
                ),
            )
        )
    return [
        u
        for _, u in sorted(found, key=lambda item: item[0])
        if u.path.strip(".[] ")
    ]


def parse_response(text: str) -> ParsedResponse:
    """Split a model response into the text for the user and the
    structured fields."""
    reasoning: list[str] = [
        m.group(2).strip() for m in _THINK_RE.finditer(text)
    ]

    next_prompts: list[str] = []
    for block in _NEXT_PROMPTS_RE.findall(text):
        for line in block.splitlines():
            prompt: str = _BULLET_RE.sub("", line.strip()).strip()
            if prompt:
                next_prompts.append(prompt)

    events: list[str] = [e.strip() for e in _EVENT_RE.findall(text)]

    screen: str = text
    for pattern in (
        _THINK_RE,
        _NEXT_PROMPTS_RE,
        _EVENT_RE,
        _UPDATE_BLOCK_RE,
        _SET_RE,
        _SETVAR_RE,
    ):
        screen = pattern.sub("", screen)
    screen = re.sub(r"\n{3,}", "\n\n", screen).strip()

    return ParsedResponse(
        response=screen,
        reasoning="\n\n".join(r for r in reasoning if r) or None,
        next_prompts=next_prompts,
        event=events[-1] if events and events[-1] else None,
        variable_updates=parse_variable_updates(text),
    )


class ResponseParsingStage(PipelineStage):
    """Extracts reasoning, suggestions, events and variable updates
    from the model response."""

    async def arun(self, fields: StageFields) -> StageFields:
        parsed: ParsedResponse = parse_response(
            fields.get("full_response", "")
        )
        return {
            "response": parsed.response,
            "reasoning": parsed.reasoning,
            "next_prompts": parsed.next_prompts,
            "event": parsed.event,
            "variable_updates": parsed.variable_updates,
        }


def _tool_record(result: ToolCallResult) -> dict[str, Any]:
    value: Any = result.result
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        value = str(value)
    return {
        "tool_name": result.tool_name,
        "syntax": result.syntax,
        "params": result.params,
        "result": value,
        "error": result.error,
    }


class ResponseHooksStage(PipelineStage):
    """Passes the response through the on_response hooks, then
    executes the tool calls it contains."""

    def __init__(
        self,
        dispatcher: HookDispatcher | None = None,
        tools: ToolCallProcessor | None = None,
    ):
        self.dispatcher = dispatcher
        self.tools = tools

    async def arun(self, fields: StageFields) -> StageFields:
        tree_id: str | None = fields.get("tree_id")
        text: str = fields.get("response", "")

        if self.dispatcher is not None:
            message: MessageContext = await self.dispatcher.on_response(
                MessageContext(role="assistant", content=text, tree_id=tree_id)
            )
            text = message.content

        records: list[dict[str, Any]] = []
        if self.tools is not None:
            processed: ToolProcessingResult = await self.tools.process(
                text, tree_id or "", fields.get("history")
            )
            text = processed.text
            records = [_tool_record(r) for r in processed.results]

        return {"response": text, "tool_results": records}
