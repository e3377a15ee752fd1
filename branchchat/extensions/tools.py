"""
Tools and the detection of tool calls in response text.

Tools are registered by name in a `ToolRegistry`, usually by
extensions through their API. A model response may invoke a tool
inline with one of four syntaxes, tried in this order:

    slash command   /name args          (at the start of a line)
    at-call         @name(args)
    bracket tag     [tool:name:args]
    template brace  {{name|args}}

The `ToolCallDetector` finds the calls; the `ToolCallProcessor`
executes the registered tools and replaces each call with the
formatted result. Calls of unknown tools are left in the text and
logged as warnings. A tool that raises is replaced by an inline error
note.

Parameters are parsed from the argument text: a JSON object, or
key-value pairs ('a=1, b: 2'), or otherwise the raw text under the
key 'raw'.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
import inspect
import json
import re
from typing import Any, Literal, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from branchchat.loggers import LoggerBase, ConsoleLogger

ToolSyntax = Literal["slash", "at_call", "bracket", "brace"]


class ToolExecutionContext(BaseModel):
    """Information passed to a tool when it is executed."""

    session_id: str
    tool_name: str
    extension_id: str | None = None
    message_history: list[tuple[str, str]] = Field(default_factory=list)


class Tool(ABC):
    """A tool callable from response text."""

    name: str = ""
    description: str = ""

    @abstractmethod
    def execute(
        self, context: ToolExecutionContext, params: dict[str, Any]
    ) -> Any:
        """Execute the tool. May be a coroutine function."""
        pass


class FunctionTool(Tool):
    """A tool wrapping a function (sync or async) of context and
    params."""

    def __init__(
        self,
        name: str,
        function: Callable[[ToolExecutionContext, dict[str, Any]], Any],
        description: str = "",
    ):
        self.name = name
        self.function = function
        self.description = description

    def execute(
        self, context: ToolExecutionContext, params: dict[str, Any]
    ) -> Any:
        return self.function(context, params)


class _RegisteredTool(NamedTuple):
    tool: Tool
    owner: str | None


class ToolRegistry:
    """Tools by name. Each tool records the extension owning it."""

    def __init__(self, logger: LoggerBase = ConsoleLogger()) -> None:
        self._tools: dict[str, _RegisteredTool] = {}
        self.logger = logger

    def register(
        self, name: str, tool: Tool, owner: str | None = None
    ) -> None:
        if name in self._tools:
            self.logger.warning(f"Tool '{name}' replaced")
        self._tools[name] = _RegisteredTool(tool, owner)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def unregister_owner(self, owner: str) -> list[str]:
        """Remove the tools of an extension, returning their names."""
        names: list[str] = [
            n for n, t in self._tools.items() if t.owner == owner
        ]
        for name in names:
            del self._tools[name]
        return names

    def get(self, name: str) -> Tool | None:
        entry: _RegisteredTool | None = self._tools.get(name)
        return entry.tool if entry else None

    def owner_of(self, name: str) -> str | None:
        entry: _RegisteredTool | None = self._tools.get(name)
        return entry.owner if entry else None

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


class ToolCall(BaseModel):
    """A tool invocation found in a text."""

    tool_name: str
    raw_params: str
    syntax: ToolSyntax
    raw_match: str
    start: int = 0


class ToolCallResult(BaseModel):
    """Outcome of the execution of a tool call."""

    tool_name: str
    syntax: ToolSyntax
    params: dict[str, Any] = Field(default_factory=dict)
    raw_match: str
    result: Any = None
    error: str | None = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def ok(self) -> bool:
        return self.error is None


class ToolCallRule(NamedTuple):
    syntax: ToolSyntax
    pattern: re.Pattern[str]


# Order matters: the rules are tried in this order
TOOL_CALL_RULES: tuple[ToolCallRule, ...] = (
    ToolCallRule("slash", re.compile(r"(?m)^/([\w-]+)[ \t]+(.+)$")),
    ToolCallRule("at_call", re.compile(r"@([\w-]+)\(([^)]*)\)")),
    ToolCallRule("bracket", re.compile(r"\[tool:([\w-]+):([^\]]*)\]")),
    ToolCallRule("brace", re.compile(r"\{\{([\w-]+)\|([^}]*)\}\}")),
)


class ToolCallDetector:
    """Finds tool calls in a text by applying the rules in order."""

    def __init__(
        self, rules: tuple[ToolCallRule, ...] = TOOL_CALL_RULES
    ) -> None:
        self.rules = rules

    def detect(self, text: str) -> list[ToolCall]:
        """Return the calls of each rule in turn, each in order of
        appearance."""
        calls: list[ToolCall] = []
        for rule in self.rules:
            for match in rule.pattern.finditer(text):
                calls.append(
                    ToolCall(
                        tool_name=match.group(1),
                        raw_params=match.group(2).strip(),
                        syntax=rule.syntax,
                        raw_match=match.group(0),
                        start=match.start(),
                    )
                )
        return calls


def parse_tool_params(raw: str) -> dict[str, Any]:
    """Parse the argument text of a tool call."""
    text: str = raw.strip()
    if not text:
        return {}
    if text.startswith("{") and text.endswith("}"):
        try:
            data: Any = json.loads(text)
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

    params: dict[str, Any] = {}
    for pair in re.split(r"[,;|]", text):
        parts: list[str] = re.split(r"[:=]", pair, maxsplit=1)
        if len(parts) != 2:
            continue
        key, value = parts[0].strip(), parts[1].strip()
        if key and value:
            params[key] = value
    return params or {"raw": text}


def format_tool_result(tool_name: str, result: Any) -> str:
    """The text replacing a tool call in the response."""
    if isinstance(result, dict):
        if result.get("error"):
            return f"[{tool_name} error: {result['error']}]"
        value: Any = result.get("result") or result.get("message")
        if value is None:
            value = json.dumps(result, ensure_ascii=False, default=str)
        return f"[{tool_name}: {value}]"
    return f"[{tool_name}: {result}]"


def format_tool_summary(results: list[ToolCallResult]) -> str:
    """A summary of executed tools, to append to a response."""
    lines: list[str] = []
    for r in results:
        if r.error is not None:
            lines.append(f"✗ {r.tool_name}: {r.error}")
            continue
        success: bool = not (
            isinstance(r.result, dict) and r.result.get("success") is False
        )
        text: Any = r.result
        if isinstance(r.result, dict):
            text = (
                r.result.get("result") or r.result.get("message") or "done"
            )
        lines.append(f"{'✓' if success else '!'} {r.tool_name}: {text}")
    return "**Tool results:**\n" + "\n".join(lines)


class ToolProcessingResult(NamedTuple):
    text: str
    results: list[ToolCallResult]

    @property
    def has_calls(self) -> bool:
        return bool(self.results)


class ToolCallProcessor:
    """
    Executes the tool calls found in a text and substitutes their
    results.

    Args:
        registry: the registered tools
        detector: the call detector (default rules if None)
        append_summary: append a summary of executed tools
        logger: logger for unknown tools and tool errors
    """

    def __init__(
        self,
        registry: ToolRegistry,
        detector: ToolCallDetector | None = None,
        append_summary: bool = True,
        logger: LoggerBase = ConsoleLogger(),
    ) -> None:
        self.registry = registry
        self.detector = detector or ToolCallDetector()
        self.append_summary = append_summary
        self.logger = logger

    async def process(
        self,
        text: str,
        session_id: str,
        message_history: list[tuple[str, str]] | None = None,
    ) -> ToolProcessingResult:
        processed: str = text
        results: list[ToolCallResult] = []
        # spans of the text already taken by executed calls
        claimed: list[tuple[int, int]] = []

        for call in self.detector.detect(text):
            tool: Tool | None = self.registry.get(call.tool_name)
            if tool is None:
                self.logger.warning(
                    f"Tool '{call.tool_name}' not registered, call "
                    f"'{call.raw_match}' skipped"
                )
                continue

            end: int = call.start + len(call.raw_match)
            if any(s < end and call.start < e for s, e in claimed):
                self.logger.warning(
                    f"Call '{call.raw_match}' inside another tool call "
                    "skipped"
                )
                continue
            claimed.append((call.start, end))

            params: dict[str, Any] = parse_tool_params(call.raw_params)
            context = ToolExecutionContext(
                session_id=session_id,
                tool_name=call.tool_name,
                extension_id=self.registry.owner_of(call.tool_name),
                message_history=list(message_history or []),
            )
            try:
                result: Any = tool.execute(context, params)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                self.logger.error(
                    f"Tool '{call.tool_name}' failed: {e}"
                )
                results.append(
                    ToolCallResult(
                        tool_name=call.tool_name,
                        syntax=call.syntax,
                        params=params,
                        raw_match=call.raw_match,
                        error=str(e) or type(e).__name__,
                    )
                )
                processed = processed.replace(
                    call.raw_match,
                    f"[tool {call.tool_name} failed: {e}]",
                    1,
                )
                continue

            results.append(
                ToolCallResult(
                    tool_name=call.tool_name,
                    syntax=call.syntax,
                    params=params,
                    raw_match=call.raw_match,
                    result=result,
                )
            )
            processed = processed.replace(
                call.raw_match, format_tool_result(call.tool_name, result), 1
            )

        if results and self.append_summary:
            processed = processed + "\n\n" + format_tool_summary(results)
        return ToolProcessingResult(processed, results)
