"""
Mock helpers for testing the dialogue pipeline and its stages.

This module provides mock implementations of the LangChain retriever
and chat model used by the knowledge and model stages, and extension
hook objects used to test the hook dispatcher.
"""

# pyright: basic

import asyncio
from typing import Any

from pydantic import ConfigDict

from langchain_core.retrievers import BaseRetriever
from langchain_core.documents import Document
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.outputs import ChatGeneration, ChatResult

from branchchat.extensions.hooks import ExtensionContext, ExtensionHooks
from branchchat.extensions.manifest import MessageContext


class MockRetriever(BaseRetriever):
    """
    Mock implementation of a LangChain BaseRetriever for testing.

    This mock can return documents or raise exceptions to test
    error handling in the knowledge stage.
    """

    # Pydantic model configuration to allow arbitrary attributes
    model_config = ConfigDict(arbitrary_types_allowed=True)

    # Declare fields that are not part of BaseRetriever
    documents: list[Document] = []
    exception: Exception | None = None
    call_count: int = 0
    last_query: str = ""

    def __init__(
        self,
        documents: list[Document] | None = None,
        exception: Exception | None = None,
        **kwargs,
    ):
        """
        Initialize the mock retriever.

        Args:
            documents: List of Document objects to return
            exception: Exception to raise instead of returning documents
        """
        super().__init__(**kwargs)

        if documents is None:
            documents = [
                Document(
                    page_content="The dragon sleeps in the northern cave.",
                    metadata={"source": "mock_doc_1"},
                )
            ]

        object.__setattr__(self, 'documents', documents)
        object.__setattr__(self, 'exception', exception)
        object.__setattr__(self, 'call_count', 0)
        object.__setattr__(self, 'last_query', "")

    def _get_relevant_documents(self, query: str, **kwargs) -> list[Document]:
        """Sync implementation (required by BaseRetriever)."""
        raise NotImplementedError("Use ainvoke for async operations")

    async def _aget_relevant_documents(
        self, query: str, **kwargs
    ) -> list[Document]:
        """Async implementation."""
        object.__setattr__(self, 'call_count', self.call_count + 1)
        object.__setattr__(self, 'last_query', query)

        if self.exception:
            raise self.exception

        return self.documents


class MockLLM(BaseChatModel):
    """
    Mock chat model returning canned responses with token usage.

    It can raise an exception, or wait before answering to test the
    timeout of the model stage.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    responses: list[str] = []
    exception: Exception | None = None
    delay: float = 0.0
    call_count: int = 0
    last_messages: Any = None

    def __init__(
        self,
        responses: list[str] | None = None,
        exception: Exception | None = None,
        delay: float = 0.0,
        **kwargs,
    ):
        super().__init__(**kwargs)

        if responses is None:
            responses = ["This is a mock response."]

        object.__setattr__(self, 'responses', responses)
        object.__setattr__(self, 'exception', exception)
        object.__setattr__(self, 'delay', delay)
        object.__setattr__(self, 'call_count', 0)
        object.__setattr__(self, 'last_messages', None)

    def _generate(
        self,
        messages: list[BaseMessage],
        stop: list[str] | None = None,
        run_manager: Any = None,
        **kwargs: Any,
    ) -> ChatResult:
        """Sync generation (not used in our tests)."""
        raise NotImplementedError("Use ainvoke for async operations")

    async def _agenerate(
        self,
        messages: list[BaseMessage],
        stop: list[str] | None = None,
        run_manager: Any = None,
        **kwargs: Any,
    ) -> ChatResult:
        index: int = self.call_count % len(self.responses)
        object.__setattr__(self, 'call_count', self.call_count + 1)
        object.__setattr__(self, 'last_messages', messages)

        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exception:
            raise self.exception

        message = AIMessage(
            content=self.responses[index],
            usage_metadata={
                "input_tokens": 10,
                "output_tokens": 5,
                "total_tokens": 15,
            },
        )
        return ChatResult(generations=[ChatGeneration(message=message)])

    @property
    def _llm_type(self) -> str:
        """Return type of LLM."""
        return "mock_llm"


class RecordingHooks(ExtensionHooks):
    """Extension hooks recording the calls they receive and appending
    a tag to the messages."""

    def __init__(self, tag: str = "") -> None:
        self.tag = tag
        self.calls: list[str] = []
        self.received: list[str] = []

    def on_load(self, context: ExtensionContext) -> None:
        self.calls.append("on_load")

    def on_enable(self, context: ExtensionContext) -> None:
        self.calls.append("on_enable")

    def on_disable(self, context: ExtensionContext) -> None:
        self.calls.append("on_disable")

    def on_unload(self, context: ExtensionContext) -> None:
        self.calls.append("on_unload")

    def on_settings_change(
        self, settings: dict[str, Any], context: ExtensionContext
    ) -> None:
        self.calls.append("on_settings_change")

    async def on_message(
        self, message: MessageContext, context: ExtensionContext
    ) -> MessageContext:
        self.received.append(message.content)
        message.content = message.content + self.tag
        return message

    async def on_response(
        self, message: MessageContext, context: ExtensionContext
    ) -> MessageContext:
        self.received.append(message.content)
        message.content = message.content + self.tag
        return message


class FailingHooks(ExtensionHooks):
    """Extension hooks that modify the message and then raise."""

    def on_message(
        self, message: MessageContext, context: ExtensionContext
    ) -> MessageContext:
        message.content = "corrupted"
        raise RuntimeError("on_message exploded")

    def on_response(
        self, message: MessageContext, context: ExtensionContext
    ) -> MessageContext:
        message.content = "corrupted"
        raise RuntimeError("on_response exploded")
