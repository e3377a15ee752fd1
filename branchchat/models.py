"""
Creation of the language model from the settings.

The returned object is a LangChain chat model. The 'openai' and
'ollama' providers require the optional LangChain integration
packages (install the extras branchchat[openai] or
branchchat[ollama]). The 'debug' provider returns canned responses
and is used in tests and for trying out the pipeline:

```python
settings = ModelSettings(provider="debug")
llm = create_chat_model(settings, responses=["Hello!"])
```
"""

from langchain_core.language_models import BaseChatModel
from langchain_core.language_models.fake_chat_models import (
    FakeListChatModel,
)

from branchchat.config.config import ModelSettings

DEBUG_RESPONSES: list[str] = [
    "The story continues. <next_prompts>Look around\nWait</next_prompts>"
]


def create_chat_model(
    settings: ModelSettings,
    responses: list[str] | None = None,
) -> BaseChatModel:
    """
    Create a chat model from the model settings.

    Args:
        settings: the model settings
        responses: canned responses of the debug provider

    Raises:
        ImportError: if the integration package of the provider is
            not installed
    """
    match settings.provider:
        case "openai":
            from langchain_openai import ChatOpenAI

            return ChatOpenAI(
                model=settings.model,
                api_key=settings.api_key,
                base_url=settings.base_url,
                temperature=settings.temperature,
                top_p=settings.top_p,
                max_tokens=settings.max_tokens,  # type: ignore
                streaming=settings.streaming,
                stream_usage=True,
            )
        case "ollama":
            from langchain_ollama import ChatOllama

            return ChatOllama(
                model=settings.model,
                base_url=settings.base_url,
                temperature=settings.temperature,
                top_p=settings.top_p,
                num_predict=settings.max_tokens,
            )
        case "debug":
            return FakeListChatModel(
                responses=responses or DEBUG_RESPONSES
            )
        case _:
            raise ValueError(
                f"Unknown model provider: {settings.provider}"
            )
