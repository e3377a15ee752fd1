"""
Configuration of branchchat.

The settings are read from a TOML file (branchchat.toml by default),
complemented by environment variables with the prefix BRANCHCHAT_.
The sections are the following:

    model: the language model used to generate responses
        (provider, model name, credentials, sampling parameters)
    state: the policy deciding when a turn stores a full snapshot of
        the variables instead of a diff against its parent
    pipeline: prompts, messages, and processing options of the
        dialogue pipeline
    storage: where conversation trees are stored
    extensions: where extensions are discovered

The snapshot policy: a turn stores a full snapshot when it is forced
(root, initialization directive), when its parent has no resolved
state, when the number of changed variables exceeds `max_changes`,
when a parent state of at least `ratio_min_keys` variables sees more
than `max_change_ratio` of them changed, or when `max_snapshot_interval`
diffs have been chained since the last snapshot on the path.
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)
from tomllib import TOMLDecodeError

from branchchat.loggers import LoggerBase, ExceptionConsoleLogger

# Module-level constants
DEFAULT_CONFIG_FILE = "branchchat.toml"
ENV_PREFIX = "BRANCHCHAT_"


class ModelSettings(BaseModel):
    """
    Language model settings.

    Attributes:
        provider: one of 'openai', 'ollama', 'debug'. The 'debug'
            provider returns canned responses and needs no network.
        model: the model name at the provider
        api_key: credentials (not needed for ollama or debug)
        base_url: endpoint override
        temperature, top_p, max_tokens: sampling parameters
        streaming: stream the response from the model
        timeout: seconds to wait for the model (None: no limit)
        max_retries: attempts of the model stage on failure
    """

    provider: Literal["openai", "ollama", "debug"] = Field(
        default="debug", description="Model provider"
    )
    model: str = Field(
        default="debug", min_length=1, description="Model name"
    )
    api_key: SecretStr | None = Field(
        default=None, description="Provider credentials"
    )
    base_url: str | None = Field(
        default=None, description="Endpoint of the provider"
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_p: float = Field(default=0.7, gt=0.0, le=1.0)
    max_tokens: int | None = Field(default=None, gt=0)
    streaming: bool = Field(default=False)
    timeout: float | None = Field(
        default=120.0,
        gt=0,
        description="Timeout of a model call in seconds",
    )
    max_retries: int = Field(
        default=1,
        ge=1,
        le=10,
        description="Attempts of the model stage (1: no retry)",
    )


class StatePolicySettings(BaseModel):
    """Snapshot vs. diff storage policy of the variable state."""

    enable_snapshots: bool = Field(
        default=True,
        description="Store full snapshots when the policy requires "
        + "it. Forced snapshots are always stored.",
    )
    max_changes: int = Field(
        default=100,
        ge=0,
        description="Store a snapshot when more variables than "
        + "this changed in one turn",
    )
    max_change_ratio: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Store a snapshot when the changed fraction of "
        + "the parent's variables exceeds this ratio",
    )
    ratio_min_keys: int = Field(
        default=8,
        ge=1,
        description="Minimum number of parent variables for the "
        + "ratio rule to apply",
    )
    max_snapshot_interval: int = Field(
        default=20,
        ge=1,
        description="Maximum number of chained diffs before a "
        + "checkpoint snapshot is stored",
    )
    init_directive: str = Field(
        default="|init-vars|",
        min_length=1,
        description="User input containing this text forces a "
        + "snapshot of the variables",
    )


class PipelineSettings(BaseModel):
    """Prompts, messages, and options of the dialogue pipeline."""

    SYSTEM_MESSAGE: str = Field(
        default="You are the narrator of an interactive story. "
        + "Continue the story from the user's input."
    )
    PROMPT_TEMPLATE: str = Field(
        default="""{variables}{query}""",
        description="Template of the user message. Placeholders: "
        + "{variables}, {query}",
    )
    KNOWLEDGE_TEMPLATE: str = Field(
        default="""
####
CONTEXT: "{context}"

####
{message}
""",
        description="Template used to inject retrieved knowledge. "
        + "Placeholders: {context}, {message}",
    )

    # messages
    MSG_EMPTY_QUERY: str = Field(default="Please write a message.")
    MSG_LONG_QUERY: str = Field(
        default="Your message is too long. Please write a shorter one."
    )
    MSG_ERROR_QUERY: str = Field(
        default="I am sorry, due to an error I cannot answer this "
        + "message. Please report the error."
    )

    history_length: int = Field(
        default=6,
        ge=0,
        description="Number of previous turns (a user message and its "
        + "response) sent to the model",
    )
    max_query_word_count: int = Field(default=500, gt=0)
    annotate_extension_errors: bool = Field(
        default=False,
        description="Append a note to the response text when an "
        + "extension hook fails",
    )
    append_tool_summary: bool = Field(
        default=True,
        description="Append a summary of executed tools to the "
        + "response text",
    )


class StorageSettings(BaseModel):
    """Location of the stored conversation trees."""

    backend: Literal["memory", "json"] = Field(default="json")
    folder: str = Field(default="./storage", min_length=1)
    collection: str = Field(
        default="dialogue_trees",
        min_length=1,
        pattern=r"^[A-Za-z0-9_\-]+$",
    )


class ExtensionSettings(BaseModel):
    """Discovery of extensions."""

    folder: str = Field(default="./extensions", min_length=1)
    enabled: bool = Field(
        default=True, description="Load extensions at start-up"
    )


class ConfigSettings(BaseSettings):
    """
    This object reads and writes to file the configuration options.

    Attributes:
        model: language model settings
        state: variable state storage policy
        pipeline: dialogue pipeline settings
        storage: storage of conversation trees
        extensions: extension discovery
    """

    model: ModelSettings = Field(
        default_factory=ModelSettings,
        description="Language model settings",
    )
    state: StatePolicySettings = Field(
        default_factory=StatePolicySettings,
        description="Variable state snapshot policy",
    )
    pipeline: PipelineSettings = Field(
        default_factory=PipelineSettings,
        description="Dialogue pipeline settings",
    )
    storage: StorageSettings = Field(
        default_factory=StorageSettings,
        description="Conversation tree storage",
    )
    extensions: ExtensionSettings = Field(
        default_factory=ExtensionSettings,
        description="Extension discovery",
    )

    model_config = SettingsConfigDict(
        toml_file=DEFAULT_CONFIG_FILE,
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        frozen=True,
        validate_assignment=True,
        extra='forbid',  # Prevent unexpected fields
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize the order of settings sources."""
        return (
            init_settings,
            TomlConfigSettingsSource(settings_cls),
            env_settings,
        )

    @field_validator('pipeline')
    @classmethod
    def validate_templates(cls, v: PipelineSettings) -> PipelineSettings:
        if "{query}" not in v.PROMPT_TEMPLATE:
            raise ValueError(
                "PROMPT_TEMPLATE must contain the {query} placeholder"
            )
        if "{message}" not in v.KNOWLEDGE_TEMPLATE:
            raise ValueError(
                "KNOWLEDGE_TEMPLATE must contain the {message} "
                "placeholder"
            )
        return v


def serialize_settings(settings: BaseModel) -> str:
    """Return the TOML representation of a settings object. Secrets
    are written in clear, None values are omitted."""
    import tomlkit

    data: dict[str, Any] = settings.model_dump(
        mode="json", exclude_none=True
    )
    model: dict[str, Any] = data.get("model", {})
    if isinstance(getattr(settings, "model", None), ModelSettings):
        key: SecretStr | None = settings.model.api_key  # type: ignore
        if key is not None:
            model["api_key"] = key.get_secret_value()
    return tomlkit.dumps(data)


def export_settings(
    settings: BaseModel, file_path: str | Path | None = None
) -> None:
    """Write settings to a TOML file.

    Raises:
        OSError: If file cannot be written
    """
    if file_path is None:
        file_path = DEFAULT_CONFIG_FILE
    Path(file_path).write_text(
        serialize_settings(settings), encoding="utf-8"
    )


def format_pydantic_error_message(msg: str) -> str:
    """Drop the pydantic documentation links from a validation
    error message."""
    lines: list[str] = [
        line
        for line in msg.splitlines()
        if "https://errors.pydantic.dev" not in line
    ]
    return "\n".join(lines)


def create_default_config_file(
    file_path: str | Path | None = None,
) -> None:
    """Create a default settings file.

    Args:
        file_path: config file (defaults to branchchat.toml)

    Raises:
        OSError: If file cannot be written

    Example:
        ```python
        # Creates branchchat.toml in base folder with default values
        create_default_config_file()

        # Creates custom config file
        create_default_config_file(file_path="custom_config.toml")
        ```
    """
    if file_path is None:
        file_path = DEFAULT_CONFIG_FILE

    file_path = Path(file_path)

    if file_path.exists():
        # otherwise, it will be read in
        file_path.unlink()

    export_settings(ConfigSettings(), file_path)


def load_settings(
    *,
    file_name: str | Path | None = None,
    logger: LoggerBase = ExceptionConsoleLogger(),
) -> ConfigSettings | None:
    """Load and return a ConfigSettings object from the specified file.

    Args:
        file_name: Path to settings file (defaults to branchchat.toml)
        logger: logger to use. Defaults to a exception-raising logger.

    Returns:
        ConfigSettings: The loaded configuration settings object, or
        None if the settings could not be read.

    Expected behaviour:
        Exceptions handled through logger, but raises exceptions in
        the default logger.

    Note:
        With an ExceptionConsoleLogger, the return value is never
        None, but must still be checked to satisfy a type checker:

        ```python
        settings = load_settings(logger=ExceptionConsoleLogger())
        if settings is None:
            raise ValueError("Unreacheable code reached")
        ```
    """
    if file_name is None:
        file_name = DEFAULT_CONFIG_FILE

    file_path = Path(file_name)

    if not file_path.exists():
        logger.error(f"Configuration file not found: {file_path}")
        return None

    try:
        # A temporary ConfigSettings class that reads the given file
        class TempConfigSettings(ConfigSettings):
            model_config = SettingsConfigDict(
                toml_file=str(file_path),
                env_prefix=ENV_PREFIX,
                env_nested_delimiter="__",
                frozen=True,
                validate_assignment=True,
                extra='forbid',
            )

        return TempConfigSettings()

    except TOMLDecodeError as e:
        logger.error(
            f"The config file {file_path} is not valid TOML:\n{e}"
        )
        return None
    except ValidationError as e:
        logger.error(
            format_pydantic_error_message(f"Invalid settings:\n{e}")
        )
        return None
    except ValueError as e:
        logger.error(f"Invalid settings:\n{e}")
        return None
