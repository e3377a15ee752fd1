# pyright: reportUnusedImport=false
# flake8: noqa

from .base import (
    PipelineStage,
    StageDescriptor,
    StageFields,
    invoke_stage,
)

from .engine import (
    PipelineEngine,
    PipelineResult,
    PipelineRun,
)

from .stages import (
    UserInputStage,
    MessageHooksStage,
    PromptStage,
    KnowledgeStage,
    ModelStage,
    ResponseParsingStage,
    ResponseHooksStage,
    ParsedResponse,
    VariableUpdate,
    parse_response,
)

from .dialogue import (
    create_dialogue_pipeline,
    DialogueReply,
    DialogueService,
)
