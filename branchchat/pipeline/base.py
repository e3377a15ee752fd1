"""
The stage contract of the pipeline engine.

A stage is a unit of work that reads a fixed set of fields and writes
a fixed set of fields. It is declared to the engine through a
`StageDescriptor`, which names the stage, lists its input and output
fields, and names the stage that follows it. The engine gives a
stage only the fields it declared, and merges back only the fields it
declared as output, so that a stage can be tested by calling it with
a plain dict.

A stage is either a `PipelineStage` object or a plain function, sync
or async, taking and returning a dict:

```python
def double(fields: dict[str, Any]) -> dict[str, Any]:
    return {"y": fields["x"] * 2}

descriptor = StageDescriptor(
    stage_id="double",
    stage=double,
    input_fields=["x"],
    output_fields=["y"],
)
```

Field names seen by the stage may differ from the names in the
pipeline context through the `rename` map (context name -> stage
name). The map applies to inputs; its inverse applies to outputs.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
import inspect
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from langgraph.types import RetryPolicy

StageFields = dict[str, Any]


class PipelineStage(ABC):
    """Base class of stage objects."""

    @abstractmethod
    async def arun(self, fields: StageFields) -> StageFields:
        """Transform the input fields into the output fields."""
        pass

    def get_name(self) -> str:
        return self.__class__.__name__


StageFunction = Callable[
    [StageFields], StageFields | Awaitable[StageFields]
]

Stage = PipelineStage | StageFunction


async def invoke_stage(stage: Stage, fields: StageFields) -> StageFields:
    """Call a stage object or function, awaiting the result if
    needed."""
    if isinstance(stage, PipelineStage):
        return await stage.arun(fields)
    result = stage(fields)
    if inspect.isawaitable(result):
        result = await result
    return result  # type: ignore


class StageDescriptor(BaseModel):
    """
    Declaration of a stage to the pipeline engine.

    Attributes:
        stage_id: identifier of the stage, unique in the pipeline
        stage: the stage object or function
        name: display name (the id if empty)
        input_fields: context fields the stage receives
        output_fields: fields the stage may write (stage names)
        rename: map of context field names to stage field names
        next: ids of the successor stages (at most one)
        retry_policy: attempts of the stage on failure
    """

    stage_id: str = Field(..., min_length=1, pattern=r"^[\w\-]+$")
    stage: Any
    name: str = ""
    input_fields: list[str] = Field(default_factory=list)
    output_fields: list[str] = Field(default_factory=list)
    rename: dict[str, str] = Field(default_factory=dict)
    next: list[str] = Field(default_factory=list)
    # a langgraph RetryPolicy
    retry_policy: Any = None

    model_config = ConfigDict(
        frozen=True, arbitrary_types_allowed=True
    )

    @model_validator(mode='after')
    def check_descriptor(self) -> 'StageDescriptor':
        if not (
            isinstance(self.stage, PipelineStage) or callable(self.stage)
        ):
            raise ValueError(
                f"Stage '{self.stage_id}' is not callable"
            )
        if len(set(self.rename.values())) != len(self.rename):
            raise ValueError(
                f"Stage '{self.stage_id}': rename map is not "
                "one-to-one"
            )
        if self.retry_policy is not None and not isinstance(
            self.retry_policy, RetryPolicy
        ):
            raise ValueError(
                f"Stage '{self.stage_id}': invalid retry policy"
            )
        return self

    @property
    def label(self) -> str:
        return self.name or self.stage_id

    @property
    def inverse_rename(self) -> dict[str, str]:
        """Stage field name -> context field name."""
        return {v: k for k, v in self.rename.items()}

    def project_inputs(self, context: dict[str, Any]) -> StageFields:
        """The declared input fields present in the context, under
        the stage's names."""
        return {
            self.rename.get(f, f): context[f]
            for f in self.input_fields
            if f in context
        }

    def context_outputs(self) -> dict[str, str]:
        """Declared output fields: stage name -> context name."""
        inverse: dict[str, str] = self.inverse_rename
        return {f: inverse.get(f, f) for f in self.output_fields}

    @property
    def context_output_fields(self) -> list[str]:
        return list(self.context_outputs().values())
