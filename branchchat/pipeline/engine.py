"""
Execution of a chain of stages over a shared context.

The `PipelineEngine` validates a list of stage descriptors once, and
compiles it into a LangGraph state graph with one node per stage.
Each run starts from a fresh context seeded with the caller's fields;
the stages execute one after the other in the order given by their
`next` links, starting at the entry stage:

```python
engine = PipelineEngine([stage_a, stage_b, stage_c])
result = await engine.run({"x": 1})
if result.status == "completed":
    print(result.context["y"])
```

The node wrapping a stage gives the stage only its declared input
fields (renamed as declared), and merges back only its declared
output fields. Outputs that the stage did not declare are dropped
and logged.

A stage that raises halts the run. The result records the failing
stage, the error, and the context accumulated up to that point. The
engine does not retry stages; a stage descriptor may carry a
LangGraph RetryPolicy for stages calling external services.

A run may be cancelled by setting the asyncio.Event passed to `run`.
The event is checked before each stage, never during one.

The engine has no state across runs, and may be used concurrently
for different conversations.
"""

# LangGraph missing type stubs
# pyright: reportMissingTypeStubs=false
# pyright: reportUnknownMemberType=false

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Literal, TypedDict
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from langgraph.graph import StateGraph, START, END
from langgraph.graph.state import CompiledStateGraph
from langgraph.runtime import Runtime

from branchchat.errors import (
    PipelineCancelled,
    PipelineDefinitionError,
    StageFailure,
)
from branchchat.loggers import LoggerBase, ConsoleLogger

from .base import StageDescriptor, invoke_stage

# bookkeeping field carried by every run, never seen by stages
RUN_ID_FIELD = "pipeline_run_id"

PipelineStatus = Literal["completed", "failed", "cancelled"]


# (inherit from BaseModel as dataclass cannot be used for context)
class PipelineRun(BaseModel):
    """The mutable record of one run, passed to the graph nodes as
    the runtime context."""

    run_id: str = Field(default_factory=lambda: uuid4().hex)
    context: dict[str, Any] = Field(default_factory=dict)
    executed: list[str] = Field(default_factory=list)
    failed_stage: str | None = None
    error: BaseException | None = None
    cancel_event: asyncio.Event | None = None
    logger: LoggerBase = Field(default_factory=ConsoleLogger)

    model_config = ConfigDict(arbitrary_types_allowed=True)


class PipelineResult(BaseModel):
    """
    Outcome of a pipeline run.

    Attributes:
        status: 'completed', 'failed', or 'cancelled'
        context: the context at the end of the run
        executed: ids of the stages that completed, in order
        failed_stage: id of the stage that raised (failed runs)
        error: the exception raised by the failed stage
    """

    status: PipelineStatus
    context: dict[str, Any] = Field(default_factory=dict)
    executed: list[str] = Field(default_factory=list)
    failed_stage: str | None = None
    error: BaseException | None = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    @property
    def error_message(self) -> str | None:
        """A single message naming the failing stage."""
        match self.status:
            case "failed":
                return str(
                    StageFailure(
                        self.failed_stage or "<unknown>",
                        self.error or RuntimeError("unknown error"),
                    )
                )
            case "cancelled":
                return "Pipeline run cancelled"
            case _:
                return None

    def raise_for_status(self) -> None:
        """Raise StageFailure or PipelineCancelled unless the run
        completed."""
        if self.status == "failed":
            raise StageFailure(
                self.failed_stage or "<unknown>",
                self.error or RuntimeError("unknown error"),
                self.context,
            )
        if self.status == "cancelled":
            raise PipelineCancelled(self.error_message)


NodeFunction = Callable[
    [dict[str, Any], Runtime[PipelineRun]], Awaitable[dict[str, Any]]
]


class PipelineEngine:
    """
    A validated chain of stages compiled into a LangGraph graph.

    Args:
        stages: the stage descriptors
        entry: id of the first stage (defaults to the first
            descriptor)
        logger: logger for dropped outputs and failures

    Raises:
        PipelineDefinitionError: if the stages do not form a single
            chain from the entry stage
    """

    def __init__(
        self,
        stages: Sequence[StageDescriptor],
        entry: str | None = None,
        logger: LoggerBase = ConsoleLogger(),
    ) -> None:
        self.logger = logger
        if not stages:
            raise PipelineDefinitionError("A pipeline needs a stage")

        self.descriptors: dict[str, StageDescriptor] = {}
        for descriptor in stages:
            if descriptor.stage_id in self.descriptors:
                raise PipelineDefinitionError(
                    f"Duplicate stage id '{descriptor.stage_id}'"
                )
            self.descriptors[descriptor.stage_id] = descriptor

        self.entry: str = entry or stages[0].stage_id
        self.order: list[str] = self._validate()
        self.fields: list[str] = self._collect_fields()
        self.graph: CompiledStateGraph[Any, PipelineRun, Any, Any] = (
            self._compile()
        )

    # -- definition ----------------------------------------------------

    def _validate(self) -> list[str]:
        """Check the stage graph and return the execution order."""
        if self.entry not in self.descriptors:
            raise PipelineDefinitionError(
                f"Unknown entry stage '{self.entry}'"
            )
        for descriptor in self.descriptors.values():
            for successor in descriptor.next:
                if successor not in self.descriptors:
                    raise PipelineDefinitionError(
                        f"Stage '{descriptor.stage_id}' is followed by "
                        f"unknown stage '{successor}'"
                    )
            if len(descriptor.next) > 1:
                raise PipelineDefinitionError(
                    f"Stage '{descriptor.stage_id}' has more than one "
                    "successor; parallel branches are not supported"
                )

        order: list[str] = []
        current: str | None = self.entry
        while current is not None:
            if current in order:
                raise PipelineDefinitionError(
                    f"Cycle in the pipeline at stage '{current}'"
                )
            order.append(current)
            successors: list[str] = self.descriptors[current].next
            current = successors[0] if successors else None

        unreachable: list[str] = [
            s for s in self.descriptors if s not in order
        ]
        if unreachable:
            raise PipelineDefinitionError(
                "Stages not reachable from the entry stage: "
                + ", ".join(unreachable)
            )
        return order

    def _collect_fields(self) -> list[str]:
        fields: list[str] = [RUN_ID_FIELD]
        for stage_id in self.order:
            descriptor: StageDescriptor = self.descriptors[stage_id]
            for field in (
                descriptor.input_fields
                + descriptor.context_output_fields
            ):
                if field not in fields:
                    fields.append(field)

        clashes: list[str] = [s for s in self.order if s in fields]
        if clashes:
            raise PipelineDefinitionError(
                "Stage ids must differ from field names: "
                + ", ".join(clashes)
            )
        return fields

    def _make_node(self, descriptor: StageDescriptor) -> NodeFunction:
        outputs: dict[str, str] = descriptor.context_outputs()

        async def node(
            state: dict[str, Any], runtime: Runtime[PipelineRun]
        ) -> dict[str, Any]:
            run: PipelineRun = runtime.context
            if run.cancel_event is not None and run.cancel_event.is_set():
                raise PipelineCancelled(
                    f"Run cancelled before stage '{descriptor.stage_id}'"
                )

            # cleared at each attempt under a retry policy
            run.failed_stage = None
            run.error = None
            try:
                result = await invoke_stage(
                    descriptor.stage, descriptor.project_inputs(state)
                )
                if not isinstance(result, dict):
                    raise TypeError(
                        f"Stage returned {type(result).__name__}, "
                        "not a dict"
                    )
            except Exception as e:
                run.failed_stage = descriptor.stage_id
                run.error = e
                raise

            update: dict[str, Any] = {}
            dropped: list[str] = []
            for key, value in result.items():
                if key in outputs:
                    update[outputs[key]] = value
                else:
                    dropped.append(str(key))
            if dropped:
                run.logger.warning(
                    f"Stage '{descriptor.stage_id}' wrote undeclared "
                    f"fields, dropped: {', '.join(dropped)}"
                )

            run.context.update(update)
            run.executed.append(descriptor.stage_id)
            return update

        return node

    def _compile(self) -> CompiledStateGraph[Any, PipelineRun, Any, Any]:
        state_schema = TypedDict(  # type: ignore[misc]
            "PipelineState",
            {f: Any for f in self.fields},
            total=False,
        )
        workflow: StateGraph[Any, PipelineRun, Any, Any] = StateGraph(
            state_schema, PipelineRun
        )
        for stage_id in self.order:
            descriptor: StageDescriptor = self.descriptors[stage_id]
            workflow.add_node(
                stage_id,
                self._make_node(descriptor),
                retry_policy=descriptor.retry_policy,
            )

        workflow.add_edge(START, self.order[0])
        for current, successor in zip(self.order, self.order[1:]):
            workflow.add_edge(current, successor)
        workflow.add_edge(self.order[-1], END)
        return workflow.compile()

    @property
    def stages(self) -> list[StageDescriptor]:
        """The descriptors in execution order."""
        return [self.descriptors[s] for s in self.order]

    # -- execution -----------------------------------------------------

    async def run(
        self,
        initial_fields: dict[str, Any],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> PipelineResult:
        """
        Run the pipeline on a fresh context.

        Args:
            initial_fields: the fields the context is seeded with
            cancel_event: set by the caller to cancel the run at the
                next stage boundary

        Returns:
            a PipelineResult. Stage errors are reported in the result,
            not raised.
        """
        run = PipelineRun(
            context=dict(initial_fields),
            cancel_event=cancel_event,
            logger=self.logger,
        )
        state: dict[str, Any] = {
            k: v for k, v in initial_fields.items() if k in self.fields
        }
        state[RUN_ID_FIELD] = run.run_id

        try:
            await self.graph.ainvoke(
                state,
                context=run,
                config={"recursion_limit": len(self.order) + 10},
            )
        except PipelineCancelled as e:
            self.logger.warning(str(e))
            return PipelineResult(
                status="cancelled",
                context=run.context,
                executed=run.executed,
                error=e,
            )
        except Exception as e:
            result = PipelineResult(
                status="failed",
                context=run.context,
                executed=run.executed,
                failed_stage=run.failed_stage,
                error=run.error or e,
            )
            self.logger.error(result.error_message or str(e))
            return result

        return PipelineResult(
            status="completed",
            context=run.context,
            executed=run.executed,
        )
