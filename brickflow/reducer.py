"""
Pipeline Reducer - runs a compiled pipeline step by step.

Per step, in order:
1. Condition: render ``if`` and coerce to boolean. Falsy skips the step
2. Root: resolve the element the step operates relative to
3. Target: resolve the destination frame(s)
4. Render: render the step's config against the context
5. Validate: check rendered args against the brick's input schema
6. Invoke: run the brick locally or dispatch it. A renderer without a display
   surface produces a HeadlessSignal instead of a value
7. Bind: bind the output under the step's outputKey

A run resolves to a RunResult: completed (value), headless (signal), failed
(failure), or aborted. Any step error aborts the run: there is no retry at
this layer. ``onError.alert`` only sends a side-channel alert.

Steps of one run execute strictly in sequence. A step's output is visible to
later steps only after the step settles.
"""

import functools
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional, Sequence, Union

from brickflow.alerts import AlertSink
from brickflow.context import ModStateStore, VariableContext
from brickflow.dispatch import TargetDispatcher, is_aborted
from brickflow.errors import (
    AbortedError,
    BusinessError,
    ContextError,
    InputValidationError,
    NoRendererError,
    PipelineConfigurationError,
    get_error_message,
    get_error_message_with_causes,
    is_business_error,
    is_error_object,
    select_specific_error,
    serialize_error,
)
from brickflow.expressions import RenderOptions, evaluate_condition, render_args
from brickflow.frames import InMemoryFrameRegistry
from brickflow.registry import Brick, BrickOptions, BrickKind, BrickRegistry
from brickflow.root import ElementLocator, NullElementLocator, resolve_root
from brickflow.schemas import (
    BUSINESS,
    UNEXPECTED,
    UNEXPECTED_ERROR_MESSAGE,
    VALIDATION,
    Branch,
    BrickStepConfig,
    DEFAULT_API_VERSION,
    Failure,
    HeadlessSignal,
    Pipeline,
    RunMetadata,
    RunResult,
    StepOutcome,
    StepStatus,
    TargetKind,
    new_correlation_id,
)
from brickflow.templates import DEFAULT_ENGINE
from brickflow.trace import NullTraceSink, TraceRecord, TraceSink
from brickflow.transport import run_brick_message
from brickflow.validation import log_invalid_output, validate_args

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _fan_out_headless(entries: list[Any]) -> Optional[HeadlessSignal]:
    """
    The first HeadlessSignal of a renderer fan-out, if no destination that
    succeeded could display it inline.
    """
    successes = [e for e in entries if not is_error_object(e)]
    if successes and all(isinstance(e, HeadlessSignal) for e in successes):
        return successes[0]
    return None


@dataclass(frozen=True)
class ApiVersionOptions:
    """
    Runtime behavior selected by a pipeline's apiVersion.

    Attributes:
        explicit_arg: Always render args, even if the previous output is not a dict
        explicit_data_flow: Outputs flow only through outputKeys
        explicit_render: Plain strings are literals (no implicit templating)
    """
    explicit_arg: bool
    explicit_data_flow: bool
    explicit_render: bool

    @classmethod
    def for_version(cls, api_version: str) -> "ApiVersionOptions":
        if api_version == "v1":
            return cls(explicit_arg=False, explicit_data_flow=False, explicit_render=False)
        if api_version == "v2":
            return cls(explicit_arg=True, explicit_data_flow=True, explicit_render=False)
        if api_version == "v3":
            return cls(explicit_arg=True, explicit_data_flow=True, explicit_render=True)
        raise ValueError(f"Unsupported apiVersion: {api_version}")


@dataclass(frozen=True)
class ReduceOptions:
    """
    Options for a run.

    Attributes:
        validate_input: Validate rendered args against input schemas
        headless: No local display surface, renderers hand off instead of running
        log_values: Log rendered args and outputs at debug level
        explicit_arg: See ApiVersionOptions
        explicit_data_flow: See ApiVersionOptions
        explicit_render: See ApiVersionOptions
        autoescape: HTML-escape template interpolations
        default_template_engine: Engine for steps without templateEngine
        fan_out_timeout: Seconds to wait for fan-out destinations (None waits forever)
        abort_signal: Anything with ``is_set()``. Checked before each step
        expect_renderer: Fail with NoRendererError if no renderer ran
        meta: Correlation identifiers
    """
    validate_input: bool = True
    headless: bool = False
    log_values: bool = False
    explicit_arg: bool = True
    explicit_data_flow: bool = True
    explicit_render: bool = True
    autoescape: bool = True
    default_template_engine: str = DEFAULT_ENGINE
    fan_out_timeout: Optional[float] = None
    abort_signal: Any = None
    expect_renderer: bool = False
    meta: RunMetadata = field(default_factory=RunMetadata)

    @classmethod
    def for_api_version(cls, api_version: str = DEFAULT_API_VERSION, **overrides: Any) -> "ReduceOptions":
        """Options with the apiVersion's runtime behavior."""
        version = ApiVersionOptions.for_version(api_version)
        return cls(
            explicit_arg=version.explicit_arg,
            explicit_data_flow=version.explicit_data_flow,
            explicit_render=version.explicit_render,
            **overrides,
        )

    @classmethod
    def from_config(cls, config: Any, api_version: str = DEFAULT_API_VERSION, **overrides: Any) -> "ReduceOptions":
        """Options from an EngineConfig plus overrides."""
        defaults = {
            "validate_input": config.validate_input,
            "log_values": config.log_values,
            "autoescape": config.autoescape,
            "default_template_engine": config.default_template_engine,
            "fan_out_timeout": config.fan_out_timeout_s,
        }
        return cls.for_api_version(api_version, **{**defaults, **overrides})


@dataclass
class InitialValues:
    """
    Values supplied by the activation layer.

    Attributes:
        input: The run's input, available as "@input"
        options_args: The mod's options, available as "@options"
        service_context: Integration configurations, e.g. {"@google": {...}}
        root: The root element of the run
    """
    input: Any = None
    options_args: dict[str, Any] = field(default_factory=dict)
    service_context: dict[str, Any] = field(default_factory=dict)
    root: Any = None


# Markers for steps that did not produce a block output
_SKIPPED = object()
_NO_OUTPUT = object()


@dataclass
class _StepsResult:
    """Outcome of running a sequence of steps."""
    legacy_output: Any = None
    block_output: Any = None
    headless: Optional[HeadlessSignal] = None
    renderer_ran: bool = False


class PipelineReducer:
    """
    Runs pipelines against a brick registry.

    Usage:
        reducer = PipelineReducer(BrickRegistry.create_default())
        result = await reducer.run(pipeline, InitialValues(input={"msg": "hi"}))
        if result.is_headless:
            relay(result.headless)
    """

    def __init__(
        self,
        registry: BrickRegistry,
        dispatcher: Optional[TargetDispatcher] = None,
        traces: Optional[TraceSink] = None,
        alerts: Optional[AlertSink] = None,
        mod_state: Optional[ModStateStore] = None,
        locator: Optional[ElementLocator] = None,
    ):
        self.registry = registry
        self.dispatcher = dispatcher or TargetDispatcher(InMemoryFrameRegistry())
        self.traces = traces or NullTraceSink()
        self.alerts = alerts
        self.mod_state = mod_state
        self.locator = locator or NullElementLocator()

    async def run(
        self,
        pipeline: Union[Pipeline, Sequence[BrickStepConfig], BrickStepConfig],
        initial: Optional[InitialValues] = None,
        options: Optional[ReduceOptions] = None,
    ) -> RunResult:
        """
        Run a pipeline.

        Args:
            pipeline: A Pipeline, or a sequence of steps (a single step is allowed)
            initial: Input, options args, service context and root
            options: Run options. Defaults follow the pipeline's apiVersion

        Returns:
            RunResult. Step errors are returned as failures, never raised
        """
        initial = initial or InitialValues()
        if isinstance(pipeline, Pipeline):
            steps = pipeline.steps
            options = options or ReduceOptions.for_api_version(pipeline.api_version)
        else:
            steps = (pipeline,) if isinstance(pipeline, BrickStepConfig) else tuple(pipeline)
            options = options or ReduceOptions()

        meta = options.meta
        context = VariableContext.build(
            input=initial.input,
            options_args=initial.options_args,
            service_context=initial.service_context,
            mod_variables=self.mod_state.get_state(meta.mod_id) if self.mod_state else None,
        )
        outcomes: list[StepOutcome] = []
        result_fields = {"run_id": meta.run_id}

        logger.debug(f"Starting run {meta.run_id}: {len(steps)} steps")
        try:
            result = await self._reduce(steps, context, initial.root, options, outcomes=outcomes)
        except AbortedError:
            logger.info(f"Run {meta.run_id} aborted")
            return RunResult.aborted(context=context.snapshot(), step_outcomes=tuple(outcomes), **result_fields)
        except ContextError as e:
            if select_specific_error(e, AbortedError) is not None:
                logger.info(f"Run {meta.run_id} aborted")
                return RunResult.aborted(context=context.snapshot(), step_outcomes=tuple(outcomes), **result_fields)
            failure = self._to_failure(e)
            return RunResult.failed(failure, context=context.snapshot(), step_outcomes=tuple(outcomes), **result_fields)

        if result.headless is not None:
            logger.info(f"Run {meta.run_id} handed off renderer {result.headless.brick_id}")
            return RunResult.headless_handoff(
                result.headless, context=context.snapshot(), step_outcomes=tuple(outcomes), **result_fields
            )

        if options.expect_renderer and not result.renderer_ran:
            error = NoRendererError()
            return RunResult.failed(
                Failure(kind=BUSINESS, step_path="", message=str(error), error=serialize_error(error)),
                context=context.snapshot(),
                step_outcomes=tuple(outcomes),
                **result_fields,
            )

        if options.explicit_data_flow:
            value = result.block_output
        else:
            value = result.legacy_output
        logger.debug(f"Run {meta.run_id} completed")
        return RunResult.ok(value, context=context.snapshot(), step_outcomes=tuple(outcomes), **result_fields)

    async def run_expression(
        self,
        steps: Sequence[BrickStepConfig],
        context: dict[str, Any],
        root: Any,
        options: ReduceOptions,
    ) -> Any:
        """
        Run nested steps, e.g. the body of a pipeline argument.

        Returns the output of the last step, even if that step has an
        outputKey. A nested renderer's hand-off is returned as its
        HeadlessSignal.

        Raises:
            ContextError: If a step fails
            AbortedError: If the run is aborted
        """
        result = await self._reduce(tuple(steps), VariableContext(context), root, options)
        if result.headless is not None:
            return result.headless
        return result.block_output

    async def _run_branch(
        self,
        options: ReduceOptions,
        steps: tuple[BrickStepConfig, ...],
        context: dict[str, Any],
        root: Any,
        branch: Branch,
    ) -> Any:
        nested = replace(options, meta=options.meta.with_branch(branch), expect_renderer=False)
        return await self.run_expression(steps, context, root, nested)

    async def _reduce(
        self,
        steps: tuple[BrickStepConfig, ...],
        context: VariableContext,
        root: Any,
        options: ReduceOptions,
        outcomes: Optional[list[StepOutcome]] = None,
    ) -> _StepsResult:
        # Under v1 data flow the input flows into the first step
        result = _StepsResult(legacy_output={} if options.explicit_data_flow else context.get("@input"))

        for index, step in enumerate(steps):
            if is_aborted(options.abort_signal):
                raise AbortedError()

            is_last = index == len(steps) - 1
            started_at = _utcnow()
            try:
                output = await self._run_step(step, index, is_last, context, root, result, options)
            except Exception as e:
                if outcomes is not None and not isinstance(e, AbortedError):
                    outcomes.append(StepOutcome(
                        instance_id=step.instance_id,
                        brick_id=step.brick_id,
                        status=StepStatus.FAILED,
                        started_at=started_at,
                        completed_at=_utcnow(),
                        error=serialize_error(e),
                    ))
                self._fail_step(step, index, e, context, options)

            if output is _SKIPPED:
                status = StepStatus.SKIPPED
            elif result.headless is not None:
                status = StepStatus.HEADLESS
            else:
                status = StepStatus.COMPLETED
            if outcomes is not None:
                outcomes.append(StepOutcome(
                    instance_id=step.instance_id,
                    brick_id=step.brick_id,
                    status=status,
                    started_at=started_at,
                    completed_at=_utcnow(),
                    output_key=step.output_key if output is not _SKIPPED and output is not _NO_OUTPUT else None,
                ))
            if result.headless is not None:
                break

        return result

    async def _run_step(
        self,
        step: BrickStepConfig,
        index: int,
        is_last: bool,
        context: VariableContext,
        parent_root: Any,
        result: _StepsResult,
        options: ReduceOptions,
    ) -> Any:
        """
        Run one step and update the result in place.

        Returns the step's block output, _SKIPPED if its condition was falsy,
        or _NO_OUTPUT for effects.
        """
        meta = options.meta
        step_path = f"steps[{index}]"

        context.refresh_mod_variables(self.mod_state, meta.mod_id)
        brick = self.registry.resolve(step.brick_id)

        # Under v1 data flow the previous output overrides context values
        render_context = (
            context if options.explicit_data_flow
            else context.merge_legacy_output(result.legacy_output)
        )
        render_options = RenderOptions(
            template_engine=step.template_engine or options.default_template_engine,
            implicit_render=not options.explicit_render,
            autoescape=options.autoescape,
            runner=functools.partial(self._run_branch, options),
        )

        # 1. Condition
        if not evaluate_condition(step.if_, render_context, render_options):
            logger.debug(f"Skipping {step_path}: {step.brick_id} because condition not met")
            self.traces.add_entry(TraceRecord.entry(
                meta, step.instance_id, step.brick_id, template_context=context.snapshot()
            ))
            self.traces.add_exit(TraceRecord.exit(
                meta, step.instance_id, step.brick_id, output_key=step.output_key, skipped_run=True
            ))
            return _SKIPPED

        # 2. Root
        if step.target.is_fan_out:
            root = None
        else:
            root_value = render_args(step.root, render_context, render_options) if step.root is not None else None
            root = resolve_root(step.root_mode, root_value, parent_root, self.locator)
        render_options.root = root

        # 3. Target
        destinations = self.dispatcher.resolve(step.target, brick.id)

        # 4. Render
        render_error: Optional[BaseException] = None
        args: Any = None
        try:
            args = self._render_step_args(step, brick, render_context, render_options, root, result, options)
        except Exception as e:
            render_error = e

        # The entry record is written even if rendering failed
        self.traces.add_entry(TraceRecord.entry(
            meta,
            step.instance_id,
            brick.id,
            rendered_args=args,
            render_error=serialize_error(render_error) if render_error else None,
            template_context=context.snapshot(),
        ))
        if render_error is not None:
            raise render_error

        if options.log_values:
            logger.debug(f"Input for {step_path}: {brick.id} (target={step.target.value}): {args}")

        # 5. Validate
        if options.validate_input:
            validate_args(brick.input_schema, args, config_path=f"{step_path}.config")

        # 6. Invoke
        if brick.is_renderer and options.headless and step.target == TargetKind.SELF:
            output: Any = HeadlessSignal(
                brick_id=brick.id,
                render_args=args,
                render_context={
                    "context": render_context.snapshot(),
                    "message_context": meta.message_context(),
                },
                correlation_id=new_correlation_id(),
            )
        else:
            output = await self._invoke(step, brick, args, root, destinations, render_context, options)

        if is_aborted(options.abort_signal):
            # Results of calls already issued are discarded
            raise AbortedError()

        if brick.is_renderer and step.target.is_fan_out and isinstance(output, list):
            output = _fan_out_headless(output) or output

        if isinstance(output, HeadlessSignal):
            if not is_last:
                raise PipelineConfigurationError(
                    f"Renderer {output.brick_id} produced a headless hand-off but is not the last step"
                )
            if output.correlation_id is None:
                output = replace(output, correlation_id=new_correlation_id())
            self.traces.add_exit(TraceRecord.exit(
                meta, step.instance_id, brick.id, is_renderer=True, is_final=True
            ))
            result.headless = output
            result.renderer_ran = True
            return output

        if options.log_values:
            logger.debug(f"Output for {step_path}: {brick.id} (outputKey={step.context_key}): {output}")
        if not step.target.is_fan_out:
            log_invalid_output(brick.output_schema, output, brick.id)

        self.traces.add_exit(TraceRecord.exit(
            meta, step.instance_id, brick.id, output=output, output_key=step.output_key
        ))

        if brick.is_renderer:
            result.renderer_ran = True

        # 7. Bind
        if not brick.kind.binds_output:
            if step.output_key:
                logger.warning(f"Ignoring output key for effect {brick.id}")
            if output is not None:
                logger.warning(f"Ignoring output produced by effect {brick.id}")
            return _NO_OUTPUT

        if step.output_key:
            context.bind(step.output_key, output)
        elif not is_last and options.explicit_data_flow:
            raise BusinessError("outputKey is required for bricks that return data (since apiVersion: v2)")
        else:
            result.legacy_output = output

        result.block_output = output
        return output

    def _render_step_args(
        self,
        step: BrickStepConfig,
        brick: Brick,
        render_context: VariableContext,
        render_options: RenderOptions,
        root: Any,
        result: _StepsResult,
        options: ReduceOptions,
    ) -> Any:
        if brick.kind == BrickKind.READER:
            # Readers in other frames read from that frame's document
            return {"root": root} if step.target == TargetKind.SELF else {}
        if not options.explicit_arg and not isinstance(result.legacy_output, dict):
            # apiVersion v1 passes config through unrendered when the previous output isn't a dict
            return step.config
        return render_args(step.config, render_context, render_options)

    async def _invoke(
        self,
        step: BrickStepConfig,
        brick: Brick,
        args: Any,
        root: Any,
        destinations: list,
        render_context: VariableContext,
        options: ReduceOptions,
    ) -> Any:
        brick_options = BrickOptions(
            context=render_context.snapshot(),
            root=root,
            meta=options.meta,
            headless=options.headless,
            mod_state=self.mod_state,
            abort_signal=options.abort_signal,
        )

        async def local() -> Any:
            return await brick.run(args, brick_options)

        payload = run_brick_message(
            brick.id, args, options.meta, context=render_context.snapshot(), headless=options.headless
        )
        return await self.dispatcher.invoke(
            step.target,
            destinations,
            payload,
            local,
            abort_signal=options.abort_signal,
            timeout=options.fan_out_timeout,
        )

    def _fail_step(
        self,
        step: BrickStepConfig,
        index: int,
        error: Exception,
        context: VariableContext,
        options: ReduceOptions,
    ) -> None:
        """Record a step error and raise it wrapped in a ContextError."""
        if isinstance(error, AbortedError):
            raise error

        meta = options.meta
        serialized = serialize_error(error)
        self.traces.add_exit(TraceRecord.exit(meta, step.instance_id, step.brick_id, error=serialized))

        if step.on_error.alert:
            self._send_alert(step, serialized, context, meta)

        raise ContextError(
            f"An error occurred running pipeline stage #{index + 1}: {step.brick_id}",
            step_path=f"steps[{index}]",
            brick_id=step.brick_id,
            context=meta.message_context(),
        ) from error

    def _send_alert(
        self,
        step: BrickStepConfig,
        serialized: dict[str, Any],
        context: VariableContext,
        meta: RunMetadata,
    ) -> None:
        if not meta.deployment_id:
            logger.warning("Can only send alert from deployment context")
            return
        if self.alerts is None:
            logger.warning(f"No alert sink configured, dropping alert for {step.brick_id}")
            return
        try:
            self.alerts.send(
                meta.deployment_id,
                {"id": step.brick_id, "context": meta.message_context(), "error": serialized},
            )
        except Exception:
            # The step error is raised regardless of the alert
            logger.exception(f"Error sending deployment alert for {step.brick_id}")

    def _to_failure(self, error: ContextError) -> Failure:
        """Classify a step failure for the RunResult."""
        cause: BaseException = error
        while isinstance(cause, ContextError) and cause.__cause__ is not None:
            cause = cause.__cause__

        serialized = serialize_error(error)
        if select_specific_error(cause, InputValidationError) is not None:
            logger.warning(f"{error.step_path}: invalid input: {cause}")
            return Failure(VALIDATION, error.step_path, get_error_message(cause), error=serialized)
        if is_business_error(cause):
            logger.warning(f"{error.step_path}: {get_error_message(cause)}")
            return Failure(BUSINESS, error.step_path, get_error_message(cause), error=serialized)

        logger.error(
            f"Unexpected error at {error.step_path} ({error.brick_id}): {get_error_message(cause)}",
            exc_info=cause,
        )
        return Failure(
            UNEXPECTED,
            error.step_path,
            UNEXPECTED_ERROR_MESSAGE,
            detail=get_error_message_with_causes(error),
            error=serialized,
        )


async def reduce_pipeline(
    pipeline: Union[Pipeline, Sequence[BrickStepConfig]],
    initial: Optional[InitialValues] = None,
    options: Optional[ReduceOptions] = None,
    registry: Optional[BrickRegistry] = None,
    **dependencies: Any,
) -> RunResult:
    """
    Run a pipeline with a one-off reducer.

    Args:
        pipeline: The pipeline
        initial: Input, options args, service context and root
        options: Run options
        registry: Brick registry (defaults to the built-in bricks)
        **dependencies: dispatcher, traces, alerts, mod_state, locator

    Returns:
        RunResult
    """
    reducer = PipelineReducer(registry or BrickRegistry.create_default(), **dependencies)
    return await reducer.run(pipeline, initial, options)


async def reduce_mod_component_pipeline(
    reducer: PipelineReducer,
    pipeline: Union[Pipeline, Sequence[BrickStepConfig]],
    initial: Optional[InitialValues] = None,
    options: Optional[ReduceOptions] = None,
) -> RunResult:
    """
    Run the top-level pipeline of a mod component.

    Clears the component's trace records first, so the traces reflect only the
    latest run.
    """
    meta = options.meta if options else RunMetadata()
    reducer.traces.clear(meta.mod_component_id)
    return await reducer.run(pipeline, initial, options)
