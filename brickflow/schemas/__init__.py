"""
brickflow.schemas - Schema definitions for the pipeline engine.

Pipeline -> BrickStepConfig -> (Expression) -> RunResult

Lifecycle:
1. Pipeline: compiled once from static configuration, reused across runs
2. BrickStepConfig: one immutable step, config may embed Expressions
3. RunMetadata: correlation ids threaded through a run
4. StepOutcome: what happened to each reached step
5. RunResult: ok value, HeadlessSignal hand-off, Failure, or aborted
"""

from .target import TargetKind, RootMode
from .expression import (
    Expression,
    EXPRESSION_TYPE_KEY,
    EXPRESSION_VALUE_KEY,
    VAR_KIND,
    TEMPLATE_KIND,
    PIPELINE_KIND,
    TEMPLATE_KINDS,
    var,
    template,
    is_expression,
    is_serialized_expression,
)
from .step_config import (
    BrickStepConfig,
    OnErrorConfig,
    Pipeline,
    CompileError,
    API_VERSIONS,
    DEFAULT_API_VERSION,
    decode_config,
    decode_steps,
    encode_config,
)
from .run_metadata import (
    Branch,
    RunMetadata,
    ULID,
    generate_run_id,
    new_correlation_id,
)
from .outcome import (
    RunStatus,
    StepOutcome,
    StepStatus,
)
from .result import (
    Failure,
    HeadlessSignal,
    RunResult,
    VALIDATION,
    BUSINESS,
    UNEXPECTED,
    UNEXPECTED_ERROR_MESSAGE,
)

__all__ = [
    # Targets
    "TargetKind",
    "RootMode",
    # Expressions
    "Expression",
    "EXPRESSION_TYPE_KEY",
    "EXPRESSION_VALUE_KEY",
    "VAR_KIND",
    "TEMPLATE_KIND",
    "PIPELINE_KIND",
    "TEMPLATE_KINDS",
    "var",
    "template",
    "is_expression",
    "is_serialized_expression",
    # Step config
    "BrickStepConfig",
    "OnErrorConfig",
    "Pipeline",
    "CompileError",
    "API_VERSIONS",
    "DEFAULT_API_VERSION",
    "decode_config",
    "decode_steps",
    "encode_config",
    # Run metadata
    "Branch",
    "RunMetadata",
    "ULID",
    "generate_run_id",
    "new_correlation_id",
    # Outcomes
    "RunStatus",
    "StepOutcome",
    "StepStatus",
    # Results
    "Failure",
    "HeadlessSignal",
    "RunResult",
    "VALIDATION",
    "BUSINESS",
    "UNEXPECTED",
    "UNEXPECTED_ERROR_MESSAGE",
]
