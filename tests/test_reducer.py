"""Tests for brickflow reducer module.

Tests the run lifecycle:
Pipeline -> condition -> root -> target -> render -> validate -> invoke -> bind -> RunResult
"""

import asyncio
import logging
import threading

import pytest

from brickflow.compiler import compile_pipeline
from brickflow.reducer import (
    ApiVersionOptions,
    InitialValues,
    PipelineReducer,
    ReduceOptions,
    reduce_mod_component_pipeline,
    reduce_pipeline,
)
from brickflow.registry import BrickKind, FunctionBrick
from brickflow.schemas import (
    BUSINESS,
    UNEXPECTED,
    UNEXPECTED_ERROR_MESSAGE,
    VALIDATION,
    BrickStepConfig,
    OnErrorConfig,
    Pipeline,
    RunMetadata,
    RunStatus,
    StepStatus,
    TargetKind,
    template,
    var,
)


def _run(reducer, pipeline, initial=None, options=None):
    return asyncio.run(reducer.run(pipeline, initial, options))


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def echo_alert_pipeline() -> Pipeline:
    """Echo a greeting, then alert it."""
    return Pipeline(steps=(
        BrickStepConfig(
            brick_id="@brickflow/echo",
            config={"message": template("Hello {{ @input.name }}")},
            output_key="greeting",
        ),
        BrickStepConfig(
            brick_id="@brickflow/alert",
            config={"message": var("@greeting")},
        ),
    ))


# =============================================================================
# API VERSION OPTIONS
# =============================================================================


class TestApiVersionOptions:
    def test_v1_is_implicit(self):
        opts = ApiVersionOptions.for_version("v1")
        assert not opts.explicit_arg
        assert not opts.explicit_data_flow
        assert not opts.explicit_render

    def test_v2_renders_implicitly(self):
        opts = ApiVersionOptions.for_version("v2")
        assert opts.explicit_data_flow
        assert not opts.explicit_render

    def test_v3_is_explicit(self):
        opts = ApiVersionOptions.for_version("v3")
        assert opts.explicit_arg and opts.explicit_data_flow and opts.explicit_render

    def test_unknown_version(self):
        with pytest.raises(ValueError, match="Unsupported apiVersion"):
            ApiVersionOptions.for_version("v9")

    def test_reduce_options_overrides(self):
        opts = ReduceOptions.for_api_version("v1", headless=True)
        assert opts.headless
        assert not opts.explicit_render


# =============================================================================
# BASIC RUNS
# =============================================================================


class TestBasicRun:
    def test_echo_then_alert(self, reducer, echo_alert_pipeline, caplog):
        with caplog.at_level(logging.INFO, logger="brickflow"):
            result = _run(reducer, echo_alert_pipeline, InitialValues(input={"name": "Ann"}))

        assert result.status == RunStatus.COMPLETED
        assert result.value == "Hello Ann"
        assert result.context["@greeting"] == "Hello Ann"
        assert "Alert: Hello Ann" in caplog.text
        assert [o.status for o in result.step_outcomes] == [StepStatus.COMPLETED, StepStatus.COMPLETED]
        assert result.step_outcomes[0].output_key == "greeting"

    def test_empty_pipeline(self, reducer):
        result = _run(reducer, Pipeline())
        assert result.is_ok
        assert result.value is None
        assert result.step_outcomes == ()

    def test_single_step_is_accepted(self, reducer):
        step = BrickStepConfig(brick_id="@brickflow/echo", config={"message": "hi"})
        result = _run(reducer, step)
        assert result.value == "hi"

    def test_input_defaults_to_empty_dict(self, reducer):
        step = BrickStepConfig(brick_id="@brickflow/identity", config={"input": var("@input")})
        result = _run(reducer, [step])
        assert result.value == {"input": {}}

    def test_service_context_is_available(self, reducer):
        step = BrickStepConfig(brick_id="@brickflow/identity", config={"sheet": var("@google.sheetId")})
        result = _run(reducer, [step], InitialValues(service_context={"google": {"sheetId": "abc"}}))
        assert result.value == {"sheet": "abc"}

    def test_plain_strings_are_literals(self, reducer):
        step = BrickStepConfig(brick_id="@brickflow/echo", config={"message": "{{ @input.name }}"})
        result = _run(reducer, [step], InitialValues(input={"name": "Ann"}))
        assert result.value == "{{ @input.name }}"

    def test_value_is_last_output_even_when_bound(self, reducer):
        steps = [
            BrickStepConfig(brick_id="@brickflow/echo", config={"message": "a"}, output_key="first"),
            BrickStepConfig(brick_id="@brickflow/echo", config={"message": "b"}, output_key="second"),
        ]
        result = _run(reducer, steps)
        assert result.value == "b"
        assert result.context["@first"] == "a"

    def test_reader_gets_root(self, reducer):
        step = BrickStepConfig(brick_id="@test/read", config={"ignored": True})
        result = _run(reducer, [step], InitialValues(root="document-root"))
        assert result.value == {"root": "document-root"}

    def test_reduce_pipeline_uses_default_registry(self):
        step = BrickStepConfig(brick_id="@brickflow/echo", config={"message": "hi"})
        result = asyncio.run(reduce_pipeline(Pipeline(steps=(step,))))
        assert result.value == "hi"


# =============================================================================
# CONDITIONS
# =============================================================================


class TestConditions:
    @pytest.mark.parametrize("condition", ["0", "", "maybe", "false", "no", False, 0])
    def test_falsy_condition_skips(self, reducer, traces, condition):
        step = BrickStepConfig(
            brick_id="@brickflow/echo", config={"message": "x"}, output_key="out", if_=condition
        )
        result = _run(reducer, [step])

        assert result.is_ok
        assert "@out" not in result.context
        assert result.step_outcomes[0].status == StepStatus.SKIPPED
        assert result.step_outcomes[0].output_key is None

        # Skipped steps still write an entry and a skipped exit record
        assert len(traces.entries) == 1
        assert len(traces.exits) == 1
        assert traces.exits[0].skipped_run is True

    @pytest.mark.parametrize("condition", ["yes", "1", "ON", "true", "T", True, 2])
    def test_truthy_condition_runs(self, reducer, condition):
        step = BrickStepConfig(
            brick_id="@brickflow/echo", config={"message": "x"}, output_key="out", if_=condition
        )
        result = _run(reducer, [step])
        assert result.context["@out"] == "x"
        assert result.step_outcomes[0].status == StepStatus.COMPLETED

    def test_templated_condition(self, reducer):
        step = BrickStepConfig(
            brick_id="@brickflow/echo",
            config={"message": "x"},
            if_=template("{{ @input.enabled }}"),
        )
        assert _run(reducer, [step], InitialValues(input={"enabled": True})).value == "x"
        assert _run(reducer, [step], InitialValues(input={"enabled": False})).value is None

    def test_skipped_step_does_not_render_args(self, reducer):
        # Rendering this template would fail
        step = BrickStepConfig(
            brick_id="@brickflow/echo", config={"message": template("{{ oops ")}, if_="no"
        )
        assert _run(reducer, [step]).is_ok


# =============================================================================
# HEADLESS RENDERERS
# =============================================================================


class TestHeadless:
    def test_sole_renderer_hands_off(self, reducer, traces):
        step = BrickStepConfig(brick_id="@brickflow/document", config={"body": template("Hi {{ @input.name }}")})
        result = _run(reducer, [step], InitialValues(input={"name": "Ann"}), ReduceOptions(headless=True))

        assert result.status == RunStatus.HEADLESS
        assert result.headless.brick_id == "@brickflow/document"
        assert result.headless.render_args == {"body": "Hi Ann"}
        assert result.headless.correlation_id is not None
        assert result.step_outcomes[0].status == StepStatus.HEADLESS
        assert traces.exits[-1].is_renderer is True

    def test_renderer_runs_with_display_surface(self, reducer):
        step = BrickStepConfig(brick_id="@brickflow/document", config={"title": "T", "body": "b"})
        result = _run(reducer, [step])
        assert result.value == {"html": "<h1>T</h1><div>b</div>"}

    def test_renderer_not_last_fails(self, reducer):
        steps = [
            BrickStepConfig(brick_id="@brickflow/document", config={"body": "x"}),
            BrickStepConfig(brick_id="@brickflow/echo", config={"message": "after"}),
        ]
        result = _run(reducer, steps, options=ReduceOptions(headless=True))

        assert result.is_failed
        assert result.failure.kind == BUSINESS
        assert result.failure.step_path == "steps[0]"
        assert "not the last step" in result.failure.message

    def test_expect_renderer_without_renderer(self, reducer):
        step = BrickStepConfig(brick_id="@brickflow/echo", config={"message": "x"})
        result = _run(reducer, [step], options=ReduceOptions(expect_renderer=True))
        assert result.is_failed
        assert result.failure.kind == BUSINESS
        assert result.failure.message == "Pipeline does not include a renderer"

    def test_expect_renderer_with_renderer(self, reducer):
        step = BrickStepConfig(brick_id="@brickflow/document", config={"body": "x"})
        result = _run(reducer, [step], options=ReduceOptions(expect_renderer=True))
        assert result.is_ok


# =============================================================================
# ERRORS
# =============================================================================


class TestErrors:
    def test_no_related_frame_is_business_failure(self, reducer):
        step = BrickStepConfig(brick_id="@brickflow/identity", target=TargetKind.TARGET)
        result = _run(reducer, [step])

        assert result.is_failed
        assert result.failure.kind == BUSINESS
        assert "no related frame" in result.failure.message.lower()

    def test_validation_failure_has_config_path(self, reducer):
        steps = [
            BrickStepConfig(brick_id="@brickflow/echo", config={"message": "x"}, output_key="x"),
            BrickStepConfig(brick_id="@test/upper", config={"text": 5}),
        ]
        result = _run(reducer, steps)

        assert result.failure.kind == VALIDATION
        assert result.failure.step_path == "steps[1]"
        assert "steps[1].config.text" in result.failure.message
        cause = result.failure.error["cause"]
        assert cause["name"] == "InputValidationError"
        assert cause["config_path"] == "steps[1].config.text"

    def test_validation_can_be_disabled(self, reducer):
        step = BrickStepConfig(brick_id="@test/upper", config={"text": "abc"})
        result = _run(reducer, [step], options=ReduceOptions(validate_input=False))
        assert result.value == "ABC"

    def test_unexpected_error_is_generic(self, reducer):
        step = BrickStepConfig(brick_id="@test/fail")
        result = _run(reducer, [step])

        assert result.failure.kind == UNEXPECTED
        assert result.failure.message == UNEXPECTED_ERROR_MESSAGE
        assert "boom" in result.failure.detail
        assert "An error occurred running pipeline stage #1: @test/fail" in result.failure.detail
        assert result.step_outcomes[0].status == StepStatus.FAILED

    def test_business_error_message_is_shown(self, reducer):
        result = _run(reducer, [BrickStepConfig(brick_id="@test/business-fail")])
        assert result.failure.kind == BUSINESS
        assert result.failure.message == "Spreadsheet not shared with the integration"

    def test_unknown_brick(self, reducer):
        result = _run(reducer, [BrickStepConfig(brick_id="@nope/missing")])
        assert result.failure.kind == BUSINESS
        assert result.failure.message == "Brick not found: @nope/missing"

    def test_error_stops_the_run(self, reducer):
        steps = [
            BrickStepConfig(brick_id="@test/fail", output_key="a"),
            BrickStepConfig(brick_id="@brickflow/echo", config={"message": "never"}),
        ]
        result = _run(reducer, steps)
        assert len(result.step_outcomes) == 1

    def test_render_error_still_writes_entry(self, reducer, traces):
        step = BrickStepConfig(brick_id="@brickflow/echo", config={"message": template("{{ oops ")})
        result = _run(reducer, [step])

        assert result.failure.kind == BUSINESS
        assert len(traces.entries) == 1
        assert traces.entries[0].render_error["name"] == "InvalidTemplateError"
        assert traces.exits[0].error is not None

    def test_output_key_required_under_explicit_data_flow(self, reducer):
        steps = [
            BrickStepConfig(brick_id="@brickflow/identity", config={"a": 1}),
            BrickStepConfig(brick_id="@brickflow/echo", config={"message": "x"}),
        ]
        result = _run(reducer, steps)
        assert result.failure.kind == BUSINESS
        assert "outputKey is required" in result.failure.message

    def test_output_key_required_even_without_data(self, registry):
        async def nothing(args, options):
            return None

        registry.register(FunctionBrick("@test/nothing", nothing))
        reducer = PipelineReducer(registry)
        steps = [
            BrickStepConfig(brick_id="@test/nothing"),
            BrickStepConfig(brick_id="@brickflow/echo", config={"message": "never"}),
        ]
        result = _run(reducer, steps)

        assert result.failure.kind == BUSINESS
        assert result.failure.step_path == "steps[0]"
        assert "outputKey is required" in result.failure.message

    def test_invalid_output_is_only_logged(self, registry, caplog):
        async def number(args, options):
            return 5

        registry.register(FunctionBrick("@test/number", number, output_schema={"type": "string"}))
        reducer = PipelineReducer(registry)
        with caplog.at_level(logging.WARNING, logger="brickflow"):
            result = _run(reducer, [BrickStepConfig(brick_id="@test/number")])

        assert result.value == 5
        assert "Invalid output for brick @test/number" in caplog.text


# =============================================================================
# ALERTS
# =============================================================================


class TestOnErrorAlert:
    def test_alert_sent_from_deployment(self, reducer, alerts):
        step = BrickStepConfig(brick_id="@test/fail", on_error=OnErrorConfig(alert=True))
        options = ReduceOptions(meta=RunMetadata(deployment_id="dep-1", mod_id="mod-1"))
        result = _run(reducer, [step], options=options)

        # The alert does not change propagation
        assert result.is_failed
        assert len(alerts.alerts) == 1
        deployment_id, data = alerts.alerts[0]
        assert deployment_id == "dep-1"
        assert data["id"] == "@test/fail"
        assert data["error"]["message"] == "boom"
        assert data["context"]["mod_id"] == "mod-1"

    def test_alert_needs_deployment(self, reducer, alerts, caplog):
        step = BrickStepConfig(brick_id="@test/fail", on_error=OnErrorConfig(alert=True))
        with caplog.at_level(logging.WARNING, logger="brickflow"):
            result = _run(reducer, [step])

        assert result.is_failed
        assert alerts.alerts == []
        assert "Can only send alert from deployment context" in caplog.text

    def test_no_alert_without_flag(self, reducer, alerts):
        options = ReduceOptions(meta=RunMetadata(deployment_id="dep-1"))
        _run(reducer, [BrickStepConfig(brick_id="@test/fail")], options=options)
        assert alerts.alerts == []


# =============================================================================
# DATA FLOW
# =============================================================================


class TestDataFlow:
    def test_effect_ignores_output_key(self, reducer, caplog):
        step = BrickStepConfig(brick_id="@brickflow/alert", config={"message": "x"}, output_key="ignored")
        with caplog.at_level(logging.WARNING, logger="brickflow"):
            result = _run(reducer, [step])

        assert "@ignored" not in result.context
        assert "Ignoring output key" in caplog.text

    def test_v1_merges_previous_output(self, reducer):
        pipeline = compile_pipeline({
            "apiVersion": "v1",
            "pipeline": [
                {"id": "@brickflow/identity", "config": {"a": "@input.name"}},
                {"id": "@brickflow/echo", "config": {"message": "{{ a }}!"}},
            ],
        })
        result = _run(reducer, pipeline, InitialValues(input={"name": "Ann"}))
        assert result.value == "Ann!"

    def test_v1_passes_config_through_after_non_dict_output(self, reducer):
        pipeline = compile_pipeline({
            "apiVersion": "v1",
            "pipeline": [
                {"id": "@brickflow/echo", "config": {"message": "x"}},
                {"id": "@brickflow/identity", "config": {"value": "@input.name"}},
            ],
        })
        result = _run(reducer, pipeline, InitialValues(input={"name": "Ann"}))
        assert result.value == {"value": "@input.name"}

    def test_v2_renders_references(self, reducer):
        pipeline = compile_pipeline({
            "apiVersion": "v2",
            "pipeline": [{"id": "@brickflow/identity", "config": {"items": "@input.items", "n": "{{ @input.n }}"}}],
        })
        result = _run(reducer, pipeline, InitialValues(input={"items": [1, 2], "n": 3}))
        assert result.value == {"items": [1, 2], "n": "3"}

    def test_mod_variables_refresh_between_steps(self, reducer, mod_state):
        steps = [
            BrickStepConfig(brick_id="@brickflow/state/set", config={"data": {"count": 1}}, output_key="state"),
            BrickStepConfig(brick_id="@brickflow/echo", config={"message": template("{{ @mod.count }}")}),
        ]
        options = ReduceOptions(meta=RunMetadata(mod_id="mod-1"))
        result = _run(reducer, steps, options=options)

        assert result.value == "1"
        assert mod_state.get_state("mod-1") == {"count": 1}


# =============================================================================
# NESTED PIPELINES
# =============================================================================


class TestNestedPipelines:
    def test_for_each_runs_body_per_element(self, reducer, traces):
        pipeline = compile_pipeline({
            "pipeline": [{
                "id": "@brickflow/for-each",
                "config": {
                    "elements": {"__type__": "var", "__value__": "@input.items"},
                    "body": {"__type__": "pipeline", "__value__": [
                        {"id": "@brickflow/identity", "config": {"n": {"__type__": "var", "__value__": "@element"}}},
                    ]},
                },
                "outputKey": "last",
            }],
        })
        result = _run(reducer, pipeline, InitialValues(input={"items": [1, 2, 3]}))

        assert result.value == {"n": 3}
        nested = [r for r in traces.entries if r.brick_id == "@brickflow/identity"]
        assert [r.branches[0].counter for r in nested] == [0, 1, 2]
        assert all(r.branches[0].key == "body" for r in nested)

    def test_nested_context_does_not_leak(self, reducer):
        pipeline = compile_pipeline({
            "pipeline": [{
                "id": "@brickflow/run",
                "config": {"body": {"__type__": "pipeline", "__value__": [
                    {"id": "@brickflow/echo", "config": {"message": "inner"}, "outputKey": "inner"},
                ]}},
                "outputKey": "outer",
            }],
        })
        result = _run(reducer, pipeline)
        assert result.context["@outer"] == "inner"
        assert "@inner" not in result.context

    def test_nested_failure_is_reported(self, reducer):
        pipeline = compile_pipeline({
            "pipeline": [{
                "id": "@brickflow/run",
                "config": {"body": {"__type__": "pipeline", "__value__": [{"id": "@test/business-fail"}]}},
            }],
        })
        result = _run(reducer, pipeline)
        assert result.failure.kind == BUSINESS
        assert result.failure.message == "Spreadsheet not shared with the integration"

    def test_run_expression_returns_last_output(self, reducer):
        steps = (
            BrickStepConfig(brick_id="@brickflow/echo", config={"message": "a"}, output_key="a"),
            BrickStepConfig(brick_id="@brickflow/echo", config={"message": "b"}, output_key="b"),
        )
        value = asyncio.run(reducer.run_expression(steps, {"@input": {}}, None, ReduceOptions()))
        assert value == "b"


# =============================================================================
# ABORT
# =============================================================================


class TestAbort:
    def test_abort_before_first_step(self, reducer):
        signal = threading.Event()
        signal.set()
        step = BrickStepConfig(brick_id="@brickflow/echo", config={"message": "x"})
        result = _run(reducer, [step], options=ReduceOptions(abort_signal=signal))

        assert result.status == RunStatus.ABORTED
        assert result.step_outcomes == ()

    def test_abort_during_step_discards_output(self, registry, traces):
        signal = threading.Event()

        async def set_abort(args, options):
            signal.set()
            return "discarded"

        registry.register(FunctionBrick("@test/abort", set_abort, kind=BrickKind.TRANSFORMER))
        reducer = PipelineReducer(registry, traces=traces)
        steps = [
            BrickStepConfig(brick_id="@test/abort", output_key="a"),
            BrickStepConfig(brick_id="@brickflow/echo", config={"message": "never"}),
        ]
        result = _run(reducer, steps, options=ReduceOptions(abort_signal=signal))

        assert result.is_aborted
        assert "@a" not in result.context
        assert traces.exits == []


# =============================================================================
# MOD COMPONENT RUNS
# =============================================================================


class TestModComponentRun:
    def test_clears_previous_traces(self, reducer, traces):
        step = BrickStepConfig(brick_id="@brickflow/echo", config={"message": "x"})
        options = ReduceOptions(meta=RunMetadata(mod_component_id="comp-1"))

        asyncio.run(reduce_mod_component_pipeline(reducer, [step], options=options))
        asyncio.run(reduce_mod_component_pipeline(reducer, [step], options=options))

        assert len(traces.entries) == 1
        assert traces.entries[0].mod_component_id == "comp-1"
