import pytest

from brickflow.alerts import InMemoryAlertSink
from brickflow.context import InMemoryModStateStore
from brickflow.errors import BusinessError
from brickflow.reducer import PipelineReducer
from brickflow.registry import BrickKind, BrickRegistry, FunctionBrick
from brickflow.trace import InMemoryTraceSink


async def _fail(args, options):
    raise RuntimeError("boom")


async def _business_fail(args, options):
    raise BusinessError("Spreadsheet not shared with the integration")


async def _read_root(args, options):
    return {"root": args.get("root")}


async def _upper(args, options):
    return args["text"].upper()


@pytest.fixture
def registry():
    """Built-in bricks plus a few test bricks."""
    reg = BrickRegistry.create_default()
    reg.register(FunctionBrick("@test/fail", _fail))
    reg.register(FunctionBrick("@test/business-fail", _business_fail))
    reg.register(FunctionBrick("@test/read", _read_root, kind=BrickKind.READER))
    reg.register(FunctionBrick(
        "@test/upper",
        _upper,
        input_schema={
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    ))
    return reg


@pytest.fixture
def traces():
    return InMemoryTraceSink()


@pytest.fixture
def alerts():
    return InMemoryAlertSink()


@pytest.fixture
def mod_state():
    return InMemoryModStateStore()


@pytest.fixture
def reducer(registry, traces, alerts, mod_state):
    return PipelineReducer(registry, traces=traces, alerts=alerts, mod_state=mod_state)
