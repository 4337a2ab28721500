"""
Built-in bricks.

- @brickflow/identity: returns its args unchanged
- @brickflow/echo: returns the ``message`` arg
- @brickflow/alert: logs the ``message`` arg (effect)
- @brickflow/state/set: writes mod variables through the mod state store
- @brickflow/run: runs a nested pipeline ``body``
- @brickflow/for-each: runs ``body`` once per element, binding "@element"
- @brickflow/document: renders a document payload (renderer)
"""

import html
import logging
from typing import Any

from brickflow.errors import BusinessError
from brickflow.registry import Brick, BrickCapabilities, BrickKind, BrickOptions
from brickflow.validation import PIPELINE_SCHEMA

logger = logging.getLogger(__name__)


class IdentityBrick(Brick):
    id = "@brickflow/identity"
    name = "Identity"
    description = "Return the args unchanged"
    kind = BrickKind.TRANSFORMER
    input_schema: dict[str, Any] = {}
    capabilities = BrickCapabilities(pure=True)

    async def run(self, args: Any, options: BrickOptions) -> Any:
        return args


class EchoBrick(Brick):
    id = "@brickflow/echo"
    name = "Echo"
    description = "Return a message"
    kind = BrickKind.TRANSFORMER
    input_schema = {
        "type": "object",
        "properties": {"message": {"type": "string"}},
        "required": ["message"],
    }
    output_schema = {"type": "string"}
    capabilities = BrickCapabilities(pure=True)

    async def run(self, args: Any, options: BrickOptions) -> Any:
        return args["message"]


class AlertBrick(Brick):
    id = "@brickflow/alert"
    name = "Alert"
    description = "Show a message to the user. Without a display surface, logs it"
    kind = BrickKind.EFFECT
    input_schema = {
        "type": "object",
        "properties": {"message": {"type": "string"}},
        "required": ["message"],
    }

    async def run(self, args: Any, options: BrickOptions) -> Any:
        logger.info(f"Alert: {args['message']}")
        return None


class SetModStateBrick(Brick):
    id = "@brickflow/state/set"
    name = "Set Mod Variables"
    description = "Set shared variables for the mod, visible to later steps as @mod"
    kind = BrickKind.TRANSFORMER
    input_schema = {
        "type": "object",
        "properties": {
            "data": {"type": "object"},
            "merge": {"type": "boolean", "default": True},
        },
        "required": ["data"],
    }
    capabilities = BrickCapabilities(needs_state=True)

    async def run(self, args: Any, options: BrickOptions) -> Any:
        if options.mod_state is None:
            raise BusinessError("Mod variables are not available in this context")
        return options.mod_state.set_state(
            options.meta.mod_id, args["data"], merge=args.get("merge", True)
        )


class RunPipelineBrick(Brick):
    id = "@brickflow/run"
    name = "Run Pipeline"
    description = "Run a nested pipeline and return the output of its last step"
    kind = BrickKind.TRANSFORMER
    input_schema = {
        "type": "object",
        "properties": {"body": PIPELINE_SCHEMA},
        "required": ["body"],
    }

    async def run(self, args: Any, options: BrickOptions) -> Any:
        return await args["body"].invoke()


class ForEachBrick(Brick):
    id = "@brickflow/for-each"
    name = "For-Each Loop"
    description = "Run a nested pipeline once per element, returning the last output"
    kind = BrickKind.TRANSFORMER
    input_schema = {
        "type": "object",
        "properties": {
            "elements": {"type": "array"},
            "elementKey": {"type": "string", "default": "element"},
            "body": PIPELINE_SCHEMA,
        },
        "required": ["elements", "body"],
    }

    async def run(self, args: Any, options: BrickOptions) -> Any:
        element_key = args.get("elementKey") or "element"
        last = None
        for element in args["elements"]:
            last = await args["body"].invoke({f"@{element_key}": element})
        return last


class DocumentBrick(Brick):
    id = "@brickflow/document"
    name = "Render Document"
    description = "Render a document to a display surface"
    kind = BrickKind.RENDERER
    input_schema = {
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "body": {"type": "string"},
        },
        "required": ["body"],
    }
    output_schema = {
        "type": "object",
        "properties": {"html": {"type": "string"}},
        "required": ["html"],
    }

    async def run(self, args: Any, options: BrickOptions) -> Any:
        title = args.get("title")
        parts = [f"<h1>{html.escape(title)}</h1>"] if title else []
        parts.append(f"<div>{args['body']}</div>")
        return {"html": "".join(parts)}


def builtin_bricks() -> list[Brick]:
    """Instances of every built-in brick."""
    return [
        IdentityBrick(),
        EchoBrick(),
        AlertBrick(),
        SetModStateBrick(),
        RunPipelineBrick(),
        ForEachBrick(),
        DocumentBrick(),
    ]
