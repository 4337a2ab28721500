"""
brickflow - Brick pipeline execution engine

Runs declarative pipelines of bricks: renders each step's arguments against a
variable context, dispatches the brick to the right frame, and binds outputs
for later steps.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = [
    "BrickRegistry",
    "PipelineReducer",
    "InitialValues",
    "ReduceOptions",
    "reduce_pipeline",
    "compile_pipeline",
    "PipelineLoader",
    "EngineConfig",
    "load_config",
]

from .config import EngineConfig, load_config
from .compiler import compile_pipeline
from .loader import PipelineLoader
from .registry import BrickRegistry
from .reducer import InitialValues, PipelineReducer, ReduceOptions, reduce_pipeline
