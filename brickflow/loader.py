"""
PipelineLoader - Load and compile pipeline definitions from storage.

The loader provides:
- Loading pipelines from YAML or JSON files in a definitions directory
- YAML tags for expressions: !var, !template, !nunjucks, !pipeline
- Caching compiled pipelines
- Content-addressable lookup via SHA256 hash

Example definition (YAML):

    apiVersion: v3
    pipeline:
      - id: "@brickflow/echo"
        config:
          message: !nunjucks "Hello {{ @input.name }}"
        outputKey: greeting
      - id: "@brickflow/alert"
        config:
          message: !var "@greeting"

JSON definitions use the tagged form {"__type__": "var", "__value__": "@greeting"}.
"""

import hashlib
import json
from pathlib import Path
from typing import Any, Optional

import yaml

from brickflow.compiler import compile_pipeline
from brickflow.schemas import CompileError, Expression, PIPELINE_KIND, Pipeline, TEMPLATE_KINDS, VAR_KIND


class PipelineNotFoundError(Exception):
    """Raised when a pipeline definition is not found."""
    pass


class ExpressionLoader(yaml.SafeLoader):
    """SafeLoader with expression tags."""
    pass


def _scalar_constructor(kind: str):
    def construct(loader: yaml.SafeLoader, node: yaml.Node) -> Expression:
        return Expression(kind, loader.construct_scalar(node))
    return construct


def _construct_pipeline(loader: yaml.SafeLoader, node: yaml.Node) -> Expression:
    if not isinstance(node, yaml.SequenceNode):
        raise yaml.constructor.ConstructorError(
            None, None, "!pipeline expects a list of steps", node.start_mark
        )
    return Expression(PIPELINE_KIND, loader.construct_sequence(node, deep=True))


for _kind in (VAR_KIND, *sorted(TEMPLATE_KINDS)):
    ExpressionLoader.add_constructor(f"!{_kind}", _scalar_constructor(_kind))
ExpressionLoader.add_constructor(f"!{PIPELINE_KIND}", _construct_pipeline)


def load_definition_file(path: Path) -> Any:
    """
    Load a definition file (YAML or JSON).

    Args:
        path: Path to the file

    Returns:
        Parsed data, with YAML expression tags as Expression values

    Raises:
        ValueError: If file format is unsupported or parsing fails
    """
    suffix = path.suffix.lower()

    with open(path) as f:
        if suffix in (".yaml", ".yml"):
            return yaml.load(f, Loader=ExpressionLoader)
        elif suffix == ".json":
            return json.load(f)
        else:
            raise ValueError(f"Unsupported file format: {suffix}")


def load_pipeline_file(path: Path | str) -> Pipeline:
    """
    Load and compile a single pipeline file.

    Raises:
        PipelineNotFoundError: If the file does not exist
        CompileError: If the file cannot be parsed or compiled
    """
    path = Path(path)
    if not path.exists():
        raise PipelineNotFoundError(f"Pipeline definition not found: {path}")
    try:
        data = load_definition_file(path)
    except (ValueError, yaml.YAMLError) as e:
        raise CompileError(f"Failed to load {path}: {e}") from e

    if isinstance(data, dict) and "id" not in data:
        data = {**data, "id": path.stem}
    return compile_pipeline(data)


class PipelineLoader:
    """
    Loader for caching compiled pipelines.

    Loads pipeline definitions from files organized in a directory tree.

    Example directory structure:
        definitions/
            greet.yaml
            forms/
                submit_form.json
    """

    def __init__(self, definitions_dir: Path | str):
        """
        Initialize the loader.

        Args:
            definitions_dir: Path to directory containing pipeline definition files
        """
        self._definitions_dir = Path(definitions_dir)
        self._cache: dict[str, Pipeline] = {}
        self._hash_index: dict[str, str] = {}  # sha256 -> pipeline_id

    @property
    def definitions_dir(self) -> Path:
        """Get the definitions directory path."""
        return self._definitions_dir

    def load(self, pipeline_id: str) -> Pipeline:
        """
        Load a Pipeline by ID.

        Searches for {pipeline_id}.yaml, .yml or .json in the definitions
        directory tree. YAML files are preferred over JSON when both exist.
        Results are cached for subsequent calls.

        Raises:
            PipelineNotFoundError: If the definition file doesn't exist
            CompileError: If the definition is invalid
        """
        if pipeline_id in self._cache:
            return self._cache[pipeline_id]

        def_path = self._find_definition(pipeline_id)
        if def_path is None:
            raise PipelineNotFoundError(f"Pipeline definition not found: {pipeline_id}")

        pipeline = load_pipeline_file(def_path)
        if pipeline.pipeline_id != pipeline_id:
            raise CompileError(
                f"Pipeline ID mismatch: file is '{pipeline_id}' but id is '{pipeline.pipeline_id}'"
            )

        self._cache[pipeline_id] = pipeline
        self._hash_index[self.compute_hash(pipeline)] = pipeline_id
        return pipeline

    def load_by_hash(self, sha256: str) -> Optional[Pipeline]:
        """Get a cached Pipeline by its content hash."""
        pipeline_id = self._hash_index.get(sha256)
        if pipeline_id is None:
            return None
        return self._cache.get(pipeline_id)

    def list_pipelines(self) -> list[str]:
        """
        List all available pipeline IDs.

        Returns:
            Sorted list of pipeline IDs found in the definitions directory
        """
        if not self._definitions_dir.exists():
            return []

        pipeline_ids = set()
        for ext in ["*.yaml", "*.yml", "*.json"]:
            for f in self._definitions_dir.glob(f"**/{ext}"):
                pipeline_ids.add(f.stem)
        return sorted(pipeline_ids)

    def _find_definition(self, pipeline_id: str) -> Optional[Path]:
        # Try extensions in order of preference: YAML first, then JSON
        for ext in [".yaml", ".yml", ".json"]:
            filename = f"{pipeline_id}{ext}"

            root_path = self._definitions_dir / filename
            if root_path.exists():
                return root_path

            matches = sorted(self._definitions_dir.glob(f"**/{filename}"))
            if matches:
                return matches[0]

        return None

    @staticmethod
    def compute_hash(pipeline: Pipeline) -> str:
        """
        Compute SHA256 hash of a Pipeline for content addressing.

        Instance ids are excluded, since they are generated when a definition
        does not set them.
        """
        data = pipeline.to_dict()
        canonical = json.dumps(_without_instance_ids(data), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def clear_cache(self) -> None:
        """Clear the definition cache."""
        self._cache.clear()
        self._hash_index.clear()

    def preload_all(self) -> int:
        """
        Preload all pipeline definitions into cache.

        Returns:
            Number of pipelines loaded

        Raises:
            CompileError: If any definition is invalid
        """
        count = 0
        for pipeline_id in self.list_pipelines():
            self.load(pipeline_id)
            count += 1
        return count


def _without_instance_ids(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _without_instance_ids(v) for k, v in value.items() if k != "instanceId"}
    if isinstance(value, list):
        return [_without_instance_ids(v) for v in value]
    return value
