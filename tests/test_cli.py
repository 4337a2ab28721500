"""Tests for brickflow CLI commands."""

import json

import pytest
from click.testing import CliRunner

from brickflow.cli import main
from brickflow.config import CONFIG_ENV_VAR


GREET_YAML = """\
apiVersion: v3
pipeline:
  - id: "@brickflow/echo"
    config:
      message: !nunjucks "Hello {{ @input.name }}"
    outputKey: greeting
  - id: "@brickflow/alert"
    config:
      message: !var "@greeting"
"""


@pytest.fixture(autouse=True)
def no_config_file(tmp_path, monkeypatch):
    """Run every command without a brickflow.yaml."""
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def defs_dir(tmp_path):
    defs = tmp_path / "definitions"
    defs.mkdir()
    (defs / "greet.yaml").write_text(GREET_YAML)
    (defs / "render.json").write_text(json.dumps({
        "pipeline": [{"id": "@brickflow/document", "config": {"body": "x"}}],
    }))
    (defs / "broken.json").write_text(json.dumps({
        "pipeline": [{"id": "@test/unknown"}, {"id": "@brickflow/echo", "config": {"message": 1}}],
    }))
    return defs


class TestRun:
    def test_run_file(self, defs_dir):
        result = CliRunner().invoke(main, ["run", str(defs_dir / "greet.yaml"), "--input", '{"name": "Ann"}'])
        assert result.exit_code == 0, result.output
        assert '"status": "completed"' in result.output
        assert '"value": "Hello Ann"' in result.output

    def test_run_by_id(self, defs_dir):
        result = CliRunner().invoke(
            main, ["run", "greet", "--definitions-dir", str(defs_dir), "--input", '{"name": "Bo"}']
        )
        assert result.exit_code == 0, result.output
        assert '"value": "Hello Bo"' in result.output

    def test_run_headless(self, defs_dir):
        result = CliRunner().invoke(main, ["run", str(defs_dir / "render.json"), "--headless"])
        assert result.exit_code == 0, result.output
        assert '"status": "headless"' in result.output
        assert '"brick_id": "@brickflow/document"' in result.output

    def test_run_failure_exits_nonzero(self, defs_dir):
        result = CliRunner().invoke(main, ["run", str(defs_dir / "broken.json")])
        assert result.exit_code == 1
        assert "Brick not found: @test/unknown" in result.output

    def test_run_writes_traces(self, defs_dir, tmp_path):
        trace_dir = tmp_path / "traces"
        result = CliRunner().invoke(
            main,
            ["run", str(defs_dir / "greet.yaml"), "--input", '{"name": "Ann"}', "--trace-dir", str(trace_dir)],
        )
        assert result.exit_code == 0, result.output
        lines = (trace_dir / "greet.jsonl").read_text().splitlines()
        assert [json.loads(line)["phase"] for line in lines] == ["entry", "exit", "entry", "exit"]

    def test_invalid_input_json(self, defs_dir):
        result = CliRunner().invoke(main, ["run", str(defs_dir / "greet.yaml"), "--input", "{nope"])
        assert result.exit_code == 2
        assert "invalid JSON" in result.output

    def test_unknown_pipeline_lists_available(self, defs_dir):
        result = CliRunner().invoke(main, ["run", "nope", "--definitions-dir", str(defs_dir)])
        assert result.exit_code == 1
        assert "✗ Pipeline definition not found: nope" in result.output
        assert "greet" in result.output

    def test_bad_config(self, defs_dir, tmp_path):
        config = tmp_path / "bad.yaml"
        config.write_text("logging:\n  format: xml\n")
        result = CliRunner().invoke(main, ["--config", str(config), "run", str(defs_dir / "greet.yaml")])
        assert result.exit_code == 1
        assert "✗ Config error" in result.output


class TestValidate:
    def test_valid(self, defs_dir):
        result = CliRunner().invoke(main, ["validate", str(defs_dir / "greet.yaml")])
        assert result.exit_code == 0
        assert "✓ greet is valid (2 steps, apiVersion v3)" in result.output

    def test_unknown_brick(self, defs_dir):
        result = CliRunner().invoke(main, ["validate", str(defs_dir / "broken.json")])
        assert result.exit_code == 1
        assert "✗ Unknown brick: @test/unknown" in result.output

    def test_compile_error(self, tmp_path):
        path = tmp_path / "dup.json"
        path.write_text(json.dumps({"pipeline": [
            {"id": "@brickflow/echo", "outputKey": "a"},
            {"id": "@brickflow/echo", "outputKey": "a"},
        ]}))
        result = CliRunner().invoke(main, ["validate", str(path)])
        assert result.exit_code == 1
        assert "duplicate outputKey" in result.output


class TestListing:
    def test_list_pipelines(self, defs_dir):
        result = CliRunner().invoke(main, ["list", str(defs_dir)])
        assert result.exit_code == 0
        assert result.output.split() == ["broken", "greet", "render"]

    def test_list_empty(self, tmp_path):
        result = CliRunner().invoke(main, ["list", str(tmp_path / "none")])
        assert "No pipeline definitions found." in result.output

    def test_bricks(self):
        result = CliRunner().invoke(main, ["bricks"])
        assert result.exit_code == 0
        assert "@brickflow/echo" in result.output
        assert "renderer" in result.output

    def test_version(self):
        result = CliRunner().invoke(main, ["--version"])
        assert "0.1.0" in result.output
