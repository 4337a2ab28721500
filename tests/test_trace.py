"""Tests for trace records, trace sinks and deployment alerts."""

import logging

import pytest

from brickflow.alerts import InMemoryAlertSink, LoggingAlertSink
from brickflow.schemas import Branch, RunMetadata
from brickflow.trace import FileTraceSink, InMemoryTraceSink, LoggingTraceSink, NullTraceSink, TraceRecord


META = RunMetadata(run_id="run-1", mod_id="mod-1", mod_component_id="comp-1", branches=(Branch("body", 0),))


class TestTraceRecord:
    def test_entry_fields(self):
        record = TraceRecord.entry(META, "step-1", "@brickflow/echo", rendered_args={"message": "hi"})
        data = record.to_dict()
        assert data["phase"] == "entry"
        assert data["run_id"] == "run-1"
        assert data["mod_component_id"] == "comp-1"
        assert data["branches"] == [{"key": "body", "counter": 0}]
        assert data["rendered_args"] == {"message": "hi"}
        assert "output" not in data

    def test_exit_fields(self):
        data = TraceRecord.exit(META, "step-1", "@brickflow/echo", output="hi", output_key="echoed").to_dict()
        assert data["phase"] == "exit"
        assert data["output"] == "hi"
        assert data["output_key"] == "echoed"
        assert data["skipped_run"] is False
        assert "rendered_args" not in data

    def test_unknown_phase(self):
        with pytest.raises(ValueError):
            TraceRecord(phase="middle", run_id="r", instance_id="i", brick_id="b")


class TestTraceSinks:
    def test_in_memory(self):
        sink = InMemoryTraceSink()
        sink.add_entry(TraceRecord.entry(META, "step-1", "b"))
        sink.add_exit(TraceRecord.exit(META, "step-1", "b"))
        sink.add_entry(TraceRecord.entry(RunMetadata(run_id="run-2"), "step-2", "b"))

        assert len(sink.entries) == 2
        assert len(sink.exits) == 1
        assert len(sink.for_run("run-1")) == 2
        assert len(sink.for_instance("step-2")) == 1

        sink.clear("comp-1")
        assert [r.run_id for r in sink.records] == ["run-2"]

    def test_file_sink(self, tmp_path):
        sink = FileTraceSink(tmp_path / "traces")
        sink.add_entry(TraceRecord.entry(META, "step-1", "b", rendered_args={"x": 1}))
        sink.add_exit(TraceRecord.exit(META, "step-1", "b", output=[1, 2]))

        records = sink.read("comp-1")
        assert [r["phase"] for r in records] == ["entry", "exit"]
        assert records[1]["output"] == [1, 2]

        sink.clear("comp-1")
        assert sink.read("comp-1") == []

    def test_file_sink_unscoped(self, tmp_path):
        sink = FileTraceSink(tmp_path)
        sink.add_entry(TraceRecord.entry(RunMetadata(run_id="r"), "i", "b"))
        assert (tmp_path / "_unscoped.jsonl").exists()

    def test_logging_sink(self, caplog):
        sink = LoggingTraceSink()
        with caplog.at_level(logging.DEBUG, logger="brickflow"):
            sink.add_exit(TraceRecord.exit(META, "step-1", "b", skipped_run=True))
        assert "skipped" in caplog.text

    def test_null_sink(self):
        sink = NullTraceSink()
        sink.add_entry(TraceRecord.entry(META, "i", "b"))
        sink.clear(None)


class TestAlertSinks:
    def test_in_memory(self):
        sink = InMemoryAlertSink()
        sink.send("dep-1", {"id": "b", "error": {"message": "boom"}})
        assert sink.alerts == [("dep-1", {"id": "b", "error": {"message": "boom"}})]

    def test_logging(self, caplog):
        with caplog.at_level(logging.ERROR, logger="brickflow"):
            LoggingAlertSink().send("dep-1", {"id": "b", "error": {"message": "boom"}})
        assert "Deployment alert for dep-1: step b failed: boom" in caplog.text
