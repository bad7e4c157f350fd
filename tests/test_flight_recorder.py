"""
Tests for the flight recorder.
"""

import json
import logging
import threading

import pytest
from unittest.mock import MagicMock

from kortex.flight_recorder import FlightRecorder, read_records
from kortex.types import ActionName


@pytest.fixture
def trace_path(tmp_path):
    return tmp_path / "logs" / "flight_recorder.jsonl"


def read_lines(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


class TestFlightRecorder:
    """Tests for appending records."""

    def test_records_in_order(self, trace_path):
        with FlightRecorder(trace_path) as recorder:
            for i in range(5):
                assert recorder.record("click", {"selector": f"#b{i}"}) is True

        lines = read_lines(trace_path)
        assert [line["args"]["selector"] for line in lines] == [f"#b{i}" for i in range(5)]
        assert all(line["tool"] == "click" for line in lines)

    def test_record_shape(self, trace_path):
        with FlightRecorder(trace_path) as recorder:
            recorder.record(ActionName.GET_SNAPSHOT, {})
            recorder.record("navigate", {"url": "https://example.com"})

        assert read_lines(trace_path) == [
            {"tool": "get_snapshot", "args": {}},
            {"tool": "navigate", "args": {"url": "https://example.com"}},
        ]

    def test_appends_to_existing_file(self, trace_path):
        with FlightRecorder(trace_path) as recorder:
            recorder.record("click", {"selector": "#a"})
        with FlightRecorder(trace_path) as recorder:
            recorder.record("click", {"selector": "#b"})

        assert len(read_lines(trace_path)) == 2

    def test_unicode_written_as_utf8(self, trace_path):
        with FlightRecorder(trace_path) as recorder:
            recorder.record("type", {"selector": "#q", "text": "héllo 世界"})

        assert "héllo 世界" in trace_path.read_text(encoding="utf-8")

    def test_password_text_redacted(self, trace_path):
        with FlightRecorder(trace_path) as recorder:
            recorder.record("type", {"selector": "input[type=password]", "text": "hunter2"})
            recorder.record("type", {"selector": "#search", "text": "weather"})

        lines = read_lines(trace_path)
        assert lines[0]["args"]["text"] == "[REDACTED]"
        assert lines[1]["args"]["text"] == "weather"
        assert "hunter2" not in trace_path.read_text(encoding="utf-8")

    def test_redaction_can_be_disabled(self, trace_path):
        with FlightRecorder(trace_path, redact_secrets=False) as recorder:
            recorder.record("type", {"selector": "#password", "text": "hunter2"})

        assert read_lines(trace_path)[0]["args"]["text"] == "hunter2"

    def test_write_error_is_swallowed_and_logged(self, trace_path, caplog):
        recorder = FlightRecorder(trace_path).open()
        broken = MagicMock()
        broken.write.side_effect = OSError("disk full")
        recorder._handle = broken

        with caplog.at_level(logging.ERROR, logger="kortex.flight_recorder"):
            assert recorder.record("click", {"selector": "#a"}) is False

        assert recorder.write_errors == 1
        assert "disk full" in caplog.text

        # The next record reopens the file
        assert recorder.record("click", {"selector": "#b"}) is True
        recorder.close()
        assert read_lines(trace_path) == [{"tool": "click", "args": {"selector": "#b"}}]

    def test_torn_line_is_terminated_on_reopen(self, trace_path):
        recorder = FlightRecorder(trace_path).open()
        real = recorder._handle

        def partial_write(text):
            real.write(text[:10])
            real.flush()
            raise OSError("disk full")

        broken = MagicMock()
        broken.write.side_effect = partial_write
        broken.close.side_effect = real.close
        recorder._handle = broken

        assert recorder.record("click", {"selector": "#a"}) is False
        assert recorder.record("click", {"selector": "#b"}) is True
        recorder.close()

        lines = trace_path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1]) == {"tool": "click", "args": {"selector": "#b"}}
        assert [r.args for r in read_records(trace_path)] == [{"selector": "#b"}]

    def test_existing_file_without_trailing_newline(self, trace_path):
        trace_path.parent.mkdir(parents=True)
        trace_path.write_text('{"tool": "navigate", "args": {"url": "a"}}', encoding="utf-8")

        with FlightRecorder(trace_path) as recorder:
            recorder.record("click", {"selector": "#b"})

        assert [r.tool for r in read_records(trace_path)] == [ActionName.NAVIGATE, ActionName.CLICK]

    def test_record_after_close_is_dropped(self, trace_path, caplog):
        recorder = FlightRecorder(trace_path).open()
        recorder.close()

        with caplog.at_level(logging.WARNING, logger="kortex.flight_recorder"):
            assert recorder.record("click", {"selector": "#a"}) is False
        assert "not open" in caplog.text

    def test_record_before_open_is_dropped(self, trace_path):
        recorder = FlightRecorder(trace_path)
        assert recorder.record("click", {"selector": "#a"}) is False
        assert not trace_path.exists()

    def test_close_is_idempotent(self, trace_path):
        recorder = FlightRecorder(trace_path).open()
        recorder.close()
        recorder.close()
        assert not recorder.is_open

    def test_reopen_after_close_raises(self, trace_path):
        recorder = FlightRecorder(trace_path).open()
        recorder.close()
        with pytest.raises(RuntimeError):
            recorder.open()

    def test_concurrent_records_do_not_interleave(self, trace_path):
        recorder = FlightRecorder(trace_path).open()

        def worker(n):
            for i in range(50):
                recorder.record("type", {"selector": f"#w{n}", "text": "x" * 200 + str(i)})

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        recorder.close()

        lines = read_lines(trace_path)
        assert len(lines) == 200
        for n in range(4):
            own = [line["args"]["text"] for line in lines if line["args"]["selector"] == f"#w{n}"]
            assert own == ["x" * 200 + str(i) for i in range(50)]


class TestReadRecords:
    """Tests for loading a trace back."""

    def test_round_trip(self, trace_path):
        with FlightRecorder(trace_path) as recorder:
            recorder.record("navigate", {"url": "example.com"})
            recorder.record("click", {"selector": "#go"})

        records = read_records(trace_path)
        assert [r.tool for r in records] == [ActionName.NAVIGATE, ActionName.CLICK]
        assert records[1].args == {"selector": "#go"}

    def test_malformed_lines_skipped(self, trace_path, caplog):
        trace_path.parent.mkdir(parents=True)
        trace_path.write_text(
            '{"tool": "click", "args": {"selector": "#a"}}\n'
            'not json\n'
            '{"tool": "teleport", "args": {}}\n'
            '\n'
            '{"tool": "get_snapshot"}\n',
            encoding="utf-8",
        )

        with caplog.at_level(logging.WARNING, logger="kortex.flight_recorder"):
            records = read_records(trace_path)

        assert [r.tool for r in records] == [ActionName.CLICK, ActionName.GET_SNAPSHOT]
        assert "skipping malformed record" in caplog.text
