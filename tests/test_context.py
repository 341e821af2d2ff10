"""Tests for ExecutionContext sink forwarding."""

from __future__ import annotations

import base64

from drydock.context import ExecutionContext


def _context(**sinks):
    return ExecutionContext(run_id="run-1", component_ref="subfinder-1", **sinks)


class TestEmitOutput:
    def test_log_entry_fields(self):
        entries = []
        ctx = _context(log_collector=entries.append)

        ctx.emit_output("found a.example.com\n")
        ctx.emit_output("warning\n", stream="stderr")

        assert [e.message for e in entries] == ["found a.example.com\n", "warning\n"]
        assert entries[0].run_id == "run-1"
        assert entries[0].node_ref == "subfinder-1"
        assert entries[0].level == "info"
        assert entries[1].level == "error"

    def test_terminal_chunks_are_indexed_and_encoded(self):
        chunks = []
        ctx = _context(terminal_collector=chunks.append)

        ctx.emit_output("one", origin="docker")
        ctx.emit_output("two", origin="docker")

        assert [c.chunk_index for c in chunks] == [1, 2]
        assert base64.b64decode(chunks[1].payload) == b"two"
        assert chunks[0].delta_ms == 0
        assert chunks[1].delta_ms >= 0
        assert chunks[0].origin == "docker"

    def test_empty_text_is_dropped(self):
        entries = []
        ctx = _context(log_collector=entries.append)
        ctx.emit_output("")
        assert entries == []

    def test_failing_sink_does_not_raise(self):
        def broken(_entry):
            raise RuntimeError("sink down")

        chunks = []
        ctx = _context(log_collector=broken, terminal_collector=chunks.append)

        ctx.emit_output("still delivered")

        assert len(chunks) == 1


class TestEmitProgress:
    def test_progress_event(self):
        events = []
        ctx = _context(progress_collector=events.append)

        ctx.emit_progress("Job submitted", data={"job": "dd-x"})

        assert events[0].message == "Job submitted"
        assert events[0].level == "info"
        assert events[0].data == {"job": "dd-x"}

    def test_no_sink_is_fine(self):
        _context().emit_progress("nobody listening")

    def test_default_tenant(self):
        assert _context().tenant_id == "default-tenant"
