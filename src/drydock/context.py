"""Execution context handed to the runtime by the workflow engine.

Carries the run identity plus the observability sinks that container output
is streamed into. Sinks are plain callables so the engine can forward to
Kafka, Redis, Loki or a test list without drydock knowing which.
"""

from __future__ import annotations

import base64
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from drydock.logger import logger

Stream = Literal["stdout", "stderr", "pty"]


@dataclass(frozen=True)
class LogEntry:
    run_id: str
    node_ref: str
    stream: Stream
    level: Literal["info", "warn", "error"]
    message: str
    timestamp: str


@dataclass(frozen=True)
class TerminalChunk:
    run_id: str
    node_ref: str
    stream: Stream
    chunk_index: int
    payload: str  # base64
    recorded_at: str
    delta_ms: int
    origin: str


@dataclass(frozen=True)
class ProgressEvent:
    message: str
    level: Literal["info", "warn", "error"] = "info"
    data: dict[str, Any] | None = None


LogCollector = Callable[[LogEntry], None]
TerminalCollector = Callable[[TerminalChunk], None]
ProgressCollector = Callable[[ProgressEvent], None]


@dataclass
class ExecutionContext:
    run_id: str
    component_ref: str
    tenant_id: str = "default-tenant"
    log_collector: LogCollector | None = None
    terminal_collector: TerminalCollector | None = None
    progress_collector: ProgressCollector | None = None
    _chunk_index: int = field(default=0, init=False, repr=False)
    _last_chunk_at: float = field(default=0.0, init=False, repr=False)

    def emit_progress(
        self,
        message: str,
        level: Literal["info", "warn", "error"] = "info",
        data: dict[str, Any] | None = None,
    ) -> None:
        logger.debug("progress", run_id=self.run_id, node=self.component_ref, message=message)
        if self.progress_collector is not None:
            self._safe_emit(self.progress_collector, ProgressEvent(message, level, data))

    def emit_output(
        self, text: str, *, stream: Stream = "stdout", origin: str = "container"
    ) -> None:
        """Forward a chunk of container output to the log and terminal sinks."""
        if not text:
            return
        now = time.monotonic()
        timestamp = datetime.now(UTC).isoformat()

        if self.log_collector is not None:
            entry = LogEntry(
                run_id=self.run_id,
                node_ref=self.component_ref,
                stream=stream,
                level="error" if stream == "stderr" else "info",
                message=text,
                timestamp=timestamp,
            )
            self._safe_emit(self.log_collector, entry)

        if self.terminal_collector is not None:
            self._chunk_index += 1
            delta_ms = 0 if self._chunk_index == 1 else int((now - self._last_chunk_at) * 1000)
            self._last_chunk_at = now
            chunk = TerminalChunk(
                run_id=self.run_id,
                node_ref=self.component_ref,
                stream=stream,
                chunk_index=self._chunk_index,
                payload=base64.b64encode(text.encode()).decode(),
                recorded_at=timestamp,
                delta_ms=delta_ms,
                origin=origin,
            )
            self._safe_emit(self.terminal_collector, chunk)

    def _safe_emit(self, sink: Callable[[Any], None], item: Any) -> None:
        # A broken sink must never take down the job it is observing
        try:
            sink(item)
        except Exception:
            logger.exception("Observability sink failed", run_id=self.run_id, sink=repr(sink))
