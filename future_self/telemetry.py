"""Fire-and-forget job telemetry."""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger


@dataclass
class Trace:
    name: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=time.monotonic)
    metadata: dict[str, Any] = field(default_factory=dict)


class Tracer(Protocol):
    """Side channel for job traces. Implementations must never raise."""

    def start_trace(self, name: str, **metadata: Any) -> Trace: ...

    def end_trace(self, trace: Trace, success: bool, **result: Any) -> None: ...

    async def flush(self) -> None: ...


class LoggingTracer:
    """Tracer that records traces as structured log lines."""

    def __init__(self) -> None:
        self.completed = 0
        self.failed = 0

    def start_trace(self, name: str, **metadata: Any) -> Trace:
        trace = Trace(name=name, metadata=metadata)
        logger.debug(f"Trace started: {name} ({trace.id})")
        return trace

    def end_trace(self, trace: Trace, success: bool, **result: Any) -> None:
        duration_ms = int((time.monotonic() - trace.started_at) * 1000)
        if success:
            self.completed += 1
        else:
            self.failed += 1
        logger.bind(trace_id=trace.id, **trace.metadata).info(
            f"Trace {trace.name} finished: success={success} duration_ms={duration_ms} {result}"
        )

    async def flush(self) -> None:
        await logger.complete()
