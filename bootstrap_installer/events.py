"""Structured lifecycle events.

The driver reports progress through an :class:`EventSink`. Presentation is up
to the sink: the default writes one log line per event, a GUI wrapper can
render progress from the same stream.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    RUN_START = "run_start"
    RUN_END = "run_end"
    PHASE_START = "phase_start"
    PHASE_END = "phase_end"
    UNIT_START = "unit_start"
    UNIT_END = "unit_end"
    UNIT_SKIPPED = "unit_skipped"
    FETCH_VERIFIED = "fetch_verified"
    ERROR = "error"


@dataclass(frozen=True)
class LifecycleEvent:
    kind: EventKind
    module_id: Optional[str] = None
    phase: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)
    at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"event": self.kind.value, "at": self.at}
        if self.module_id is not None:
            out["module"] = self.module_id
        if self.phase is not None:
            out["phase"] = self.phase
        out.update(self.data)
        return out


class EventSink(Protocol):
    def emit(self, event: LifecycleEvent) -> None:
        ...


class LoggingEventSink:
    """Default sink: one log record per event, structured payload in ``extra``."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._log = log or logger

    def emit(self, event: LifecycleEvent) -> None:
        level = logging.ERROR if event.kind is EventKind.ERROR else logging.INFO
        details = " ".join(f"{k}={v}" for k, v in sorted(event.data.items()))
        subject = event.module_id or (f"phase {event.phase}" if event.phase is not None else "")
        self._log.log(
            level,
            "[%s] %s %s",
            event.kind.value,
            subject,
            details,
            extra={"lifecycle_event": event.to_dict()},
        )
