"""Thread-safe in-memory analytics collector with pluggable sinks.

The :class:`EventCollector` buffers events and hands them to an
:class:`AnalyticsSink` once the buffer reaches its threshold or when
:meth:`EventCollector.flush` is called.

Two sinks are provided:

* :class:`FileSink` -- appends events as JSON lines to a local file.
* :class:`LoggingSink` -- writes one INFO log record per event.

:func:`track_event` is the fire-and-forget entry point used by the billing
operations; it never raises.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from ledger_engine.metering.events import AnalyticsEvent, AnalyticsEventType

if TYPE_CHECKING:
    from ledger_engine.config import Settings

logger = logging.getLogger(__name__)


class AnalyticsSink(Protocol):
    """Protocol for analytics event persistence."""

    def flush(self, events: Sequence[AnalyticsEvent]) -> None:
        """Persist a batch of events."""
        ...


class FileSink:
    """Appends analytics events as JSON lines to a local file.

    Parameters
    ----------
    path:
        Path to the JSON lines file.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def flush(self, events: Sequence[AnalyticsEvent]) -> None:
        """Append events as newline-delimited JSON."""
        if not events:
            return
        with self._path.open("a", encoding="utf-8") as fh:
            for event in events:
                fh.write(event.model_dump_json() + "\n")
        logger.debug("Flushed %d events to %s", len(events), self._path)


class LoggingSink:
    """Emits each event as a structured log record."""

    def __init__(self, logger_name: str = "ledger_engine.analytics") -> None:
        self._logger = logging.getLogger(logger_name)

    def flush(self, events: Sequence[AnalyticsEvent]) -> None:
        for event in events:
            self._logger.info(
                "%s owner=%s",
                event.event.value,
                event.owner_id,
                extra={"ledger": event.model_dump(mode="json")},
            )


class EventCollector:
    """Thread-safe in-memory event buffer.

    Parameters
    ----------
    sink:
        The sink to flush events to.
    max_buffer_size:
        Buffered events that force a flush (default: 100).
    """

    def __init__(self, sink: AnalyticsSink, max_buffer_size: int = 100) -> None:
        self._sink = sink
        self._max_buffer_size = max(1, max_buffer_size)
        self._buffer: list[AnalyticsEvent] = []
        self._lock = threading.Lock()

    def record(self, event: AnalyticsEvent) -> None:
        """Buffer *event*, flushing when the buffer is full."""
        with self._lock:
            self._buffer.append(event)
            if len(self._buffer) >= self._max_buffer_size:
                self._flush_locked()

    def flush(self) -> int:
        """Flush all buffered events to the sink.

        Returns
        -------
        int
            Number of events handed to the sink.
        """
        with self._lock:
            return self._flush_locked()

    def _flush_locked(self) -> int:
        if not self._buffer:
            return 0
        batch = list(self._buffer)
        self._buffer.clear()
        try:
            self._sink.flush(batch)
        except Exception:
            logger.warning("Analytics flush failed; %d events lost", len(batch), exc_info=True)
        return len(batch)

    @property
    def pending(self) -> list[AnalyticsEvent]:
        """Snapshot of buffered, not yet flushed events."""
        with self._lock:
            return list(self._buffer)

    def summary(self, owner_id: str | None = None) -> dict[str, int]:
        """Count buffered events by type, optionally for one owner."""
        with self._lock:
            counts: dict[str, int] = {}
            for event in self._buffer:
                if owner_id and event.owner_id != owner_id:
                    continue
                counts[event.event.value] = counts.get(event.event.value, 0) + 1
            return counts


# ---------------------------------------------------------------------------
# Process-wide collector
# ---------------------------------------------------------------------------

_collector_lock = threading.Lock()
_collector: EventCollector | None = None


def configure_collector(settings: Settings) -> EventCollector:
    """Install the process-wide collector for *settings*.

    Events go to ``settings.events_file`` as JSON lines when set, otherwise
    to the log.
    """
    global _collector
    sink: AnalyticsSink = FileSink(settings.events_file) if settings.events_file else LoggingSink()
    with _collector_lock:
        if _collector is not None:
            _collector.flush()
        _collector = EventCollector(sink, max_buffer_size=1 if settings.events_file is None else 100)
    return _collector


def get_collector() -> EventCollector:
    """Return the process-wide collector, creating a logging one on demand."""
    global _collector
    with _collector_lock:
        if _collector is None:
            _collector = EventCollector(LoggingSink(), max_buffer_size=1)
        return _collector


def track_event(
    event: AnalyticsEventType,
    owner_id: str,
    properties: dict[str, Any] | None = None,
    *,
    collector: EventCollector | None = None,
) -> None:
    """Record an analytics event without ever raising.

    Parameters
    ----------
    event:
        The event type.
    owner_id:
        User or organization the event concerns.
    properties:
        Event payload.
    collector:
        Target collector; defaults to the process-wide one.
    """
    try:
        target = collector or get_collector()
        target.record(AnalyticsEvent(event=event, owner_id=owner_id, properties=properties or {}))
    except Exception:
        logger.error("Failed to track %s for %s", event, owner_id, exc_info=True)
