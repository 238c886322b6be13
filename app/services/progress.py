"""Per-job progress tracking and structured pipeline events."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal, Protocol

logger = logging.getLogger(__name__)

Stage = Literal["fetch", "scanning", "scanner_complete", "normalizing", "complete", "failed"]

# Success-path order; a stage may be skipped but never repeated or revisited.
STAGE_ORDER: tuple[Stage, ...] = ("fetch", "scanning", "scanner_complete", "normalizing", "complete")
TERMINAL_STAGES: frozenset[str] = frozenset({"complete", "failed"})

STAGE_PROGRESS: dict[str, int] = {
    "fetch": 15,
    "scanning": 20,
    "scanner_complete": 75,
    "normalizing": 80,
    "complete": 100,
    "failed": 100,
}

# Scanner execution is spread over this band as adapters finish.
SCANNING_BAND = (20, 75)


@dataclass(frozen=True)
class ScanEvent:
    """One structured milestone of a scan job, consumed by live-progress and log subsystems."""

    job_id: int
    stage: str
    progress_percent: int
    message: str
    current_scanner: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventSink(Protocol):
    async def publish(self, event: ScanEvent) -> None: ...


class LoggingEventSink:
    """Default sink: one log record per event."""

    async def publish(self, event: ScanEvent) -> None:
        logger.info(
            "Scan progress: %s",
            event.message,
            extra={
                "job_id": event.job_id,
                "stage": event.stage,
                "progress_percent": event.progress_percent,
                "current_scanner": event.current_scanner,
            },
        )


ProgressWriter = Callable[[str, int], Awaitable[None]]


class ProgressTracker:
    """
    Progress state of exactly one job execution, passed by reference to the
    stages that report on it.

    Stage events are ordered and non-repeating; once a terminal stage has been
    emitted further events are dropped. Persisting progress and publishing
    events are best effort and never fail the job.
    """

    def __init__(
        self,
        job_id: int,
        sink: EventSink | None = None,
        writer: ProgressWriter | None = None,
    ) -> None:
        self.job_id = job_id
        self._sink = sink or LoggingEventSink()
        self._writer = writer
        self._last_index = -1
        self._terminal: str | None = None
        self._scanners_total = 0
        self._scanners_done = 0
        self._active: list[str] = []
        self.events: list[ScanEvent] = []

    @property
    def terminal_stage(self) -> str | None:
        return self._terminal

    @property
    def emitted_stages(self) -> list[str]:
        return [e.stage for e in self.events if e.stage in STAGE_PROGRESS]

    async def emit(self, stage: Stage, message: str) -> bool:
        """Emit a stage event. Returns False when the stage was out of order or after termination."""
        if self._terminal is not None:
            logger.debug(
                "Dropping stage after terminal event",
                extra={"job_id": self.job_id, "stage": stage, "terminal": self._terminal},
            )
            return False
        if stage != "failed":
            index = STAGE_ORDER.index(stage)
            if index <= self._last_index:
                logger.warning(
                    "Ignoring out-of-order progress stage",
                    extra={"job_id": self.job_id, "stage": stage},
                )
                return False
            self._last_index = index
        if stage in TERMINAL_STAGES:
            self._terminal = stage
        await self._publish(stage, STAGE_PROGRESS[stage], message)
        return True

    def start_scanners(self, total: int) -> None:
        self._scanners_total = total
        self._scanners_done = 0
        self._active = []

    async def scanner_started(self, scanner: str) -> None:
        self._active.append(scanner)
        await self._publish(
            "scanner_start",
            self._scanning_percent(),
            f"Running {scanner} ({self._scanners_done}/{self._scanners_total} completed)",
            current_scanner=scanner,
        )

    async def scanner_finished(self, scanner: str) -> None:
        self._scanners_done += 1
        if scanner in self._active:
            self._active.remove(scanner)
        current = self._active[0] if self._active else None
        await self._publish(
            "scanner_end",
            self._scanning_percent(),
            f"Finished {scanner} ({self._scanners_done}/{self._scanners_total} completed)",
            current_scanner=current,
        )

    def _scanning_percent(self) -> int:
        lo, hi = SCANNING_BAND
        if self._scanners_total <= 0:
            return lo
        return round(lo + self._scanners_done * (hi - lo) / self._scanners_total)

    async def _publish(
        self,
        stage: str,
        percent: int,
        message: str,
        current_scanner: str | None = None,
    ) -> None:
        event = ScanEvent(
            job_id=self.job_id,
            stage=stage,
            progress_percent=percent,
            message=message,
            current_scanner=current_scanner,
        )
        self.events.append(event)
        if self._writer is not None:
            try:
                await self._writer(message, percent)
            except Exception as e:
                logger.warning(
                    "Failed to store scan progress: %s",
                    e,
                    extra={"job_id": self.job_id, "stage": stage},
                )
        try:
            await self._sink.publish(event)
        except Exception as e:
            logger.warning(
                "Failed to publish scan event: %s",
                e,
                extra={"job_id": self.job_id, "stage": stage},
            )
