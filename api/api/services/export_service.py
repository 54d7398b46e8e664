"""Asynchronous usage exports.

A request persists a pending export and hands its id to a queue; a
background worker renders the period's raw events as CSV or JSON and
stores the result on the export row.  Clients poll the status and
download the content once it has completed.
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from metering_engine.errors import ExportNotFoundError, ExportNotReadyError
from metering_engine.metering.periods import ensure_utc
from metering_engine.models.billing import DateRange
from metering_engine.models.usage import ExportFormat, ExportStatus, UsageExport
from metering_engine.state.repository import UsageEventRepository, UsageExportRepository, export_from_row
from metering_engine.state.tables import UsageEventTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.services.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)

CSV_HEADER = ("event_id", "organization_id", "metric_id", "quantity", "timestamp")

_MEDIA_TYPES = {
    ExportFormat.CSV: "text/csv",
    ExportFormat.JSON: "application/json",
}

# Spreadsheet formula prefixes.
_CSV_DANGEROUS_CHARS = frozenset({"=", "+", "-", "@", "\t", "\r"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _sanitize_csv_value(value: Any) -> Any:
    if isinstance(value, str) and value and value[0] in _CSV_DANGEROUS_CHARS:
        return "'" + value
    return value


def render_csv(rows: list[UsageEventTable]) -> str:
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow(
            [
                _sanitize_csv_value(row.event_id),
                _sanitize_csv_value(row.organization_id),
                _sanitize_csv_value(row.metric_id),
                float(row.quantity),
                ensure_utc(row.occurred_at).isoformat(),
            ]
        )
    return output.getvalue()


def render_json(export: UsageExport, rows: list[UsageEventTable]) -> str:
    document = {
        "export_id": export.id,
        "organization_id": export.organization_id,
        "period_start": export.period_start.isoformat(),
        "period_end": export.period_end.isoformat(),
        "events": [
            {
                "event_id": row.event_id,
                "organization_id": row.organization_id,
                "metric_id": row.metric_id,
                "quantity": float(row.quantity),
                "timestamp": ensure_utc(row.occurred_at).isoformat(),
                "metadata": row.metadata_json or {},
            }
            for row in rows
        ],
    }
    return json.dumps(document, indent=2)


class ExportQueue(Protocol):
    """Anything that can schedule an export id for processing."""

    async def enqueue(self, export_id: str) -> None: ...


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class UsageExportService:
    """Request, process and serve usage exports.

    This service commits its own writes: a requested export must be
    visible to the worker's session before the id is queued, and the
    processing status must be visible to pollers while rendering runs.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        queue: ExportQueue | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._queue = queue
        self._bus = event_bus
        self._clock = clock
        self._exports = UsageExportRepository(session)
        self._events = UsageEventRepository(session)

    async def _emit(self, event_type: EventType, organization_id: str, data: dict[str, Any]) -> None:
        if self._bus is not None:
            await self._bus.emit(event_type, organization_id=organization_id, data=data)

    async def request_export(
        self,
        organization_id: str,
        period: DateRange,
        export_format: ExportFormat = ExportFormat.CSV,
    ) -> UsageExport:
        row = await self._exports.create(
            export_id=uuid.uuid4().hex,
            organization_id=organization_id,
            period_start=period.start,
            period_end=period.end,
            export_format=export_format,
        )
        export = export_from_row(row)
        await self._session.commit()

        if self._queue is not None:
            await self._queue.enqueue(export.id)
        else:
            logger.warning("No export queue configured; export %s stays pending", export.id)

        logger.info(
            "Export %s requested for org=%s (%s, %s..%s)",
            export.id,
            organization_id,
            export_format.value,
            period.start.isoformat(),
            period.end.isoformat(),
        )
        await self._emit(
            EventType.EXPORT_REQUESTED,
            organization_id,
            {"export_id": export.id, "format": export_format.value},
        )
        return export

    async def get_export_status(self, export_id: str) -> UsageExport:
        row = await self._exports.get(export_id)
        if row is None:
            raise ExportNotFoundError(export_id)
        return export_from_row(row)

    async def get_export_content(self, export_id: str) -> tuple[str, str, str]:
        """Return ``(content, media_type, filename)`` of a completed export.

        Raises
        ------
        ExportNotFoundError
            Unknown export id.
        ExportNotReadyError
            The export is pending, processing or failed.
        """
        row = await self._exports.get(export_id)
        if row is None:
            raise ExportNotFoundError(export_id)
        export = export_from_row(row)
        if export.status is not ExportStatus.COMPLETED:
            raise ExportNotReadyError(f"Export {export_id} is {export.status.value}")

        filename = (
            f"usage_{export.organization_id}_{export.period_start:%Y%m%d}_{export.period_end:%Y%m%d}"
            f".{export.format.value}"
        )
        return row.content or "", _MEDIA_TYPES[export.format], filename

    async def process_export(self, export_id: str) -> UsageExport:
        """Render and store one export.  Run by :class:`ExportWorker`."""
        export = await self.get_export_status(export_id)
        if export.status is not ExportStatus.PENDING:
            logger.info("Export %s is already %s; skipping", export_id, export.status.value)
            return export

        await self._exports.update_status(export_id, ExportStatus.PROCESSING, started_at=ensure_utc(self._clock()))
        await self._session.commit()

        try:
            rows = await self._events.list_range(export.organization_id, export.period_start, export.period_end)
            if export.format is ExportFormat.JSON:
                content = render_json(export, rows)
            else:
                content = render_csv(rows)
            await self._exports.update_status(
                export_id,
                ExportStatus.COMPLETED,
                content=content,
                row_count=len(rows),
                completed_at=ensure_utc(self._clock()),
            )
            await self._session.commit()
        except Exception as exc:
            logger.warning("Export %s failed: %s", export_id, exc, exc_info=True)
            await self._session.rollback()
            await self._exports.update_status(
                export_id,
                ExportStatus.FAILED,
                error=str(exc) or exc.__class__.__name__,
                completed_at=ensure_utc(self._clock()),
            )
            await self._session.commit()
            await self._emit(EventType.EXPORT_FAILED, export.organization_id, {"export_id": export_id})
            return await self.get_export_status(export_id)

        logger.info("Export %s completed with %d row(s)", export_id, len(rows))
        await self._emit(
            EventType.EXPORT_COMPLETED,
            export.organization_id,
            {"export_id": export_id, "row_count": len(rows)},
        )
        return await self.get_export_status(export_id)


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


class ExportWorker:
    """AsyncIO queue consumer that processes exports in the background.

    Parameters
    ----------
    session_factory:
        Creates one session per processed export.
    event_bus:
        Passed to each :class:`UsageExportService`.
    concurrency:
        Number of consumer tasks.
    maxsize:
        Queue capacity; :meth:`enqueue` waits while the queue is full.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        event_bus: EventBus | None = None,
        concurrency: int = 1,
        maxsize: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._bus = event_bus
        self._concurrency = max(1, concurrency)
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def enqueue(self, export_id: str) -> None:
        await self._queue.put(export_id)

    async def start(self) -> None:
        if self._tasks:
            logger.warning("ExportWorker already running; ignoring start()")
            return
        self._tasks = [
            asyncio.create_task(self._run(), name=f"export-worker-{index}") for index in range(self._concurrency)
        ]
        logger.info("ExportWorker started with %d consumer(s)", self._concurrency)

    async def stop(self) -> None:
        """Cancel the consumers.  Exports still queued remain pending."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("ExportWorker stopped")

    async def join(self) -> None:
        """Wait until every queued export has been processed."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            export_id = await self._queue.get()
            try:
                await self.process(export_id)
            except Exception:
                logger.exception("Unhandled error while processing export %s", export_id)
            finally:
                self._queue.task_done()

    async def process(self, export_id: str) -> None:
        async with self._session_factory() as session:
            service = UsageExportService(session, event_bus=self._bus)
            await service.process_export(export_id)
