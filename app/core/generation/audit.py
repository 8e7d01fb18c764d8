# app/core/generation/audit.py
"""
AUDIT MODULE - Append-only generation log, written off the request path

Purpose:
    1. Build an AuditRecord from a finished run (normalized intent only, never raw input)
    2. Apply the retention policy: keep artifacts, or only their sha256 hash
    3. Queue records and write them in a background task so a slow or broken
       sink can never delay or fail a response
"""

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import models
from app.core.errors import AuditWriteError
from app.core.schemas import AuditRecord, GenerationStatus, InputType, Intent, Product

logger = logging.getLogger(__name__)


def hash_artifacts(artifacts: Dict[str, str]) -> str:
    """
    Stable fingerprint of an artifact set.
    Why: lets operators match identical outputs without storing the code.
    """
    canonical = json.dumps(artifacts, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_audit_record(
    product: Product,
    input_type: InputType,
    status: GenerationStatus,
    intent: Optional[Intent] = None,
    template_version: Optional[int] = None,
    artifacts: Optional[Dict[str, str]] = None,
    warnings: Optional[List[str]] = None,
    error_category: Optional[str] = None,
    elapsed_ms: int = 0,
    attempts: int = 0,
    retain_artifacts: bool = True,
) -> AuditRecord:
    stored_artifacts = None
    artifacts_hash = None
    if artifacts:
        artifacts_hash = hash_artifacts(artifacts)
        if retain_artifacts:
            stored_artifacts = dict(artifacts)

    return AuditRecord(
        product=product,
        input_type=input_type,
        intent=intent.audit_dump() if intent is not None else None,
        template_version=template_version,
        status=status,
        artifacts=stored_artifacts,
        artifacts_hash=artifacts_hash,
        warnings=list(warnings or []),
        error_category=error_category,
        elapsed_ms=elapsed_ms,
        attempts=attempts,
        created_at=datetime.now(timezone.utc),
    )


class DatabaseAuditSink:
    """Appends generation_logs rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def write(self, record: AuditRecord) -> None:
        async with self.session_factory() as session:
            session.add(
                models.GenerationLog(
                    product=record.product.value,
                    input_type=record.input_type.value,
                    intent=record.intent,
                    template_version=record.template_version,
                    status=record.status.value,
                    artifacts=record.artifacts,
                    artifacts_hash=record.artifacts_hash,
                    warnings=record.warnings,
                    error_category=record.error_category,
                    generation_time_ms=record.elapsed_ms,
                    attempts=record.attempts,
                    created_at=record.created_at,
                )
            )
            await session.commit()


class AuditWriter:
    """
    Bounded queue in front of a sink.

    Example:
        writer = AuditWriter(DatabaseAuditSink(AsyncSessionLocal))
        writer.start()
        writer.submit(record)      # never blocks, never raises
        await writer.stop()        # drains what is queued
    """

    def __init__(self, sink, maxsize: int = 1000):
        self.sink = sink
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.failed = 0
        self._worker: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="audit-writer")

    def submit(self, record: AuditRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Audit queue full, dropped record for {record.product.value} ({self.dropped} dropped)")

    async def _write_one(self, record: AuditRecord) -> None:
        try:
            await self.sink.write(record)
        except Exception as e:
            self.failed += 1
            error = AuditWriteError(f"Audit write failed: {e}")
            logger.error(f"{error} (category={error.category})")

    async def _run(self) -> None:
        while True:
            record = await self.queue.get()
            try:
                await self._write_one(record)
            finally:
                self.queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued record has been handled."""
        if self._worker is None:
            while not self.queue.empty():
                record = self.queue.get_nowait()
                await self._write_one(record)
                self.queue.task_done()
            return
        await self.queue.join()

    async def stop(self) -> None:
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
