from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from pathlib import Path
import re
from threading import Lock
from time import monotonic, perf_counter
from typing import Any, Callable, TypedDict

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docqa.models import JobRecord
from docqa.services.rag.ingest import IngestionPipeline
from docqa.services.rag.types import IngestionProgress, IngestionStage

logger = logging.getLogger(__name__)

INGEST_JOB_TYPE = "ingest"
ACTIVE_STAGES = [
    IngestionStage.IDLE.value,
    IngestionStage.SCANNING.value,
    IngestionStage.CHUNKING.value,
    IngestionStage.EMBEDDING.value,
]

_create_lock = Lock()
_live_lock = Lock()
_live_jobs: set[str] = set()


PipelineFactory = Callable[..., IngestionPipeline]


class IngestionAlreadyRunning(RuntimeError):
    def __init__(self, existing_job_id: str) -> None:
        super().__init__("ingestion already running")
        self.existing_job_id = existing_job_id


class IngestionResult(TypedDict):
    documents: int
    chunks: int
    skipped: list[str]
    dim: int
    index_path: str
    duration_ms: int


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _extract_numeric_suffix(value: str) -> int | None:
    match = re.search(r"(\d+)$", value)
    if match is None:
        return None
    return int(match.group(1))


def _next_job_id(session: Session) -> str:
    next_id = 1
    for existing_id in session.scalars(select(JobRecord.id)).all():
        parsed = _extract_numeric_suffix(str(existing_id))
        if parsed is None:
            continue
        next_id = max(next_id, parsed + 1)
    return str(next_id)


def _is_live(job_id: str) -> bool:
    with _live_lock:
        return job_id in _live_jobs


def create_ingestion_job(engine: Engine, *, source_dir: Path, stale_seconds: int = 600) -> str:
    """Register a new ingestion job, refusing while another one is in flight.

    A job stuck in a non-terminal stage for longer than ``stale_seconds`` has
    lost its runner (process restart) and is closed as ``error``, unless it is
    still running in this process.
    """
    with _create_lock, Session(engine) as session:
        active_jobs = session.scalars(
            select(JobRecord)
            .where(JobRecord.type == INGEST_JOB_TYPE)
            .where(JobRecord.status.in_(ACTIVE_STAGES))
            .order_by(JobRecord.created_at.asc(), JobRecord.id.asc())
        ).all()

        stale_before = _now() - timedelta(seconds=stale_seconds)
        for job in active_jobs:
            if _as_utc(job.updated_at) >= stale_before or _is_live(job.id):
                raise IngestionAlreadyRunning(job.id)
            logger.warning("Closing stale ingestion job %s (last update %s)", job.id, job.updated_at)
            job.status = IngestionStage.ERROR.value
            job.error = "interrupted: no progress reported before the runner stopped"
            job.finished_at = _now()
            job.updated_at = _now()

        job = JobRecord(
            id=_next_job_id(session),
            type=INGEST_JOB_TYPE,
            status=IngestionStage.IDLE.value,
            payload_json={"source_dir": str(source_dir)},
            processed=0,
            total=0,
            updated_at=_now(),
        )
        session.add(job)
        session.commit()
        return job.id


def write_job_progress(
    engine: Engine,
    job_id: str,
    progress: IngestionProgress,
    *,
    result_json: dict[str, Any] | None = None,
) -> None:
    with Session(engine) as session:
        job = session.get(JobRecord, job_id)
        if job is None:
            raise LookupError(f"ingestion job {job_id} not found")

        now = _now()
        if job.started_at is None and progress.stage is not IngestionStage.IDLE:
            job.started_at = now
        if progress.stage.terminal:
            job.finished_at = now
        job.status = progress.stage.value
        job.processed = progress.processed
        job.total = progress.total
        job.error = progress.error
        if result_json is not None:
            job.result_json = result_json
        job.updated_at = now
        session.commit()


class JobProgressWriter:
    """Persists pipeline snapshots to the job row.

    Stage changes and terminal states are always written; within a stage a
    write happens every ``every`` processed items, or once ``heartbeat_seconds``
    have passed since the last write so ``updated_at`` keeps moving during
    slow extraction.
    """

    def __init__(
        self,
        engine: Engine,
        job_id: str,
        *,
        every: int = 25,
        heartbeat_seconds: float = 30.0,
    ) -> None:
        self._engine = engine
        self._job_id = job_id
        self._every = max(1, every)
        self._heartbeat_seconds = max(0.0, heartbeat_seconds)
        self._last_stage: IngestionStage | None = None
        self._last_processed = 0
        self._last_write = monotonic()

    def __call__(self, progress: IngestionProgress) -> None:
        if (
            progress.stage is self._last_stage
            and not progress.stage.terminal
            and progress.processed - self._last_processed < self._every
            and monotonic() - self._last_write < self._heartbeat_seconds
        ):
            return

        write_job_progress(self._engine, self._job_id, progress)
        self._last_stage = progress.stage
        self._last_processed = progress.processed
        self._last_write = monotonic()


def run_ingestion_job(
    engine: Engine,
    job_id: str,
    *,
    source_dir: Path,
    pipeline_factory: PipelineFactory,
    progress_every: int = 25,
    heartbeat_seconds: float = 30.0,
) -> IngestionResult:
    """Run one pipeline for ``job_id``; ``pipeline_factory(on_progress=...)`` builds it."""
    writer = JobProgressWriter(engine, job_id, every=progress_every, heartbeat_seconds=heartbeat_seconds)
    try:
        pipeline = pipeline_factory(on_progress=writer)
    except Exception as exc:
        write_job_progress(
            engine,
            job_id,
            IngestionProgress(stage=IngestionStage.ERROR, error=str(exc) or exc.__class__.__name__),
        )
        raise
    start = perf_counter()

    with _live_lock:
        _live_jobs.add(job_id)
    try:
        summary = pipeline.run(source_dir)
    finally:
        with _live_lock:
            _live_jobs.discard(job_id)

    result: IngestionResult = {
        "documents": summary.document_count,
        "chunks": summary.chunk_count,
        "skipped": summary.skipped,
        "dim": summary.dim,
        "index_path": summary.index_file,
        "duration_ms": int((perf_counter() - start) * 1000),
    }
    write_job_progress(engine, job_id, pipeline.progress, result_json=dict(result))
    return result


def run_ingestion_job_in_background(
    engine: Engine,
    job_id: str,
    *,
    source_dir: Path,
    pipeline_factory: PipelineFactory,
    progress_every: int = 25,
    heartbeat_seconds: float = 30.0,
) -> None:
    try:
        result = run_ingestion_job(
            engine,
            job_id,
            source_dir=source_dir,
            pipeline_factory=pipeline_factory,
            progress_every=progress_every,
            heartbeat_seconds=heartbeat_seconds,
        )
    except Exception:
        # The failure is already recorded on the job row by the pipeline.
        logger.exception("Ingestion job %s failed", job_id)
        return
    logger.info("Ingestion job %s finished: %s", job_id, result)


def get_job(engine: Engine, job_id: str) -> JobRecord | None:
    with Session(engine) as session:
        return session.get(JobRecord, job_id)


def get_latest_job(engine: Engine) -> JobRecord | None:
    with Session(engine) as session:
        jobs = session.scalars(select(JobRecord).where(JobRecord.type == INGEST_JOB_TYPE)).all()
    if not jobs:
        return None
    return max(jobs, key=lambda job: (_extract_numeric_suffix(job.id) or 0, job.id))


def job_progress(job: JobRecord | None) -> dict[str, Any]:
    if job is None:
        return {"job_id": None, **IngestionProgress().as_dict()}
    return {
        "job_id": job.id,
        "stage": job.status,
        "processed": job.processed,
        "total": job.total,
        "error": job.error,
    }
