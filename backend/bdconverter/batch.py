"""Batch job state. Persisted to local SQL (SQLite) database."""
import logging
from dataclasses import dataclass, field
from typing import Optional

from bdconverter.conversion.models import BatchSummary
from bdconverter.db import get_batch_from_db, record_results, save_batch, update_batch_status

logger = logging.getLogger("bdconverter.batch")


@dataclass
class BatchRecord:
    batch_id: str
    status: str  # "processing" | "completed" | "failed"
    request_id: Optional[str] = None
    summary: Optional[dict] = None
    error: Optional[str] = None
    results: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "request_id": self.request_id,
            "status": self.status,
            "error": self.error,
            "summary": self.summary,
            "results": self.results,
        }


# Batches still processing. Finished batches are read back from the database.
_batches: dict[str, BatchRecord] = {}


def get_batch(batch_id: str) -> Optional[BatchRecord]:
    job = _batches.get(batch_id)
    if job is not None:
        return job
    row = get_batch_from_db(batch_id)
    if row is None:
        return None
    job = BatchRecord(
        batch_id=row["batch_id"],
        status=row["status"],
        request_id=row.get("request_id"),
        summary=row.get("summary"),
        error=row.get("error"),
        results=row.get("results") or [],
    )
    if job.status == "processing":
        _batches[batch_id] = job
    return job


def create_batch(batch_id: str, request_id: Optional[str] = None) -> BatchRecord:
    job = BatchRecord(batch_id=batch_id, status="processing", request_id=request_id)
    _batches[batch_id] = job
    save_batch(batch_id, "processing", request_id=request_id)
    return job


def _store_summary(batch_id: str, status: str, summary: BatchSummary, error: Optional[str]) -> None:
    # thumbnails are progress-only data and never stored
    data = summary.to_dict(include_thumbnails=False)
    job = _batches.get(batch_id)
    if job:
        job.status = status
        job.summary = data
        job.error = error
        job.results = data["files"]
    update_batch_status(batch_id, status, summary=data, error=error)
    record_results(batch_id, data["files"])
    _batches.pop(batch_id, None)


def set_batch_completed(batch_id: str, summary: BatchSummary) -> None:
    error = None
    if not summary.success:
        error = "; ".join(f"{f.name}: {f.reason}" for f in summary.failures)
    _store_summary(batch_id, "completed" if summary.success else "failed", summary, error)
    logger.info("Batch %s stored (%s file(s), %s failure(s))", batch_id, summary.total_files, len(summary.failures))


def set_batch_failed(batch_id: str, error: str, summary: Optional[BatchSummary] = None) -> None:
    if summary is not None:
        _store_summary(batch_id, "failed", summary, error)
        return
    job = _batches.get(batch_id)
    if job:
        job.status = "failed"
        job.error = error
    update_batch_status(batch_id, "failed", error=error)
    _batches.pop(batch_id, None)
