"""Conversion orchestration: classify uploads, run tasks one at a time, collect results."""
import logging
import shutil
import tempfile
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

from bdconverter.config import (
    CONVERSION_WORKERS,
    FEATURE_PROGRESS_THUMBNAIL,
    OUTPUT_DIR,
    PROGRESS_POLL_INTERVAL,
    THUMBNAIL_SIZE,
    UPLOAD_DIR,
    WORK_DIR,
)
from bdconverter.conversion.assembler import ArchiveAssembler
from bdconverter.conversion.classifier import classify, source_kind_for
from bdconverter.conversion.errors import BatchError, InputError
from bdconverter.conversion.extract import ArchiveExtractor
from bdconverter.conversion.models import (
    ArchiveConfig,
    BatchSummary,
    Result,
    SourceKind,
    Task,
    TaskFailure,
    TaskStage,
    ThumbnailStrategy,
    TransformConfig,
    UploadItem,
)
from bdconverter.conversion.pages import renumber_pages
from bdconverter.conversion.progress import LogEvent, ProgressChannel, TaskProgress
from bdconverter.conversion.sources import PageSourceResolver
from bdconverter.conversion.thumbnails import build_thumbnail_event
from bdconverter.conversion.tools import Rasterizer, ToolRunner
from bdconverter.conversion.transform import PageTransformer

logger = logging.getLogger("bdconverter.service")


def output_size(path: Path) -> int:
    """Byte size of a produced file, or of every file under a produced folder."""
    if path.is_dir():
        return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())
    return path.stat().st_size


class ConversionService:
    """Runs conversion batches. Tasks of a batch run strictly one after another."""

    def __init__(
        self,
        channel: Optional[ProgressChannel] = None,
        runner: Optional[ToolRunner] = None,
        upload_dir: Path = UPLOAD_DIR,
        work_dir: Path = WORK_DIR,
        output_dir: Path = OUTPUT_DIR,
        poll_interval: float = PROGRESS_POLL_INTERVAL,
        progress_thumbnails: bool = FEATURE_PROGRESS_THUMBNAIL,
        workers: int = CONVERSION_WORKERS,
    ):
        self.channel = channel or ProgressChannel()
        self.runner = runner or ToolRunner()
        self.upload_dir = upload_dir
        self.work_dir = work_dir
        self.output_dir = output_dir
        self.progress_thumbnails = progress_thumbnails
        self.rasterizer = Rasterizer(self.runner)
        self.extractor = ArchiveExtractor(self.runner)
        self.resolver = PageSourceResolver(self.rasterizer, self.extractor, poll_interval)
        self.assembler = ArchiveAssembler(self.runner, output_dir, work_dir / "archives")
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="conversion")
        for d in (upload_dir, work_dir, output_dir):
            d.mkdir(parents=True, exist_ok=True)
        logger.info("ConversionService initialized with workers=%s, poll_interval=%ss", workers, poll_interval)

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """Schedule work on the conversion pool."""
        return self._executor.submit(fn, *args, **kwargs)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def _log(self, request_id: Optional[str], message: str) -> None:
        self.channel.publish(request_id, LogEvent(message))

    def run_batch(
        self,
        items: list[UploadItem],
        transform: TransformConfig,
        archive: ArchiveConfig,
        request_id: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> BatchSummary:
        """Convert an upload batch. Blocking; call through `submit` from async code.

        A failing task is recorded in the summary and its siblings still run.
        Raises InputError when nothing can be converted, BatchError when the
        handler itself breaks (the partial summary travels with the error).
        """
        batch_id = batch_id or str(uuid.uuid4())
        summary = BatchSummary(batch_id=batch_id, request_id=request_id, output_dir=str(self.output_dir))
        self._log(request_id, f"Received {len(items)} file(s).")
        try:
            tasks = classify(items)
        except InputError:
            self.cleanup_uploads(items)
            raise

        try:
            for index, task in enumerate(tasks, start=1):
                progress = TaskProgress(self.channel, request_id, index, len(tasks), task.name)
                task_dir = Path(tempfile.mkdtemp(prefix="task_", dir=self.work_dir))
                try:
                    result = self._run_task(task, transform, archive, task_dir, progress)
                    summary.results.append(result)
                except Exception as e:
                    reason = getattr(e, "message", None) or str(e) or type(e).__name__
                    logger.exception("Task %s/%s (%s) failed: %s", index, len(tasks), task.name, reason)
                    summary.failures.append(TaskFailure(task.name, reason))
                    progress.stage(TaskStage.FAILED, f"Failed: {task.name}")
                    progress.log(f"Error converting {task.name}: {reason}")
                finally:
                    shutil.rmtree(task_dir, ignore_errors=True)
                    self.cleanup_uploads(task.files)
        except Exception as e:
            logger.exception("Batch %s failed: %s", batch_id, e)
            self.cleanup_uploads(items)
            raise BatchError(f"Batch conversion failed: {e}", summary) from e

        self._log(
            request_id,
            f"Conversion complete: {summary.total_files} file(s), {summary.total_pages} page(s), "
            f"{len(summary.failures)} failure(s).",
        )
        logger.info(
            "Batch %s done: %s ok, %s failed, %s pages, %s bytes",
            batch_id, summary.total_files, len(summary.failures), summary.total_pages, summary.total_size,
        )
        return summary

    def _run_task(
        self,
        task: Task,
        transform: TransformConfig,
        archive: ArchiveConfig,
        task_dir: Path,
        progress: TaskProgress,
    ) -> Result:
        progress.log(f"Processing {task.name} ({task.source_kind.value}, {len(task.files)} file(s))")
        progress.stage(TaskStage.ANALYZING, f"Analyzing {task.name}...", current_pct=0)
        strategy = transform.thumbnail_strategy

        if task.source_kind is SourceKind.DOCUMENT:
            self._start_thumbnail_from_document(task, task_dir, strategy, progress)
        elif task.source_kind is SourceKind.IMAGES:
            self._send_thumbnail(task.source.path, strategy, "start", progress)

        page_set = self.resolver.resolve(task, transform, task_dir, progress)
        if task.source_kind is SourceKind.ARCHIVE:
            self._send_thumbnail(page_set.pages[0], strategy, "start", progress)

        total = len(page_set)
        progress.stage(TaskStage.TRANSFORMING, "Processing images...", current_pct=0, current_pages=0, total_pages=total)
        transformer = PageTransformer(transform)
        transformed = transformer.run(page_set.pages, task_dir / "pages", on_page=progress.page)
        pages = renumber_pages(transformed)
        if total and len(pages) != total:
            progress.log(f"Double pages split: {total} -> {len(pages)} page(s)")

        progress.stage(TaskStage.ASSEMBLING, f"Creating {archive.container.value.upper()}...", current_pages=len(pages), total_pages=len(pages))
        output = self.assembler.assemble(task_dir / "pages", pages, task.name, archive)

        progress.stage(TaskStage.FINALIZING, "Finalizing...", current_pct=100, current_pages=len(pages), total_pages=len(pages))
        thumbnail = None
        event = build_thumbnail_event(pages[0], strategy, phase="final", size=THUMBNAIL_SIZE)
        if event is not None:
            thumbnail = event.color
            if self.progress_thumbnails:
                progress.thumbnail(event)

        result = Result(
            name=output.name,
            path=str(output),
            size=output_size(output),
            pages=len(pages),
            thumbnail=thumbnail,
        )
        progress.stage(TaskStage.DONE, f"Done: {result.name}", current_pct=100, current_pages=result.pages, total_pages=result.pages)
        progress.log(f"Created {result.name} ({result.pages} pages)")
        return result

    def _send_thumbnail(self, path: Path, strategy: ThumbnailStrategy, phase: str, progress: TaskProgress) -> None:
        if not self.progress_thumbnails:
            return
        progress.thumbnail(build_thumbnail_event(path, strategy, phase=phase, size=THUMBNAIL_SIZE))

    def _start_thumbnail_from_document(
        self,
        task: Task,
        task_dir: Path,
        strategy: ThumbnailStrategy,
        progress: TaskProgress,
    ) -> None:
        if not self.progress_thumbnails:
            return
        preview_dir = task_dir / "preview"
        preview_dir.mkdir(parents=True, exist_ok=True)
        preview = self.rasterizer.render_preview(task.source.path, preview_dir / "preview", THUMBNAIL_SIZE)
        if preview is not None:
            self._send_thumbnail(preview, strategy, "start", progress)

    def analyze(self, item: UploadItem) -> dict:
        """Page count of one upload without converting it."""
        kind = source_kind_for(item)
        scratch = Path(tempfile.mkdtemp(prefix="analyze_", dir=self.work_dir))
        try:
            pages = self.resolver.count_pages(item.path, kind, scratch / "source")
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
        return {"name": item.filename, "kind": kind.value, "pages": pages}

    def cleanup_uploads(self, items: list[UploadItem]) -> None:
        """Remove staged upload files."""
        for item in items:
            try:
                if item.path.is_file():
                    item.path.unlink()
                elif item.path.is_dir():
                    shutil.rmtree(item.path, ignore_errors=True)
            except OSError as e:
                logger.warning("Could not remove upload %s: %s", item.path, e)


# Singleton
_conversion_service: Optional[ConversionService] = None


def get_conversion_service() -> ConversionService:
    global _conversion_service
    if _conversion_service is None:
        _conversion_service = ConversionService()
    return _conversion_service
