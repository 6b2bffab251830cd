"""Page source resolution: every source kind becomes an ordered list of page image files."""
import logging
from pathlib import Path
from typing import Optional

from bdconverter.config import ARCHIVE_IMAGE_EXTENSIONS
from bdconverter.conversion.errors import ResolutionError
from bdconverter.conversion.extract import ArchiveExtractor
from bdconverter.conversion.models import PageSet, SourceKind, Task, TaskStage, TransformConfig
from bdconverter.conversion.pages import (
    clamp_range,
    effective_page_count,
    is_image_file,
    natural_sort_key,
    slice_range,
)
from bdconverter.conversion.progress import DirectoryProgressPoller, TaskProgress
from bdconverter.conversion.tools import Rasterizer

logger = logging.getLogger("bdconverter.sources")

PAGE_PREFIX = "page"

# Page images a document step can leave behind. pdfimages -all also writes side
# files (.jb2g JBIG2 globals, .params CCITT parameters) and raw streams Pillow cannot read.
DOCUMENT_PAGE_EXTENSIONS = ARCHIVE_IMAGE_EXTENSIONS | {".jp2", ".jpx", ".j2k", ".pbm", ".pgm", ".ppm", ".pnm"}


class PageSourceResolver:
    """Resolves a task's input into a PageSet under `work_dir`/source."""

    def __init__(
        self,
        rasterizer: Rasterizer,
        extractor: ArchiveExtractor,
        poll_interval: float = 1.0,
    ):
        self.rasterizer = rasterizer
        self.extractor = extractor
        self.poll_interval = poll_interval

    def resolve(
        self,
        task: Task,
        config: TransformConfig,
        work_dir: Path,
        progress: Optional[TaskProgress] = None,
    ) -> PageSet:
        source_dir = work_dir / "source"
        source_dir.mkdir(parents=True, exist_ok=True)
        progress = progress or TaskProgress(None, None, name=task.name)
        if task.source_kind is SourceKind.DOCUMENT:
            page_set = self._resolve_document(task, config, source_dir, progress)
        elif task.source_kind is SourceKind.ARCHIVE:
            page_set = self._resolve_archive(task, config, source_dir, progress)
        else:
            page_set = self._resolve_images(task, config, source_dir)
        if not page_set.pages:
            raise ResolutionError(f"Empty result: no pages in range for {task.name}")
        return page_set

    def _resolve_document(
        self,
        task: Task,
        config: TransformConfig,
        source_dir: Path,
        progress: TaskProgress,
    ) -> PageSet:
        document = task.source.path
        total = self.rasterizer.page_count(document)
        effective = effective_page_count(total, config.page_start, config.page_end)
        progress.log(f"Pages detected: {total or 'Unknown'} (Target: {effective if effective is not None else 'Unknown'})")
        if effective == 0:
            raise ResolutionError(f"Empty result: page range is outside the {total} page(s) of {task.name}")

        if total is not None:
            first, last = clamp_range(total, config.page_start, config.page_end)
        else:
            # unknown total: range passed through unmodified
            first, last = config.page_start, config.page_end
        prefix = source_dir / PAGE_PREFIX
        stage = TaskStage.EXTRACTING if config.original else TaskStage.RENDERING
        progress.log(f"Conversion in progress ({'Extraction' if config.original else 'Rendering'})...")
        progress.stage(stage, "Extracting..." if config.original else "Rendering...", current_pct=0, total_pages=effective)

        poller = None
        if effective:
            poller = DirectoryProgressPoller(source_dir, effective, progress.sample, self.poll_interval).start()
        try:
            if config.original:
                self.rasterizer.extract_images(document, prefix, first, last)
            else:
                self.rasterizer.render(
                    document,
                    prefix,
                    dpi=config.dpi,
                    image_format=config.image_format,
                    color_mode=config.color_mode,
                    quality=config.quality,
                    first=first,
                    last=last,
                )
        finally:
            if poller:
                poller.stop()

        produced = sorted(
            (
                p for p in source_dir.iterdir()
                if p.name.startswith(PAGE_PREFIX) and p.is_file() and is_image_file(p, DOCUMENT_PAGE_EXTENSIONS)
            ),
            key=natural_sort_key,
        )
        # verbatim extraction can emit several images per page; the in-range count wins
        count = effective if effective is not None else len(produced)
        pages = produced[:count]
        logger.info("Resolved %s page(s) from document %s (%s produced)", len(pages), task.name, len(produced))
        return PageSet(source_dir, pages, len(pages))

    def _resolve_archive(
        self,
        task: Task,
        config: TransformConfig,
        source_dir: Path,
        progress: TaskProgress,
    ) -> PageSet:
        progress.stage(TaskStage.EXTRACTING, f"Extracting {task.source.filename}...", current_pct=0)
        images = self.extractor.extract(task.source.path, source_dir)
        pages = slice_range(images, config.page_start, config.page_end)
        progress.log(f"Pages detected: {len(images)} (Target: {len(pages)})")
        logger.info("Resolved %s of %s page(s) from archive %s", len(pages), len(images), task.name)
        return PageSet(source_dir, pages, len(pages))

    def _resolve_images(self, task: Task, config: TransformConfig, source_dir: Path) -> PageSet:
        images = [item.path for item in task.files if is_image_file(Path(item.filename))]
        pages = slice_range(images, config.page_start, config.page_end)
        return PageSet(source_dir, pages, len(pages))

    def count_pages(self, path: Path, kind: SourceKind, scratch: Path) -> Optional[int]:
        """Total page count of a single source without converting it."""
        if kind is SourceKind.DOCUMENT:
            return self.rasterizer.page_count(path)
        if kind is SourceKind.ARCHIVE:
            return self.extractor.count_pages(path, scratch)
        return 1
