"""Page-sequence helpers: ordering, range clamping and renumbering."""
import logging
import os
import re
import uuid
from pathlib import Path
from typing import Iterable, Optional

from bdconverter.config import ARCHIVE_IMAGE_EXTENSIONS

logger = logging.getLogger("bdconverter.pages")

MIN_PAGE_NAME_WIDTH = 3

_DIGITS = re.compile(rb"(\d+)")


def byte_sort_key(path: Path) -> bytes:
    """Order paths by their raw filesystem bytes, independent of text encoding."""
    return os.fsencode(path)


def natural_sort_key(path: Path) -> list:
    """Order by name with digit runs compared numerically (page-9 before page-10)."""
    parts = _DIGITS.split(os.fsencode(path.name))
    return [(0, int(p), b"") if p.isdigit() else (1, 0, p.lower()) for p in parts]


def is_image_file(path: Path, extensions: Iterable[str] = ARCHIVE_IMAGE_EXTENSIONS) -> bool:
    return path.suffix.lower() in extensions


def scan_images(root: Path) -> list[Path]:
    """Recursively list image files under root in byte order of their full path.

    Dot-files and macOS resource-fork folders are skipped.
    """
    found = []
    for path in root.rglob("*"):
        rel = path.relative_to(root)
        if any(part.startswith(".") or part == "__MACOSX" for part in rel.parts):
            continue
        if path.is_file() and is_image_file(path):
            found.append(path)
    found.sort(key=byte_sort_key)
    return found


def clamp_range(total: int, start: Optional[int], end: Optional[int]) -> tuple[int, int]:
    """Clamp a 1-based inclusive range to [1, total]. May return end < start."""
    first = max(1, start if start is not None else 1)
    last = min(total, end if end is not None else total)
    return first, last


def effective_page_count(total: Optional[int], start: Optional[int], end: Optional[int]) -> Optional[int]:
    """In-range page count, or None when the source total is unknown."""
    if total is None:
        return None
    first, last = clamp_range(total, start, end)
    return max(0, last - first + 1)


def slice_range(pages: list, start: Optional[int], end: Optional[int]) -> list:
    first, last = clamp_range(len(pages), start, end)
    if last < first:
        return []
    return pages[first - 1:last]


def page_name_width(count: int) -> int:
    return max(MIN_PAGE_NAME_WIDTH, len(str(count)))


def renumber_pages(pages: list[Path]) -> list[Path]:
    """Rename pages in place to 001.ext, 002.ext, ... keeping the given order.

    Two-phase rename so a target name never collides with a page not yet moved.
    Running it again on its own output yields the same names.
    """
    width = page_name_width(len(pages))
    targets = [
        page.with_name(f"{index:0{width}d}{page.suffix.lower()}")
        for index, page in enumerate(pages, start=1)
    ]
    if all(page == target for page, target in zip(pages, targets)):
        return targets
    token = uuid.uuid4().hex[:8]
    staged = []
    for index, page in enumerate(pages):
        tmp = page.with_name(f".renumber_{token}_{index}{page.suffix}")
        page.rename(tmp)
        staged.append(tmp)
    for tmp, target in zip(staged, targets):
        tmp.rename(target)
    logger.debug("Renumbered %s pages in %s (width=%s)", len(pages), targets[0].parent if targets else "-", width)
    return targets
