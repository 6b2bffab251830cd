"""Groups an upload batch into independent conversion tasks."""
import logging
import re
from pathlib import Path

from bdconverter.config import ARCHIVE_EXTENSIONS, DOCUMENT_EXTENSIONS, IMAGE_EXTENSIONS
from bdconverter.conversion.errors import InputError
from bdconverter.conversion.models import SourceKind, Task, TaskKind, UploadItem

logger = logging.getLogger("bdconverter.classifier")

MERGED_IMAGES_NAME = "merged_images"

# Technical suffix (_<13-digit timestamp>_<uuid>) some clients append to uploads
_TECHNICAL_SUFFIX = re.compile(r"_\d{13}_[a-f0-9\-]{36}$", re.IGNORECASE)
_TRAILING_COUNTER = re.compile(r"[\s._\-]*\d+$")


def clean_base_name(filename: str) -> str:
    stem = Path(filename).stem
    return _TECHNICAL_SUFFIX.sub("", stem) or stem


def source_kind_for(item: UploadItem) -> SourceKind:
    ext = item.suffix
    if ext in IMAGE_EXTENSIONS:
        return SourceKind.IMAGES
    if ext in DOCUMENT_EXTENSIONS:
        return SourceKind.DOCUMENT
    if ext in ARCHIVE_EXTENSIONS:
        return SourceKind.ARCHIVE
    raise InputError(f"Unsupported file type: {item.filename}")


def merge_group_name(images: list[UploadItem]) -> str:
    """Name for a set of loose root images.

    A single image gives its own base name. Several images give the first
    image's base name without its page counter when every image shares it,
    otherwise a generic name.
    """
    first = clean_base_name(images[0].filename)
    if len(images) == 1:
        return first
    prefix = _TRAILING_COUNTER.sub("", first)
    if prefix and all(clean_base_name(i.filename).startswith(prefix) for i in images):
        return prefix
    return MERGED_IMAGES_NAME


def classify(items: list[UploadItem]) -> list[Task]:
    """Partition uploads into tasks.

    Every item lands in exactly one task: one MERGE task per image folder
    (keyed by first path segment), one MERGE task for all root images, and one
    CONVERT task per document or archive wherever it sits.
    Order: folder groups in discovery order, root image group, then documents
    in upload order.
    """
    if not items:
        raise InputError("No files uploaded.")
    kinds = [source_kind_for(item) for item in items]

    folders: dict[str, list[UploadItem]] = {}
    root_images: list[UploadItem] = []
    documents: list[tuple[UploadItem, SourceKind]] = []
    for item, kind in zip(items, kinds):
        if kind is not SourceKind.IMAGES:
            documents.append((item, kind))
        elif len(item.segments) > 1:
            folders.setdefault(item.segments[0], []).append(item)
        else:
            root_images.append(item)

    tasks = [Task(TaskKind.MERGE, name, group, SourceKind.IMAGES) for name, group in folders.items()]
    if root_images:
        tasks.append(Task(TaskKind.MERGE, merge_group_name(root_images), root_images, SourceKind.IMAGES))
    for item, kind in documents:
        tasks.append(Task(TaskKind.CONVERT, clean_base_name(item.filename), [item], kind))
    logger.info(
        "Classified %s upload(s) into %s task(s) (%s folder group(s), %s root image(s), %s document(s))",
        len(items), len(tasks), len(folders), len(root_images), len(documents),
    )
    return tasks
