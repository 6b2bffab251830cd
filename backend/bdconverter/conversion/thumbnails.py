"""Preview thumbnails delivered as data URIs over the progress channel."""
import base64
import io
import logging
from pathlib import Path
from typing import Optional

from PIL import Image

from bdconverter.config import THUMBNAIL_SIZE
from bdconverter.conversion.models import ThumbnailStrategy
from bdconverter.conversion.progress import ThumbnailEvent

logger = logging.getLogger("bdconverter.thumbnails")


def _to_data_uri(img: Image.Image) -> str:
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=80)
    return "data:image/jpeg;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def thumbnail_data_uri(path: Path, size: int = THUMBNAIL_SIZE, gray: bool = False) -> Optional[str]:
    """JPEG data URI of the image scaled to `size` on its longest side, or None if unreadable."""
    try:
        with Image.open(path) as img:
            img.thumbnail((size, size))
            thumb = img.convert("L" if gray else "RGB")
        return _to_data_uri(thumb)
    except (OSError, ValueError) as e:
        logger.warning("Thumbnail failed for %s: %s", path.name, e)
        return None


def build_thumbnail_event(
    path: Path,
    strategy: ThumbnailStrategy,
    phase: str = "start",
    size: int = THUMBNAIL_SIZE,
) -> Optional[ThumbnailEvent]:
    """Reveal strategy sends gray + color for an animated reveal; static sends color only."""
    color = thumbnail_data_uri(path, size)
    if color is None:
        return None
    if strategy is ThumbnailStrategy.REVEAL:
        return ThumbnailEvent(color=color, gray=thumbnail_data_uri(path, size, gray=True), phase=phase)
    return ThumbnailEvent(color=color, phase=phase)
