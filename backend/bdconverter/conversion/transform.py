"""Per-page transform chain: rotate, resize, grayscale, double-page split, re-encode."""
import logging
import shutil
from pathlib import Path
from typing import Callable, Optional

from PIL import Image

from bdconverter.conversion.errors import TransformError
from bdconverter.conversion.models import ColorMode, ImageFormat, ReadingDirection, TransformConfig

logger = logging.getLogger("bdconverter.transform")

SPREAD_RATIO = 1.2
DPI_TOLERANCE = 0.02
# Used when original mode still has to re-encode (rotation, exotic encodings)
ORIGINAL_JPEG_QUALITY = 95

# Encodings emitted by verbatim extraction that packers and readers handle poorly
EXOTIC_EXTENSIONS = {
    ".jp2", ".jpx", ".j2k", ".jb2", ".jb2e", ".jb2g", ".jbig2", ".ccitt", ".params",
    ".pbm", ".pgm", ".ppm", ".pnm",
}

_FORMAT_EXTENSIONS = {
    "JPEG": ".jpg", "PNG": ".png", "TIFF": ".tif", "BMP": ".bmp", "GIF": ".gif", "WEBP": ".webp",
}
_SAME_FORMAT = {".jpg": ".jpg", ".jpeg": ".jpg", ".png": ".png", ".tif": ".tif", ".tiff": ".tif"}

# PIL transpose for clockwise rotation angles
_ROTATIONS = {
    90: Image.Transpose.ROTATE_270,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_90,
}


def rotate(img: Image.Image, angle: int) -> Image.Image:
    """Rotate clockwise by a multiple of 90 degrees."""
    angle %= 360
    if angle == 0:
        return img
    if angle not in _ROTATIONS:
        raise TransformError(f"Unsupported rotation {angle}")
    return img.transpose(_ROTATIONS[angle])


def resize_keep_aspect(
    img: Image.Image,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
) -> Image.Image:
    """
    Scale image to fit within target width and/or height, maintaining aspect ratio.
    If only one dimension is set, the other is computed from the image ratio.
    """
    w, h = img.size
    if target_width is None and target_height is None:
        return img
    if target_width is not None and target_height is not None:
        scale = min(target_width / w, target_height / h)
    elif target_width is not None:
        scale = target_width / w
    else:
        scale = target_height / h
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    if img.mode in ("1", "P"):
        img = img.convert("L" if img.mode == "1" else "RGBA")
    return img.resize((new_w, new_h), Image.Resampling.LANCZOS)


def read_dpi(img: Image.Image) -> float:
    dpi = img.info.get("dpi")
    if not dpi:
        raise TransformError("No density metadata")
    x = float(dpi[0] if isinstance(dpi, (tuple, list)) else dpi)
    if x <= 0:
        raise TransformError("Invalid density metadata")
    return x


def needs_dpi_rescale(source_dpi: float, target_dpi: int) -> bool:
    return abs(source_dpi - target_dpi) / target_dpi > DPI_TOLERANCE


def to_color_mode(img: Image.Image, color_mode: ColorMode, image_format: ImageFormat) -> Image.Image:
    if color_mode is ColorMode.COLOR:
        return img
    # JPEG has no 1-bit mode; mono degrades to gray there
    target = "1" if color_mode is ColorMode.MONO and image_format is not ImageFormat.JPEG else "L"
    if img.mode == target:
        return img
    if img.mode in ("RGBA", "LA", "P"):
        img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.getchannel("A"))
        img = background
    return img.convert(target)


def is_spread(img: Image.Image) -> bool:
    w, h = img.size
    return h > 0 and w / h > SPREAD_RATIO


def split_spread(img: Image.Image, direction: ReadingDirection) -> list[Image.Image]:
    """Cut a double-page spread at the vertical midpoint, in reading order."""
    w, h = img.size
    mid = w // 2
    left = img.crop((0, 0, mid, h))
    right = img.crop((mid, 0, w, h))
    if direction is ReadingDirection.RTL:
        return [right, left]
    return [left, right]


def encode(img: Image.Image, dest: Path, pil_format: str, quality: int, dpi: Optional[float] = None) -> Path:
    """Save img as pil_format at dest (extension replaced to match)."""
    dest = dest.with_suffix(_FORMAT_EXTENSIONS.get(pil_format, ".jpg"))
    save_kw: dict = {}
    if pil_format == "JPEG":
        if img.mode not in ("RGB", "L", "CMYK"):
            img = img.convert("RGB")
        save_kw = {"quality": quality, "optimize": True}
    elif pil_format == "PNG":
        if img.mode == "CMYK":
            img = img.convert("RGB")
        save_kw = {"optimize": True}
    elif pil_format == "TIFF":
        save_kw = {"compression": "tiff_lzw"}
    elif pil_format == "WEBP":
        save_kw = {"quality": quality}
    if dpi:
        save_kw["dpi"] = (round(dpi), round(dpi))
    img.save(str(dest), format=pil_format, **save_kw)
    return dest


class PageTransformer:
    """Applies one TransformConfig to pages, one page at a time."""

    def __init__(self, config: TransformConfig):
        self.config = config

    def _step(self, name: str, page: Path, func: Callable, *args):
        """Run one transform step; a failing step is skipped for this page only."""
        try:
            return func(*args)
        except (TransformError, OSError, ValueError) as e:
            logger.warning("Skipping %s for %s: %s", name, page.name, e)
            return None

    def _output_format(self, src: Path, img: Image.Image) -> tuple[str, int]:
        cfg = self.config
        if src.suffix.lower() in EXOTIC_EXTENSIONS:
            return "JPEG", cfg.quality if not cfg.original else ORIGINAL_JPEG_QUALITY
        if cfg.original:
            fmt = img.format if img.format in _FORMAT_EXTENSIONS else "JPEG"
            return fmt, ORIGINAL_JPEG_QUALITY
        return cfg.image_format.pil_format, cfg.quality

    def transform_page(self, src: Path, dest_dir: Path, index: int) -> list[Path]:
        """Transform one page into dest_dir. Returns one path, or two for a split spread."""
        cfg = self.config
        dest_dir.mkdir(parents=True, exist_ok=True)
        stem = dest_dir / f"{index:06d}"
        if cfg.original and not cfg.rotation and src.suffix.lower() not in EXOTIC_EXTENSIONS:
            return [self._copy(src, stem)]
        try:
            with Image.open(src) as img:
                img.load()
                return self._transform_image(src, img, stem)
        except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
            logger.warning("Transform failed for %s, copying verbatim: %s", src.name, e)
            for partial in dest_dir.glob(f"{stem.name}*"):
                partial.unlink()
            return [self._copy(src, stem)]

    def _transform_image(self, src: Path, img: Image.Image, stem: Path) -> list[Path]:
        cfg = self.config
        work = img
        changed = False
        out_dpi = None
        try:
            source_dpi = read_dpi(img)
        except TransformError:
            source_dpi = None

        if cfg.rotation:
            rotated = self._step("rotation", src, rotate, work, cfg.rotation)
            if rotated is not None:
                work, changed = rotated, True

        if not cfg.original:
            if cfg.max_width and work.width > cfg.max_width:
                resized = self._step("resize", src, resize_keep_aspect, work, cfg.max_width)
                if resized is not None:
                    work, changed = resized, True
            elif cfg.dpi and source_dpi and needs_dpi_rescale(source_dpi, cfg.dpi):
                width = max(1, int(round(work.width * cfg.dpi / source_dpi)))
                resized = self._step("density rescale", src, resize_keep_aspect, work, width)
                if resized is not None:
                    work, changed, out_dpi = resized, True, cfg.dpi

            reduced = self._step("color reduction", src, to_color_mode, work, cfg.color_mode, cfg.image_format)
            if reduced is not None and reduced is not work:
                work, changed = reduced, True

        parts = [work]
        if cfg.split_enabled and is_spread(work):
            parts = split_spread(work, cfg.reading_direction)
            changed = True

        pil_format, quality = self._output_format(src, img)
        target_ext = _FORMAT_EXTENSIONS.get(pil_format)
        if not changed and _SAME_FORMAT.get(src.suffix.lower()) == target_ext:
            return [self._copy(src, stem)]

        dpi = out_dpi or source_dpi
        if len(parts) == 1:
            return [encode(parts[0], stem, pil_format, quality, dpi)]
        return [
            encode(part, stem.with_name(f"{stem.name}{tag}"), pil_format, quality, dpi)
            for tag, part in zip("ab", parts)
        ]

    @staticmethod
    def _copy(src: Path, stem: Path) -> Path:
        dest = stem.with_suffix(src.suffix.lower())
        shutil.copy2(src, dest)
        return dest

    def run(
        self,
        pages: list[Path],
        dest_dir: Path,
        on_page: Optional[Callable[[int, int], None]] = None,
    ) -> list[Path]:
        """Transform pages sequentially into dest_dir, preserving order."""
        out: list[Path] = []
        total = len(pages)
        for index, page in enumerate(pages, start=1):
            out.extend(self.transform_page(page, dest_dir, index))
            if on_page:
                on_page(index, total)
        return out
