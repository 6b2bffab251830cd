"""Conversion request/response models."""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from bdconverter.config import (
    DEFAULT_ARCHIVE_COMPRESSION,
    DEFAULT_CONTAINER,
    DEFAULT_DPI,
    DEFAULT_JPEG_QUALITY,
)
from bdconverter.conversion.errors import InputError


class TaskKind(str, Enum):
    MERGE = "merge"
    CONVERT = "convert"


class SourceKind(str, Enum):
    DOCUMENT = "document"
    ARCHIVE = "archive"
    IMAGES = "images"


class TaskStage(str, Enum):
    RECEIVED = "received"
    ANALYZING = "analyzing"
    EXTRACTING = "extracting"
    RENDERING = "rendering"
    TRANSFORMING = "transforming"
    ASSEMBLING = "assembling"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


class ColorMode(str, Enum):
    COLOR = "color"
    GRAY = "gray"
    MONO = "mono"


class ImageFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    TIFF = "tiff"

    @property
    def extension(self) -> str:
        return {"jpeg": ".jpg", "png": ".png", "tiff": ".tif"}[self.value]

    @property
    def pil_format(self) -> str:
        return self.value.upper()


class SplitMode(str, Enum):
    OFF = "off"
    AUTO = "auto"


class ReadingDirection(str, Enum):
    LTR = "ltr"
    RTL = "rtl"


class ThumbnailStrategy(str, Enum):
    REVEAL = "reveal"  # gray preview first, then color
    STATIC = "static"  # color only


class ContainerKind(str, Enum):
    CBZ = "cbz"
    CBT = "cbt"
    CB7 = "cb7"
    CBR = "cbr"
    ZIP = "zip"
    TAR = "tar"
    SEVEN_ZIP = "7z"
    RAR = "rar"
    PDF = "pdf"
    FOLDER = "folder"

    @property
    def family(self) -> str:
        return {
            "cbz": "zip", "zip": "zip",
            "cbt": "tar", "tar": "tar",
            "cb7": "7z", "7z": "7z",
            "cbr": "rar", "rar": "rar",
            "pdf": "pdf",
            "folder": "folder",
        }[self.value]

    @property
    def extension(self) -> Optional[str]:
        """File extension of the produced artifact; None for a plain folder."""
        if self is ContainerKind.FOLDER:
            return None
        # rar archives keep the comic-archive extension
        if self is ContainerKind.RAR:
            return ".cbr"
        return f".{self.value}"


_SPLIT_ALIASES = {
    "": SplitMode.OFF, "off": SplitMode.OFF, "no": SplitMode.OFF, "none": SplitMode.OFF, "false": SplitMode.OFF,
    "auto": SplitMode.AUTO, "yes": SplitMode.AUTO, "on": SplitMode.AUTO, "true": SplitMode.AUTO,
}
_FORMAT_ALIASES = {"jpg": "jpeg", "jpeg": "jpeg", "png": "png", "tif": "tiff", "tiff": "tiff"}


def _parse_int(value, name: str) -> Optional[int]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        raise InputError(f"Invalid {name}: {value!r}")


def _parse_enum(enum_cls, value, name: str, default):
    text = (value or "").strip().lower()
    if not text:
        return default
    try:
        return enum_cls(text)
    except ValueError:
        raise InputError(f"Invalid {name}: {value!r}")


def _coerce(enum_cls, value, name: str):
    """Enum member for `value`, which may already be one."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise InputError(f"Invalid {name}: {value!r}")


@dataclass
class UploadItem:
    """One uploaded file: client relative path plus where it was staged on disk."""

    relative_path: str
    path: Path
    filename: str = ""

    def __post_init__(self) -> None:
        self.relative_path = self.relative_path.replace("\\", "/").strip("/")
        if not self.filename:
            self.filename = self.relative_path.rsplit("/", 1)[-1]

    @property
    def segments(self) -> list[str]:
        return [p for p in self.relative_path.split("/") if p]

    @property
    def suffix(self) -> str:
        return Path(self.filename).suffix.lower()


@dataclass
class Task:
    kind: TaskKind
    name: str
    files: list[UploadItem]
    source_kind: SourceKind

    @property
    def source(self) -> UploadItem:
        return self.files[0]


@dataclass
class PageSet:
    """Ordered page image files for one task, indexed 1..N."""

    directory: Path
    pages: list[Path]
    effective_count: int

    def __len__(self) -> int:
        return len(self.pages)


@dataclass(frozen=True)
class TransformConfig:
    dpi: Optional[int] = DEFAULT_DPI  # None means original mode
    color_mode: ColorMode = ColorMode.COLOR
    image_format: ImageFormat = ImageFormat.JPEG
    quality: int = DEFAULT_JPEG_QUALITY
    rotation: int = 0
    max_width: Optional[int] = None
    split_mode: SplitMode = SplitMode.OFF
    reading_direction: ReadingDirection = ReadingDirection.LTR
    page_start: Optional[int] = None
    page_end: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "color_mode", _coerce(ColorMode, self.color_mode, "colorMode"))
        object.__setattr__(self, "image_format", _coerce(ImageFormat, self.image_format, "imgFormat"))
        object.__setattr__(self, "split_mode", _coerce(SplitMode, self.split_mode, "splitDouble"))
        object.__setattr__(self, "reading_direction", _coerce(ReadingDirection, self.reading_direction, "readingDir"))
        if self.rotation % 90 != 0:
            raise InputError(f"Rotation must be a multiple of 90, got {self.rotation}")
        object.__setattr__(self, "rotation", self.rotation % 360)
        if not 0 <= self.quality <= 100:
            raise InputError(f"JPEG quality must be within 0-100, got {self.quality}")
        if self.dpi is not None and self.dpi <= 0:
            raise InputError(f"DPI must be positive, got {self.dpi}")
        if self.max_width is not None and self.max_width <= 0:
            object.__setattr__(self, "max_width", None)

    @property
    def original(self) -> bool:
        return self.dpi is None

    @property
    def split_enabled(self) -> bool:
        return self.split_mode is SplitMode.AUTO and not self.original

    @property
    def thumbnail_strategy(self) -> ThumbnailStrategy:
        return ThumbnailStrategy.STATIC if self.original else ThumbnailStrategy.REVEAL

    @classmethod
    def from_form(
        cls,
        dpi: Optional[str] = None,
        color_mode: Optional[str] = None,
        image_format: Optional[str] = None,
        quality: Optional[str] = None,
        rotation: Optional[str] = None,
        max_width: Optional[str] = None,
        split_double: Optional[str] = None,
        reading_dir: Optional[str] = None,
        page_start: Optional[str] = None,
        page_end: Optional[str] = None,
    ) -> "TransformConfig":
        """Build from the raw multipart form fields. Raises InputError on invalid values."""
        dpi_text = (dpi or "").strip().lower()
        if dpi_text == "original":
            dpi_val = None
        else:
            dpi_val = _parse_int(dpi_text, "dpi") or DEFAULT_DPI
        split_text = (split_double or "").strip().lower()
        if split_text not in _SPLIT_ALIASES:
            raise InputError(f"Invalid splitDouble: {split_double!r}")
        fmt_text = (image_format or "").strip().lower()
        if fmt_text and fmt_text not in _FORMAT_ALIASES:
            raise InputError(f"Invalid imgFormat: {image_format!r}")
        quality_val = _parse_int(quality, "compression")
        return cls(
            dpi=dpi_val,
            color_mode=_parse_enum(ColorMode, color_mode, "colorMode", ColorMode.COLOR),
            image_format=ImageFormat(_FORMAT_ALIASES.get(fmt_text, "jpeg")),
            quality=DEFAULT_JPEG_QUALITY if quality_val is None else quality_val,
            rotation=_parse_int(rotation, "rotation") or 0,
            max_width=_parse_int(max_width, "maxWidth"),
            split_mode=_SPLIT_ALIASES[split_text],
            reading_direction=_parse_enum(ReadingDirection, reading_dir, "readingDir", ReadingDirection.LTR),
            page_start=_parse_int(page_start, "pageStart"),
            page_end=_parse_int(page_end, "pageEnd"),
        )


@dataclass(frozen=True)
class ArchiveConfig:
    container: ContainerKind = ContainerKind(DEFAULT_CONTAINER)
    compression: int = DEFAULT_ARCHIVE_COMPRESSION
    original: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "container", _coerce(ContainerKind, self.container, "format"))
        if not 0 <= self.compression <= 9:
            raise InputError(f"Archive compression must be within 0-9, got {self.compression}")

    @property
    def level(self) -> int:
        """Logical 0-9 level actually used; original mode always stores."""
        return 0 if self.original else self.compression

    @classmethod
    def from_form(
        cls,
        container: Optional[str] = None,
        compression: Optional[str] = None,
        original: bool = False,
    ) -> "ArchiveConfig":
        level = _parse_int(compression, "archiveCompression")
        return cls(
            container=_parse_enum(ContainerKind, container, "format", ContainerKind(DEFAULT_CONTAINER)),
            compression=DEFAULT_ARCHIVE_COMPRESSION if level is None else level,
            original=original,
        )


@dataclass
class Result:
    name: str
    path: str
    size: int
    pages: int
    thumbnail: Optional[str] = None

    def to_dict(self, include_thumbnail: bool = True) -> dict:
        out = {"name": self.name, "path": self.path, "size": self.size, "pages": self.pages}
        if include_thumbnail:
            out["thumbnail"] = self.thumbnail
        return out


@dataclass
class TaskFailure:
    name: str
    reason: str

    def to_dict(self) -> dict:
        return {"name": self.name, "reason": self.reason}


@dataclass
class BatchSummary:
    batch_id: str
    request_id: Optional[str] = None
    output_dir: str = ""
    results: list[Result] = field(default_factory=list)
    failures: list[TaskFailure] = field(default_factory=list)

    @property
    def total_files(self) -> int:
        return len(self.results)

    @property
    def total_pages(self) -> int:
        return sum(r.pages for r in self.results)

    @property
    def total_size(self) -> int:
        return sum(r.size for r in self.results)

    @property
    def success(self) -> bool:
        return bool(self.results) or not self.failures

    def to_dict(self, include_thumbnails: bool = True) -> dict:
        return {
            "batchId": self.batch_id,
            "totalFiles": self.total_files,
            "totalPages": self.total_pages,
            "totalSize": self.total_size,
            "outputDir": self.output_dir,
            "files": [r.to_dict(include_thumbnails) for r in self.results],
            "failures": [f.to_dict() for f in self.failures],
        }
