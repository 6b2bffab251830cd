"""Page-image archive extraction with a fallback chain of extractors."""
import logging
import shutil
import tarfile
import zipfile
import zlib
from pathlib import Path
from typing import Callable, Optional

from bdconverter.config import BSDTAR_PATH, SEVEN_ZIP_PATH, UNRAR_PATH
from bdconverter.conversion.errors import ExternalToolError, ResolutionError
from bdconverter.conversion.pages import is_image_file, scan_images
from bdconverter.conversion.tools import ToolRunner

logger = logging.getLogger("bdconverter.extract")

_EXTENSION_FORMATS = {
    ".cbz": "zip", ".zip": "zip",
    ".cbr": "rar", ".rar": "rar",
    ".cb7": "7z", ".7z": "7z",
    ".cbt": "tar", ".tar": "tar",
    ".pdf": "pdf",
}


def sniff_format(path: Path) -> Optional[str]:
    """Container format from the file signature, falling back to the extension."""
    try:
        with open(path, "rb") as f:
            head = f.read(512)
    except OSError:
        head = b""
    if head.startswith(b"%PDF"):
        return "pdf"
    if head.startswith(b"PK\x03\x04") or head.startswith(b"PK\x05\x06"):
        return "zip"
    if head.startswith(b"Rar!\x1a\x07"):
        return "rar"
    if head.startswith(b"7z\xbc\xaf\x27\x1c"):
        return "7z"
    if len(head) >= 262 and head[257:262] == b"ustar":
        return "tar"
    return _EXTENSION_FORMATS.get(path.suffix.lower())


class ArchiveExtractor:
    """Unpacks an archive into a directory, trying each extractor for its format in turn.

    The target directory is emptied before every attempt, so the pages found
    afterwards come from the extractor that succeeded and nothing else.
    """

    def __init__(
        self,
        runner: ToolRunner,
        seven_zip: str = SEVEN_ZIP_PATH,
        unrar: str = UNRAR_PATH,
        bsdtar: str = BSDTAR_PATH,
    ):
        self.runner = runner
        self.seven_zip = seven_zip
        self.unrar = unrar
        self.bsdtar = bsdtar

    def _zipfile(self, archive: Path, dest: Path) -> None:
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(dest)

    def _tarfile(self, archive: Path, dest: Path) -> None:
        if not hasattr(tarfile, "data_filter"):
            # interpreter without extraction filters; leave the archive to the CLI extractors
            raise tarfile.TarError("tarfile extraction filters unavailable")
        with tarfile.open(archive) as tf:
            tf.extractall(dest, filter="data")

    def _seven_zip(self, archive: Path, dest: Path) -> None:
        self.runner.run([self.seven_zip, "x", "-y", f"-o{dest}", archive])

    def _unrar(self, archive: Path, dest: Path) -> None:
        self.runner.run([self.unrar, "x", "-o+", "-y", archive, f"{dest}/"])

    def _bsdtar(self, archive: Path, dest: Path) -> None:
        self.runner.run([self.bsdtar, "-xf", archive, "-C", dest])

    def chain(self, fmt: Optional[str]) -> list[tuple[str, Callable[[Path, Path], None]]]:
        if fmt == "zip":
            return [("zipfile", self._zipfile), ("7z", self._seven_zip), ("bsdtar", self._bsdtar)]
        if fmt == "rar":
            return [("unrar", self._unrar), ("7z", self._seven_zip), ("bsdtar", self._bsdtar)]
        if fmt == "tar":
            return [("tarfile", self._tarfile), ("7z", self._seven_zip), ("bsdtar", self._bsdtar)]
        return [("7z", self._seven_zip), ("bsdtar", self._bsdtar)]

    def extract(self, archive: Path, dest: Path) -> list[Path]:
        """Extract and return the page images found, in byte order of their path."""
        fmt = sniff_format(archive)
        errors = []
        for name, extractor in self.chain(fmt):
            shutil.rmtree(dest, ignore_errors=True)
            dest.mkdir(parents=True, exist_ok=True)
            try:
                extractor(archive, dest)
            except (
                ExternalToolError, OSError, EOFError, zlib.error,
                zipfile.BadZipFile, tarfile.TarError, RuntimeError,
            ) as e:
                logger.warning("Extractor %s failed for %s: %s", name, archive.name, e)
                errors.append(f"{name}: {e}")
                continue
            images = scan_images(dest)
            if not images:
                raise ResolutionError(f"Archive {archive.name} contains no recognized images")
            logger.info("Extracted %s page(s) from %s with %s", len(images), archive.name, name)
            return images
        raise ExternalToolError("extract", f"Could not extract {archive.name}", diagnostics="\n".join(errors))

    def count_pages(self, archive: Path, scratch: Path) -> int:
        """Number of page images in the archive. Zip listings are read without extracting."""
        if sniff_format(archive) == "zip":
            try:
                with zipfile.ZipFile(archive) as zf:
                    return sum(
                        1 for info in zf.infolist()
                        if not info.is_dir()
                        and not any(part.startswith(".") or part == "__MACOSX" for part in Path(info.filename).parts)
                        and is_image_file(Path(info.filename))
                    )
            except zipfile.BadZipFile:
                logger.warning("Zip listing failed for %s, extracting instead", archive.name)
        try:
            return len(self.extract(archive, scratch))
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
