from __future__ import annotations

import os
import re
import tempfile
import zipfile
from pathlib import Path
from typing import Callable, Optional

import pytest
from PIL import Image

# Point every storage location at a scratch directory before bdconverter.config is imported.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="bdconverter-tests-"))
os.environ["UPLOAD_DIR"] = str(_TEST_ROOT / "upload")
os.environ["WORK_DIR"] = str(_TEST_ROOT / "temp")
os.environ["OUTPUT_DIR"] = str(_TEST_ROOT / "output")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'test.db'}"
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from bdconverter.conversion.models import UploadItem  # noqa: E402
from bdconverter.conversion.service import ConversionService  # noqa: E402
from bdconverter.conversion.tools import ToolResult, ToolRunner  # noqa: E402

_FAKE_PDF = re.compile(rb"pages=(\d+) size=(\d+)x(\d+)")


def write_fake_pdf(path: Path, pages: int, size: tuple[int, int] = (120, 160)) -> Path:
    """A stand-in document the fake poppler tools understand."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"%%PDF-1.4\n%% fake pages=%d size=%dx%d\n" % (pages, size[0], size[1]))
    return path


def write_image(
    path: Path,
    size: tuple[int, int] = (100, 140),
    color=(200, 30, 30),
    dpi: Optional[int] = None,
) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new("RGB", size, color)
    kwargs = {"dpi": (dpi, dpi)} if dpi else {}
    img.save(path, **kwargs)
    return path


class FakeToolRunner(ToolRunner):
    """Scripted stand-ins for pdfinfo, pdftoppm, pdfimages, 7z, rar, unrar and bsdtar.

    Archives are written as zip files whatever the requested format. unrar and
    bsdtar always fail; unrar leaves a partial file behind first.
    """

    def __init__(self, fail_tools: Optional[set[str]] = None):
        super().__init__(timeout=60)
        self.calls: list[list[str]] = []
        self.fail_tools = set(fail_tools or ())

    def names(self) -> list[str]:
        return [Path(c[0]).name for c in self.calls]

    def _execute(self, args: list[str], cwd: Optional[Path], timeout: float) -> ToolResult:
        self.calls.append(list(args))
        tool = Path(args[0]).name
        if tool in self.fail_tools:
            return ToolResult(args, 1, "", f"{tool}: simulated failure")
        handler = getattr(self, f"_fake_{tool.replace('7z', 'seven_zip')}", None)
        if handler is None:
            return ToolResult(args, 127, "", f"{tool}: unknown fake tool")
        return handler(args, cwd)

    @staticmethod
    def _read_pdf(path: Path) -> Optional[tuple[int, int, int]]:
        match = _FAKE_PDF.search(Path(path).read_bytes())
        if not match:
            return None
        return int(match.group(1)), int(match.group(2)), int(match.group(3))

    @staticmethod
    def _range(args: list[str], total: int) -> tuple[int, int]:
        first = int(args[args.index("-f") + 1]) if "-f" in args else 1
        last = int(args[args.index("-l") + 1]) if "-l" in args else total
        return max(1, first), min(total, last)

    def _fake_pdfinfo(self, args, cwd):
        info = self._read_pdf(Path(args[1]))
        if info is None:
            return ToolResult(args, 1, "", "Syntax Error: Couldn't find trailer dictionary")
        return ToolResult(args, 0, f"Producer:       fake\nPages:          {info[0]}\n", "")

    def _fake_pdftoppm(self, args, cwd):
        document, prefix = Path(args[-2]), Path(args[-1])
        info = self._read_pdf(document)
        if info is None:
            return ToolResult(args, 1, "", "Syntax Error")
        total, width, height = info
        first, last = self._range(args, total)
        ext = ".png" if "-png" in args else ".tif" if "-tiff" in args else ".jpg"
        dpi = int(args[args.index("-r") + 1]) if "-r" in args else 150
        if "-scale-to" in args:
            scale = int(args[args.index("-scale-to") + 1])
            ratio = scale / max(width, height)
            width, height = max(1, int(width * ratio)), max(1, int(height * ratio))
        digits = len(str(total))
        for page in range(first, last + 1):
            write_image(prefix.with_name(f"{prefix.name}-{page:0{digits}d}{ext}"), (width, height), dpi=dpi)
        return ToolResult(args, 0, "", "")

    def _fake_pdfimages(self, args, cwd):
        document, prefix = Path(args[-2]), Path(args[-1])
        info = self._read_pdf(document)
        if info is None:
            return ToolResult(args, 1, "", "Syntax Error")
        total, width, height = info
        first, last = self._range(args, total)
        for index, _ in enumerate(range(first, last + 1)):
            write_image(prefix.with_name(f"{prefix.name}-{index:03d}.jpg"), (width, height), dpi=72)
        return ToolResult(args, 0, "", "")

    def _fake_seven_zip(self, args, cwd):
        if args[1] == "a":
            staged = Path(args[4])
            with zipfile.ZipFile(staged, "w") as zf:
                for name in args[5:]:
                    zf.write(Path(cwd) / name, name)
            return ToolResult(args, 0, "Everything is Ok", "")
        if args[1] == "x":
            dest = Path(next(a for a in args if a.startswith("-o"))[2:])
            try:
                with zipfile.ZipFile(args[-1]) as zf:
                    zf.extractall(dest)
            except zipfile.BadZipFile:
                return ToolResult(args, 2, "", "ERROR: Can not open the file as archive")
            return ToolResult(args, 0, "Everything is Ok", "")
        return ToolResult(args, 7, "", "Command Line Error")

    def _fake_rar(self, args, cwd):
        staged = Path(args[5])
        with zipfile.ZipFile(staged, "w") as zf:
            for name in args[6:]:
                zf.write(Path(cwd) / name, name)
        return ToolResult(args, 0, "Done", "")

    def _fake_unrar(self, args, cwd):
        dest = Path(args[-1])
        dest.mkdir(parents=True, exist_ok=True)
        (dest / "partial.jpg").write_bytes(b"\xff\xd8 truncated")
        return ToolResult(args, 3, "", "unrar: CRC failed in the encrypted file")

    def _fake_bsdtar(self, args, cwd):
        return ToolResult(args, 1, "", "bsdtar: Unrecognized archive format")


@pytest.fixture()
def runner() -> FakeToolRunner:
    return FakeToolRunner()


@pytest.fixture()
def image_factory(tmp_path: Path) -> Callable[..., Path]:
    def _create(name: str, size: tuple[int, int] = (100, 140), color=(200, 30, 30), dpi: Optional[int] = None) -> Path:
        return write_image(tmp_path / "images" / name, size, color, dpi)

    return _create


@pytest.fixture()
def pdf_factory(tmp_path: Path) -> Callable[..., Path]:
    def _create(name: str, pages: int = 10, size: tuple[int, int] = (120, 160)) -> Path:
        return write_fake_pdf(tmp_path / "docs" / name, pages, size)

    return _create


@pytest.fixture()
def zip_factory(tmp_path: Path) -> Callable[..., Path]:
    """Build a page-image archive; `extras` are non-image entries (name -> bytes)."""

    def _create(
        name: str,
        images: list[str],
        extras: Optional[dict[str, bytes]] = None,
        header: bytes = b"",
    ) -> Path:
        path = tmp_path / "archives" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        scratch = tmp_path / "archive-src" / name
        with zipfile.ZipFile(path, "w") as zf:
            for index, entry in enumerate(images):
                src = write_image(scratch / f"{index}{Path(entry).suffix}", (80 + index, 120))
                zf.write(src, entry)
            for entry, data in (extras or {}).items():
                zf.writestr(entry, data)
        if header:
            # zipfile still reads an archive with leading bytes
            path.write_bytes(header + path.read_bytes())
        return path

    return _create


@pytest.fixture()
def service(tmp_path: Path, runner: FakeToolRunner) -> ConversionService:
    svc = ConversionService(
        runner=runner,
        upload_dir=tmp_path / "upload",
        work_dir=tmp_path / "work",
        output_dir=tmp_path / "output",
        poll_interval=0.01,
    )
    yield svc
    svc.shutdown()


@pytest.fixture()
def stage_upload(service: ConversionService) -> Callable[[Path, Optional[str]], UploadItem]:
    """Copy a file into the service's upload area the way the HTTP layer does."""

    def _stage(src: Path, relative_path: Optional[str] = None) -> UploadItem:
        dest = service.upload_dir / f"up_{len(list(service.upload_dir.iterdir()))}_{src.name}"
        dest.write_bytes(src.read_bytes())
        return UploadItem(relative_path=relative_path or src.name, path=dest, filename=Path(relative_path or src.name).name)

    return _stage
