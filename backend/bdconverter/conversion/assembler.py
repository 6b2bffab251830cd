"""Packs a renumbered page directory into the requested container."""
import logging
import shutil
import tarfile
import zipfile
from pathlib import Path

import img2pdf
from PIL import Image

from bdconverter.config import RAR_PATH, SEVEN_ZIP_PATH
from bdconverter.conversion.errors import AssemblyError
from bdconverter.conversion.models import ArchiveConfig, ContainerKind
from bdconverter.conversion.tools import ToolRunner

logger = logging.getLogger("bdconverter.assembler")

# Logical 0-9 level -> rar -m level (0-5). Levels off the breakpoints use rar Normal.
RAR_LEVEL_BREAKPOINTS = {0: 0, 1: 1, 3: 2, 5: 3, 7: 4, 9: 5}
RAR_DEFAULT_LEVEL = 3


def rar_level(level: int) -> int:
    return RAR_LEVEL_BREAKPOINTS.get(level, RAR_DEFAULT_LEVEL)


def seven_zip_level(level: int) -> int:
    """7-Zip -mx accepts 0-9 directly."""
    return max(0, min(9, level))


def zip_compression(level: int) -> tuple[int, int]:
    """(compression, compresslevel) for zipfile. Level 0 stores."""
    if level <= 0:
        return zipfile.ZIP_STORED, 0
    return zipfile.ZIP_DEFLATED, min(9, level)


def output_name(base_name: str, container: ContainerKind) -> str:
    ext = container.extension
    return f"{base_name}{ext}" if ext else base_name


class ArchiveAssembler:
    """Builds archives in `staging_dir` and moves the finished artifact to `output_dir`."""

    def __init__(
        self,
        runner: ToolRunner,
        output_dir: Path,
        staging_dir: Path,
        seven_zip: str = SEVEN_ZIP_PATH,
        rar: str = RAR_PATH,
    ):
        self.runner = runner
        self.output_dir = output_dir
        self.staging_dir = staging_dir
        self.seven_zip = seven_zip
        self.rar = rar

    def assemble(self, page_dir: Path, pages: list[Path], base_name: str, config: ArchiveConfig) -> Path:
        """Pack `pages` (already renumbered, in final order). Returns the persisted output path."""
        container = config.container
        name = output_name(base_name, container)
        family = container.family
        if family == "folder":
            return self._folder(pages, self.output_dir / name)

        self.staging_dir.mkdir(parents=True, exist_ok=True)
        staged = self.staging_dir / name
        staged.unlink(missing_ok=True)
        level = config.level
        if family == "zip":
            self._zip(pages, staged, level)
        elif family == "tar":
            self._tar(pages, staged)
        elif family == "7z":
            self.runner.run(
                [self.seven_zip, "a", "-t7z", f"-mx={seven_zip_level(level)}", staged, *[p.name for p in pages]],
                cwd=page_dir,
            )
        elif family == "rar":
            self.runner.run(
                [self.rar, "a", "-r", f"-m{rar_level(level)}", "-ep1", staged, *[p.name for p in pages]],
                cwd=page_dir,
            )
        elif family == "pdf":
            self._pdf(pages, staged)
        if not staged.is_file():
            raise AssemblyError(f"Expected output {name} was not produced")

        final = self.output_dir / name
        self.output_dir.mkdir(parents=True, exist_ok=True)
        shutil.move(str(staged), str(final))
        logger.info("Created %s with %s page(s) (container=%s, level=%s)", final.name, len(pages), container.value, level)
        return final

    def _zip(self, pages: list[Path], dest: Path, level: int) -> None:
        compression, compresslevel = zip_compression(level)
        kwargs = {"compresslevel": compresslevel} if compression == zipfile.ZIP_DEFLATED else {}
        with zipfile.ZipFile(dest, "w", compression, **kwargs) as zf:
            for page in pages:
                zf.write(page, page.name)

    def _tar(self, pages: list[Path], dest: Path) -> None:
        with tarfile.open(dest, "w") as tf:
            for page in pages:
                tf.add(page, arcname=page.name)

    def _pdf(self, pages: list[Path], dest: Path) -> None:
        """One page per image at 72 dpi, so each page is exactly the image's pixel size.

        img2pdf reads the pages one file at a time and embeds JPEG data as-is.
        Pages with transparency are flattened onto white first.
        """
        flat_dir = dest.with_name(f".{dest.stem}_flat")
        try:
            sources = [str(self._pdf_source(page, flat_dir)) for page in pages]
            layout = img2pdf.get_fixed_dpi_layout_fun((72, 72))
            with open(dest, "wb") as fh:
                img2pdf.convert(sources, layout_fun=layout, engine=img2pdf.Engine.internal, outputstream=fh)
        except (img2pdf.ImageOpenError, img2pdf.AlphaChannelError, img2pdf.PdfTooLargeError) as e:
            dest.unlink(missing_ok=True)
            raise AssemblyError(f"Could not build {dest.name}: {e}")
        finally:
            shutil.rmtree(flat_dir, ignore_errors=True)

    @staticmethod
    def _pdf_source(page: Path, flat_dir: Path) -> Path:
        with Image.open(page) as img:
            has_alpha = img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info)
            if not has_alpha:
                return page
            rgba = img.convert("RGBA")
            flat = Image.new("RGB", rgba.size, (255, 255, 255))
            flat.paste(rgba, mask=rgba.getchannel("A"))
        flat_dir.mkdir(parents=True, exist_ok=True)
        out = flat_dir / f"{page.stem}.png"
        flat.save(out, format="PNG")
        return out

    def _folder(self, pages: list[Path], dest: Path) -> Path:
        if dest.is_dir():
            shutil.rmtree(dest)
        elif dest.exists():
            dest.unlink()
        dest.mkdir(parents=True)
        for page in pages:
            shutil.copy2(page, dest / page.name)
        logger.info("Copied %s page(s) to folder %s", len(pages), dest)
        return dest
