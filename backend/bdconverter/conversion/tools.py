"""External tool invocation and the poppler rasterizer wrapper."""
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from bdconverter.config import (
    PDFIMAGES_PATH,
    PDFINFO_PATH,
    PDFTOPPM_PATH,
    TOOL_TIMEOUT_SECONDS,
)
from bdconverter.conversion.errors import ExternalToolError
from bdconverter.conversion.models import ColorMode, ImageFormat
from bdconverter.conversion.pages import natural_sort_key

logger = logging.getLogger("bdconverter.tools")

_PAGES_LINE = re.compile(r"^Pages:\s+(\d+)", re.MULTILINE)


@dataclass
class ToolResult:
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""


class ToolRunner:
    """Runs external commands with a hard timeout, capturing diagnostics."""

    def __init__(self, timeout: float = TOOL_TIMEOUT_SECONDS):
        self.timeout = timeout

    def _execute(self, args: list[str], cwd: Optional[Path], timeout: float) -> ToolResult:
        completed = subprocess.run(
            args,
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
        )
        return ToolResult(args, completed.returncode, completed.stdout or "", completed.stderr or "")

    def run(
        self,
        args: Sequence,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> ToolResult:
        """Run a command to completion. Raises ExternalToolError unless it exits 0 (when check)."""
        args = [str(a) for a in args]
        tool = Path(args[0]).name
        logger.debug("CMD: %s (cwd=%s)", " ".join(args), cwd)
        try:
            result = self._execute(args, cwd, timeout or self.timeout)
        except FileNotFoundError:
            raise ExternalToolError(tool, f"{tool} not found. Install it or set its *_PATH variable.")
        except subprocess.TimeoutExpired as e:
            stderr = e.stderr.decode(errors="replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
            raise ExternalToolError(tool, f"{tool} timed out after {e.timeout:.0f}s", diagnostics=stderr)
        if check and result.returncode != 0:
            logger.error("%s failed (status %s): %s", tool, result.returncode, result.stderr.strip())
            raise ExternalToolError(
                tool,
                returncode=result.returncode,
                diagnostics=result.stderr or result.stdout,
            )
        return result


class Rasterizer:
    """Poppler front-end: page count, page rendering and verbatim image extraction."""

    def __init__(
        self,
        runner: ToolRunner,
        pdftoppm: str = PDFTOPPM_PATH,
        pdfimages: str = PDFIMAGES_PATH,
        pdfinfo: str = PDFINFO_PATH,
    ):
        self.runner = runner
        self.pdftoppm = pdftoppm
        self.pdfimages = pdfimages
        self.pdfinfo = pdfinfo

    def page_count(self, document: Path) -> Optional[int]:
        """Total page count, or None when the metadata query fails."""
        try:
            result = self.runner.run([self.pdfinfo, document])
        except ExternalToolError as e:
            logger.warning("Page count unavailable for %s: %s", document.name, e)
            return None
        match = _PAGES_LINE.search(result.stdout)
        return int(match.group(1)) if match else None

    @staticmethod
    def _range_args(first: Optional[int], last: Optional[int]) -> list[str]:
        args = []
        if first is not None:
            args += ["-f", str(first)]
        if last is not None:
            args += ["-l", str(last)]
        return args

    def render(
        self,
        document: Path,
        out_prefix: Path,
        dpi: int,
        image_format: ImageFormat = ImageFormat.JPEG,
        color_mode: ColorMode = ColorMode.COLOR,
        quality: Optional[int] = None,
        first: Optional[int] = None,
        last: Optional[int] = None,
    ) -> None:
        """Render each page in range to <out_prefix>-<n>.<ext>."""
        args = [self.pdftoppm, "-r", str(dpi)]
        if image_format is ImageFormat.PNG:
            args.append("-png")
            if color_mode is ColorMode.GRAY:
                args.append("-gray")
            elif color_mode is ColorMode.MONO:
                args.append("-mono")
        elif image_format is ImageFormat.TIFF:
            args.append("-tiff")
            if color_mode is ColorMode.GRAY:
                args.append("-gray")
            elif color_mode is ColorMode.MONO:
                args.append("-mono")
        else:
            args.append("-jpeg")
            if quality is not None:
                args += ["-jpegopt", f"quality={quality}"]
            if color_mode in (ColorMode.GRAY, ColorMode.MONO):
                args.append("-gray")
        args += self._range_args(first, last)
        args += [document, out_prefix]
        self.runner.run(args)

    def extract_images(
        self,
        document: Path,
        out_prefix: Path,
        first: Optional[int] = None,
        last: Optional[int] = None,
    ) -> None:
        """Dump embedded images as-is (no rendering, no recompression)."""
        args = [self.pdfimages, "-all"] + self._range_args(first, last) + [document, out_prefix]
        self.runner.run(args)

    def render_preview(self, document: Path, out_prefix: Path, size: int) -> Optional[Path]:
        """Render page 1 scaled to `size` on its longest side. Returns the file or None."""
        args = [self.pdftoppm, "-jpeg", "-scale-to", str(size), "-f", "1", "-l", "1", document, out_prefix]
        try:
            self.runner.run(args)
        except ExternalToolError as e:
            logger.warning("Preview render failed for %s: %s", document.name, e)
            return None
        candidates = sorted(out_prefix.parent.glob(f"{out_prefix.name}*.jpg"), key=natural_sort_key)
        return candidates[0] if candidates else None
