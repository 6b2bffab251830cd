from __future__ import annotations

import re
import tarfile
import zipfile
from pathlib import Path

import pytest
from PIL import Image

from bdconverter.conversion.assembler import ArchiveAssembler, output_name, rar_level, seven_zip_level
from bdconverter.conversion.errors import AssemblyError
from bdconverter.conversion.models import ArchiveConfig, ContainerKind
from bdconverter.conversion.tools import ToolResult

from conftest import FakeToolRunner, write_image


@pytest.fixture()
def pages(tmp_path: Path) -> list[Path]:
    page_dir = tmp_path / "pages"
    return [
        write_image(page_dir / "001.jpg", (100, 150)),
        write_image(page_dir / "002.jpg", (200, 100)),
        write_image(page_dir / "003.jpg", (120, 160)),
    ]


@pytest.fixture()
def assembler(runner: FakeToolRunner, tmp_path: Path) -> ArchiveAssembler:
    return ArchiveAssembler(runner, tmp_path / "output", tmp_path / "staging")


def test_rar_level_breakpoints() -> None:
    assert [rar_level(level) for level in range(10)] == [0, 1, 3, 2, 3, 3, 3, 4, 3, 5]


def test_seven_zip_level_is_clamped() -> None:
    assert seven_zip_level(0) == 0
    assert seven_zip_level(9) == 9
    assert seven_zip_level(12) == 9


def test_output_names_per_container() -> None:
    assert output_name("Tome 1", ContainerKind.CBZ) == "Tome 1.cbz"
    assert output_name("Tome 1", ContainerKind.RAR) == "Tome 1.cbr"
    assert output_name("Tome 1", ContainerKind.SEVEN_ZIP) == "Tome 1.7z"
    assert output_name("Tome 1", ContainerKind.FOLDER) == "Tome 1"


def test_cbz_keeps_page_order(assembler: ArchiveAssembler, pages: list[Path]) -> None:
    out = assembler.assemble(pages[0].parent, pages, "book", ArchiveConfig(ContainerKind.CBZ, 6))

    assert out.name == "book.cbz"
    with zipfile.ZipFile(out) as zf:
        assert zf.namelist() == ["001.jpg", "002.jpg", "003.jpg"]
        assert {i.compress_type for i in zf.infolist()} == {zipfile.ZIP_DEFLATED}


def test_original_mode_stores_without_compression(assembler: ArchiveAssembler, pages: list[Path]) -> None:
    config = ArchiveConfig(ContainerKind.CBZ, 9, original=True)

    out = assembler.assemble(pages[0].parent, pages, "book", config)

    assert config.level == 0
    with zipfile.ZipFile(out) as zf:
        assert {i.compress_type for i in zf.infolist()} == {zipfile.ZIP_STORED}


def test_seven_zip_and_rar_levels_reach_the_packer(
    assembler: ArchiveAssembler, runner: FakeToolRunner, pages: list[Path]
) -> None:
    assembler.assemble(pages[0].parent, pages, "a", ArchiveConfig(ContainerKind.CB7, 7))
    assembler.assemble(pages[0].parent, pages, "b", ArchiveConfig(ContainerKind.CBR, 7))
    assembler.assemble(pages[0].parent, pages, "c", ArchiveConfig(ContainerKind.CBR, 7, original=True))

    assert "-mx=7" in runner.calls[0]
    assert "-m4" in runner.calls[1]
    assert "-m0" in runner.calls[2]
    assert runner.calls[0][-3:] == ["001.jpg", "002.jpg", "003.jpg"]
    assert (assembler.output_dir / "b.cbr").is_file()


def test_tar_is_never_compressed(assembler: ArchiveAssembler, pages: list[Path]) -> None:
    out = assembler.assemble(pages[0].parent, pages, "book", ArchiveConfig(ContainerKind.CBT, 9))

    with tarfile.open(out, "r:") as tf:
        assert tf.getnames() == ["001.jpg", "002.jpg", "003.jpg"]


def test_pdf_pages_match_image_pixels(assembler: ArchiveAssembler, pages: list[Path]) -> None:
    out = assembler.assemble(pages[0].parent, pages, "book", ArchiveConfig(ContainerKind.PDF))

    boxes = re.findall(rb"/MediaBox\s*\[\s*0\s+0\s+([\d.]+)\s+([\d.]+)\s*\]", out.read_bytes())
    assert [(float(w), float(h)) for w, h in boxes] == [(100, 150), (200, 100), (120, 160)]


def test_folder_output_replaces_existing(assembler: ArchiveAssembler, pages: list[Path]) -> None:
    stale = assembler.output_dir / "book"
    stale.mkdir(parents=True)
    (stale / "old.jpg").write_bytes(b"old")

    out = assembler.assemble(pages[0].parent, pages, "book", ArchiveConfig(ContainerKind.FOLDER))

    assert out == stale
    assert sorted(p.name for p in out.iterdir()) == ["001.jpg", "002.jpg", "003.jpg"]
    with Image.open(out / "002.jpg") as img:
        assert img.size == (200, 100)


def test_missing_artifact_is_an_assembly_error(tmp_path: Path, pages: list[Path]) -> None:
    class SilentPacker(FakeToolRunner):
        def _fake_seven_zip(self, args, cwd):
            return super()._fake_seven_zip(args, cwd) if args[1] == "x" else self._ok(args)

        @staticmethod
        def _ok(args):
            return ToolResult(args, 0, "", "")

    assembler = ArchiveAssembler(SilentPacker(), tmp_path / "output", tmp_path / "staging")

    with pytest.raises(AssemblyError):
        assembler.assemble(pages[0].parent, pages, "book", ArchiveConfig(ContainerKind.CB7))


def test_pdf_embeds_jpeg_pages_unchanged(assembler: ArchiveAssembler, pages: list[Path]) -> None:
    out = assembler.assemble(pages[0].parent, pages, "book", ArchiveConfig(ContainerKind.PDF, original=True))

    data = out.read_bytes()
    for page in pages:
        assert page.read_bytes() in data


def test_pdf_with_many_pages_stays_within_open_file_limit(assembler: ArchiveAssembler, tmp_path: Path) -> None:
    resource = pytest.importorskip("resource")
    many = [write_image(tmp_path / "many" / f"{i:03d}.jpg", (8, 12)) for i in range(1, 301)]
    soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    resource.setrlimit(resource.RLIMIT_NOFILE, (min(soft, 128), hard))
    try:
        out = assembler.assemble(many[0].parent, many, "long", ArchiveConfig(ContainerKind.PDF))
    finally:
        resource.setrlimit(resource.RLIMIT_NOFILE, (soft, hard))

    assert len(re.findall(rb"/Type\s*/Page\b(?!s)", out.read_bytes())) == 300


def test_pdf_flattens_transparent_pages(assembler: ArchiveAssembler, tmp_path: Path) -> None:
    page = tmp_path / "alpha" / "001.png"
    page.parent.mkdir()
    Image.new("RGBA", (40, 60), (255, 0, 0, 128)).save(page)

    out = assembler.assemble(page.parent, [page], "alpha", ArchiveConfig(ContainerKind.PDF))

    boxes = re.findall(rb"/MediaBox\s*\[\s*0\s+0\s+([\d.]+)\s+([\d.]+)\s*\]", out.read_bytes())
    assert [(float(w), float(h)) for w, h in boxes] == [(40, 60)]
    assert not list(assembler.staging_dir.glob(".*_flat"))
