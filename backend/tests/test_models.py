from __future__ import annotations

import pytest

from bdconverter.conversion.errors import InputError
from bdconverter.conversion.models import (
    ArchiveConfig,
    BatchSummary,
    ColorMode,
    ContainerKind,
    ImageFormat,
    ReadingDirection,
    Result,
    SplitMode,
    TaskFailure,
    ThumbnailStrategy,
    TransformConfig,
)


def test_from_form_parses_client_fields() -> None:
    config = TransformConfig.from_form(
        dpi="300",
        color_mode="gray",
        image_format="png",
        quality="70",
        rotation="-90",
        max_width="1600",
        split_double="auto",
        reading_dir="rtl",
        page_start="2",
        page_end="",
    )

    assert config.dpi == 300
    assert config.color_mode is ColorMode.GRAY
    assert config.image_format is ImageFormat.PNG
    assert config.quality == 70
    assert config.rotation == 270
    assert config.max_width == 1600
    assert config.split_mode is SplitMode.AUTO
    assert config.reading_direction is ReadingDirection.RTL
    assert (config.page_start, config.page_end) == (2, None)
    assert config.split_enabled


def test_from_form_defaults() -> None:
    config = TransformConfig.from_form()

    assert config.dpi == 225
    assert config.quality == 80
    assert config.split_mode is SplitMode.OFF
    assert config.thumbnail_strategy is ThumbnailStrategy.REVEAL


def test_original_mode_disables_split_and_uses_static_thumbnail() -> None:
    config = TransformConfig.from_form(dpi="original", split_double="yes", max_width="0")

    assert config.original
    assert not config.split_enabled
    assert config.max_width is None
    assert config.thumbnail_strategy is ThumbnailStrategy.STATIC


@pytest.mark.parametrize(
    "field, value",
    [
        ("rotation", "45"),
        ("quality", "120"),
        ("dpi", "high"),
        ("color_mode", "sepia"),
        ("image_format", "gif"),
        ("split_double", "maybe"),
        ("page_start", "one"),
    ],
)
def test_from_form_rejects_invalid_values(field: str, value: str) -> None:
    with pytest.raises(InputError):
        TransformConfig.from_form(**{field: value})


def test_archive_config_original_forces_store() -> None:
    config = ArchiveConfig.from_form("cbr", "9", original=True)

    assert config.container is ContainerKind.CBR
    assert config.compression == 9
    assert config.level == 0
    assert ArchiveConfig.from_form("", None).container is ContainerKind.CBZ


def test_archive_config_rejects_unknown_container_and_level() -> None:
    with pytest.raises(InputError):
        ArchiveConfig.from_form("docx", "5")
    with pytest.raises(InputError):
        ArchiveConfig.from_form("cbz", "12")


def test_batch_summary_totals_and_wire_shape() -> None:
    summary = BatchSummary(
        batch_id="b1",
        output_dir="/out",
        results=[Result("a.cbz", "/out/a.cbz", 100, 5, "data:x"), Result("b.cbz", "/out/b.cbz", 50, 3)],
        failures=[TaskFailure("c", "Empty result")],
    )

    data = summary.to_dict(include_thumbnails=False)

    assert summary.success
    assert (data["totalFiles"], data["totalPages"], data["totalSize"]) == (2, 8, 150)
    assert "thumbnail" not in data["files"][0]
    assert data["failures"] == [{"name": "c", "reason": "Empty result"}]
    assert not BatchSummary("b2", failures=[TaskFailure("c", "x")]).success


def test_plain_string_options_become_enums() -> None:
    config = TransformConfig(image_format="png", color_mode="gray", split_mode="auto", reading_direction="rtl")

    assert config.image_format is ImageFormat.PNG
    assert config.image_format.pil_format == "PNG"
    assert config.color_mode is ColorMode.GRAY
    assert config.split_mode is SplitMode.AUTO
    assert config.reading_direction is ReadingDirection.RTL
    assert ArchiveConfig(container="cb7").container is ContainerKind.CB7
    with pytest.raises(InputError):
        TransformConfig(image_format="gif")
    with pytest.raises(InputError):
        ArchiveConfig(container="docx")
