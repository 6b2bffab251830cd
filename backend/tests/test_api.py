from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from bdconverter.config import OUTPUT_DIR, UPLOAD_DIR
from bdconverter.conversion import service as service_module
from bdconverter.conversion.service import ConversionService
from bdconverter.main import app

from conftest import FakeToolRunner, write_fake_pdf, write_image


@pytest.fixture()
def client(monkeypatch):
    svc = ConversionService(runner=FakeToolRunner(), poll_interval=0.01)
    monkeypatch.setattr(service_module, "_conversion_service", svc)
    with TestClient(app) as test_client:
        yield test_client
    svc.shutdown()


def _png(tmp_path: Path, name: str, size=(60, 90)) -> bytes:
    return write_image(tmp_path / name, size).read_bytes()


def test_convert_images_returns_stats_and_stores_batch(client: TestClient, tmp_path: Path) -> None:
    names = ["scan_1.png", "scan_2.png", "scan_3.png"]
    files = [("files", (name, _png(tmp_path, name), "image/png")) for name in names]

    response = client.post("/convert", files=files, data={"format": "cbz", "dpi": "150", "requestId": "req-a"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    stats = body["stats"]
    assert (stats["totalFiles"], stats["totalPages"]) == (1, 3)
    assert stats["files"][0]["name"] == "scan.cbz"
    assert stats["files"][0]["thumbnail"].startswith("data:image/")
    assert list(UPLOAD_DIR.glob(f"{stats['batchId']}_*")) == []

    stored = client.get(f"/api/batch/{stats['batchId']}").json()
    assert stored["status"] == "completed"
    assert stored["request_id"] == "req-a"
    assert "thumbnail" not in stored["summary"]["files"][0]

    download = client.get("/api/output/scan.cbz")
    assert download.status_code == 200
    assert download.content[:2] == b"PK"


def test_convert_folder_upload_uses_relative_paths(client: TestClient, tmp_path: Path) -> None:
    files = [("files", (name, _png(tmp_path, name), "image/png")) for name in ("a.png", "b.png")]

    response = client.post(
        "/api/convert",
        files=files,
        data={"filePaths": json.dumps(["vol1/a.png", "vol1/b.png"]), "format": "folder", "imgFormat": "png"},
    )

    assert response.status_code == 200
    result = response.json()["stats"]["files"][0]
    assert result["name"] == "vol1"
    assert sorted(p.name for p in (OUTPUT_DIR / "vol1").iterdir()) == ["001.png", "002.png"]


def test_convert_document_with_page_range(client: TestClient, tmp_path: Path) -> None:
    pdf = write_fake_pdf(tmp_path / "story.pdf", pages=10).read_bytes()

    response = client.post(
        "/convert",
        files=[("files", ("story.pdf", pdf, "application/pdf"))],
        data={"pageStart": "2", "pageEnd": "4", "format": "cbt"},
    )

    assert response.status_code == 200
    result = response.json()["stats"]["files"][0]
    assert (result["name"], result["pages"]) == ("story.cbt", 3)


def test_convert_without_files_is_rejected(client: TestClient) -> None:
    response = client.post("/convert", data={"format": "cbz"})

    assert response.status_code == 400


def test_convert_rejects_invalid_options(client: TestClient, tmp_path: Path) -> None:
    files = [("files", ("a.png", _png(tmp_path, "a.png"), "image/png"))]

    assert client.post("/convert", files=files, data={"rotation": "45"}).status_code == 400
    assert client.post("/convert", files=files, data={"format": "docx"}).status_code == 400
    assert client.post("/convert", files=files, data={"filePaths": "not json"}).status_code == 400


def test_convert_rejects_unsupported_upload(client: TestClient) -> None:
    response = client.post("/convert", files=[("files", ("notes.txt", b"hello", "text/plain"))])

    assert response.status_code == 400
    assert "Unsupported file type" in response.json()["detail"]
    assert list(UPLOAD_DIR.glob("*notes.txt")) == []


def test_analyze_reports_page_count(client: TestClient, tmp_path: Path) -> None:
    pdf = write_fake_pdf(tmp_path / "book.pdf", pages=7).read_bytes()

    response = client.post("/api/analyze", files={"file": ("book.pdf", pdf, "application/pdf")})

    assert response.status_code == 200
    assert response.json() == {"name": "book.pdf", "kind": "document", "pages": 7}


def test_analyze_rejects_unsupported_upload(client: TestClient) -> None:
    response = client.post("/api/analyze", files={"file": ("notes.txt", b"hello", "text/plain")})

    assert response.status_code == 400


def test_events_requires_request_id(client: TestClient) -> None:
    assert client.get("/events").status_code == 400


def test_unknown_batch_and_output(client: TestClient) -> None:
    assert client.get("/api/batch/does-not-exist").status_code == 404
    assert client.get("/api/output/missing.cbz").status_code == 404
    assert client.get("/api/output/.env").status_code == 400


def test_service_endpoints(client: TestClient) -> None:
    assert client.get("/api/health").json() == {"status": "ok"}
    assert client.get("/version").json()["version"]
    formats = client.get("/api/formats").json()
    assert ".pdf" in formats["document"]
    assert "cbr" in formats["output_container"]
    assert client.post("/client-log", json={"message": "opened settings"}).json() == {"ok": True}
