"""API routes for upload, conversion and progress streaming."""
import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Body, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError

from bdconverter import __version__
from bdconverter.batch import create_batch, get_batch, set_batch_completed, set_batch_failed
from bdconverter.config import (
    ARCHIVE_EXTENSIONS,
    CONTAINER_FORMATS,
    DOCUMENT_EXTENSIONS,
    IMAGE_EXTENSIONS,
    IMAGE_OUTPUT_FORMATS,
    MAX_UPLOAD_SIZE_BYTES,
    OUTPUT_DIR,
    UPLOAD_DIR,
)
from bdconverter.conversion.errors import BatchError, ConversionError, InputError
from bdconverter.conversion.models import ArchiveConfig, BatchSummary, TransformConfig, UploadItem
from bdconverter.conversion.service import ConversionService, get_conversion_service

logger = logging.getLogger("bdconverter.api")
ui_logger = logging.getLogger("bdconverter.ui")

router = APIRouter(prefix="/api", tags=["converter"])
# Paths the web client calls without the /api prefix
root_router = APIRouter(tags=["converter"])

SSE_KEEPALIVE_SECONDS = 15.0


async def _save_upload(file: UploadFile, batch_id: str) -> Path:
    """Stream one upload to UPLOAD_DIR in chunks. Raises 413 past the size limit."""
    safe_name = f"{batch_id}_{uuid.uuid4().hex[:8]}_{Path(file.filename or 'upload').name}"
    dest = UPLOAD_DIR / safe_name
    total = 0
    with open(dest, "wb") as f:
        while chunk := await file.read(1024 * 1024):
            total += len(chunk)
            if total > MAX_UPLOAD_SIZE_BYTES:
                f.close()
                dest.unlink(missing_ok=True)
                raise HTTPException(413, f"File too large: {file.filename} (max {MAX_UPLOAD_SIZE_BYTES // (1024 * 1024)} MB)")
            f.write(chunk)
    return dest


def _parse_file_paths(file_paths: Optional[str], count: int) -> list[Optional[str]]:
    """Relative paths sent by the client as a JSON list, one per file."""
    if not file_paths:
        return [None] * count
    try:
        paths = json.loads(file_paths)
    except json.JSONDecodeError:
        raise HTTPException(400, "filePaths must be a JSON list")
    if not isinstance(paths, list):
        raise HTTPException(400, "filePaths must be a JSON list")
    paths = [p if isinstance(p, str) and p.strip() else None for p in paths]
    return (paths + [None] * count)[:count]


def _run_and_persist(
    svc: ConversionService,
    items: list[UploadItem],
    transform: TransformConfig,
    archive: ArchiveConfig,
    request_id: Optional[str],
    batch_id: str,
) -> BatchSummary:
    """Blocking: convert, then store the outcome. Runs on the conversion pool."""
    try:
        summary = svc.run_batch(items, transform, archive, request_id=request_id, batch_id=batch_id)
    except InputError as e:
        _persist(set_batch_failed, batch_id, e.message)
        raise
    except BatchError as e:
        _persist(set_batch_failed, batch_id, e.message, e.summary)
        raise
    _persist(set_batch_completed, batch_id, summary)
    return summary


def _persist(fn, *args) -> None:
    try:
        fn(*args)
    except SQLAlchemyError as e:
        # outputs are already on disk; only the batch record is lost
        logger.exception("Could not store batch %s: %s", args[0], e)


async def _convert(
    files: Optional[list[UploadFile]],
    file_paths: Optional[str],
    request_id: Optional[str],
    dpi: Optional[str],
    max_width: Optional[str],
    color_mode: Optional[str],
    page_start: Optional[str],
    page_end: Optional[str],
    container: Optional[str],
    compression: Optional[str],
    archive_compression: Optional[str],
    rotation: Optional[str],
    img_format: Optional[str],
    split_double: Optional[str],
    reading_dir: Optional[str],
):
    if not files:
        raise HTTPException(400, "No files uploaded.")
    try:
        transform = TransformConfig.from_form(
            dpi=dpi,
            color_mode=color_mode,
            image_format=img_format,
            quality=compression,
            rotation=rotation,
            max_width=max_width,
            split_double=split_double,
            reading_dir=reading_dir,
            page_start=page_start,
            page_end=page_end,
        )
        archive = ArchiveConfig.from_form(container, archive_compression, original=transform.original)
    except InputError as e:
        raise HTTPException(400, e.message)

    relative_paths = _parse_file_paths(file_paths, len(files))
    svc = get_conversion_service()
    batch_id = str(uuid.uuid4())
    items: list[UploadItem] = []
    try:
        for file, relative in zip(files, relative_paths):
            dest = await _save_upload(file, batch_id)
            filename = Path(file.filename or dest.name).name
            items.append(UploadItem(relative_path=relative or file.filename or filename, path=dest, filename=filename))
    except HTTPException:
        svc.cleanup_uploads(items)
        raise

    request_id = (request_id or "").strip() or None
    _persist(create_batch, batch_id, request_id)
    logger.info("Batch %s: %s file(s), container=%s, request=%s", batch_id, len(items), archive.container.value, request_id)
    try:
        summary = await asyncio.wrap_future(
            svc.submit(_run_and_persist, svc, items, transform, archive, request_id, batch_id)
        )
    except InputError as e:
        raise HTTPException(400, e.message)
    except BatchError as e:
        stats = e.summary.to_dict() if e.summary is not None else None
        return JSONResponse(status_code=500, content={"success": False, "error": e.message, "stats": stats})

    message = "Conversion completed." if summary.success else "Conversion failed."
    if summary.success and summary.failures:
        message = f"Conversion completed with {len(summary.failures)} failure(s)."
    return {"success": summary.success, "message": message, "stats": summary.to_dict()}


@router.post("/convert")
@root_router.post("/convert")
async def convert(
    files: Optional[list[UploadFile]] = File(None),
    filePaths: Optional[str] = Form(None),
    requestId: Optional[str] = Form(None),
    dpi: Optional[str] = Form(None),
    maxWidth: Optional[str] = Form(None),
    colorMode: Optional[str] = Form(None),
    pageStart: Optional[str] = Form(None),
    pageEnd: Optional[str] = Form(None),
    format: Optional[str] = Form(None),
    compression: Optional[str] = Form(None),
    archiveCompression: Optional[str] = Form(None),
    rotation: Optional[str] = Form(None),
    imgFormat: Optional[str] = Form(None),
    splitDouble: Optional[str] = Form(None),
    readingDir: Optional[str] = Form(None),
):
    """Convert uploaded documents, archives and images. Blocks until the batch finishes."""
    return await _convert(
        files, filePaths, requestId, dpi, maxWidth, colorMode, pageStart, pageEnd,
        format, compression, archiveCompression, rotation, imgFormat, splitDouble, readingDir,
    )


@root_router.get("/events")
async def events(request: Request, requestId: Optional[str] = Query(None)):
    """Server-sent progress events for one request id."""
    if not requestId:
        raise HTTPException(400, "requestId required")
    channel = get_conversion_service().channel
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def listener(payload: dict) -> None:
        # called from the conversion thread
        loop.call_soon_threadsafe(queue.put_nowait, payload)

    channel.open(requestId, listener)
    logger.debug("SSE connection registered for %s", requestId)

    async def stream():
        try:
            yield ": connected\n\n"
            while not await request.is_disconnected():
                try:
                    payload = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"data: {json.dumps(payload)}\n\n"
        finally:
            channel.close(requestId, listener)
            logger.debug("SSE connection closed for %s", requestId)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@root_router.post("/client-log")
def client_log(message: Optional[str] = Body(None, embed=True)):
    if message:
        ui_logger.info("[UI] %s", message)
    return {"ok": True}


@root_router.get("/version")
def version():
    return {"version": __version__}


@router.post("/analyze")
async def analyze(file: UploadFile = File(...)):
    """Page count of a single upload, without converting it."""
    svc = get_conversion_service()
    dest = await _save_upload(file, "analyze")
    item = UploadItem(relative_path=Path(file.filename or dest.name).name, path=dest)
    try:
        return await asyncio.to_thread(svc.analyze, item)
    except InputError as e:
        raise HTTPException(400, e.message)
    except ConversionError as e:
        raise HTTPException(422, e.message)
    finally:
        dest.unlink(missing_ok=True)


@router.get("/batch/{batch_id}")
def batch_status(batch_id: str):
    """Stored outcome of a batch."""
    job = get_batch(batch_id)
    if not job:
        raise HTTPException(404, "Batch not found")
    return job.to_dict()


@router.get("/output/{filename}")
def download_output(filename: str):
    """Download a produced file by name."""
    if Path(filename).name != filename or filename.startswith("."):
        raise HTTPException(400, "Invalid filename")
    path = OUTPUT_DIR / filename
    if not path.is_file():
        raise HTTPException(404, "File not found")
    return FileResponse(path, filename=filename)


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/formats")
def get_formats():
    return {
        "image": sorted(IMAGE_EXTENSIONS),
        "document": sorted(DOCUMENT_EXTENSIONS),
        "archive": sorted(ARCHIVE_EXTENSIONS),
        "output_container": CONTAINER_FORMATS,
        "output_image": IMAGE_OUTPUT_FORMATS,
    }
