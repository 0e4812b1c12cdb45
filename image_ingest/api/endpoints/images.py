import asyncio
import base64
import binascii
import ipaddress
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable
from urllib.parse import urlparse

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from python_multipart.multipart import parse_options_header
from starlette.concurrency import run_in_threadpool

from image_ingest.config import Settings
from image_ingest.core.exceptions import AppError
from image_ingest.schemas.images import ImageEnvelope
from image_ingest.services import image_fetcher, image_storage
from image_ingest.services.image_codec import ImageDecodeError
from image_ingest.services.image_storage import ImageStorage, StoredImage, UploadSink
from image_ingest.services.upload_stream import MultipartStream, MultipartStreamError, PartEnd, PartStart

logger = structlog.get_logger()

router = APIRouter()

_MAX_FILENAME_BYTES = 200


def request_timestamp() -> int:
    return image_storage.current_timestamp()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> ImageStorage:
    return request.app.state.storage


async def read_envelope(request: Request) -> ImageEnvelope:
    body = await request.body()
    try:
        return ImageEnvelope.model_validate_json(body)
    except ValidationError as e:
        logger.info("envelope_invalid", path=request.url.path, error=str(e))
        raise AppError(status_code=400, detail="invalid request body") from e


def _decode_base64(data: str) -> bytes:
    if ";base64," in data:
        data = data.split(";base64,", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AppError(status_code=400, detail="error decode base64") from e


def _is_blocked_ip(hostname: str) -> bool:
    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved or ip.is_multicast or ip.is_unspecified


def _validate_fetch_url(url: str, block_private_hosts: bool) -> None:
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https") or not parsed.hostname:
        raise AppError(status_code=400, detail="err download file")
    if not block_private_hosts:
        return
    hostname = parsed.hostname
    if hostname == "localhost" or hostname.endswith(".localhost") or _is_blocked_ip(hostname):
        raise AppError(status_code=400, detail="err download file")


def _multipart_boundary(content_type: str) -> bytes | None:
    mime, params = parse_options_header(content_type)
    if mime.lower() != b"multipart/form-data":
        return None
    return params.get(b"boundary") or None


def _validate_filename(filename: str | None) -> str:
    if not filename or ".." in filename or "/" in filename or "\\" in filename or "\x00" in filename:
        raise AppError(status_code=400, detail="BAD REQUEST")
    if len(filename.encode("utf-8")) > _MAX_FILENAME_BYTES:
        raise AppError(status_code=400, detail="BAD REQUEST")
    return filename


def _finished_result(task: asyncio.Future | None) -> Any:
    if task is None or task.cancelled() or task.exception() is not None:
        return None
    return task.result()


class _Offload:
    """Runs blocking calls in the threadpool and lets an interrupted call finish.

    A cancelled request cannot stop a thread mid-write, so cleanup waits for it
    through ``after``.
    """

    def __init__(self) -> None:
        self._pending: asyncio.Future | None = None

    async def run(self, func: Callable[..., Any], *args: Any) -> Any:
        self._pending = asyncio.ensure_future(run_in_threadpool(func, *args))
        result = await asyncio.shield(self._pending)
        self._pending = None
        return result

    def after(self, callback: Callable[[asyncio.Future | None], None]) -> None:
        pending, self._pending = self._pending, None
        if pending is None or pending.done():
            callback(pending)
        else:
            pending.add_done_callback(callback)


def _remove_finished(storage: ImageStorage, task: asyncio.Future | None) -> None:
    stored = _finished_result(task)
    if isinstance(stored, StoredImage):
        logger.info("image_rolled_back", original=str(stored.original))
        storage.remove(stored)


async def _persist(storage: ImageStorage, image_bytes: bytes, timestamp: int) -> StoredImage:
    offload = _Offload()
    try:
        return await offload.run(storage.save_image_bytes, image_bytes, timestamp)
    except asyncio.CancelledError:
        offload.after(partial(_remove_finished, storage))
        raise


@router.post("/base64", status_code=201, response_class=PlainTextResponse)
async def ingest_base64(
    timestamp: int = Depends(request_timestamp),
    envelope: ImageEnvelope = Depends(read_envelope),
    storage: ImageStorage = Depends(get_storage),
) -> str:
    image_bytes = _decode_base64(envelope.image)
    try:
        stored = await _persist(storage, image_bytes, timestamp)
    except ImageDecodeError as e:
        logger.info("image_decode_failed", route="base64", error=str(e))
        raise AppError(status_code=400, detail="error decode image") from e

    logger.info("image_ingested", route="base64", original=stored.original.name)
    return "Success"


@dataclass
class _UploadBatch:
    storage: ImageStorage
    sink: UploadSink | None = None
    written: list[StoredImage] = field(default_factory=list)

    def rollback(self, task: asyncio.Future | None = None) -> None:
        late = _finished_result(task)
        if isinstance(late, UploadSink):
            late.discard()
        if self.sink is not None:
            self.sink.discard()
            self.sink = None
        written = self.written + ([late] if isinstance(late, StoredImage) else [])
        for stored in written:
            self.storage.remove(stored)
        self.written = []


async def _store_parts(
    request: Request,
    boundary: bytes,
    timestamp: int,
    config: Settings,
    batch: _UploadBatch,
    offload: _Offload,
) -> None:
    storage = batch.storage
    stream = MultipartStream(boundary, max_parts=config.max_upload_files)
    buffered = bytearray()
    async for event in stream.events(request.stream()):
        if isinstance(event, PartStart):
            if event.filename is None:
                logger.info("multipart_field_without_file", field=event.field_name)
            filename = _validate_filename(event.filename)
            batch.sink = await offload.run(storage.open_upload, storage.upload_name(timestamp, filename))
        elif isinstance(event, PartEnd):
            if buffered:
                await offload.run(batch.sink.write, bytes(buffered))
                buffered.clear()
            stored = await offload.run(batch.sink.commit)
            batch.sink = None
            batch.written.append(stored)
            batch.written[-1] = await offload.run(storage.resize_derivative, stored)
        else:
            buffered += event
            if len(buffered) >= config.upload_chunk_size:
                await offload.run(batch.sink.write, bytes(buffered))
                buffered.clear()


@router.post("/multipart", status_code=201, response_class=PlainTextResponse)
async def ingest_multipart(
    request: Request,
    timestamp: int = Depends(request_timestamp),
    config: Settings = Depends(get_settings),
    storage: ImageStorage = Depends(get_storage),
) -> str:
    boundary = _multipart_boundary(request.headers.get("content-type", ""))
    if boundary is None:
        raise AppError(status_code=400, detail="BAD REQUEST")

    batch = _UploadBatch(storage)
    offload = _Offload()
    try:
        await _store_parts(request, boundary, timestamp, config, batch, offload)
    except MultipartStreamError as e:
        logger.info("multipart_malformed", error=str(e))
        offload.after(batch.rollback)
        raise AppError(status_code=400, detail="BAD REQUEST") from e
    except ImageDecodeError as e:
        logger.info("image_decode_failed", route="multipart", error=str(e))
        offload.after(batch.rollback)
        raise AppError(status_code=400, detail="BAD REQUEST") from e
    except OSError as e:
        logger.error("multipart_write_failed", error=str(e))
        offload.after(batch.rollback)
        raise AppError(status_code=500, detail="error") from e
    except BaseException:
        offload.after(batch.rollback)
        raise

    logger.info("image_ingested", route="multipart", files=[s.original.name for s in batch.written])
    return "Success"


@router.post("/from_uri", status_code=200, response_class=PlainTextResponse)
async def ingest_from_uri(
    timestamp: int = Depends(request_timestamp),
    envelope: ImageEnvelope = Depends(read_envelope),
    config: Settings = Depends(get_settings),
    storage: ImageStorage = Depends(get_storage),
) -> str:
    _validate_fetch_url(envelope.url, config.fetch_block_private_hosts)

    fetched = await image_fetcher.fetch_image(
        envelope.url, timeout=config.fetch_timeout, max_bytes=config.max_fetch_bytes
    )
    if fetched is None:
        raise AppError(status_code=502, detail="err download file")

    try:
        stored = await _persist(storage, fetched, timestamp)
    except ImageDecodeError as e:
        logger.info("image_decode_failed", route="from_uri", url=envelope.url, error=str(e))
        raise AppError(status_code=400, detail="err download file") from e

    logger.info("image_ingested", route="from_uri", url=envelope.url, original=stored.original.name)
    return "file is downloaded"
