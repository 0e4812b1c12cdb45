import contextlib
import os
import secrets
import time
from collections.abc import Iterator
from dataclasses import dataclass, replace
from pathlib import Path
from typing import BinaryIO

import structlog
from PIL import Image

from image_ingest.config import Settings
from image_ingest.services import image_codec

logger = structlog.get_logger()

FileIdentity = tuple[int, int]


def current_timestamp() -> int:
    return int(time.time())


@dataclass(frozen=True)
class StoredImage:
    original: Path
    derivative: Path
    original_id: FileIdentity | None = None
    derivative_id: FileIdentity | None = None


def _identity(fd: int) -> FileIdentity:
    st = os.fstat(fd)
    return st.st_dev, st.st_ino


def _temp_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")


@contextlib.contextmanager
def _atomic_writer(path: Path) -> Iterator[BinaryIO]:
    """Write to a sibling temp file and move it over ``path`` on success.

    Readers never observe a partially written file, and two writers racing
    for the same path leave exactly one complete copy behind.
    """
    tmp_path = _temp_path(path)
    try:
        with open(tmp_path, "xb") as f:
            yield f
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _write_file(path: Path, data: bytes) -> FileIdentity:
    with _atomic_writer(path) as f:
        f.write(data)
        return _identity(f.fileno())


class UploadSink:
    """Receives one uploaded part and duplicates every chunk into both roots.

    Nothing is visible under the final paths until ``commit``; ``discard``
    drops the partial copies.
    """

    def __init__(self, stored: StoredImage) -> None:
        self.stored = stored
        self._targets = (stored.original, stored.derivative)
        self._tmp_paths: list[Path] = []
        self._files: list[BinaryIO] = []
        try:
            for target in self._targets:
                tmp_path = _temp_path(target)
                self._files.append(open(tmp_path, "xb"))
                self._tmp_paths.append(tmp_path)
        except BaseException:
            self.discard()
            raise
        self.size = 0

    def write(self, chunk: bytes) -> None:
        for f in self._files:
            f.write(chunk)
        self.size += len(chunk)

    def commit(self) -> StoredImage:
        ids = [_identity(f.fileno()) for f in self._files]
        self._close()
        for tmp_path, target in zip(self._tmp_paths, self._targets):
            os.replace(tmp_path, target)
        self._tmp_paths = []
        return replace(self.stored, original_id=ids[0], derivative_id=ids[1])

    def discard(self) -> None:
        self._close()
        for tmp_path in self._tmp_paths:
            tmp_path.unlink(missing_ok=True)
        self._tmp_paths = []

    def _close(self) -> None:
        for f in self._files:
            f.close()
        self._files = []


class ImageStorage:
    """Originals under one root, fixed-size derivatives under a sibling root."""

    def __init__(
        self,
        images_dir: Path,
        small_images_dir: Path,
        derivative_size: int = 100,
        unique_names: bool = False,
    ) -> None:
        self.images_dir = images_dir
        self.small_images_dir = small_images_dir
        self.derivative_size = derivative_size
        self.unique_names = unique_names

    @classmethod
    def from_settings(cls, config: Settings) -> "ImageStorage":
        return cls(
            images_dir=Path(config.images_dir),
            small_images_dir=Path(config.small_images_dir),
            derivative_size=config.derivative_size,
            unique_names=config.unique_names,
        )

    def ensure_dirs(self) -> None:
        self.images_dir.mkdir(parents=True, exist_ok=True)
        self.small_images_dir.mkdir(parents=True, exist_ok=True)

    def base_name(self, timestamp: int) -> str:
        if self.unique_names:
            return f"{timestamp}_{secrets.token_hex(4)}"
        return str(timestamp)

    def upload_name(self, timestamp: int, filename: str) -> str:
        return f"{self.base_name(timestamp)}_{filename}"

    def paths_for(self, name: str) -> StoredImage:
        return StoredImage(original=self.images_dir / name, derivative=self.small_images_dir / name)

    def save_bitmap(self, img: Image.Image, base_name: str) -> StoredImage:
        stored = self.paths_for(f"{base_name}.png")
        original_bytes = image_codec.encode_image(img, "PNG")
        derivative = image_codec.resize_nearest(img, self.derivative_size)
        derivative_bytes = image_codec.encode_image(derivative, "PNG")

        original_id = _write_file(stored.original, original_bytes)
        stored = replace(stored, original_id=original_id)
        try:
            derivative_id = _write_file(stored.derivative, derivative_bytes)
        except OSError:
            self.remove(stored)
            raise
        return replace(stored, derivative_id=derivative_id)

    def save_image_bytes(self, image_bytes: bytes, timestamp: int) -> StoredImage:
        """Decode ``image_bytes`` and persist it as a PNG original plus derivative.

        Raises ``ImageDecodeError`` before anything touches the disk when the
        bytes are not an image.
        """
        img = image_codec.decode_image(image_bytes)
        stored = self.save_bitmap(img, self.base_name(timestamp))
        logger.info(
            "image_saved",
            original=str(stored.original),
            derivative=str(stored.derivative),
            width=img.width,
            height=img.height,
        )
        return stored

    def open_upload(self, name: str) -> UploadSink:
        return UploadSink(self.paths_for(name))

    def resize_derivative(self, stored: StoredImage) -> StoredImage:
        img = image_codec.open_image(stored.derivative)
        small = image_codec.resize_nearest(img, self.derivative_size)
        fmt = image_codec.format_for_name(stored.derivative.name, img.format)
        derivative_id = _write_file(stored.derivative, image_codec.encode_image(small, fmt))
        return replace(stored, derivative_id=derivative_id)

    def remove(self, stored: StoredImage) -> None:
        """Delete a stored pair, leaving alone any path another writer has since replaced."""
        for path, expected in ((stored.original, stored.original_id), (stored.derivative, stored.derivative_id)):
            try:
                if expected is not None:
                    with open(path, "rb") as f:
                        if _identity(f.fileno()) != expected:
                            logger.info("image_kept_newer_copy", path=str(path))
                            continue
                path.unlink(missing_ok=True)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error("image_delete_failed", path=str(path), error=str(e))
