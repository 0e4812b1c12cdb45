from io import BytesIO
from pathlib import Path
from unittest.mock import patch

import pytest
from PIL import Image

from image_ingest.config import Settings
from image_ingest.services import image_storage
from image_ingest.services.image_codec import ImageDecodeError
from image_ingest.services.image_storage import ImageStorage


def _make_test_image(width: int = 120, height: int = 80, fmt: str = "PNG") -> bytes:
    img = Image.new("RGB", (width, height), color="blue")
    buffer = BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def storage(tmp_path: Path) -> ImageStorage:
    s = ImageStorage(tmp_path / "images", tmp_path / "small_images")
    s.ensure_dirs()
    return s


def _leftovers(storage: ImageStorage) -> list[str]:
    return [p.name for d in (storage.images_dir, storage.small_images_dir) for p in d.iterdir()]


class TestEnsureDirs:
    def test_creates_both_roots(self, tmp_path: Path) -> None:
        s = ImageStorage(tmp_path / "a" / "images", tmp_path / "a" / "small_images")
        s.ensure_dirs()
        assert s.images_dir.is_dir()
        assert s.small_images_dir.is_dir()

    def test_idempotent(self, storage: ImageStorage) -> None:
        storage.ensure_dirs()
        storage.ensure_dirs()
        assert storage.images_dir.is_dir()


class TestFromSettings:
    def test_uses_configured_roots(self, tmp_path: Path) -> None:
        config = Settings(images_dir=str(tmp_path / "orig"), small_images_dir=str(tmp_path / "thumbs"), derivative_size=32)
        s = ImageStorage.from_settings(config)
        assert s.images_dir == tmp_path / "orig"
        assert s.small_images_dir == tmp_path / "thumbs"
        assert s.derivative_size == 32
        assert s.unique_names is False


class TestNaming:
    def test_base_name_is_timestamp(self, storage: ImageStorage) -> None:
        assert storage.base_name(1700000000) == "1700000000"

    def test_upload_name(self, storage: ImageStorage) -> None:
        assert storage.upload_name(1700000000, "photo.jpg") == "1700000000_photo.jpg"

    def test_unique_names(self, tmp_path: Path) -> None:
        s = ImageStorage(tmp_path / "i", tmp_path / "s", unique_names=True)
        names = {s.base_name(1700000000) for _ in range(50)}
        assert len(names) == 50
        assert all(name.startswith("1700000000_") for name in names)

    def test_current_timestamp_is_seconds(self) -> None:
        with patch.object(image_storage.time, "time", return_value=1700000000.987):
            assert image_storage.current_timestamp() == 1700000000


class TestSaveImageBytes:
    def test_writes_png_original_and_derivative(self, storage: ImageStorage) -> None:
        stored = storage.save_image_bytes(_make_test_image(fmt="JPEG"), 1700000000)
        assert stored.original == storage.images_dir / "1700000000.png"
        assert stored.derivative == storage.small_images_dir / "1700000000.png"
        with Image.open(stored.original) as original:
            assert original.format == "PNG"
            assert original.size == (120, 80)
        with Image.open(stored.derivative) as small:
            assert small.size == (100, 100)

    def test_custom_derivative_size(self, tmp_path: Path) -> None:
        s = ImageStorage(tmp_path / "i", tmp_path / "s", derivative_size=16)
        s.ensure_dirs()
        stored = s.save_image_bytes(_make_test_image(), 1)
        with Image.open(stored.derivative) as small:
            assert small.size == (16, 16)

    def test_invalid_bytes_write_nothing(self, storage: ImageStorage) -> None:
        with pytest.raises(ImageDecodeError):
            storage.save_image_bytes(b"not-an-image", 1700000000)
        assert _leftovers(storage) == []

    def test_failed_derivative_write_removes_original(self, storage: ImageStorage) -> None:
        real_write = image_storage._write_file

        def _fail_on_derivative(path: Path, data: bytes) -> image_storage.FileIdentity:
            if path.parent == storage.small_images_dir:
                raise OSError("disk full")
            return real_write(path, data)

        with patch.object(image_storage, "_write_file", side_effect=_fail_on_derivative):
            with pytest.raises(OSError):
                storage.save_image_bytes(_make_test_image(), 1700000000)
        assert _leftovers(storage) == []


class TestAtomicWriter:
    def test_replaces_existing_file(self, tmp_path: Path) -> None:
        target = tmp_path / "out.bin"
        target.write_bytes(b"old")
        image_storage._write_file(target, b"new")
        assert target.read_bytes() == b"new"
        assert [p.name for p in tmp_path.iterdir()] == ["out.bin"]

    def test_failure_keeps_previous_content(self, tmp_path: Path) -> None:
        target = tmp_path / "out.bin"
        target.write_bytes(b"old")
        with pytest.raises(RuntimeError):
            with image_storage._atomic_writer(target) as f:
                f.write(b"partial")
                raise RuntimeError("interrupted")
        assert target.read_bytes() == b"old"
        assert [p.name for p in tmp_path.iterdir()] == ["out.bin"]


def _upload(storage: ImageStorage, name: str, data: bytes, chunk_size: int = 7) -> image_storage.StoredImage:
    sink = storage.open_upload(name)
    for start in range(0, len(data), chunk_size):
        sink.write(data[start : start + chunk_size])
    return sink.commit()


class TestUploadSink:
    def test_duplicates_chunks_into_both_roots(self, storage: ImageStorage) -> None:
        data = _make_test_image(fmt="JPEG")
        stored = _upload(storage, "1700000000_photo.jpg", data)
        assert stored.original.read_bytes() == data
        assert stored.derivative.read_bytes() == data
        assert sorted(_leftovers(storage)) == ["1700000000_photo.jpg", "1700000000_photo.jpg"]

    def test_nothing_visible_before_commit(self, storage: ImageStorage) -> None:
        sink = storage.open_upload("1_photo.png")
        sink.write(b"partial")
        assert not sink.stored.original.exists()
        assert not sink.stored.derivative.exists()
        sink.discard()
        assert _leftovers(storage) == []

    def test_empty_upload(self, storage: ImageStorage) -> None:
        stored = storage.open_upload("1_empty.png").commit()
        assert stored.original.read_bytes() == b""
        assert stored.derivative.read_bytes() == b""

    def test_commit_records_file_identity(self, storage: ImageStorage) -> None:
        stored = _upload(storage, "1_photo.png", b"data")
        st = stored.original.stat()
        assert stored.original_id == (st.st_dev, st.st_ino)
        assert stored.derivative_id is not None


class TestResizeDerivative:
    def test_overwrites_with_fixed_size_in_same_format(self, storage: ImageStorage) -> None:
        data = _make_test_image(400, 300, fmt="JPEG")
        stored = _upload(storage, "1_photo.jpg", data, chunk_size=4096)

        resized = storage.resize_derivative(stored)

        assert stored.original.read_bytes() == data
        assert resized.derivative_id != stored.derivative_id
        with Image.open(stored.derivative) as small:
            assert small.size == (100, 100)
            assert small.format == "JPEG"

    def test_non_image_raises(self, storage: ImageStorage) -> None:
        stored = _upload(storage, "1_bad.png", b"garbage")
        with pytest.raises(ImageDecodeError):
            storage.resize_derivative(stored)
        assert stored.derivative.read_bytes() == b"garbage"


class TestRemove:
    def test_removes_both_files(self, storage: ImageStorage) -> None:
        stored = storage.save_image_bytes(_make_test_image(), 1)
        storage.remove(stored)
        assert _leftovers(storage) == []

    def test_missing_files_ignored(self, storage: ImageStorage) -> None:
        storage.remove(storage.paths_for("nothing.png"))
        assert _leftovers(storage) == []

    def test_keeps_files_replaced_by_a_later_write(self, storage: ImageStorage) -> None:
        first = storage.save_image_bytes(_make_test_image(), 1700000000)
        second = storage.save_image_bytes(_make_test_image(64, 64), 1700000000)
        assert first.original == second.original

        storage.remove(first)

        assert second.original.exists()
        assert second.derivative.exists()
        with Image.open(second.original) as original:
            assert original.size == (64, 64)
        storage.remove(second)
        assert _leftovers(storage) == []
