from io import BytesIO
from pathlib import Path

from PIL import Image, UnidentifiedImageError

_DECODE_ERRORS = (UnidentifiedImageError, OSError, SyntaxError, ValueError, Image.DecompressionBombError)

_PNG_MODES = {"1", "L", "LA", "I", "I;16", "P", "RGB", "RGBA"}
_JPEG_MODES = {"L", "RGB", "CMYK"}


class ImageDecodeError(ValueError):
    """Bytes could not be recognized as an image."""


def decode_image(image_bytes: bytes) -> Image.Image:
    try:
        img = Image.open(BytesIO(image_bytes))
        img.load()
    except _DECODE_ERRORS as e:
        raise ImageDecodeError(str(e)) from e
    return img


def open_image(path: Path) -> Image.Image:
    """Read an image from disk fully into memory, releasing the file handle."""
    try:
        with Image.open(path) as img:
            img.load()
            loaded = img.copy()
            loaded.format = img.format
    except _DECODE_ERRORS as e:
        raise ImageDecodeError(str(e)) from e
    return loaded


def resize_nearest(img: Image.Image, size: int) -> Image.Image:
    return img.resize((size, size), Image.Resampling.NEAREST)


def format_for_name(filename: str, fallback: str | None = None) -> str:
    Image.init()
    fmt = Image.registered_extensions().get(Path(filename).suffix.lower())
    for candidate in (fmt, fallback):
        if candidate and candidate in Image.SAVE:
            return candidate
    return "PNG"


def _prepare_for_format(img: Image.Image, fmt: str) -> Image.Image:
    if fmt == "PNG" and img.mode not in _PNG_MODES:
        return img.convert("RGBA" if "A" in img.getbands() else "RGB")
    if fmt == "JPEG" and img.mode not in _JPEG_MODES:
        return img.convert("RGB")
    return img


def encode_image(img: Image.Image, fmt: str = "PNG") -> bytes:
    buffer = BytesIO()
    _prepare_for_format(img, fmt).save(buffer, format=fmt)
    return buffer.getvalue()
