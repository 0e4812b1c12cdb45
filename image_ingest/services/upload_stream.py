from collections.abc import AsyncIterator
from dataclasses import dataclass

from python_multipart import MultipartParser
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import parse_options_header


class MultipartStreamError(ValueError):
    pass


@dataclass(frozen=True)
class PartStart:
    field_name: str
    filename: str | None


@dataclass(frozen=True)
class PartEnd:
    pass


PartEvent = PartStart | bytes | PartEnd


class MultipartStream:
    """Incremental ``multipart/form-data`` reader.

    Feeds request chunks to python-multipart and yields ``PartStart``, raw data
    chunks and ``PartEnd`` as soon as each arrives, so a part can be written out
    while the rest of the body is still on the wire.
    """

    def __init__(self, boundary: bytes, max_parts: int = 1000) -> None:
        self.max_parts = max_parts
        self._events: list[PartEvent] = []
        self._header_field = b""
        self._header_value = b""
        self._headers: dict[bytes, bytes] = {}
        self._parts = 0
        self._finished = False
        callbacks = {
            "on_part_begin": self._on_part_begin,
            "on_part_data": self._on_part_data,
            "on_part_end": self._on_part_end,
            "on_header_field": self._on_header_field,
            "on_header_value": self._on_header_value,
            "on_header_end": self._on_header_end,
            "on_headers_finished": self._on_headers_finished,
            "on_end": self._on_end,
        }
        self._parser = MultipartParser(boundary, callbacks)

    def _on_part_begin(self) -> None:
        self._headers = {}

    def _on_part_data(self, data: bytes, start: int, end: int) -> None:
        if end > start:
            self._events.append(data[start:end])

    def _on_part_end(self) -> None:
        self._events.append(PartEnd())

    def _on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def _on_header_end(self) -> None:
        self._headers[self._header_field.lower()] = self._header_value
        self._header_field = b""
        self._header_value = b""

    def _on_headers_finished(self) -> None:
        self._parts += 1
        if self._parts > self.max_parts:
            raise MultipartStreamError(f"too many parts, limit is {self.max_parts}")
        _, options = parse_options_header(self._headers.get(b"content-disposition", b""))
        filename = options.get(b"filename")
        self._events.append(
            PartStart(
                field_name=options.get(b"name", b"").decode("utf-8", errors="replace"),
                filename=None if filename is None else filename.decode("utf-8", errors="replace"),
            )
        )

    def _on_end(self) -> None:
        self._finished = True

    async def events(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[PartEvent]:
        received = False
        async for chunk in chunks:
            if not chunk:
                continue
            received = True
            try:
                self._parser.write(chunk)
            except MultipartParseError as e:
                raise MultipartStreamError(str(e)) from e
            events, self._events = self._events, []
            for event in events:
                yield event
        # An empty body carries no parts at all.
        if received and not self._finished:
            raise MultipartStreamError("multipart body ended before the closing boundary")
