"""Pull-style streaming reader over python-multipart's push parser.

The parser is fed one request chunk at a time; its callbacks queue events
that the reader hands out part by part, so a part's body can be streamed
straight into the blob store without buffering the request.
"""
from collections import deque
from typing import AsyncIterable, AsyncIterator, Deque, List, Optional, Tuple

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from apps.resources.errors import BufferOverflow, HeaderParseError, MalformedMultipart, UnsupportedMediaType

HEADER = 'header'
HEADERS_DONE = 'headers_done'
DATA = 'data'
PART_END = 'part_end'
END = 'end'


def parse_boundary(content_type: Optional[str]) -> bytes:
    if not content_type:
        raise HeaderParseError('no Content-Type header')
    media_type, options = parse_options_header(content_type)
    if not media_type:
        raise HeaderParseError(f'cannot parse Content-Type {content_type!r}')
    if not media_type.startswith(b'multipart/'):
        raise UnsupportedMediaType(media_type.decode('latin-1'))
    boundary = options.get(b'boundary')
    if not boundary:
        raise HeaderParseError('no multipart boundary')
    return boundary


class Part:
    def __init__(self, reader: 'MultipartReader', headers: List[Tuple[bytes, bytes]]):
        self._reader = reader
        self._done = False
        self.headers = dict(headers)
        _, options = parse_options_header(self.headers.get(b'content-disposition', b''))
        self.name = options.get(b'name', b'').decode('utf-8', 'replace')
        filename = options.get(b'filename')
        self.filename = filename.decode('utf-8', 'replace') if filename is not None else None

    async def _next_chunk(self) -> Optional[bytes]:
        if self._done:
            return None
        event, payload = await self._reader._next_event()
        if event == DATA:
            return payload
        if event == PART_END:
            self._done = True
            return None
        raise MalformedMultipart(f'unexpected {event} inside part {self.name!r}')

    async def read(self, limit: int) -> bytes:
        """Read the whole part, failing once more than `limit` bytes arrive."""
        buf = bytearray()
        while True:
            chunk = await self._next_chunk()
            if chunk is None:
                return bytes(buf)
            buf += chunk
            if len(buf) > limit:
                raise BufferOverflow(self.name, limit)

    async def drain(self) -> None:
        while await self._next_chunk() is not None:
            pass

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._next_chunk()
            if chunk is None:
                return
            yield chunk


class MultipartReader:
    def __init__(self, boundary: bytes, stream: AsyncIterable[bytes]):
        self._stream = stream.__aiter__()
        self._events: Deque[Tuple[str, object]] = deque()
        self._exhausted = False
        self._current: Optional[Part] = None
        self._header_field = b''
        self._header_value = b''
        self._parser = MultipartParser(boundary, callbacks={
            'on_header_field': self._on_header_field,
            'on_header_value': self._on_header_value,
            'on_header_end': self._on_header_end,
            'on_headers_finished': lambda: self._events.append((HEADERS_DONE, None)),
            'on_part_data': self._on_part_data,
            'on_part_end': lambda: self._events.append((PART_END, None)),
            'on_end': lambda: self._events.append((END, None)),
        })

    def _on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def _on_header_end(self) -> None:
        self._events.append((HEADER, (self._header_field.lower(), self._header_value)))
        self._header_field = b''
        self._header_value = b''

    def _on_part_data(self, data: bytes, start: int, end: int) -> None:
        if end > start:
            self._events.append((DATA, bytes(data[start:end])))

    async def _next_event(self) -> Tuple[str, object]:
        while not self._events:
            if self._exhausted:
                raise MalformedMultipart('unexpected end of body')
            try:
                chunk = await self._stream.__anext__()
            except StopAsyncIteration:
                self._exhausted = True
                self._parser.finalize()
                continue
            try:
                self._parser.write(chunk)
            except MultipartParseError as e:
                raise MalformedMultipart(str(e)) from e
        return self._events.popleft()

    async def next_part(self) -> Optional[Part]:
        """Return the next part, or None once the closing boundary is reached."""
        if self._current is not None:
            await self._current.drain()
            self._current = None
        headers = []
        while True:
            event, payload = await self._next_event()
            if event == HEADER:
                headers.append(payload)
            elif event == HEADERS_DONE:
                self._current = Part(self, headers)
                return self._current
            elif event == END:
                return None
