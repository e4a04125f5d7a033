import asyncio

import pytest

from apps.resources.errors import BufferOverflow, HeaderParseError, MalformedMultipart, UnsupportedMediaType
from apps.resources.multipart import MultipartReader, parse_boundary
from helpers import BOUNDARY, CONTENT_TYPE, chunked, encode_multipart


def test_parse_boundary():
    assert parse_boundary(CONTENT_TYPE) == BOUNDARY.encode()

    with pytest.raises(HeaderParseError):
        parse_boundary(None)
    with pytest.raises(HeaderParseError):
        parse_boundary('multipart/form-data')
    with pytest.raises(UnsupportedMediaType):
        parse_boundary('invalid')
    with pytest.raises(UnsupportedMediaType):
        parse_boundary('application/json')


def test_parts_arrive_in_order_across_chunks():
    body = encode_multipart([('owner', b'me', None), ('blob', b'0123456789' * 10, 'data.bin')])

    async def read():
        reader = MultipartReader(BOUNDARY.encode(), chunked(body, size=5))
        owner = await reader.next_part()
        value = await owner.read(10)
        blob = await reader.next_part()
        data = b''.join([chunk async for chunk in blob])
        return owner.name, value, blob.name, blob.filename, data, await reader.next_part()

    owner, value, blob, filename, data, end = asyncio.run(read())
    assert (owner, value) == ('owner', b'me')
    assert (blob, filename) == ('blob', 'data.bin')
    assert data == b'0123456789' * 10
    assert end is None


def test_unread_part_is_skipped():
    body = encode_multipart([('a', b'x' * 50, None), ('b', b'y', None)])

    async def read():
        reader = MultipartReader(BOUNDARY.encode(), chunked(body))
        await reader.next_part()
        part = await reader.next_part()
        return part.name, await part.read(1)

    assert asyncio.run(read()) == ('b', b'y')


def test_read_limit():
    body = encode_multipart([('name', b'abcd', None)])

    async def read(limit):
        reader = MultipartReader(BOUNDARY.encode(), chunked(body))
        part = await reader.next_part()
        return await part.read(limit)

    assert asyncio.run(read(4)) == b'abcd'
    with pytest.raises(BufferOverflow) as excinfo:
        asyncio.run(read(3))
    assert excinfo.value.field == 'name'


def test_truncated_body():
    body = encode_multipart([('name', b'abcd', None)])[:-30]

    async def read():
        reader = MultipartReader(BOUNDARY.encode(), chunked(body))
        part = await reader.next_part()
        await part.read(100)

    with pytest.raises(MalformedMultipart):
        asyncio.run(read())
