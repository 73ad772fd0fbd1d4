"""HTTP replies built from text, bytes, local files or upstream responses."""

from __future__ import annotations

import asyncio
import enum
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

import aiohttp
from aiohttp import web

_CHUNK_SIZE = 64 * 1024


class ContentType(enum.Enum):
    """Content types a reply can carry."""

    TEXT = "text/plain; charset=utf-8"
    HTML = "text/html; charset=utf-8"
    BINARY = "application/octet-stream"


Content = str | bytes | Path | BinaryIO | aiohttp.ClientResponse


def _remaining_size(stream: BinaryIO) -> int | None:
    """Bytes left from the current position, or None if the stream cannot seek."""
    try:
        position = stream.tell()
        end = stream.seek(0, os.SEEK_END)
        stream.seek(position)
    except (OSError, ValueError, AttributeError):
        return None
    return max(end - position, 0)


@dataclass
class Reply:
    """A status, a body, its content type and extra headers."""

    status: int
    content: Content
    content_type: ContentType = ContentType.BINARY
    headers: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def text(cls, status: int, body: str) -> Reply:
        return cls(status=status, content=body, content_type=ContentType.TEXT)

    def _headers(self) -> dict[str, str]:
        headers = {k: v for k, v in self.headers.items() if k.lower() != "content-type"}
        headers["Content-Type"] = self.content_type.value
        return headers

    async def to_response(self, request: web.Request) -> web.StreamResponse:
        """Build the response, streaming file and upstream bodies to ``request``."""
        content = self.content
        headers = self._headers()
        if isinstance(content, str):
            return web.Response(status=self.status, body=content.encode("utf-8"), headers=headers)
        if isinstance(content, (bytes, bytearray)):
            return web.Response(status=self.status, body=bytes(content), headers=headers)
        if isinstance(content, aiohttp.ClientResponse):
            return await self._stream_upstream(request, content, headers)
        if isinstance(content, Path):
            stream = await asyncio.to_thread(content.open, "rb")
        else:
            stream = content
        try:
            return await self._stream_file(request, stream, headers)
        finally:
            stream.close()

    async def _stream_file(
        self, request: web.Request, stream: BinaryIO, headers: dict[str, str]
    ) -> web.StreamResponse:
        response = web.StreamResponse(status=self.status, headers=headers)
        size = _remaining_size(stream)
        if size is not None:
            response.content_length = size
        await response.prepare(request)
        while chunk := await asyncio.to_thread(stream.read, _CHUNK_SIZE):
            await response.write(chunk)
        await response.write_eof()
        return response

    async def _stream_upstream(
        self, request: web.Request, upstream: aiohttp.ClientResponse, headers: dict[str, str]
    ) -> web.StreamResponse:
        response = web.StreamResponse(status=self.status, headers=headers)
        try:
            await response.prepare(request)
            async for chunk in upstream.content.iter_chunked(_CHUNK_SIZE):
                await response.write(chunk)
            await response.write_eof()
        finally:
            upstream.release()
        return response