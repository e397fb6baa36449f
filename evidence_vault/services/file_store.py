"""File Store collaborator with byte-range streaming."""

from __future__ import annotations

import logging
import mimetypes
import re
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE: int = 64 * 1024
_RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")


class RangeNotSatisfiable(Exception):
    def __init__(self, size: int) -> None:
        super().__init__(f"Requested range not satisfiable for object of {size} bytes")
        self.size = size


@dataclass
class FileHead:
    content_length: int
    content_type: str


@dataclass
class FileStream:
    body: Iterator[bytes]
    content_length: int
    content_type: str
    status_code: int
    content_range: str | None = None


def parse_range(header: str, size: int) -> tuple[int, int] | None:
    """Return inclusive ``(start, end)`` for a single ``bytes=`` range.

    Malformed headers are ignored (None, serve the whole object); ranges
    that cannot be satisfied raise ``RangeNotSatisfiable``.
    """
    match = _RANGE_PATTERN.match(header.strip())
    if match is None:
        return None
    first, last = match.groups()
    if not first and not last:
        return None
    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(size)
        return max(size - suffix, 0), size - 1
    start = int(first)
    end = int(last) if last else size - 1
    if start >= size or end < start:
        raise RangeNotSatisfiable(size)
    return start, min(end, size - 1)


class FileStore(Protocol):
    def upload(self, key: str, data: bytes, content_type: str | None = None) -> None: ...

    def stream(self, key: str, range_header: str | None = None) -> FileStream | None: ...

    def head(self, key: str) -> FileHead | None: ...

    def delete(self, key: str) -> None: ...


class LocalFileStore:
    """Stores objects as files under ``root``; keys are relative paths."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise ValueError(f"Storage key escapes store root: {key}")
        return path

    def upload(self, key: str, data: bytes, content_type: str | None = None) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info("[STORAGE] Stored %s (%s bytes)", key, len(data))

    def head(self, key: str) -> FileHead | None:
        path = self._path(key)
        if not path.is_file():
            return None
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return FileHead(content_length=path.stat().st_size, content_type=content_type)

    def stream(self, key: str, range_header: str | None = None) -> FileStream | None:
        head = self.head(key)
        if head is None:
            return None
        size = head.content_length
        byte_range = parse_range(range_header, size) if range_header else None
        if byte_range is None:
            return FileStream(
                body=self._read(self._path(key), 0, size),
                content_length=size,
                content_type=head.content_type,
                status_code=200,
            )
        start, end = byte_range
        length = end - start + 1
        return FileStream(
            body=self._read(self._path(key), start, length),
            content_length=length,
            content_type=head.content_type,
            status_code=206,
            content_range=f"bytes {start}-{end}/{size}",
        )

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    @staticmethod
    def _read(path: Path, offset: int, length: int) -> Iterator[bytes]:
        with open(path, "rb") as handle:
            handle.seek(offset)
            remaining = length
            while remaining > 0:
                chunk = handle.read(min(STREAM_CHUNK_SIZE, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk
