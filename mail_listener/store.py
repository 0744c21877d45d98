"""Local filesystem persistence for attachment content."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable
from pathlib import Path
from typing import BinaryIO

import structlog

logger = structlog.get_logger()

_UNSAFE_CHARS = re.compile(r"[^\w.\-]")


def sanitize_filename(name: str) -> str:
    """Replace characters that are unsafe in a single path component."""
    cleaned = _UNSAFE_CHARS.sub("_", name).lstrip(".")
    return cleaned or "attachment"


class AttachmentStore:
    """Writes attachment bytes under one target directory.

    File I/O is blocking, so every write runs in a worker thread via
    ``asyncio.to_thread``.  The directory is created on first write.

    Existing files are never overwritten: when the requested name is taken
    (by an earlier message, or a concurrent write in the same pass) the
    file is created as ``name-1.ext``, ``name-2.ext``, ... instead.  The
    returned path is the one actually written.
    """

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def resolve(self, file_name: str) -> Path:
        """Return the absolute path *file_name* is requested at."""
        return (self._directory / sanitize_filename(file_name)).resolve()

    async def write(self, file_name: str, content: bytes) -> Path:
        """Write *content* under *file_name* and return the absolute path."""
        path = await asyncio.to_thread(self._write_iter, self.resolve(file_name), [content])
        logger.debug("attachment_written", path=str(path), size=len(content))
        return path

    async def write_chunks(self, file_name: str, chunks: Iterable[bytes]) -> Path:
        """Write *chunks* under *file_name* in order and return the absolute path."""
        path = await asyncio.to_thread(self._write_iter, self.resolve(file_name), chunks)
        logger.debug("attachment_streamed", path=str(path))
        return path

    # ------------------------------------------------------------------
    # Blocking helpers (run in a worker thread)
    # ------------------------------------------------------------------

    @staticmethod
    def _create_unique(path: Path) -> tuple[Path, BinaryIO]:
        path.parent.mkdir(parents=True, exist_ok=True)
        candidate = path
        counter = 1
        while True:
            try:
                return candidate, candidate.open("xb")
            except FileExistsError:
                candidate = path.with_name(f"{path.stem}-{counter}{path.suffix}")
                counter += 1

    @classmethod
    def _write_iter(cls, path: Path, chunks: Iterable[bytes]) -> Path:
        target, fh = cls._create_unique(path)
        with fh:
            for chunk in chunks:
                fh.write(chunk)
        return target
