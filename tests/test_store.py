"""Tests for mail_listener.store."""

from __future__ import annotations

import asyncio

import pytest

from mail_listener.store import AttachmentStore, sanitize_filename


class TestSanitizeFilename:
    def test_keeps_safe_names(self):
        assert sanitize_filename("report-2025.pdf") == "report-2025.pdf"

    def test_replaces_separators_and_spaces(self):
        assert sanitize_filename("../etc/pass wd") == "_etc_pass_wd"

    def test_empty_after_cleaning(self):
        assert sanitize_filename("...") == "attachment"


class TestAttachmentStore:
    def test_resolve_is_absolute_and_inside_directory(self, tmp_path):
        store = AttachmentStore(tmp_path)
        path = store.resolve("report.pdf")
        assert path.is_absolute()
        assert path == (tmp_path / "report.pdf").resolve()

    def test_resolve_cannot_escape_directory(self, tmp_path):
        store = AttachmentStore(tmp_path)
        assert store.resolve("../outside.txt").parent == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_write_creates_directory(self, tmp_path):
        store = AttachmentStore(tmp_path / "nested" / "dir")
        path = await store.write("data.csv", b"a,b\n")
        assert path.read_bytes() == b"a,b\n"
        assert path.parent == (tmp_path / "nested" / "dir").resolve()

    @pytest.mark.asyncio
    async def test_write_chunks_preserves_order(self, tmp_path):
        store = AttachmentStore(tmp_path)
        path = await store.write_chunks("big.bin", iter([b"abc", b"def", b"g"]))
        assert path.read_bytes() == b"abcdefg"

    @pytest.mark.asyncio
    async def test_write_error_propagates(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file in the way")
        store = AttachmentStore(blocker)
        with pytest.raises(OSError):
            await store.write("x.txt", b"x")

    @pytest.mark.asyncio
    async def test_existing_file_is_not_overwritten(self, tmp_path):
        store = AttachmentStore(tmp_path)
        first = await store.write("report.pdf", b"first")
        second = await store.write("report.pdf", b"second")

        assert first == (tmp_path / "report.pdf").resolve()
        assert second == (tmp_path / "report-1.pdf").resolve()
        assert first.read_bytes() == b"first"
        assert second.read_bytes() == b"second"

    @pytest.mark.asyncio
    async def test_concurrent_writes_get_distinct_paths(self, tmp_path):
        store = AttachmentStore(tmp_path)
        paths = await asyncio.gather(
            *(store.write_chunks("notes.txt", [f"copy {i}".encode()]) for i in range(4))
        )

        assert len(set(paths)) == 4
        assert sorted(p.read_bytes() for p in paths) == [b"copy 0", b"copy 1", b"copy 2", b"copy 3"]
