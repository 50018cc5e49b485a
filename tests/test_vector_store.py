"""Tests for chunking and the degraded (unavailable) vector store."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from driveshelf.config.settings import Settings
from driveshelf.storage.vector_store import VectorStore, chunk_text


class _BrokenClient:
    def get_or_create_collection(self, **_kwargs: object) -> None:
        raise RuntimeError("sqlite too old")


class TestChunkText:
    def test_empty_text(self) -> None:
        assert chunk_text("") == []

    def test_small_paragraphs_are_packed(self) -> None:
        text = "one\n\ntwo\n\nthree"
        assert chunk_text(text, max_chunk_size=100, overlap=20) == ["one\n\ntwo\n\nthree"]

    def test_paragraph_boundary_splits(self) -> None:
        text = "a" * 60 + "\n\n" + "b" * 60
        assert chunk_text(text, max_chunk_size=100, overlap=20) == ["a" * 60, "b" * 60]

    def test_long_paragraph_is_hard_cut_with_overlap(self) -> None:
        chunks = chunk_text("x" * 250, max_chunk_size=100, overlap=20)
        assert all(len(c) <= 100 for c in chunks)
        assert chunks[0] == "x" * 100
        assert sum(len(c) for c in chunks) > 250

    @pytest.mark.parametrize("overlap", [100, 150, -1])
    def test_overlap_must_be_smaller_than_chunk(self, overlap: int) -> None:
        with pytest.raises(ValueError):
            chunk_text("x" * 250, max_chunk_size=100, overlap=overlap)


class TestChunkSettings:
    def test_overlap_not_below_chunk_size_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(index_chunk_size=100, index_chunk_overlap=100)

    def test_valid_chunking_accepted(self) -> None:
        loaded = Settings(index_chunk_size=100, index_chunk_overlap=20)
        assert loaded.index_chunk_overlap == 20


class TestUnavailableStore:
    def test_operations_are_noops(self) -> None:
        store = VectorStore(client=_BrokenClient())

        assert store.available is False
        assert store.index_file("misc/a.md", "text") == 0
        assert store.search("anything") == []
        store.remove_file("misc/a.md")
        store.rename_file("misc/a.md", "misc/b.md")
        assert store.stats() == {"chunks_count": 0, "available": False}
