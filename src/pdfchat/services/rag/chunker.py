from __future__ import annotations

from collections.abc import Iterator

from pdfchat.services.rag.errors import ConfigurationError
from pdfchat.services.rag.types import ChunkRecord


def _validate(chunk_size: int, chunk_overlap: int) -> None:
    if chunk_size <= 0:
        raise ConfigurationError("chunk_size must be > 0")
    if chunk_overlap < 0:
        raise ConfigurationError("chunk_overlap must be >= 0")
    if chunk_overlap >= chunk_size:
        raise ConfigurationError("chunk_overlap must be smaller than chunk_size")


class ChunkSequence:
    """Sliding-window view over ``text``.

    Windows are ``chunk_size`` characters wide and advance by
    ``chunk_size - chunk_overlap``. Nothing is stripped, so dropping the first
    ``chunk_overlap`` characters of every chunk after the first and
    concatenating gives back ``text`` exactly. Iterating twice yields the
    same chunks.
    """

    def __init__(self, text: str, *, chunk_size: int, chunk_overlap: int) -> None:
        _validate(chunk_size, chunk_overlap)
        self._text = text
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap

    def __iter__(self) -> Iterator[str]:
        text = self._text
        text_length = len(text)
        step = self._chunk_size - self._chunk_overlap
        cursor = 0

        while cursor < text_length:
            end = min(text_length, cursor + self._chunk_size)
            yield text[cursor:end]
            if end >= text_length:
                break
            cursor += step


def chunk_text(text: str, *, chunk_size: int, chunk_overlap: int) -> list[str]:
    return list(ChunkSequence(text, chunk_size=chunk_size, chunk_overlap=chunk_overlap))


def chunk_document(
    text: str,
    *,
    document_id: str,
    source: str,
    chunk_size: int,
    chunk_overlap: int,
) -> list[ChunkRecord]:
    return [
        ChunkRecord(
            document_id=document_id,
            chunk_index=index,
            source=source,
            text=chunk,
        )
        for index, chunk in enumerate(
            ChunkSequence(text, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
        )
    ]
