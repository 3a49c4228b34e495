import pytest

from pdfchat.services.rag.chunker import ChunkSequence, chunk_document, chunk_text
from pdfchat.services.rag.errors import ConfigurationError


def _sample_text(length: int) -> str:
    alphabet = "abcdefghijklmnopqrstuvwxyz0123456789"
    return "".join(alphabet[index % len(alphabet)] for index in range(length))


def test_chunk_text_slides_fixed_window_with_overlap() -> None:
    text = _sample_text(2500)

    chunks = chunk_text(text, chunk_size=1000, chunk_overlap=200)

    assert [len(chunk) for chunk in chunks] == [1000, 1000, 900]
    for left, right in zip(chunks, chunks[1:]):
        assert left[-200:] == right[:200]


def test_chunks_reassemble_original_text() -> None:
    text = _sample_text(3333)

    chunks = chunk_text(text, chunk_size=500, chunk_overlap=120)
    rebuilt = chunks[0] + "".join(chunk[120:] for chunk in chunks[1:])

    assert rebuilt == text


def test_short_and_empty_inputs() -> None:
    assert chunk_text("hello", chunk_size=1000, chunk_overlap=200) == ["hello"]
    assert chunk_text("", chunk_size=1000, chunk_overlap=200) == []
    assert chunk_text(_sample_text(1000), chunk_size=1000, chunk_overlap=200) == [
        _sample_text(1000)
    ]


def test_chunk_sequence_is_restartable() -> None:
    sequence = ChunkSequence(_sample_text(1800), chunk_size=1000, chunk_overlap=200)

    assert list(sequence) == list(sequence)


@pytest.mark.parametrize(
    ("chunk_size", "chunk_overlap"),
    [(0, 0), (100, -1), (100, 100), (100, 150)],
)
def test_invalid_parameters_raise_configuration_error(chunk_size: int, chunk_overlap: int) -> None:
    with pytest.raises(ConfigurationError):
        chunk_text("text", chunk_size=chunk_size, chunk_overlap=chunk_overlap)


def test_chunk_document_tags_every_chunk_in_order() -> None:
    chunks = chunk_document(
        _sample_text(2500),
        document_id="D1",
        source="report.pdf",
        chunk_size=1000,
        chunk_overlap=200,
    )

    assert [chunk.chunk_index for chunk in chunks] == [0, 1, 2]
    assert {chunk.document_id for chunk in chunks} == {"D1"}
    assert chunks[1].chunk_id == "D1-0001"
    assert chunks[2].metadata == {"document_id": "D1", "chunk_index": 2, "source": "report.pdf"}
