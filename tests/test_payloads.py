import pytest

from pdfchat.jobs.payloads import (
    PayloadError,
    PdfIngestionPayload,
    WebPageIngestionPayload,
    job_key,
    parse_payload,
)


def test_parse_payload_dispatches_on_kind() -> None:
    pdf = parse_payload(
        {"kind": "pdf", "document_id": "D1", "storage_reference": "abc", "filename": "a.pdf"}
    )
    web = parse_payload('{"kind": "web_page", "document_id": "W1", "url": "https://example.com"}')

    assert isinstance(pdf, PdfIngestionPayload)
    assert pdf.source == "a.pdf"
    assert isinstance(web, WebPageIngestionPayload)
    assert web.source == "https://example.com"


@pytest.mark.parametrize(
    "raw",
    [
        {"kind": "pdf", "document_id": "D1", "filename": "a.pdf"},
        {"kind": "pdf", "document_id": "", "storage_reference": "abc", "filename": "a.pdf"},
        {"kind": "web_page", "document_id": "W1", "url": "ftp://example.com"},
        {"kind": "video", "document_id": "V1"},
        {
            "kind": "pdf",
            "document_id": "D1",
            "storage_reference": "abc",
            "filename": "a.pdf",
            "priority": 5,
        },
        "not json",
    ],
)
def test_parse_payload_rejects_invalid_input(raw: object) -> None:
    with pytest.raises(PayloadError):
        parse_payload(raw)


def test_job_key_is_deterministic_per_storage_reference() -> None:
    first = PdfIngestionPayload(document_id="D1", storage_reference="ref-1", filename="a.pdf")
    renamed = PdfIngestionPayload(document_id="D9", storage_reference="ref-1", filename="b.pdf")
    other = PdfIngestionPayload(document_id="D1", storage_reference="ref-2", filename="a.pdf")

    assert job_key(first) == job_key(renamed)
    assert job_key(first) != job_key(other)
    assert job_key(first).startswith("pdf:")
