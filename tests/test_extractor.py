import fitz
import httpx
import pytest

from pdfchat.services.rag.errors import ExtractionError
from pdfchat.services.rag.extractor import PdfExtractor, WebPageExtractor


def _make_pdf(pages: list[str]) -> bytes:
    document = fitz.open()
    for text in pages:
        page = document.new_page()
        page.insert_text((72, 72), text, fontsize=11)
    data = document.tobytes()
    document.close()
    return data


def _make_encrypted_pdf(text: str, password: str) -> bytes:
    document = fitz.open()
    document.new_page().insert_text((72, 72), text, fontsize=11)
    data = document.tobytes(
        encryption=fitz.PDF_ENCRYPT_AES_256,
        owner_pw="owner-secret",
        user_pw=password,
    )
    document.close()
    return data


def test_pdf_extractor_returns_one_segment_per_page_in_order() -> None:
    data = _make_pdf(["first page text", "second page text", "third page text"])

    pages = PdfExtractor().extract(data)

    assert len(pages) == 3
    assert "first page" in pages[0]
    assert "second page" in pages[1]
    assert "third page" in pages[2]


def test_pdf_extractor_rejects_non_pdf_and_empty_input() -> None:
    extractor = PdfExtractor()

    with pytest.raises(ExtractionError, match="empty"):
        extractor.extract(b"")
    with pytest.raises(ExtractionError, match="not a PDF"):
        extractor.extract(b"plain text pretending to be a document")


def test_pdf_extractor_rejects_corrupt_pdf() -> None:
    with pytest.raises(ExtractionError):
        PdfExtractor().extract(b"%PDF-1.7\n this is not really a pdf body")


def test_pdf_extractor_enforces_page_and_size_limits() -> None:
    data = _make_pdf(["one", "two", "three"])

    with pytest.raises(ExtractionError, match="3 pages"):
        PdfExtractor(max_pages=2).extract(data)
    with pytest.raises(ExtractionError, match="limit is 10"):
        PdfExtractor(max_bytes=10).extract(data)


def test_pdf_extractor_handles_encrypted_documents() -> None:
    data = _make_encrypted_pdf("confidential findings", "s3cret")
    extractor = PdfExtractor()

    with pytest.raises(ExtractionError, match="no password"):
        extractor.extract(data)
    with pytest.raises(ExtractionError, match="rejected"):
        extractor.extract(data, password="wrong")

    pages = extractor.extract(data, password="s3cret")
    assert "confidential findings" in pages[0]


def test_web_page_parse_strips_scripts_and_collapses_whitespace() -> None:
    html = """
    <html>
      <head><title> Release notes </title><style>body { color: red; }</style></head>
      <body>
        <h1>Version 2</h1>
        <script>console.log("hidden")</script>
        <noscript>enable javascript</noscript>
        <p>Adds   hybrid
           search.</p>
      </body>
    </html>
    """

    page = WebPageExtractor.parse("https://example.com/notes", html)

    assert page.title == "Release notes"
    assert page.text == "Version 2 Adds hybrid search."


def test_web_page_parse_without_text_raises() -> None:
    with pytest.raises(ExtractionError, match="no text content"):
        WebPageExtractor.parse("https://example.com", "<html><body><script>x()</script></body></html>")


class _FakeResponse:
    def __init__(self, text: str, *, status_code: int = 200) -> None:
        self.text = text
        self.content = text.encode("utf-8")
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("GET", "https://example.com")
            response = httpx.Response(self.status_code, request=request)
            raise httpx.HTTPStatusError("request failed", request=request, response=response)


def test_web_page_extractor_fetches_and_extracts(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_get(url: str, **kwargs: object) -> _FakeResponse:
        captured["url"] = url
        captured.update(kwargs)
        return _FakeResponse(
            "<html><head><title>Pricing</title></head>"
            "<body><p>Pricing starts at ten dollars.</p></body></html>"
        )

    monkeypatch.setattr("pdfchat.services.rag.extractor.httpx.get", fake_get)

    segments = WebPageExtractor(timeout_seconds=5).extract("https://example.com/pricing")

    assert segments == ["Pricing\n\nPricing starts at ten dollars."]
    assert captured["url"] == "https://example.com/pricing"
    assert captured["timeout"] == 5
    assert captured["follow_redirects"] is True


def test_web_page_extractor_without_title_returns_body_only(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_get(url: str, **kwargs: object) -> _FakeResponse:
        del url, kwargs
        return _FakeResponse("<html><body><p>Revenue grew.</p></body></html>")

    monkeypatch.setattr("pdfchat.services.rag.extractor.httpx.get", fake_get)

    assert WebPageExtractor().extract("https://example.com/report") == ["Revenue grew."]


def test_web_page_extractor_maps_http_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_get(url: str, **kwargs: object) -> _FakeResponse:
        del url, kwargs
        return _FakeResponse("missing", status_code=404)

    monkeypatch.setattr("pdfchat.services.rag.extractor.httpx.get", fake_get)

    with pytest.raises(ExtractionError, match="HTTP 404"):
        WebPageExtractor().extract("https://example.com/gone")


def test_web_page_extractor_enforces_size_limit(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_get(url: str, **kwargs: object) -> _FakeResponse:
        del url, kwargs
        return _FakeResponse("<p>" + "x" * 200 + "</p>")

    monkeypatch.setattr("pdfchat.services.rag.extractor.httpx.get", fake_get)

    with pytest.raises(ExtractionError, match="limit is 100"):
        WebPageExtractor(max_bytes=100).extract("https://example.com/large")
