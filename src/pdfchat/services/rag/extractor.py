"""Turn raw document bytes into ordered text segments.

``PdfExtractor`` yields one segment per page using PyMuPDF. ``WebPageExtractor``
fetches a URL and yields a single segment holding the visible body text.
"""

from __future__ import annotations

from dataclasses import dataclass
import re

from bs4 import BeautifulSoup
import fitz  # PyMuPDF
import httpx
import structlog

from pdfchat.services.rag.errors import ExtractionError

logger = structlog.get_logger(__name__)

_PDF_MAGIC = b"%PDF-"
_WHITESPACE = re.compile(r"\s+")


class PdfExtractor:
    def __init__(self, *, max_pages: int = 2000, max_bytes: int = 10 * 1024 * 1024) -> None:
        self._max_pages = max_pages
        self._max_bytes = max_bytes

    def extract(self, data: bytes, *, password: str | None = None) -> list[str]:
        if not data:
            raise ExtractionError("document is empty")
        if len(data) > self._max_bytes:
            raise ExtractionError(
                f"document is {len(data)} bytes, limit is {self._max_bytes}"
            )
        if not data.lstrip().startswith(_PDF_MAGIC):
            raise ExtractionError("document is not a PDF")

        try:
            document = fitz.open(stream=data, filetype="pdf")
        except Exception as exc:
            raise ExtractionError(f"unable to parse PDF: {exc}") from exc

        try:
            if document.needs_pass:
                if password is None:
                    raise ExtractionError("PDF is encrypted and no password was supplied")
                if not document.authenticate(password):
                    raise ExtractionError("PDF password was rejected")

            page_count = document.page_count
            if page_count == 0:
                raise ExtractionError("PDF has no pages")
            if page_count > self._max_pages:
                raise ExtractionError(
                    f"document has {page_count} pages, limit is {self._max_pages}"
                )

            try:
                pages = [page.get_text("text") for page in document]
            except Exception as exc:
                raise ExtractionError(f"unable to read PDF text: {exc}") from exc
        finally:
            document.close()

        logger.info("pdf_extracted", pages=len(pages), characters=sum(len(page) for page in pages))
        return pages


@dataclass(frozen=True)
class WebPage:
    url: str
    title: str
    text: str


class WebPageExtractor:
    def __init__(self, *, timeout_seconds: float = 30.0, max_bytes: int = 5 * 1024 * 1024) -> None:
        self._timeout_seconds = timeout_seconds
        self._max_bytes = max_bytes

    def fetch(self, url: str) -> WebPage:
        try:
            response = httpx.get(
                url,
                timeout=self._timeout_seconds,
                headers={"User-Agent": "Mozilla/5.0"},
                follow_redirects=True,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ExtractionError(
                f"fetching {url} returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExtractionError(f"fetching {url} failed: {exc}") from exc

        if len(response.content) > self._max_bytes:
            raise ExtractionError(
                f"page is {len(response.content)} bytes, limit is {self._max_bytes}"
            )
        return self.parse(url, response.text)

    @staticmethod
    def parse(url: str, html: str) -> WebPage:
        soup = BeautifulSoup(html, "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()

        title = soup.title.get_text(strip=True) if soup.title else ""
        body = soup.body if soup.body is not None else soup
        text = _WHITESPACE.sub(" ", body.get_text(" ")).strip()
        if not text:
            raise ExtractionError(f"no text content found at {url}")
        return WebPage(url=url, title=title, text=text)

    def extract(self, url: str) -> list[str]:
        page = self.fetch(url)
        if page.title:
            return [f"{page.title}\n\n{page.text}"]
        return [page.text]
