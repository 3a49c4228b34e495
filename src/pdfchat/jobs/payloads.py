"""Job payload variants.

Each ingestion job carries exactly one of the payload models below, tagged by
``kind``. Payloads are validated when they are enqueued and parsed back into
the same model when a worker claims the job.
"""

from __future__ import annotations

import hashlib
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class PayloadError(ValueError):
    pass


class PdfIngestionPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["pdf"] = "pdf"
    document_id: str = Field(min_length=1, max_length=128)
    storage_reference: str = Field(min_length=1)
    filename: str = Field(min_length=1, max_length=255)

    @property
    def dedup_source(self) -> str:
        return self.storage_reference

    @property
    def source(self) -> str:
        return self.filename


class WebPageIngestionPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["web_page"] = "web_page"
    document_id: str = Field(min_length=1, max_length=128)
    url: str = Field(pattern=r"^https?://\S+$", max_length=2048)

    @property
    def dedup_source(self) -> str:
        return self.url

    @property
    def source(self) -> str:
        return self.url


IngestionPayload = Annotated[
    Union[PdfIngestionPayload, WebPageIngestionPayload],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[IngestionPayload] = TypeAdapter(IngestionPayload)


def parse_payload(raw: Any) -> PdfIngestionPayload | WebPageIngestionPayload:
    try:
        if isinstance(raw, (str, bytes)):
            return _payload_adapter.validate_json(raw)
        return _payload_adapter.validate_python(raw)
    except ValidationError as exc:
        raise PayloadError(f"invalid ingestion payload: {exc}") from exc


def job_key(payload: PdfIngestionPayload | WebPageIngestionPayload) -> str:
    """Deterministic job id derived from where the document lives."""
    digest = hashlib.sha256(payload.dedup_source.encode("utf-8")).hexdigest()[:40]
    return f"{payload.kind}:{digest}"
