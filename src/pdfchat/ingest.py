from __future__ import annotations

import argparse
from pathlib import Path
import sys

from pdfchat.config import get_settings
from pdfchat.db import get_engine
from pdfchat.jobs.payloads import PdfIngestionPayload
from pdfchat.jobs.queue import EnqueueResult, JobQueue
from pdfchat.object_store import LocalObjectStore


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="pdfchat-enqueue",
        description="Store a local PDF and enqueue its ingestion job",
    )
    parser.add_argument("pdf_path", help="Path to the PDF file")
    parser.add_argument(
        "--document-id",
        required=True,
        help="Document id every chunk of this PDF is tagged with",
    )
    parser.add_argument(
        "--filename",
        default=None,
        help="Display name recorded as the chunk source (defaults to the file name)",
    )
    parser.add_argument(
        "--object-store-dir",
        default=settings.object_store_dir,
        help="Directory of the local object store",
    )
    return parser


def enqueue_pdf(
    pdf_path: Path,
    *,
    document_id: str,
    queue: JobQueue,
    object_store: LocalObjectStore,
    filename: str | None = None,
) -> EnqueueResult:
    reference = object_store.put(pdf_path.read_bytes(), suffix=".pdf")
    payload = PdfIngestionPayload(
        document_id=document_id,
        storage_reference=reference,
        filename=filename or pdf_path.name,
    )
    return queue.enqueue(payload)


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    settings = get_settings()

    queue = JobQueue(get_engine(), max_attempts=settings.job_max_attempts)
    try:
        result = enqueue_pdf(
            Path(args.pdf_path),
            document_id=args.document_id,
            queue=queue,
            object_store=LocalObjectStore(Path(args.object_store_dir)),
            filename=args.filename,
        )
    except Exception as exc:
        print(f"[pdfchat-enqueue] failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc

    print(
        "[pdfchat-enqueue] "
        f"job_id={result.job_id} "
        f"status={result.status} "
        f"created={str(result.created).lower()}",
        flush=True,
    )


if __name__ == "__main__":
    main()
