from __future__ import annotations

import hashlib
import os
from pathlib import Path
import re
import tempfile
from typing import Protocol

import structlog

from pdfchat.services.rag.errors import ObjectStoreError

logger = structlog.get_logger(__name__)

_REFERENCE = re.compile(r"^[0-9a-f]{64}(\.[a-z0-9]{1,8})?$")


class ObjectStore(Protocol):
    def put(self, data: bytes, *, suffix: str = "") -> str: ...

    def get(self, reference: str) -> bytes: ...

    def delete(self, reference: str) -> None: ...


class LocalObjectStore:
    """Content-addressed file storage: the reference is the sha256 of the bytes.

    Storing identical bytes twice returns the same reference, which keeps the
    derived ingestion job key stable across re-uploads.
    """

    def __init__(self, root: Path) -> None:
        self._root = root

    def _path_for(self, reference: str) -> Path:
        if not _REFERENCE.match(reference):
            raise ObjectStoreError(f"invalid object reference: {reference!r}")
        return self._root / reference[:2] / reference

    def put(self, data: bytes, *, suffix: str = "") -> str:
        normalized_suffix = suffix.lower()
        if normalized_suffix and not re.fullmatch(r"\.[a-z0-9]{1,8}", normalized_suffix):
            raise ObjectStoreError(f"invalid object suffix: {suffix!r}")

        reference = hashlib.sha256(data).hexdigest() + normalized_suffix
        path = self._path_for(reference)
        if path.exists():
            logger.info("object_exists", reference=reference)
            return reference

        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path: Path | None = None
        try:
            with tempfile.NamedTemporaryFile(
                dir=path.parent, prefix=f"{reference}.", suffix=".tmp", delete=False
            ) as handle:
                tmp_path = Path(handle.name)
                handle.write(data)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise ObjectStoreError(f"unable to store object {reference}: {exc}") from exc
        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)

        logger.info("object_stored", reference=reference, size=len(data))
        return reference

    def get(self, reference: str) -> bytes:
        path = self._path_for(reference)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise ObjectStoreError(f"object not found: {reference}") from exc
        except OSError as exc:
            raise ObjectStoreError(f"unable to read object {reference}: {exc}") from exc

    def delete(self, reference: str) -> None:
        path = self._path_for(reference)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise ObjectStoreError(f"unable to delete object {reference}: {exc}") from exc
