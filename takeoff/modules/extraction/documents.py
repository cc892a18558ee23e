"""Document collaborators — fetching layer bytes and rendering PDF pages.

PDFs are rendered page by page to PNG with PyMuPDF; images are sent as a
single page; anything else is unsupported.
"""

from __future__ import annotations

import asyncio
from typing import Literal, Protocol

import fitz  # PyMuPDF
import httpx
import structlog

from takeoff.core.config import settings
from takeoff.core.exceptions import NotFoundError, TransientExternalError, ValidationError

logger = structlog.get_logger()

DocumentKind = Literal["pdf", "png", "jpeg", "webp", "unknown"]

IMAGE_MIME_TYPES: dict[str, str] = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
}


def sniff_document_kind(data: bytes) -> DocumentKind:
    """Classify a document from its leading bytes."""
    head = data[:16]
    if head.startswith(b"%PDF"):
        return "pdf"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png"
    if head.startswith(b"\xff\xd8\xff"):
        return "jpeg"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "webp"
    return "unknown"


class DocumentStore(Protocol):
    async def fetch_bytes(self, data_layer_id: str) -> bytes: ...


class DocumentRenderer(Protocol):
    async def page_count(self, document: bytes) -> int: ...

    async def page_to_image(self, document: bytes, page_number: int) -> bytes: ...


# ---------------------------------------------------------------------------
# PyMuPDF renderer
# ---------------------------------------------------------------------------


def _open_pdf(document: bytes) -> fitz.Document:
    try:
        return fitz.open(stream=document, filetype="pdf")
    except (RuntimeError, ValueError) as exc:
        raise ValidationError(f"Unreadable PDF: {exc}") from exc


def _count_pages(document: bytes) -> int:
    doc = _open_pdf(document)
    try:
        return len(doc)
    finally:
        doc.close()


def _render_page(document: bytes, page_number: int, dpi: int) -> bytes:
    doc = _open_pdf(document)
    try:
        if not 1 <= page_number <= len(doc):
            raise ValidationError(f"Page {page_number} out of range (1..{len(doc)})")
        pixmap = doc[page_number - 1].get_pixmap(dpi=dpi)
        return pixmap.tobytes("png")
    finally:
        doc.close()


class PyMuPDFRenderer:
    """Renders PDF pages to PNG off the event loop."""

    def __init__(self, dpi: int | None = None) -> None:
        self.dpi = dpi or settings.render_dpi

    async def page_count(self, document: bytes) -> int:
        return await asyncio.to_thread(_count_pages, document)

    async def page_to_image(self, document: bytes, page_number: int) -> bytes:
        image = await asyncio.to_thread(_render_page, document, page_number, self.dpi)
        logger.debug("Page rendered", page=page_number, bytes=len(image), dpi=self.dpi)
        return image


# ---------------------------------------------------------------------------
# HTTP document store
# ---------------------------------------------------------------------------


class HttpDocumentStore:
    """Fetches data-layer bytes from ``{document_store_url}/{data_layer_id}``."""

    def __init__(self, base_url: str | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = (base_url or settings.document_store_url).rstrip("/")
        self._client = client

    async def fetch_bytes(self, data_layer_id: str) -> bytes:
        url = f"{self.base_url}/{data_layer_id}"
        try:
            if self._client is not None:
                response = await self._client.get(url)
            else:
                async with httpx.AsyncClient(timeout=settings.external_call_timeout_seconds) as client:
                    response = await client.get(url)
        except httpx.TransportError as exc:
            raise TransientExternalError(f"Document store unreachable: {exc}") from exc

        if response.status_code == 404:
            raise NotFoundError(f"Data layer not found: {data_layer_id}", {"data_layer_id": data_layer_id})
        if response.status_code >= 500:
            raise TransientExternalError(
                f"Document store error {response.status_code}", {"data_layer_id": data_layer_id}
            )
        response.raise_for_status()
        logger.info("Document fetched", data_layer_id=data_layer_id, bytes=len(response.content))
        return response.content
