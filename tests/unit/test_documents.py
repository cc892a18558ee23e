"""Unit tests for document sniffing, fetching and PDF rendering."""

from __future__ import annotations

import fitz
import httpx
import pytest

from takeoff.core.exceptions import NotFoundError, TransientExternalError, ValidationError
from takeoff.modules.extraction.documents import (
    HttpDocumentStore,
    PyMuPDFRenderer,
    sniff_document_kind,
)


def _pdf(pages: int) -> bytes:
    doc = fitz.open()
    for number in range(pages):
        page = doc.new_page(width=200, height=200)
        page.insert_text((20, 40), f"Page {number + 1}: HEB 200 x 12")
    data = doc.tobytes()
    doc.close()
    return data


@pytest.mark.parametrize(
    "data, kind",
    [
        (b"%PDF-1.7\n...", "pdf"),
        (b"\x89PNG\r\n\x1a\n....", "png"),
        (b"\xff\xd8\xff\xe0....", "jpeg"),
        (b"RIFF\x00\x00\x00\x00WEBPVP8 ", "webp"),
        (b"PK\x03\x04", "unknown"),
        (b"", "unknown"),
    ],
)
def test_sniff_document_kind(data, kind) -> None:
    assert sniff_document_kind(data) == kind


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------


async def test_renderer_counts_and_renders_pages() -> None:
    document = _pdf(3)
    renderer = PyMuPDFRenderer(dpi=36)
    assert await renderer.page_count(document) == 3
    image = await renderer.page_to_image(document, 2)
    assert sniff_document_kind(image) == "png"


async def test_renderer_rejects_out_of_range_page() -> None:
    with pytest.raises(ValidationError, match="out of range"):
        await PyMuPDFRenderer(dpi=36).page_to_image(_pdf(1), 2)


async def test_renderer_rejects_garbage() -> None:
    with pytest.raises(ValidationError, match="Unreadable PDF"):
        await PyMuPDFRenderer().page_count(b"not a pdf")


# ---------------------------------------------------------------------------
# HTTP store
# ---------------------------------------------------------------------------


def _store(handler) -> HttpDocumentStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpDocumentStore(base_url="http://docs.test/layers/", client=client)


async def test_store_fetches_bytes() -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, content=b"%PDF-1.7")

    assert await _store(handler).fetch_bytes("layer-1") == b"%PDF-1.7"
    assert requested == ["http://docs.test/layers/layer-1"]


async def test_store_maps_missing_layer_to_not_found() -> None:
    with pytest.raises(NotFoundError) as info:
        await _store(lambda request: httpx.Response(404)).fetch_bytes("gone")
    assert info.value.details == {"data_layer_id": "gone"}


async def test_store_maps_server_errors_to_transient() -> None:
    with pytest.raises(TransientExternalError):
        await _store(lambda request: httpx.Response(503)).fetch_bytes("layer-1")


async def test_store_maps_connection_errors_to_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransientExternalError, match="unreachable"):
        await _store(handler).fetch_bytes("layer-1")
