"""In-memory fakes for the LLM, document store and renderer collaborators."""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from typing import Any

from takeoff.core.exceptions import NotFoundError
from takeoff.modules.extraction.llm import Attachment

Handler = Callable[[str, str, list[Attachment]], Any]

_PAGE_RE = re.compile(rb"page-(\d+)")


def page_of(attachments: list[Attachment]) -> int | None:
    """Page number encoded by FakeRenderer into the rendered image bytes."""
    for attachment in attachments:
        match = _PAGE_RE.search(attachment.data)
        if match:
            return int(match.group(1))
    return None


class FakeLLM:
    """LLMClient whose answers come from a handler; records every call."""

    def __init__(self, handler: Handler | None = None) -> None:
        self.handler = handler or (lambda system, user, attachments: "[]")
        self.calls: list[dict[str, Any]] = []

    async def ask(
        self,
        system_prompt: str,
        user_prompt: str,
        attachments: list[Attachment] | None = None,
        response_model: Any = None,
    ) -> Any:
        attachments = attachments or []
        self.calls.append(
            {"system": system_prompt, "user": user_prompt, "attachments": attachments}
        )
        result = self.handler(system_prompt, user_prompt, attachments)
        if isinstance(result, Exception):
            raise result
        return result

    @property
    def page_calls(self) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["attachments"]]

    @property
    def agent_calls(self) -> list[dict[str, Any]]:
        return [c for c in self.calls if not c["attachments"]]


class FakeStore:
    """DocumentStore over an in-memory dict; exceptions are raised on fetch."""

    def __init__(self, documents: dict[str, bytes | Exception]) -> None:
        self.documents = documents
        self.fetched: list[str] = []

    async def fetch_bytes(self, data_layer_id: str) -> bytes:
        self.fetched.append(data_layer_id)
        document = self.documents.get(data_layer_id)
        if document is None:
            raise NotFoundError(f"Data layer not found: {data_layer_id}")
        if isinstance(document, Exception):
            raise document
        return document


class FakeRenderer:
    """Reads ``pages=N`` from a fake PDF and renders ``page-N`` as the image."""

    async def page_count(self, document: bytes) -> int:
        match = re.search(rb"pages=(\d+)", document)
        return int(match.group(1)) if match else 1

    async def page_to_image(self, document: bytes, page_number: int) -> bytes:
        return b"\x89PNG\r\n\x1a\n" + f"page-{page_number}".encode()


def fake_pdf(pages: int) -> bytes:
    return f"%PDF-1.7 pages={pages}".encode()


def materials_json(*items: dict[str, Any]) -> str:
    return json.dumps({"materials": list(items)})



def agent_input(user_prompt: str) -> list[Any]:
    """The item array embedded in a batch agent prompt."""
    data = user_prompt.split("## Current Data (Array of", 1)[1].split("\n", 1)[1]
    return json.loads(data.split("\n\n## Schema Structure", 1)[0])
