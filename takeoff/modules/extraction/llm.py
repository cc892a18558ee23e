"""LLM capability — provider-agnostic ``ask`` over Gemini, Claude and OpenAI.

Providers supported:
  - google (Gemini Flash / Pro)
  - anthropic (Claude via direct API or Vertex AI)
  - openai

Plain calls go through the raw SDKs; calls with a ``response_model`` go
through instructor. SDK calls are synchronous and run in a worker thread.
Nothing here retries: a paid call is made at most once per ``ask``.
"""

from __future__ import annotations

import asyncio
import base64
import os
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import httpx
import instructor
import structlog
from pydantic import BaseModel

from takeoff.core.config import clamp_timeout, settings
from takeoff.core.exceptions import ExternalTimeoutError, TransientExternalError

logger = structlog.get_logger()

T = TypeVar("T")

# Default models per provider
DEFAULT_MODELS: dict[str, str] = {
    "anthropic": "claude-sonnet-4@20250514",
    "google": "gemini-2.5-flash",
    "openai": "gpt-4.1",
}


@dataclass(frozen=True)
class Attachment:
    """Binary input sent alongside the prompt (a rendered page image)."""

    data: bytes
    mime_type: str = "image/png"

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


class LLMClient(Protocol):
    async def ask(
        self,
        system_prompt: str,
        user_prompt: str,
        attachments: list[Attachment] | None = None,
        response_model: type[BaseModel] | None = None,
    ) -> str | BaseModel: ...


async def call_with_timeout(awaitable: Awaitable[T], timeout: float | None = None, what: str = "external call") -> T:
    """Await an external call with a bounded timeout.

    Timeouts become ExternalTimeoutError (a TransientExternalError); the
    timeout is clamped to 5..120s.
    """
    seconds = clamp_timeout(settings.external_call_timeout_seconds if timeout is None else timeout)
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        logger.warning("External call timed out", what=what, timeout_seconds=seconds)
        raise ExternalTimeoutError(
            f"{what} timed out after {seconds:g}s", {"timeout_seconds": seconds}
        ) from exc


class ProviderLLMClient:
    """LLMClient backed by the configured provider SDK."""

    def __init__(self, provider: str | None = None, model: str | None = None) -> None:
        self.provider = provider or settings.llm_provider
        self.model = model or settings.llm_model or DEFAULT_MODELS.get(self.provider, "")
        if self.provider not in DEFAULT_MODELS:
            raise ValueError(f"Unsupported provider: {self.provider}")

        # Lazy-initialized clients
        self._raw_client: Any = None
        self._structured_client: Any = None
        self._is_vertex = False

        logger.info("LLM client initialized", provider=self.provider, model=self.model)

    # ------------------------------------------------------------------
    # Client builders (lazy)
    # ------------------------------------------------------------------

    def _get_raw_client(self) -> Any:
        if self._raw_client is not None:
            return self._raw_client

        if self.provider == "google":
            from google import genai
            from google.genai import types as genai_types

            self._raw_client = genai.Client(
                api_key=settings.google_ai_api_key,
                http_options=genai_types.HttpOptions(timeout=int(clamp_timeout(120) * 1000)),
            )
        elif self.provider == "anthropic":
            import anthropic

            if settings.vertex_credentials_path:
                os.environ.setdefault("GOOGLE_APPLICATION_CREDENTIALS", settings.vertex_credentials_path)
                self._raw_client = anthropic.AnthropicVertex(
                    project_id=settings.vertex_project_id,
                    region=settings.vertex_location,
                    max_retries=0,
                )
                self._is_vertex = True
            else:
                self._raw_client = anthropic.Anthropic(
                    api_key=settings.anthropic_api_key, max_retries=0
                )
        else:
            import openai

            self._raw_client = openai.OpenAI(api_key=settings.openai_api_key, max_retries=0)

        return self._raw_client

    def _get_structured_client(self) -> Any:
        if self._structured_client is not None:
            return self._structured_client

        raw = self._get_raw_client()
        if self.provider == "anthropic":
            self._structured_client = instructor.from_anthropic(raw)
        elif self.provider == "google":
            self._structured_client = instructor.from_genai(raw, mode=instructor.Mode.GENAI_TOOLS)
        else:
            self._structured_client = instructor.from_openai(raw)
        return self._structured_client

    # ------------------------------------------------------------------
    # Unified call
    # ------------------------------------------------------------------

    async def ask(
        self,
        system_prompt: str,
        user_prompt: str,
        attachments: list[Attachment] | None = None,
        response_model: type[BaseModel] | None = None,
    ) -> str | BaseModel:
        start = time.time()
        try:
            if response_model is not None:
                result: str | BaseModel = await asyncio.to_thread(
                    self._call_structured, system_prompt, user_prompt, attachments or [], response_model
                )
            else:
                result = await asyncio.to_thread(
                    self._call_text, system_prompt, user_prompt, attachments or []
                )
        except TransientExternalError:
            raise
        except Exception as exc:
            if _is_transient(exc):
                logger.warning("LLM call failed transiently", provider=self.provider, error=str(exc))
                raise TransientExternalError(f"LLM call failed: {exc}", {"provider": self.provider}) from exc
            raise

        logger.info(
            "LLM call",
            provider=self.provider,
            model=self.model,
            attachments=len(attachments or []),
            duration_ms=int((time.time() - start) * 1000),
        )
        return result

    def _call_text(self, system_prompt: str, user_prompt: str, attachments: list[Attachment]) -> str:
        client = self._get_raw_client()

        if self.provider == "google":
            from google.genai import types

            contents: list[Any] = [
                types.Part.from_bytes(data=a.data, mime_type=a.mime_type) for a in attachments
            ]
            contents.append(user_prompt)
            config_kwargs: dict[str, Any] = {
                "temperature": settings.llm_temperature,
                "max_output_tokens": settings.llm_max_output_tokens,
            }
            if system_prompt:
                config_kwargs["system_instruction"] = system_prompt
            response = client.models.generate_content(
                model=self.model,
                contents=contents,
                config=types.GenerateContentConfig(**config_kwargs),
            )
            return response.text or ""

        if self.provider == "anthropic":
            content: list[dict[str, Any]] = [
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": a.mime_type, "data": a.base64},
                }
                for a in attachments
            ]
            content.append({"type": "text", "text": user_prompt})
            kwargs: dict[str, Any] = {}
            if system_prompt:
                kwargs["system"] = system_prompt
            response = client.messages.create(
                model=self.model,
                max_tokens=settings.llm_max_output_tokens,
                temperature=settings.llm_temperature,
                messages=[{"role": "user", "content": content}],
                **kwargs,
            )
            return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")

        user_content: list[dict[str, Any]] = [
            {"type": "image_url", "image_url": {"url": f"data:{a.mime_type};base64,{a.base64}"}}
            for a in attachments
        ]
        user_content.append({"type": "text", "text": user_prompt})
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_content})
        response = client.chat.completions.create(
            model=self.model,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_output_tokens,
            messages=messages,
        )
        return response.choices[0].message.content or ""

    def _call_structured(
        self,
        system_prompt: str,
        user_prompt: str,
        attachments: list[Attachment],
        response_model: type[BaseModel],
    ) -> BaseModel:
        if attachments:
            raise ValueError("Structured calls do not accept attachments")

        client = self._get_structured_client()
        if self.provider == "anthropic":
            return client.messages.create(
                model=self.model,
                max_tokens=settings.llm_max_output_tokens,
                max_retries=0,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                response_model=response_model,
            )
        # OpenAI + Gemini compatible API
        return client.chat.completions.create(
            model=self.model,
            max_retries=0,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_model=response_model,
        )


def _is_transient(exc: Exception) -> bool:
    """Upstream 5xx, rate limits and connection faults are caller-retryable."""
    import anthropic
    import openai

    if isinstance(
        exc,
        (
            anthropic.APIConnectionError,
            openai.APIConnectionError,
            httpx.TransportError,
            ConnectionError,
            TimeoutError,
        ),
    ):
        return True
    status = getattr(exc, "status_code", None) or getattr(exc, "code", None)
    return isinstance(status, int) and (status >= 500 or status == 429)
