from __future__ import annotations

from typing import Any

import httpx

from brandpulse.config import settings
from brandpulse.models.domain import UNRESOLVED_SCHEME, Citation, FailureKind
from brandpulse.providers.base import BaseProvider, CallOptions, ProviderResponse
from brandpulse.providers.errors import ProviderError
from brandpulse.providers.redirects import RedirectResolver, is_indirection_url
from brandpulse.providers.retry import RetryPolicy, gemini_retry_policy
from brandpulse.services.citations import extract_domain

GROUNDED_RELEVANCE = 0.95


class GeminiProvider(BaseProvider):
    """Gemini ``generateContent`` with optional Google-search grounding."""

    name = "gemini"

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        resolver: RedirectResolver | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        super().__init__(retry_policy or gemini_retry_policy())
        self.resolver = resolver or RedirectResolver()
        self.base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self.timeout = float(timeout if timeout is not None else settings.api_timeout_seconds)
        self._transport = transport

    def build_payload(self, prompt: str, options: CallOptions) -> dict[str, Any]:
        generation_config: dict[str, Any] = {
            "temperature": options.temperature if options.temperature is not None else settings.temperature,
            "maxOutputTokens": options.max_output_tokens or settings.max_output_tokens,
        }
        payload: dict[str, Any] = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if options.json_mode:
            # Gemini rejects a JSON response MIME type together with tools.
            generation_config["responseMimeType"] = "application/json"
        elif options.grounding:
            payload["tools"] = [{"google_search": {}}]
        return payload

    async def call(
        self,
        prompt: str,
        api_key: str,
        options: CallOptions | None = None,
    ) -> ProviderResponse:
        options = options or CallOptions()
        if not api_key:
            raise ProviderError(FailureKind.AUTH_ERROR, "Gemini API key is not configured", provider=self.name)

        model = options.model or settings.gemini_model
        url = f"{self.base_url}/models/{model}:generateContent"
        payload = self.build_payload(prompt, options)
        request_id = self.next_request_id()

        async def attempt(req_id: str) -> ProviderResponse:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={
                        "x-goog-api-key": api_key,
                        "Content-Type": "application/json",
                    },
                )
                response.raise_for_status()
                try:
                    data = response.json()
                except ValueError as exc:
                    raise ProviderError(
                        FailureKind.SERVER_ERROR,
                        "response body is not JSON",
                        status_code=response.status_code,
                    ) from exc
            return self._parse_response(data, model=model, request_id=req_id)

        response = await self._call_with_policy(self.retry_policy, request_id, model, attempt)
        if not response.grounded_citations:
            return response
        citations = await self._resolve_citations(response.grounded_citations)
        return ProviderResponse(
            text=response.text,
            grounded_citations=citations,
            finish_reason=response.finish_reason,
            model=response.model,
            request_id=response.request_id,
        )

    def _parse_response(self, data: dict[str, Any], *, model: str, request_id: str) -> ProviderResponse:
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise ProviderError(FailureKind.UNKNOWN, f"prompt blocked: {block_reason}")
            raise ProviderError(FailureKind.SERVER_ERROR, "no candidates in response")

        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part["text"] for part in parts if isinstance(part, dict) and part.get("text"))

        chunk_citations: list[Citation] = []
        grounding = candidate.get("groundingMetadata") or {}
        for chunk in grounding.get("groundingChunks") or []:
            web = chunk.get("web") if isinstance(chunk, dict) else None
            if not web or not web.get("uri"):
                continue
            title = str(web.get("title") or "")
            chunk_citations.append(
                Citation(
                    url=web["uri"],
                    domain="",
                    title=title,
                    relevance_score=GROUNDED_RELEVANCE,
                    source_type="grounded_pending",
                )
            )

        return ProviderResponse(
            text=text,
            grounded_citations=tuple(chunk_citations),
            finish_reason=candidate.get("finishReason"),
            model=model,
            request_id=request_id,
        )

    async def _resolve_citations(self, pending: tuple[Citation, ...]) -> tuple[Citation, ...]:
        redirect_map = await self.resolver.resolve_many(
            (c.url, c.title) for c in pending if c.url
        )
        resolved: list[Citation] = []
        for citation in pending:
            original = citation.url or ""
            final_url = redirect_map.get(original, original)
            title = citation.title

            if final_url.startswith(UNRESOLVED_SCHEME) or is_indirection_url(final_url):
                if not final_url.startswith(UNRESOLVED_SCHEME):
                    final_url = f"{UNRESOLVED_SCHEME}{title or 'unknown'}"
                domain = title or "unknown source"
                source_type = "grounded_unresolved"
            else:
                domain = extract_domain(final_url)
                source_type = "grounded_resolved" if is_indirection_url(original) else "grounded_direct"

            resolved.append(
                Citation(
                    url=final_url,
                    domain=domain,
                    title=title or domain,
                    relevance_score=citation.relevance_score,
                    source_type=source_type,
                )
            )
        return tuple(resolved)
