"""OpenAI provider.

Two request conventions, chosen by model family:

- ``gpt-5*`` models go through the Responses API with the ``web_search`` tool
  and report citations as ``url_citation`` annotations on the output text.
- every other model uses chat completions with a JSON-only system message.
"""
from __future__ import annotations

from typing import Any, Callable

from openai import AsyncOpenAI

from brandpulse.config import settings
from brandpulse.models.domain import Citation, FailureKind
from brandpulse.providers.base import BaseProvider, CallOptions, ProviderResponse
from brandpulse.providers.errors import ProviderError
from brandpulse.providers.retry import (
    RetryPolicy,
    openai_chat_retry_policy,
    openai_tool_retry_policy,
)
from brandpulse.services.citations import extract_domain, unique_by_url

JSON_SYSTEM_MESSAGE = (
    "You are a helpful assistant that responds with valid JSON only. "
    "Do not include any text outside the JSON object."
)
CITATION_RELEVANCE = 0.9


def uses_responses_api(model: str) -> bool:
    return (model or "").lower().startswith("gpt-5")


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _citation(url: str, title: str | None, source_type: str) -> Citation:
    domain = extract_domain(url)
    return Citation(
        url=url,
        domain=domain,
        title=title or domain,
        relevance_score=CITATION_RELEVANCE,
        source_type=source_type,
    )


class OpenAIProvider(BaseProvider):
    name = "openai"

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        tool_retry_policy: RetryPolicy | None = None,
        client_factory: Callable[[str], Any] | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        super().__init__(retry_policy or openai_chat_retry_policy())
        self.tool_retry_policy = tool_retry_policy or openai_tool_retry_policy()
        self.base_url = base_url if base_url is not None else settings.openai_base_url
        self.timeout = float(timeout if timeout is not None else settings.api_timeout_seconds)
        self._client_factory = client_factory or self._default_client
        self._clients: dict[str, Any] = {}

    def _default_client(self, api_key: str) -> AsyncOpenAI:
        kwargs: dict[str, Any] = {
            "api_key": api_key,
            "timeout": self.timeout,
            # retries are owned by RetryPolicy
            "max_retries": 0,
        }
        if self.base_url.strip():
            kwargs["base_url"] = self.base_url.strip()
        return AsyncOpenAI(**kwargs)

    def client_for(self, api_key: str) -> Any:
        client = self._clients.get(api_key)
        if client is None:
            client = self._client_factory(api_key)
            self._clients[api_key] = client
        return client

    async def call(
        self,
        prompt: str,
        api_key: str,
        options: CallOptions | None = None,
    ) -> ProviderResponse:
        options = options or CallOptions()
        if not api_key:
            raise ProviderError(FailureKind.AUTH_ERROR, "OpenAI API key is not configured", provider=self.name)

        model = options.model or settings.openai_model
        client = self.client_for(api_key)
        request_id = self.next_request_id()

        if uses_responses_api(model):
            async def tool_attempt(req_id: str) -> ProviderResponse:
                response = await client.responses.create(**self.build_responses_request(prompt, model, options))
                return self._from_responses(response, model=model, request_id=req_id)

            return await self._call_with_policy(self.tool_retry_policy, request_id, model, tool_attempt)

        async def attempt(req_id: str) -> ProviderResponse:
            response = await client.chat.completions.create(**self.build_chat_request(prompt, model, options))
            return self._from_chat(response, model=model, request_id=req_id)

        return await self._call_with_policy(self.retry_policy, request_id, model, attempt)

    def build_responses_request(self, prompt: str, model: str, options: CallOptions) -> dict[str, Any]:
        request: dict[str, Any] = {"model": model, "input": prompt}
        if options.grounding:
            request["tools"] = [{"type": "web_search"}]
        return request

    def build_chat_request(self, prompt: str, model: str, options: CallOptions) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": JSON_SYSTEM_MESSAGE},
                {"role": "user", "content": prompt},
            ],
            "temperature": options.temperature if options.temperature is not None else settings.temperature,
            "max_tokens": options.max_output_tokens or settings.openai_max_tokens,
        }
        if options.json_mode:
            request["response_format"] = {"type": "json_object"}
        return request

    def _from_responses(self, response: Any, *, model: str, request_id: str) -> ProviderResponse:
        text_parts: list[str] = []
        citations: list[Citation] = []

        for item in _field(response, "output", None) or []:
            if _field(item, "type") != "message":
                continue
            for content in _field(item, "content", None) or []:
                if _field(content, "type") != "output_text":
                    continue
                text = _field(content, "text")
                if text:
                    text_parts.append(text)
                for annotation in _field(content, "annotations", None) or []:
                    if _field(annotation, "type") != "url_citation":
                        continue
                    url = _field(annotation, "url")
                    if url:
                        citations.append(_citation(url, _field(annotation, "title"), "openai_citation"))

        text = "".join(text_parts) or (_field(response, "output_text") or "")
        if not text:
            raise ProviderError(FailureKind.SERVER_ERROR, "no output text in response")

        incomplete = _field(response, "incomplete_details")
        finish_reason = _field(incomplete, "reason") if incomplete else _field(response, "status")

        return ProviderResponse(
            text=text,
            grounded_citations=tuple(unique_by_url(citations)),
            finish_reason=finish_reason,
            model=model,
            request_id=request_id,
        )

    def _from_chat(self, response: Any, *, model: str, request_id: str) -> ProviderResponse:
        choices = _field(response, "choices", None) or []
        if not choices:
            raise ProviderError(FailureKind.SERVER_ERROR, "no choices in response")

        choice = choices[0]
        message = _field(choice, "message")
        text = _field(message, "content") or ""

        citations: list[Citation] = []
        for annotation in _field(message, "annotations", None) or []:
            if _field(annotation, "type") != "url_citation":
                continue
            detail = _field(annotation, "url_citation") or annotation
            url = _field(detail, "url")
            if url:
                citations.append(_citation(url, _field(detail, "title"), "openai_citation"))

        for tool_call in _field(message, "tool_calls", None) or []:
            if _field(tool_call, "type") != "web_search":
                continue
            search = _field(tool_call, "web_search") or {}
            for result in _field(search, "results", None) or []:
                url = _field(result, "url")
                if url:
                    citations.append(_citation(url, _field(result, "title"), "openai_web_search"))

        return ProviderResponse(
            text=text,
            grounded_citations=tuple(unique_by_url(citations)),
            finish_reason=_field(choice, "finish_reason"),
            model=model,
            request_id=request_id,
        )
