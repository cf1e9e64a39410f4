import asyncio
import ssl

import httpx
import pytest

from brandpulse.models.domain import Citation
from brandpulse.providers.redirects import (
    RedirectResolver,
    is_indirection_url,
    is_search_results_page,
)
from brandpulse.services.citations import (
    extract_domain,
    guess_url_from_title,
    merge_document_sources,
    unique_by_url,
)

REDIRECT = "https://vertexaisearch.cloud.google.com/grounding-api-redirect/AbC123"


def resolver_for(handler, **kwargs) -> RedirectResolver:
    return RedirectResolver(transport=httpx.MockTransport(handler), **kwargs)


class TestRedirectResolver:
    @pytest.mark.asyncio
    async def test_follows_chain_to_destination(self):
        def handler(request):
            if request.url.host == "vertexaisearch.cloud.google.com":
                return httpx.Response(302, headers={"location": "https://hop.example.net/r"})
            if request.url.host == "hop.example.net":
                return httpx.Response(301, headers={"location": "https://www.reuters.com/article/acme"})
            return httpx.Response(200, text="article")

        resolved = await resolver_for(handler).resolve(REDIRECT, "Acme news")
        assert resolved == "https://www.reuters.com/article/acme"

    @pytest.mark.asyncio
    async def test_search_results_page_falls_back_to_title(self):
        def handler(request):
            if request.url.host == "vertexaisearch.cloud.google.com":
                return httpx.Response(302, headers={"location": "https://hop.example.net/r"})
            if request.url.host == "hop.example.net":
                return httpx.Response(302, headers={"location": "https://www.google.com/search?q=quarterly"})
            return httpx.Response(200, text="results")

        resolved = await resolver_for(handler).resolve(REDIRECT, "Quarterly Report | Example Corp")
        assert resolved == "https://examplecorp.com"
        assert extract_domain(resolved) == "examplecorp.com"

    @pytest.mark.asyncio
    async def test_redirect_loop_uses_title_fallback(self):
        def handler(request):
            return httpx.Response(302, headers={"location": REDIRECT})

        resolved = await resolver_for(handler, max_hops=3).resolve(REDIRECT, "Powerwall | Tesla")
        assert resolved == "https://tesla.com"

    @pytest.mark.asyncio
    async def test_malformed_link_does_not_sink_its_siblings(self):
        def handler(request):
            if request.url.host == "vertexaisearch.cloud.google.com":
                return httpx.Response(302, headers={"location": "https://www.reuters.com/article/acme"})
            return httpx.Response(200, text="article")

        malformed = REDIRECT + "bad\x01"
        resolved = await resolver_for(handler).resolve_many(
            [(REDIRECT, "Acme news"), (malformed, "Powerwall | Tesla")]
        )

        assert resolved[REDIRECT] == "https://www.reuters.com/article/acme"
        assert resolved[malformed] == "https://tesla.com"

    @pytest.mark.asyncio
    async def test_client_verifies_certificates(self):
        async with RedirectResolver()._client() as client:
            ssl_context = client._transport._pool._ssl_context
            assert ssl_context.verify_mode == ssl.CERT_REQUIRED

    @pytest.mark.asyncio
    async def test_connection_failure_without_title_is_marked_unresolved(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        resolved = await resolver_for(handler).resolve(REDIRECT, None)
        assert resolved == "unresolved://unknown"

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200)

        resolved = await resolver_for(handler, timeout=0.05).resolve(REDIRECT, "Some Page")
        assert resolved == "unresolved://Some Page"

    @pytest.mark.asyncio
    async def test_direct_urls_are_not_requested(self):
        def handler(request):
            raise AssertionError("direct URLs must not be fetched")

        resolved = await resolver_for(handler).resolve_many(
            [("https://www.bbc.com/news", "BBC"), ("", "empty")]
        )
        assert resolved == {"https://www.bbc.com/news": "https://www.bbc.com/news"}

    @pytest.mark.asyncio
    async def test_duplicate_links_are_fetched_once(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            if request.url.host == "vertexaisearch.cloud.google.com":
                return httpx.Response(302, headers={"location": "https://example.org/page"})
            return httpx.Response(200)

        resolved = await resolver_for(handler).resolve_many([(REDIRECT, "a"), (REDIRECT, "b")])
        assert resolved == {REDIRECT: "https://example.org/page"}
        assert seen.count(REDIRECT) == 1


def test_url_predicates():
    assert is_indirection_url(REDIRECT)
    assert not is_indirection_url("https://example.com")
    assert not is_indirection_url(None)
    assert is_search_results_page("https://www.google.com/search?q=x")
    assert is_search_results_page("https://www.google.fr/url?q=x")
    assert not is_search_results_page("https://www.google.com/maps")
    assert not is_search_results_page("https://example.com/search")


class TestTitleGuess:
    @pytest.mark.parametrize(
        "title, expected",
        [
            ("Quarterly Report | Example Corp", "https://examplecorp.com"),
            ("Latest news - reuters.com", "https://reuters.com"),
            ("Best laptops on techradar.com", "https://techradar.com"),
            ("www.theverge.com", "https://theverge.com"),
            ("Hello", None),
            (None, None),
        ],
    )
    def test_guess_url_from_title(self, title, expected):
        assert guess_url_from_title(title) == expected


class TestCitations:
    def test_extract_domain(self):
        assert extract_domain("https://www.Example.com/path") == "example.com"
        assert extract_domain("unresolved://Some Title") == ""
        assert extract_domain(None) == ""

    def test_merge_puts_grounded_first_and_dedupes(self):
        grounded = [Citation(url="https://a.com/1", domain="a.com", title="A", source_type="grounded_direct")]
        document = {
            "sources_cited_news": [
                {"url": "https://a.com/1", "title": "dup"},
                {"url": "https://news.com/2", "title": "News"},
            ],
            "sources_cited_other": [{"url": "https://blog.io/3", "publisher": "Blog"}, "not a dict"],
        }

        merged = merge_document_sources(document, grounded)

        assert [c.url for c in merged] == ["https://a.com/1", "https://news.com/2", "https://blog.io/3"]
        assert merged[1].source_type == "Journalism"
        assert merged[2].title == "Blog"
        assert merged[2].source_type == "Other"

    def test_merge_ignores_non_dict_documents(self):
        assert merge_document_sources(["a", "b"]) == []

    def test_unique_by_url_drops_missing_urls(self):
        citations = [
            Citation(url="https://a.com", domain="a.com", title="1"),
            Citation(url=None, domain="", title="2"),
            Citation(url="https://a.com", domain="a.com", title="3"),
        ]
        assert [c.title for c in unique_by_url(citations)] == ["1"]
