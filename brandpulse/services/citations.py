from __future__ import annotations

import re
from typing import Any, Iterable
from urllib.parse import urlparse

from brandpulse.models.domain import UNRESOLVED_SCHEME, Citation

TITLE_SEPARATORS = (" | ", " - ", " — ", " – ", " : ")
_DOMAIN_IN_TITLE_RE = re.compile(
    r"([a-z0-9][-a-z0-9]*\.(?:com|org|net|io|co|gov|edu|fr|de|uk|ca|au|jp)[a-z]*)",
    re.IGNORECASE,
)

# Sources listed by the model inside its own JSON answer.
DOCUMENT_SOURCE_FIELDS = (
    ("sources_cited_news", "Journalism", 0.9),
    ("sources_cited_other", "Other", 0.85),
)


def extract_domain(url: str | None) -> str:
    if not url:
        return ""
    if url.startswith(UNRESOLVED_SCHEME):
        return ""
    host = urlparse(url).hostname
    if not host:
        return url
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def guess_url_from_title(title: str | None) -> str | None:
    """Best-effort site URL from a page title such as ``"Powerwall | Tesla"``."""
    if not title or not isinstance(title, str):
        return None

    for separator in TITLE_SEPARATORS:
        if separator not in title:
            continue
        last_part = title.split(separator)[-1].strip()
        if "." in last_part and len(last_part) < 50:
            return "https://" + "".join(last_part.lower().split())
        if 0 < len(last_part) < 30:
            guess = re.sub(r"[^a-z0-9]", "", last_part.lower())
            if len(guess) >= 3:
                return f"https://{guess}.com"

    match = _DOMAIN_IN_TITLE_RE.search(title)
    if match:
        return f"https://{match.group(1).lower()}"

    stripped = title.strip()
    if stripped.startswith("http"):
        return stripped
    if "." in stripped and " " not in stripped:
        return f"https://{stripped.removeprefix('www.')}"
    return None


def unresolved_marker(title: str | None) -> str:
    return f"{UNRESOLVED_SCHEME}{title or 'unknown'}"


def merge_document_sources(
    parsed_document: Any,
    grounded: Iterable[Citation] = (),
) -> list[Citation]:
    """Grounded citations first, then sources the model listed itself, deduplicated by URL."""
    merged: list[Citation] = list(grounded)
    seen = {c.url for c in merged if c.url}

    if not isinstance(parsed_document, dict):
        return merged

    for field_name, source_type, relevance in DOCUMENT_SOURCE_FIELDS:
        entries = parsed_document.get(field_name)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            url = entry.get("url")
            if not isinstance(url, str) or not url or url in seen:
                continue
            seen.add(url)
            merged.append(
                Citation(
                    url=url,
                    domain=extract_domain(url),
                    title=str(entry.get("title") or entry.get("publisher") or ""),
                    relevance_score=relevance,
                    source_type=source_type,
                )
            )
    return merged


def unique_by_url(citations: Iterable[Citation]) -> list[Citation]:
    unique: list[Citation] = []
    seen: set[str] = set()
    for citation in citations:
        if not citation.url or citation.url in seen:
            continue
        seen.add(citation.url)
        unique.append(citation)
    return unique
