"""BrandPulse prompt catalog.

``prompts/prompts.json`` holds three sections: ``shared`` fragments (market
filters, output and source rules), one ``analysis`` template per question
type, and the built-in ``questions`` sets. Templates use ``string.Template``
placeholders. The file is re-read whenever its mtime changes so prompt edits
apply to the next analysis run without a restart.
"""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any

from loguru import logger

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"
CATALOG_SECTIONS = ("shared", "analysis", "questions")

_catalog: dict[str, Any] | None = None
_catalog_mtime_ns: int | None = None


def _load_catalog() -> dict[str, Any]:
    global _catalog, _catalog_mtime_ns
    mtime_ns = PROMPTS_PATH.stat().st_mtime_ns
    if _catalog is not None and _catalog_mtime_ns == mtime_ns:
        return _catalog

    payload = json.loads(PROMPTS_PATH.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Prompt catalog must be a JSON object.")
    missing = [section for section in CATALOG_SECTIONS if not isinstance(payload.get(section), dict)]
    if missing:
        raise ValueError(f"Prompt catalog {PROMPTS_PATH.name} is missing sections: {', '.join(missing)}")

    logger.debug(f"Loaded prompt catalog {PROMPTS_PATH.name} ({len(payload['analysis'])} analysis templates)")
    _catalog = payload
    _catalog_mtime_ns = mtime_ns
    return payload


def _lookup(key: str) -> Any:
    node: Any = _load_catalog()
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(f"Prompt key not found: {key}")
        node = node[part]
    return node


def _template(key: str) -> Template:
    node = _lookup(key)
    if not isinstance(node, str):
        raise TypeError(f"Prompt key must map to a string: {key}")
    return Template(node)


def render_prompt(key: str, **values: Any) -> str:
    try:
        return _template(key).substitute(**values)
    except KeyError as exc:
        if str(exc.args[0]).startswith("Prompt key not found"):
            raise
        raise KeyError(f"Missing template value '{exc.args[0]}' for prompt '{key}'") from exc


def render_section(key: str, **values: Any) -> dict[str, str]:
    """Render every template under ``key``, e.g. a built-in question set."""
    node = _lookup(key)
    if not isinstance(node, dict):
        raise TypeError(f"Prompt key must map to an object: {key}")
    return {name: render_prompt(f"{key}.{name}", **values) for name in node}


def clear_prompt_cache() -> None:
    global _catalog, _catalog_mtime_ns
    _catalog = None
    _catalog_mtime_ns = None
