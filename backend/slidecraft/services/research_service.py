from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

import requests

from slidecraft.config import settings


logger = logging.getLogger("slidecraft.jobs")

_FILE_HEADER_RE = re.compile(r"(?:^|\n)File:\s*(.+?)(?:\n|$)")


def _source_id(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:12]


def _clip(text: str, limit: int) -> str:
    return (text or "")[:limit]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _exa_search(query: str, max_results: int) -> list[dict]:
    if not settings.exa_api_key:
        return []

    headers = {
        "x-api-key": settings.exa_api_key,
        "Content-Type": "application/json",
    }
    payload = {
        "query": query,
        "type": "auto",
        "numResults": max_results,
        "text": True,
    }

    response = requests.post(settings.exa_search_url, headers=headers, json=payload, timeout=20)
    response.raise_for_status()
    rows = response.json().get("results", [])

    results: list[dict] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        url = str(row.get("url") or "").strip()
        if not url:
            continue
        excerpt = str(row.get("text") or row.get("summary") or "").strip()
        results.append(
            {
                "source_id": str(row.get("id") or _source_id(url)),
                "title": str(row.get("title") or "Untitled"),
                "url": url,
                "snippet": _clip(excerpt, 220),
                "excerpt": _clip(excerpt, 1200),
                "retrieved_at": _utc_now(),
                "provider": "exa",
            }
        )
    return results


def search_web(query: str, max_results: int = 5) -> list[dict]:
    try:
        return _exa_search(query, max_results=max_results)
    except (requests.RequestException, ValueError) as exc:
        logger.warning("web_search_failed query=%s reason=%s", _clip(query, 80), exc)
        return []


def extract_file_names(source_material: str) -> list[str]:
    return [match.strip() for match in _FILE_HEADER_RE.findall(source_material or "") if match.strip()]


def chunk_source_material(source_material: str, max_chars: int = 1200) -> list[dict]:
    """Split uploaded material on its ``File:`` headers, then into bounded chunks."""
    text = (source_material or "").strip()
    if not text:
        return []

    sections: list[tuple[str, str]] = []
    current_name = "Source material"
    buffer: list[str] = []
    for line in text.splitlines():
        header = re.match(r"^File:\s*(.+)$", line.strip())
        if header:
            if buffer:
                sections.append((current_name, "\n".join(buffer).strip()))
            current_name = header.group(1).strip()
            buffer = []
            continue
        buffer.append(line)
    if buffer:
        sections.append((current_name, "\n".join(buffer).strip()))

    chunks: list[dict] = []
    for name, body in sections:
        for offset in range(0, len(body), max_chars):
            piece = body[offset : offset + max_chars].strip()
            if not piece:
                continue
            chunks.append(
                {
                    "source_id": _source_id(f"{name}:{offset}"),
                    "title": name,
                    "url": f"File: {name}",
                    "snippet": _clip(piece, 220),
                    "excerpt": piece,
                    "provider": "upload",
                }
            )
    return chunks


def combine_research(
    topic: str,
    source_material: str,
    *,
    use_web_search: bool,
    max_web_results: int = 5,
) -> list[dict]:
    doc_chunks = chunk_source_material(source_material)
    web = search_web(topic, max_results=max_web_results) if use_web_search else []
    return doc_chunks + web


def _is_valid_url(value: str) -> bool:
    try:
        return urlparse(value).scheme in {"http", "https"}
    except ValueError:
        return False


def unique_sources(research_chunks: list[dict[str, Any]], source_material: str = "") -> list[str]:
    sources: list[str] = []
    for chunk in research_chunks:
        url = str(chunk.get("url") or "")
        if chunk.get("provider") != "upload" and _is_valid_url(url) and url not in sources:
            sources.append(url)
    for name in extract_file_names(source_material):
        entry = f"File: {name}"
        if entry not in sources:
            sources.append(entry)
    return sources
