#!/usr/bin/env python3
"""
Response model for converted feeds.

Builds the caller-facing dictionaries from feedparser output: feed metadata,
one item per entry (with its recovered thumbnail) and the response envelope.
Author objects are flattened to a single name string and parsed time structs
are never exposed; ``compact()`` drops empty fields for the JSON rendering.
"""

from typing import Any, Dict, List, Optional

API_VERSION = "1.0"

STATUS_OK = "ok"
STATUS_ERROR = "error"

FEED_FIELDS = ("url", "title", "link", "author", "description", "image")
ITEM_FIELDS = (
    "title",
    "link",
    "author",
    "description",
    "content",
    "published",
    "updated",
    "guid",
    "thumbnail",
)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def flatten_author(source: Dict[str, Any]) -> str:
    """Collapse author/author_detail into a display name."""
    detail = source.get("author_detail") or {}
    name = _text(detail.get("name")) if hasattr(detail, "get") else ""
    if name:
        return name
    author = _text(source.get("author"))
    if author:
        return author
    if hasattr(detail, "get"):
        return _text(detail.get("email"))
    return ""


def _image_url(feed: Dict[str, Any]) -> str:
    image = feed.get("image") or {}
    if hasattr(image, "get"):
        url = _text(image.get("href") or image.get("url"))
        if url:
            return url
    return _text(feed.get("logo") or feed.get("icon"))


def _entry_content(entry: Dict[str, Any]) -> str:
    for block in entry.get("content") or []:
        value = _text(block.get("value")) if hasattr(block, "get") else ""
        if value:
            return value
    return ""


def feed_meta(feed: Dict[str, Any], url: str) -> Dict[str, str]:
    """Feed-level metadata: title, link, description, image, managing author."""
    return {
        "url": url,
        "title": _text(feed.get("title")),
        "link": _text(feed.get("link")),
        "author": flatten_author(feed),
        "description": _text(feed.get("subtitle") or feed.get("description")),
        "image": _image_url(feed),
    }


def item_meta(entry: Dict[str, Any], thumbnail: str = "") -> Dict[str, str]:
    """One entry with its positionally paired thumbnail."""
    return {
        "title": _text(entry.get("title")),
        "link": _text(entry.get("link")),
        "author": flatten_author(entry),
        "description": _text(entry.get("summary") or entry.get("description")),
        "content": _entry_content(entry),
        "published": _text(entry.get("published")),
        "updated": _text(entry.get("updated")),
        "guid": _text(entry.get("id") or entry.get("guid")),
        "thumbnail": thumbnail or "",
    }


def build_response(feed: Dict[str, str], items: List[Dict[str, str]]) -> Dict[str, Any]:
    return {
        "status": STATUS_OK,
        "version": API_VERSION,
        "feed": feed,
        "items": items,
    }


def error_response(message: str) -> Dict[str, Any]:
    return {
        "status": STATUS_ERROR,
        "version": API_VERSION,
        "message": message,
    }


def compact(value: Any) -> Optional[Any]:
    """Recursively drop empty strings, None and empty containers from dicts.

    List order and length are preserved so items stay aligned.
    """
    if isinstance(value, dict):
        out = {}
        for key, inner in value.items():
            inner = compact(inner)
            if inner in (None, "", {}):
                continue
            out[key] = inner
        return out
    if isinstance(value, list):
        return [compact(inner) for inner in value]
    return value
