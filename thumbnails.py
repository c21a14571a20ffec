#!/usr/bin/env python3
"""
Per-entry thumbnail recovery.

feedparser drops (or reshapes) ``<media:thumbnail>`` and similar elements, so
thumbnails are recovered with a separate forward walk over the raw XML. The
walk emits one string per ``item``/``entry`` element in document order; the
converter pairs them with parsed entries by position.

Extraction is best effort: malformed XML ends the walk and whatever was
collected so far is returned.
"""

import xml.etree.ElementTree as ET
from typing import List, Optional

from config import get_logger

logger = get_logger("thumbnails")

CHUNK_SIZE = 64 * 1024
ITEM_TAGS = ("item", "entry")
THUMBNAIL_TAG = "thumbnail"


def _local_name(name: str) -> str:
    """Strip an ``{namespace}`` prefix and lower-case."""
    if name.startswith("{"):
        name = name.rsplit("}", 1)[-1]
    return name.lower()


def _url_attribute(element: ET.Element) -> str:
    for name, value in element.attrib.items():
        if _local_name(name) == "url":
            return value.strip()
    return ""


class ThumbnailScanner:
    """Incremental thumbnail walker over an XML byte stream.

    Call ``feed()`` with successive chunks and ``close()`` at the end; read
    ``thumbnails`` at any time. Once the document turns out to be malformed
    the scanner stops accepting input.
    """

    def __init__(self) -> None:
        self.thumbnails: List[str] = []
        self.failed = False
        self._parser = ET.XMLPullParser(events=("start", "end"))
        self._in_item = False
        self._current = ""
        self._capturing: Optional[ET.Element] = None

    def feed(self, data: bytes) -> None:
        if self.failed:
            return
        try:
            self._parser.feed(data)
            self._drain()
        except ET.ParseError as e:
            self._fail(e)

    def close(self) -> List[str]:
        if not self.failed:
            try:
                self._parser.close()
                self._drain()
            except ET.ParseError as e:
                self._fail(e)
        return self.thumbnails

    def _fail(self, error: ET.ParseError) -> None:
        self.failed = True
        logger.debug(f"Thumbnail scan stopped after {len(self.thumbnails)} entries: {error}")

    def _drain(self) -> None:
        for event, element in self._parser.read_events():
            name = _local_name(element.tag)
            if event == "start":
                self._on_start(name, element)
            else:
                self._on_end(name, element)

    def _on_start(self, name: str, element: ET.Element) -> None:
        if name in ITEM_TAGS:
            self._in_item = True
            self._current = ""
            self._capturing = None
            return
        if not self._in_item or name != THUMBNAIL_TAG:
            return
        if self._current or self._capturing is not None:
            return
        url = _url_attribute(element)
        if url:
            self._current = url
        else:
            # Text content is only complete at the matching end event
            self._capturing = element

    def _on_end(self, name: str, element: ET.Element) -> None:
        if element is self._capturing:
            self._capturing = None
            if not self._current:
                # Direct character data only; nested elements are skipped
                text = (element.text or "") + "".join(child.tail or "" for child in element)
                self._current = text.strip()
            return
        if name in ITEM_TAGS:
            if self._in_item:
                self.thumbnails.append(self._current.strip())
            self._in_item = False
            self._current = ""
            self._capturing = None
            # Finished entries are never revisited
            element.clear()


def scan_thumbnails(payload: bytes) -> List[str]:
    """Return one thumbnail URL (or "") per item/entry in ``payload``."""
    if not payload:
        return []
    scanner = ThumbnailScanner()
    for offset in range(0, len(payload), CHUNK_SIZE):
        scanner.feed(payload[offset:offset + CHUNK_SIZE])
        if scanner.failed:
            break
    return scanner.close()
