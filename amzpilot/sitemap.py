"""
Sitemap parsing.

Accepts any XML document with ``<url><loc>...</loc><lastmod>...</lastmod></url>``
entries, namespaced (the standard sitemaps.org schema) or not. Each entry
becomes a SitemapEntry whose title is derived from the URL slug.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import List
from urllib.parse import urlparse

from amzpilot.errors import SitemapError

logger = logging.getLogger("sitemap")


@dataclass
class SitemapEntry:
    url: str
    lastmod: str = ""
    title: str = ""


def _local(tag: str) -> str:
    """Strip the ``{namespace}`` prefix from an element tag."""
    return tag.rsplit("}", 1)[-1]


def title_from_url(url: str) -> str:
    """
    ``https://site.com/best-coffee-grinders/`` -> ``Best Coffee Grinders``.

    Falls back to the URL itself when it has no path segment.
    """
    path = urlparse(url).path if "://" in url else url
    segments = [s for s in path.split("/") if s]
    if not segments:
        return url
    slug = segments[-1].replace("-", " ")
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), slug)


def parse_sitemap(xml_text: str) -> List[SitemapEntry]:
    """
    Parse a urlset document into entries, skipping ``<url>`` nodes without a ``<loc>``.

    Raises
    ------
    SitemapError
        If *xml_text* is not well-formed XML.
    """
    try:
        root = ET.fromstring((xml_text or "").strip())
    except ET.ParseError as exc:
        raise SitemapError(f"Invalid sitemap XML: {exc}") from exc

    entries: List[SitemapEntry] = []
    for node in root.iter():
        if _local(node.tag) != "url":
            continue
        loc = lastmod = ""
        for child in node:
            name = _local(child.tag)
            if name == "loc":
                loc = (child.text or "").strip()
            elif name == "lastmod":
                lastmod = (child.text or "").strip()
        if loc:
            entries.append(SitemapEntry(url=loc, lastmod=lastmod, title=title_from_url(loc)))

    logger.debug("Parsed %d sitemap entries", len(entries))
    return entries
