"""
Idempotent product-box insertion into post content.

Any product box already present is stripped first (matched by the
``amz-sota-box`` class on the box root, with or without its
``<!-- wp:html -->`` wrapper), so the result always holds exactly one box:
the one passed to the latest call.

Two content dialects are handled:

    block   Gutenberg markup; insertion points are ``<!-- /wp:... -->``
            block-closing comments
    plain   classic HTML; insertion points are ``</p>`` tags

Usage:
    from amzpilot.content_mutator import insert_into_content
    html = insert_into_content(post_html, box_html, "smart_middle")
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Union

from amzpilot.models import InsertionStrategy

logger = logging.getLogger("content_mutator")

BOX_CLASS = "amz-sota-box"
WP_HTML_OPEN = "<!-- wp:html -->"
WP_HTML_CLOSE = "<!-- /wp:html -->"

# Every box is spliced in with this padding on both sides so stripping can
# restore the surrounding content byte for byte.
PAD = "\n\n"

CONTEXT_SNIPPET_CHARS = 30

_WRAPPED_BOX_RE = re.compile(
    r"(?:\n\n)?" + re.escape(WP_HTML_OPEN)
    + r"\s*<div\b[^>]*class=\"[^\"]*\b" + BOX_CLASS + r"\b[^\"]*\"[^>]*>"
    + r".*?" + re.escape(WP_HTML_CLOSE) + r"(?:\n\n)?",
    re.DOTALL,
)
_BOX_DIV_RE = re.compile(r"<div\b[^>]*class=\"[^\"]*\b" + BOX_CLASS + r"\b[^\"]*\"[^>]*>")
_DIV_TAG_RE = re.compile(r"<div\b|</div\s*>", re.IGNORECASE)

_BLOCK_END_RE = re.compile(r"<!-- /wp:(?:paragraph|group|image|heading|list) -->", re.IGNORECASE)
_BLOCK_HEADING_END_RE = re.compile(r"<!-- /wp:heading -->", re.IGNORECASE)
_PARAGRAPH_END_RE = re.compile(r"</p>", re.IGNORECASE)
_PLAIN_HEADING_END_RE = re.compile(r"</h[23]>", re.IGNORECASE)
_HEADING_RE = re.compile(r"<h([23])\b[^>]*>(.*?)</h\1>", re.IGNORECASE | re.DOTALL)
_HEADING_BLOCK_TAIL_RE = re.compile(r"\s*<!-- /wp:heading -->", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")

_STRATEGY_ALIASES = {"after_h2": InsertionStrategy.AFTER_HEADING}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _normalize_text(text: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    text = _TAG_RE.sub(" ", text)
    text = re.sub(r"[^\w\s]", "", text)
    return re.sub(r"\s+", " ", text).strip().lower()


def _coerce_strategy(strategy: Union[InsertionStrategy, str]) -> InsertionStrategy:
    if isinstance(strategy, InsertionStrategy):
        return strategy
    key = str(strategy).lower()
    if key in _STRATEGY_ALIASES:
        return _STRATEGY_ALIASES[key]
    return InsertionStrategy(key)


def _balanced_div_end(html: str, start: int) -> int:
    """Index just past the ``</div>`` closing the div opened at *start*."""
    depth = 0
    for match in _DIV_TAG_RE.finditer(html, start):
        if match.group(0).lower().startswith("<div"):
            depth += 1
        else:
            depth -= 1
            if depth == 0:
                return match.end()
    return len(html)


def is_block_dialect(html: str) -> bool:
    return "<!-- wp:" in html


def count_boxes(html: str) -> int:
    """Number of product-box roots in *html*."""
    return len(_BOX_DIV_RE.findall(html or ""))


def strip_existing_box(html: str) -> str:
    """Remove every product box (wrapped or bare) from *html*."""
    if not html:
        return ""
    cleaned = _WRAPPED_BOX_RE.sub("", html)

    # Bare boxes: the block comments were lost, so match the div by balance.
    match = _BOX_DIV_RE.search(cleaned)
    while match:
        start, end = match.start(), _balanced_div_end(cleaned, match.start())
        if cleaned[:start].endswith(PAD):
            start -= len(PAD)
        if cleaned[end:].startswith(PAD):
            end += len(PAD)
        cleaned = cleaned[:start] + cleaned[end:]
        match = _BOX_DIV_RE.search(cleaned)
    return cleaned


def _splice(html: str, index: int, box: str) -> str:
    return html[:index] + PAD + box + PAD + html[index:]


def _find_context_heading_end(html: str, snippet: str) -> Optional[int]:
    needle = _normalize_text(snippet)[:CONTEXT_SNIPPET_CHARS].strip()
    if not needle:
        return None
    for match in _HEADING_RE.finditer(html):
        if needle in _normalize_text(match.group(2)):
            end = match.end()
            # Keep Gutenberg heading blocks intact.
            tail = _HEADING_BLOCK_TAIL_RE.match(html, end)
            return tail.end() if tail else end
    return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def insert_into_content(
    content: str,
    fragment: str,
    strategy: Union[InsertionStrategy, str] = InsertionStrategy.SMART_MIDDLE,
    context_snippet: Optional[str] = None,
) -> str:
    """
    Return *content* with exactly one product box, placed per *strategy*.

    Parameters
    ----------
    content : str
        Post HTML, block or plain dialect. May already contain boxes.
    fragment : str
        Rendered product box.
    strategy : InsertionStrategy or str
        top, bottom, smart_middle, after_heading or context_match.
    context_snippet : str, optional
        Heading text to insert after (context_match only).
    """
    method = _coerce_strategy(strategy)
    box = fragment.strip()
    clean = strip_existing_box(content or "")

    if method == InsertionStrategy.CONTEXT_MATCH:
        index = _find_context_heading_end(clean, context_snippet or "")
        if index is None:
            logger.debug("No heading matches context %r, appending box", context_snippet)
            index = len(clean)
        return _splice(clean, index, box)

    if is_block_dialect(clean):
        boundaries: List[re.Match] = list(_BLOCK_END_RE.finditer(clean))
        headings = list(_BLOCK_HEADING_END_RE.finditer(clean))
    else:
        boundaries = list(_PARAGRAPH_END_RE.finditer(clean))
        headings = list(_PLAIN_HEADING_END_RE.finditer(clean))

    if not boundaries:
        logger.debug("No insertion point found, appending box")
        return _splice(clean, len(clean), box)

    if method == InsertionStrategy.TOP:
        index = boundaries[0].end()
    elif method == InsertionStrategy.SMART_MIDDLE:
        index = boundaries[len(boundaries) // 2].end()
    elif method == InsertionStrategy.AFTER_HEADING:
        index = headings[0].end() if headings else boundaries[0].end()
    else:
        index = len(clean)

    return _splice(clean, index, box)
