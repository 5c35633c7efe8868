"""
Heuristic page triage.

Phase 1 looks at the title only and costs nothing. Phase 2 re-runs the same
rules once the page HTML is known, adding affiliate-marker detection so
review/listicle pages without links surface as ``critical`` revenue leaks.
"""

from __future__ import annotations

import re
from typing import Optional

from amzpilot.models import Classification, ContentType, MonetizationStatus, Priority

AFFILIATE_MARKER_RE = re.compile(r"amazon\.com/|amzn\.to/|tag=", re.IGNORECASE)

REVIEW_KEYWORDS = ("review", " vs ", "hands-on", "guide", "buying")
LISTICLE_KEYWORDS = ("best", "top ", "list")

# Info pages longer than this with no links are still worth monetizing.
MIN_INFO_CONTENT_LENGTH = 1500


def has_affiliate_markers(html: Optional[str]) -> bool:
    """True when *html* already contains an affiliate link or tag."""
    if not html:
        return False
    return AFFILIATE_MARKER_RE.search(html) is not None


def detect_content_type(title: str) -> ContentType:
    lower = (title or "").lower()
    if any(k in lower for k in REVIEW_KEYWORDS):
        return ContentType.REVIEW
    if re.match(r"\d", title or "") or any(k in lower for k in LISTICLE_KEYWORDS):
        return ContentType.LISTICLE
    return ContentType.INFO


def classify(title: str, html: Optional[str] = None) -> Classification:
    """Classify a page by title, and by content when *html* is given."""
    content_type = detect_content_type(title)
    commercial = content_type in (ContentType.REVIEW, ContentType.LISTICLE)

    if not html:
        priority = Priority.HIGH if commercial else Priority.LOW
        return Classification(priority, content_type, MonetizationStatus.OPPORTUNITY)

    monetized = has_affiliate_markers(html)
    if commercial and not monetized:
        priority = Priority.CRITICAL
    elif commercial:
        priority = Priority.MEDIUM
    elif not monetized and len(html) > MIN_INFO_CONTENT_LENGTH:
        priority = Priority.HIGH
    else:
        priority = Priority.LOW

    status = MonetizationStatus.MONETIZED if monetized else MonetizationStatus.OPPORTUNITY
    return Classification(priority, content_type, status)
