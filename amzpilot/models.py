"""
Data model for the AmzPilot monetization pipeline.

PageRecord      one published page discovered through the sitemap
ProductCandidate  an extracted (or manually supplied) product match
AnalysisResult    what ProductIntelligence hands back for one page
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Cached page bodies kept on a PageRecord are capped at this many characters.
MAX_SNAPSHOT_CHARS = 20000


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort key: critical > high > medium > low."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.CRITICAL: 3,
    Priority.HIGH: 2,
    Priority.MEDIUM: 1,
    Priority.LOW: 0,
}


class ContentType(str, Enum):
    REVIEW = "review"
    LISTICLE = "listicle"
    INFO = "info"
    UNKNOWN = "unknown"


class MonetizationStatus(str, Enum):
    OPPORTUNITY = "opportunity"
    MONETIZED = "monetized"
    ANALYZING = "analyzing"
    ERROR = "error"
    QUEUED = "queued"


class PilotStatus(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    FOUND = "found"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"


class InsertionStrategy(str, Enum):
    TOP = "top"
    BOTTOM = "bottom"
    SMART_MIDDLE = "smart_middle"
    AFTER_HEADING = "after_heading"
    CONTEXT_MATCH = "context_match"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _dc_from_dict(cls, data: dict):
    """Shared from_dict: filter keys to only valid dataclass fields."""
    valid = {f.name for f in dataclasses.fields(cls)}
    return cls(**{k: v for k, v in dict(data).items() if k in valid})


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProductCandidate:
    """A product match ready to be rendered into a product box.

    Frozen: edits go through :meth:`replace`, which returns a new value, so a
    candidate attached to one rendering is never mutated under another.
    """

    asin: str = ""
    title: str = ""
    price: str = "Check Price"
    image_url: str = ""
    rating: float = 4.8
    prime: bool = True
    verdict: str = ""
    pros: Tuple[str, ...] = ()
    cons: Tuple[str, ...] = ()
    specs: Dict[str, str] = field(default_factory=dict)
    award: str = "Top Pick"
    schema: Optional[str] = None
    context_snippet: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "pros", tuple(self.pros or ()))
        object.__setattr__(self, "cons", tuple(self.cons or ()))
        object.__setattr__(self, "specs", dict(self.specs or {}))

    @property
    def is_empty(self) -> bool:
        return not self.asin and not self.title

    def replace(self, **changes: Any) -> ProductCandidate:
        """Return a copy with *changes* applied."""
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict:
        d = dataclasses.asdict(self)
        d["pros"] = list(self.pros)
        d["cons"] = list(self.cons)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> ProductCandidate:
        return _dc_from_dict(cls, data)


@dataclass
class Classification:
    """Result of the heuristic triage."""

    priority: Priority
    content_type: ContentType
    monetization_status: MonetizationStatus


@dataclass
class AnalysisResult:
    """Outcome of one ProductIntelligence.analyze call."""

    product: ProductCandidate
    detected_products: List[ProductCandidate] = field(default_factory=list)
    confidence: int = 0

    @property
    def found(self) -> bool:
        return self.confidence > 0 and not self.product.is_empty


@dataclass
class PageRecord:
    """One page of the site under management, keyed by ``url``."""

    url: str
    id: int = 0
    title: str = ""
    lastmod: str = ""
    priority: Priority = Priority.LOW
    content_type: ContentType = ContentType.UNKNOWN
    monetization_status: MonetizationStatus = MonetizationStatus.OPPORTUNITY
    pilot_status: PilotStatus = PilotStatus.IDLE
    proposed_product: Optional[ProductCandidate] = None
    detected_products: List[ProductCandidate] = field(default_factory=list)
    confidence: int = 0
    content_snapshot: Optional[str] = None
    published_link: str = ""
    last_error: str = ""

    def set_snapshot(self, html: Optional[str]) -> None:
        self.content_snapshot = html[:MAX_SNAPSHOT_CHARS] if html else None

    def apply(self, classification: Classification) -> None:
        self.priority = classification.priority
        self.content_type = classification.content_type
        self.monetization_status = classification.monetization_status

    def copy(self) -> PageRecord:
        """Detached copy for external consumers."""
        return dataclasses.replace(self, detected_products=list(self.detected_products))

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "id": self.id,
            "title": self.title,
            "lastmod": self.lastmod,
            "priority": self.priority.value,
            "content_type": self.content_type.value,
            "monetization_status": self.monetization_status.value,
            "pilot_status": self.pilot_status.value,
            "proposed_product": self.proposed_product.to_dict() if self.proposed_product else None,
            "detected_products": [p.to_dict() for p in self.detected_products],
            "confidence": self.confidence,
            "published_link": self.published_link,
            "last_error": self.last_error,
        }
