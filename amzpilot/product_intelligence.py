"""
AI-backed product extraction.

ProductIntelligence turns a page (title + HTML) into a ProductCandidate:

1. Build a bounded plain-text context from the HTML, boilerplate removed.
2. Detect an ASIN already linked from the page.
3. Pick an instruction: a manual ASIN is ground truth to be resolved; a
   deep scan lists every product; a detected ASIN is verified; otherwise
   the model is asked to search for the primary product.
4. Call the configured provider under a RetryPolicy that only retries rate
   limiting.
5. Parse the first JSON object/array out of the reply and map it,
   with defaults for missing fields, onto ProductCandidate values.

``analyze`` never raises. When the call fails and the operator supplied an
ASIN or image, a fallback candidate built from that input is returned with
confidence 100; otherwise an empty candidate with confidence 0.

Successful single-product results are cached for seven days per
``(provider, title hash, ASIN)``.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, List, Optional

from bs4 import BeautifulSoup

from amzpilot.ai_providers import CompletionProvider, get_provider
from amzpilot.config import PilotConfig
from amzpilot.errors import MalformedOutputError
from amzpilot.fetch_cache import CacheClass, FetchCache, generate_hash
from amzpilot.models import AnalysisResult, ProductCandidate
from amzpilot.product_box import (
    CHECK_PRICE,
    PLACEHOLDER_IMAGE,
    amazon_image_url,
    build_product_schema,
    make_manual_product,
)
from amzpilot.retry import RetryPolicy
from amzpilot.task_runner import _run_sync

logger = logging.getLogger("product_intelligence")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_CONTEXT_CHARS = 15000
PROMPT_CONTEXT_CHARS = 5000
MIN_ANALYZABLE_HTML = 50

DEFAULT_CONFIDENCE = 85
DEEP_SCAN_CONFIDENCE = 90
MANUAL_FALLBACK_CONFIDENCE = 100

UNKNOWN_TITLE = "Unknown Product"
DEFAULT_VERDICT = (
    "This product delivers outstanding value and performance that you simply cannot ignore."
)
DEFAULT_PROS = ("High Quality", "Great Value")

ASIN_RE = re.compile(r"/(?:dp|gp/product|ASIN)/([A-Z0-9]{10})", re.IGNORECASE)

BOILERPLATE_TAGS = ["script", "style", "nav", "footer", "header", "aside", "meta", "link",
                    "svg", "button", "input", "form", "noscript", "iframe"]
BOILERPLATE_SELECTOR = (
    ".sidebar, .comments, .ad-container, [class*='menu'], [class*='nav'], "
    "[class*='footer'], [class*='popup']"
)
_PROTECTED_TAGS = {"html", "body", "main", "article"}

SINGLE_OUTPUT_FORMAT = (
    '{ "found": boolean, "confidence": number, "asin": "...", "productName": "...", '
    '"price": "...", "imageUrl": "...", "verdict": "...", "pros": ["..."], "cons": ["..."], '
    '"specs": {"...": "..."}, "contextSnippet": "..." }'
)
MULTI_OUTPUT_FORMAT = (
    '[ { "asin": "...", "productName": "...", "price": "...", "imageUrl": "...", '
    '"verdict": "...", "contextSnippet": "..." } ]'
)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def extract_context(html: str, limit: int = MAX_CONTEXT_CHARS) -> str:
    """Visible article text with navigation and other boilerplate removed."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup.find_all(BOILERPLATE_TAGS):
        tag.decompose()
    for tag in soup.select(BOILERPLATE_SELECTOR):
        if tag.name not in _PROTECTED_TAGS:
            tag.decompose()

    main = (
        soup.find("main")
        or soup.find("article")
        or soup.select_one(".entry-content")
        or soup.body
        or soup
    )
    text = re.sub(r"\s+", " ", main.get_text(" ")).strip()
    return text[:limit]


def detect_asin(html: str) -> Optional[str]:
    """First ASIN linked from *html* (``/dp/``, ``/gp/product/`` or ``/ASIN/`` paths)."""
    match = ASIN_RE.search(html or "")
    return match.group(1).upper() if match else None


def extract_json(text: str) -> Any:
    """
    Extract the first JSON object or array from a model response.

    Handles markdown code fences and prose around the payload.

    Raises
    ------
    MalformedOutputError
        If no parseable JSON value is present.
    """
    text = re.sub(r"```(?:json)?", "", text or "", flags=re.IGNORECASE).strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    for start_idx, char in enumerate(text):
        if char not in "{[":
            continue
        end_idx = _balanced_end(text, start_idx)
        if end_idx is None:
            continue
        try:
            return json.loads(text[start_idx:end_idx])
        except json.JSONDecodeError:
            continue

    logger.warning("Failed to extract JSON from response (%d chars)", len(text))
    raise MalformedOutputError("AI returned invalid JSON")


def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index just past the bracket closing the one at *start*, string-aware."""
    stack: List[str] = []
    in_string = escaped = False
    pairs = {"{": "}", "[": "]"}
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in pairs:
            stack.append(pairs[ch])
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return i + 1
    return None


def _str_list(value: Any, default: tuple = ()) -> tuple:
    if isinstance(value, (list, tuple)):
        items = tuple(str(v) for v in value if v)
        return items or default
    return default


# ---------------------------------------------------------------------------
# ProductIntelligence
# ---------------------------------------------------------------------------


class ProductIntelligence:
    """
    Builds extraction prompts, calls the AI provider, and maps the answer.

    Parameters
    ----------
    config : PilotConfig
        Provider tag, API key, model and schema preference.
    cache : FetchCache
        Shared cache; results land under the ``ai_`` class.
    provider : CompletionProvider, optional
        Defaults to the implementation selected by ``config.ai_provider``.
    retry_policy : RetryPolicy, optional
        Defaults to two retries starting at two seconds.
    """

    def __init__(
        self,
        config: PilotConfig,
        cache: FetchCache,
        provider: Optional[CompletionProvider] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.config = config
        self.cache = cache
        self.provider = provider or get_provider(config.ai_provider)
        self.retry_policy = retry_policy or RetryPolicy(name=f"ai:{config.ai_provider.value}")

    async def close(self) -> None:
        await self.provider.close()

    # -- Prompting ----------------------------------------------------------

    @staticmethod
    def build_instruction(manual_asin: str, existing_asin: Optional[str], deep_scan: bool) -> str:
        if manual_asin:
            return (
                f"CRITICAL TASK: The operator supplied the ASIN {manual_asin}. Find the details of "
                f"THIS exact Amazon product. Search the web for its real-time price and exact title."
            )
        if deep_scan:
            return "DEEP SCAN MODE: Identify ALL distinct products reviewed or recommended on this page."
        if existing_asin:
            return f"The page already links ASIN {existing_asin}. Verify its details."
        return "SEARCH the web for the primary product discussed. Find its ASIN, current price and image URL."

    @staticmethod
    def build_prompt(title: str, context: str, instruction: str, deep_scan: bool) -> str:
        output_format = MULTI_OUTPUT_FORMAT if deep_scan else SINGLE_OUTPUT_FORMAT
        return (
            "You are an expert product reviewer writing for an Amazon affiliate site.\n"
            f"Task: {instruction}\n"
            "Requirements:\n"
            "1. PRICE: Give the exact current price.\n"
            "2. VERDICT: Write a two-sentence verdict.\n"
            "3. CONTEXT: Set contextSnippet to the page heading that introduces the product.\n"
            f'Input Context: Title: "{title}", Snippet: "{context[:PROMPT_CONTEXT_CHARS]}..."\n'
            f"Return JSON only: {output_format}"
        )

    # -- Mapping ------------------------------------------------------------

    def _map_product(
        self,
        data: dict,
        manual_asin: str,
        manual_image: str,
        fallback_image: str,
    ) -> ProductCandidate:
        asin = manual_asin or str(data.get("asin") or "").strip()
        ai_image = str(data.get("imageUrl") or "")

        if manual_image.startswith("http"):
            image = manual_image
        elif asin:
            image = amazon_image_url(asin)
        elif ai_image.startswith("http"):
            image = ai_image
        elif fallback_image:
            image = fallback_image
        else:
            image = PLACEHOLDER_IMAGE

        specs = data.get("specs")
        product = ProductCandidate(
            asin=asin,
            title=str(data.get("productName") or data.get("title") or UNKNOWN_TITLE),
            price=str(data.get("price") or CHECK_PRICE),
            image_url=image,
            verdict=str(data.get("verdict") or DEFAULT_VERDICT),
            pros=_str_list(data.get("pros"), DEFAULT_PROS),
            cons=_str_list(data.get("cons")),
            specs={str(k): str(v) for k, v in specs.items()} if isinstance(specs, dict) else {},
            award=str(data.get("award") or "Top Pick"),
            context_snippet=str(data.get("contextSnippet") or ""),
        )
        if self.config.enable_schema:
            product = product.replace(schema=build_product_schema(product))
        return product

    @staticmethod
    def _confidence(data: dict) -> int:
        value = data.get("confidence")
        try:
            number = float(value)
        except (TypeError, ValueError):
            return DEFAULT_CONFIDENCE
        if math.isnan(number):
            return DEFAULT_CONFIDENCE
        # Clamp before int() so Infinity maps to 100.
        return int(max(0.0, min(100.0, number)))

    # -- Public API ---------------------------------------------------------

    async def analyze(
        self,
        title: str,
        html: str,
        manual_asin: Optional[str] = None,
        manual_image: Optional[str] = None,
        deep_scan: bool = False,
        fallback_image: Optional[str] = None,
    ) -> AnalysisResult:
        """
        Identify the product a page is about.

        Parameters
        ----------
        title : str
            Page title.
        html : str
            Page or post body HTML.
        manual_asin : str, optional
            Operator-supplied ASIN; treated as ground truth.
        manual_image : str, optional
            Operator-supplied image URL; always wins.
        deep_scan : bool
            Ask for every product on the page instead of the primary one.
        fallback_image : str, optional
            Image used when neither an ASIN nor the model supplies one
            (typically the post's featured image).
        """
        manual_asin = (manual_asin or "").strip()
        manual_image = (manual_image or "").strip()
        fallback_image = (fallback_image or "").strip()

        def fallback() -> ProductCandidate:
            return make_manual_product(manual_asin, image_url=manual_image or None,
                                       fallback_image=fallback_image or None)

        if not html or len(html) < MIN_ANALYZABLE_HTML:
            logger.info("Content too short to analyze for %r", title)
            return AnalysisResult(fallback(), [], 0)

        existing_asin = manual_asin or detect_asin(html)
        use_grounding = bool(manual_asin) or not existing_asin or deep_scan

        cache_key = None
        if not deep_scan:
            cache_key = self.cache.make_key(
                CacheClass.AI, self.config.ai_provider.value, generate_hash(title), existing_asin or "none",
            )
            cached = self.cache.get(cache_key)
            if cached:
                product = ProductCandidate.from_dict(cached["product"])
                if manual_image.startswith("http"):
                    product = product.replace(image_url=manual_image)
                logger.debug("AI cache hit for %r", title)
                return AnalysisResult(product, [product], int(cached.get("confidence", DEFAULT_CONFIDENCE)))

        instruction = self.build_instruction(manual_asin, existing_asin, deep_scan)
        prompt = self.build_prompt(title, extract_context(html), instruction, deep_scan)

        try:
            text = await self.retry_policy.execute(
                self.provider.complete,
                self.config.ai_api_key,
                self.config.ai_model,
                prompt,
                use_grounding,
            )
            data = extract_json(text)

            if deep_scan and isinstance(data, list):
                products = [
                    self._map_product(d, "", manual_image, fallback_image)
                    for d in data if isinstance(d, dict)
                ]
                if not products:
                    raise MalformedOutputError("AI returned an empty product list")
                logger.info("Deep scan found %d products for %r", len(products), title)
                return AnalysisResult(products[0], products, DEEP_SCAN_CONFIDENCE)

            if isinstance(data, list):
                data = next((d for d in data if isinstance(d, dict)), None)
            if not isinstance(data, dict):
                raise MalformedOutputError("AI returned no product object")

            product = self._map_product(data, manual_asin, manual_image, fallback_image)
            confidence = self._confidence(data)
            if cache_key and not product.is_empty:
                self.cache.set(cache_key, {"product": product.to_dict(), "confidence": confidence})
            logger.info("Matched %r -> %s (%d%%)", title, product.asin or product.title, confidence)
            return AnalysisResult(product, [product], confidence)

        except Exception as exc:
            logger.warning("AI analysis failed for %r: %s", title, exc)
            if manual_asin or manual_image:
                product = fallback()
                return AnalysisResult(product, [product], MANUAL_FALLBACK_CONFIDENCE)
            return AnalysisResult(ProductCandidate(), [], 0)

    def analyze_sync(self, title: str, html: str, **kwargs: Any) -> AnalysisResult:
        """Synchronous wrapper for analyze()."""
        try:
            return _run_sync(self.analyze(title, html, **kwargs))
        finally:
            self.cache.flush()
