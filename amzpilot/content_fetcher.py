"""
Page, post and sitemap retrieval.

Public pages and sitemaps are fetched through a relay chain: an ordered list
of URL templates (a direct request first, then public forwarding services).
The RelaySelector remembers which template last succeeded and tries it
first next time.

Posts are read through the authenticated WordPress REST API when
credentials exist, with slug resolution and the public page as fallbacks.

Usage:
    fetcher = ContentFetcher(config, FetchCache(config.cache_path))
    page = await fetcher.fetch_by_url("https://site.com/best-grinders/")
    post = await fetcher.fetch_by_cms_id(page.id, fallback_url=page_url)
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass
from typing import List, Optional
from urllib.parse import quote, urlparse

import aiohttp
from bs4 import BeautifulSoup

from amzpilot.config import PilotConfig
from amzpilot.errors import CMSError, ConnectivityError, IdentifierResolutionError
from amzpilot.fetch_cache import CacheClass, FetchCache
from amzpilot.sitemap import SitemapEntry, parse_sitemap
from amzpilot.wordpress_client import WordPressClient

logger = logging.getLogger("content_fetcher")

REQUEST_TIMEOUT = 20
# Shorter bodies are usually block pages or relay errors; never cache them.
MIN_CACHEABLE_BODY = 500

_SHORTLINK_ID_RE = re.compile(r"[?&]p=(\d+)")
_POSTID_CLASS_RE = re.compile(r"^postid-(\d+)$")


@dataclass
class PageContent:
    id: int
    title: str
    html: str


@dataclass
class PostContent:
    html: str
    title: str
    resolved_id: int
    featured_image: str = ""


def slug_from_url(url: Optional[str]) -> str:
    if not url:
        return ""
    segments = [s for s in urlparse(url).path.split("/") if s]
    return segments[-1] if segments else ""


# ---------------------------------------------------------------------------
# Relay selection
# ---------------------------------------------------------------------------


class RelaySelector:
    """
    Ordered relay templates with a sticky preference for the last success.

    Templates use ``{url}`` for the raw target and ``{quoted}`` for the
    percent-encoded target.
    """

    def __init__(self, templates: List[str]):
        if not templates:
            raise ValueError("At least one relay template is required")
        self.templates = list(templates)
        self.preferred = 0

    def ordered(self) -> List[str]:
        first = self.templates[self.preferred]
        return [first] + [t for i, t in enumerate(self.templates) if i != self.preferred]

    def mark_success(self, template: str) -> None:
        self.preferred = self.templates.index(template)

    @staticmethod
    def build(template: str, url: str) -> str:
        return template.format(url=url, quoted=quote(url, safe=""))


# ---------------------------------------------------------------------------
# ContentFetcher
# ---------------------------------------------------------------------------


class ContentFetcher:
    """
    Retrieves page HTML, post content and sitemaps, caching what it fetches.

    Parameters
    ----------
    config : PilotConfig
        Credentials, relay templates and the origin used in error guidance.
    cache : FetchCache
        Shared cache instance.
    client : WordPressClient, optional
        REST client; created from *config* when omitted.
    relays : RelaySelector, optional
        Shared relay preference; created from ``config.relays`` when omitted.
    session : aiohttp.ClientSession, optional
        Session for relay requests; created lazily when omitted.
    """

    def __init__(
        self,
        config: PilotConfig,
        cache: FetchCache,
        client: Optional[WordPressClient] = None,
        relays: Optional[RelaySelector] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config
        self.cache = cache
        self.client = client or WordPressClient(config)
        self.relays = relays or RelaySelector(config.relays)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": "Mozilla/5.0 (compatible; AmzPilot/1.0)"},
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            self._session = None
        await self.client.close()

    # -- Relay chain --------------------------------------------------------

    async def fetch_text(self, url: str) -> str:
        """
        GET *url* through the relay chain, preferred relay first.

        Raises
        ------
        ConnectivityError
            Once every relay has failed.
        """
        session = await self._get_session()
        for template in self.relays.ordered():
            target = self.relays.build(template, url)
            try:
                async with session.request("GET", target) as resp:
                    if resp.status < 400:
                        text = await resp.text()
                        self.relays.mark_success(template)
                        logger.debug("Fetched %s via %s (%d bytes)", url, template, len(text))
                        return text
                    logger.warning("Relay %s answered HTTP %d for %s", template, resp.status, url)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.warning("Relay %s failed for %s: %s", template, url, exc)

        raise ConnectivityError(
            f"All relays failed for {url}. Check the internet connection, or allow-list "
            f"'{self.config.origin}' if the site blocks cross-origin requests.",
            origin=self.config.origin,
        )

    # -- Public pages -------------------------------------------------------

    async def fetch_by_url(self, url: str) -> PageContent:
        """Fetch a public page and extract its post id, title and body HTML."""
        key = self.cache.make_key(CacheClass.CONTENT, "page", url)
        cached = self.cache.get(key)
        if cached:
            return PageContent(**cached)

        page = parse_page(await self.fetch_text(url))
        if len(page.html) > MIN_CACHEABLE_BODY:
            self.cache.set(key, asdict(page))
        return page

    # -- CMS posts ----------------------------------------------------------

    async def fetch_by_cms_id(
        self, post_id: int, fallback_url: Optional[str] = None, use_cache: bool = True,
    ) -> PostContent:
        """
        Load a post's editable content by id.

        Order of attempts: the id itself, the id resolved from the URL slug,
        then the public page at *fallback_url*. Pass ``use_cache=False``
        before writing content back.

        Raises
        ------
        IdentifierResolutionError
            When every path is exhausted.
        """
        key = self._post_key(post_id, fallback_url)
        cached = self.cache.get(key) if use_cache else None
        if cached:
            return PostContent(**cached)

        post = await self._fetch_via_api(post_id, fallback_url)
        if post is None and fallback_url:
            logger.info("Falling back to the public page for %s", fallback_url)
            page = await self.fetch_by_url(fallback_url)
            post = PostContent(html=page.html, title=page.title, resolved_id=page.id)
        if post is None:
            raise IdentifierResolutionError(
                f"Failed to load post {post_id or fallback_url!r}. "
                f"Ensure Permalinks are set to 'Post Name' in WordPress."
            )

        if post.html:
            self.cache.set(key, asdict(post))
            if post.resolved_id and post.resolved_id != post_id:
                self.cache.set(self._post_key(post.resolved_id, fallback_url), asdict(post))
        return post

    def invalidate(self, post_id: int, url: Optional[str] = None) -> None:
        """Drop cached copies of a post after its content changed.

        Copies stored under the unresolved id 0 for the same URL are
        dropped as well.
        """
        self.cache.delete(self._post_key(post_id, url))
        if post_id:
            self.cache.delete(self._post_key(0, url))
        if url:
            self.cache.delete(self.cache.make_key(CacheClass.CONTENT, "page", url))

    def _post_key(self, post_id: int, url: Optional[str]) -> str:
        return self.cache.make_key(CacheClass.CONTENT, "full", post_id, url or "")

    async def _fetch_via_api(self, post_id: int, fallback_url: Optional[str]) -> Optional[PostContent]:
        if not self.config.is_configured:
            return None

        if post_id:
            try:
                return post_from_api(await self.client.get_post(post_id), post_id)
            except (CMSError, ConnectivityError) as exc:
                logger.warning("Post %d not readable via API: %s", post_id, exc)

        slug = slug_from_url(fallback_url)
        if not slug:
            return None
        try:
            resolved = await self.client.find_post_id_by_slug(slug)
            if resolved:
                logger.debug("Resolved slug %r to post %d", slug, resolved)
                return post_from_api(await self.client.get_post(resolved), resolved)
        except (CMSError, ConnectivityError) as exc:
            logger.warning("Slug %r could not be resolved: %s", slug, exc)
        return None

    # -- Sitemaps -----------------------------------------------------------

    async def fetch_sitemap(self, url: str) -> List[SitemapEntry]:
        """Fetch and parse a sitemap, caching the XML for an hour."""
        key = self.cache.make_key(CacheClass.SITEMAP, url)
        xml_text = self.cache.get(key)
        if xml_text is None:
            xml_text = await self.fetch_text(url)
            entries = parse_sitemap(xml_text)
            self.cache.set(key, xml_text)
        else:
            entries = parse_sitemap(xml_text)
        logger.info("Sitemap %s: %d URLs", url, len(entries))
        return entries


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def parse_page(html: str) -> PageContent:
    """Pull the post id, title and main content out of a rendered page."""
    soup = BeautifulSoup(html, "html.parser")

    post_id = 0
    shortlink = soup.find("link", rel="shortlink")
    if shortlink and shortlink.get("href"):
        match = _SHORTLINK_ID_RE.search(shortlink["href"])
        if match:
            post_id = int(match.group(1))
    if not post_id and soup.body:
        for cls in soup.body.get("class", []):
            match = _POSTID_CLASS_RE.match(cls)
            if match:
                post_id = int(match.group(1))
                break

    title = soup.title.get_text(strip=True) if soup.title else ""
    container = soup.select_one(".entry-content") or soup.find("article") or soup.body
    body = container.decode_contents() if container else html
    return PageContent(id=post_id, title=title, html=body)


def post_from_api(data: dict, post_id: int) -> PostContent:
    """Map a WP REST post object (edit context, embedded media) to PostContent."""
    content = data.get("content") or {}
    title = data.get("title") or {}
    if isinstance(title, str):
        title = {"rendered": title}
    # Raw content keeps the block comments; rendered content does not.
    html = content.get("raw") or content.get("rendered") or ""
    featured = ""
    media = (data.get("_embedded") or {}).get("wp:featuredmedia") or []
    if media and isinstance(media[0], dict):
        featured = media[0].get("source_url") or ""
    return PostContent(
        html=html,
        title=title.get("raw") or title.get("rendered") or "",
        resolved_id=int(data.get("id") or post_id),
        featured_image=featured,
    )
