"""
Pipeline orchestration: triage, autopilot and manual single-page actions.

PipelineOrchestrator owns the PipelineState (a ``url -> PageRecord`` map)
and composes the other components:

    ingest_sitemap   sitemap -> PageRecords, title-only classification
    triage           phase 1 for every page, then a deep scan (fetch +
                     content classification) of unverified review/listicle
                     pages only
    run_autopilot    fetch -> analyze -> (publish | propose) for every open
                     opportunity, bounded by the concurrency limit
    analyze_page     manual analysis of one page; errors propagate
    publish_page     manual publish of one product box; errors propagate

Per-page pilot status moves ``idle -> analyzing -> found | failed`` and, when
auto-publishing, ``found -> publishing -> published``. Consumers only ever
see copies of the records, delivered through a throttled ProgressReporter.

Usage:
    orchestrator = PipelineOrchestrator(load_config(), sink=print_table)
    await orchestrator.ingest_sitemap("https://site.com/post-sitemap.xml")
    await orchestrator.triage()
    summary = await orchestrator.run_autopilot(auto_publish=True)
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from amzpilot.classifier import classify, has_affiliate_markers
from amzpilot.config import PilotConfig
from amzpilot.content_fetcher import ContentFetcher
from amzpilot.content_mutator import insert_into_content
from amzpilot.errors import PilotError
from amzpilot.fetch_cache import FetchCache
from amzpilot.models import (
    AnalysisResult,
    ContentType,
    InsertionStrategy,
    MonetizationStatus,
    PageRecord,
    PilotStatus,
    ProductCandidate,
)
from amzpilot.product_box import render_product_box
from amzpilot.product_intelligence import ProductIntelligence
from amzpilot.progress import DEFAULT_MIN_INTERVAL, ProgressReporter
from amzpilot.sitemap import SitemapEntry, title_from_url
from amzpilot.task_runner import ConcurrentTaskRunner, StopToken, _run_sync
from amzpilot.wordpress_client import PublishGateway, WordPressClient

logger = logging.getLogger("orchestrator")

# Below this the model is guessing; the page is marked failed, not proposed.
MIN_PROPOSAL_CONFIDENCE = 50

COMMERCIAL_TYPES = (ContentType.REVIEW, ContentType.LISTICLE)


class PipelineOrchestrator:
    """
    Parameters
    ----------
    config : PilotConfig
        Site, AI and pipeline settings.
    cache : FetchCache, optional
        Defaults to a cache persisted at ``config.cache_path``.
    fetcher, intelligence, gateway, runner : optional
        Component overrides; built from *config* when omitted.
    sink : callable, optional
        Receives ``List[PageRecord]`` snapshots, throttled to one per
        *progress_interval* seconds plus a final flush per batch.
    """

    def __init__(
        self,
        config: PilotConfig,
        cache: Optional[FetchCache] = None,
        fetcher: Optional[ContentFetcher] = None,
        intelligence: Optional[ProductIntelligence] = None,
        gateway: Optional[PublishGateway] = None,
        runner: Optional[ConcurrentTaskRunner] = None,
        sink: Optional[Callable[[List[PageRecord]], None]] = None,
        progress_interval: float = DEFAULT_MIN_INTERVAL,
    ):
        self.config = config
        self.cache = cache if cache is not None else FetchCache(config.cache_path)
        client = WordPressClient(config)
        self.fetcher = fetcher or ContentFetcher(config, self.cache, client=client)
        self.intelligence = intelligence or ProductIntelligence(config, self.cache)
        self.gateway = gateway or PublishGateway(config, client=client)
        self.runner = runner or ConcurrentTaskRunner()
        self.stop_token = StopToken()
        self.progress = ProgressReporter(sink, self.snapshot, min_interval=progress_interval)

        self._pages: Dict[str, PageRecord] = {}
        self._in_flight: set = set()
        self._lock = threading.Lock()

    # -- State access -------------------------------------------------------

    def snapshot(self) -> List[PageRecord]:
        """Detached copies of every PageRecord."""
        with self._lock:
            return [record.copy() for record in self._pages.values()]

    def get(self, url: str) -> Optional[PageRecord]:
        with self._lock:
            record = self._pages.get(url)
            return record.copy() if record else None

    def _update(self, url: str, **changes: Any) -> None:
        with self._lock:
            record = self._pages[url]
            for name, value in changes.items():
                setattr(record, name, value)
        self.progress.notify()

    def _ensure_record(self, url: str) -> PageRecord:
        with self._lock:
            record = self._pages.get(url)
            if record is None:
                record = PageRecord(url=url, title=title_from_url(url))
                record.apply(classify(record.title))
                self._pages[url] = record
            return record.copy()

    @contextmanager
    def _claim(self, url: str):
        """Hold *url* for the duration of one pipeline operation."""
        with self._lock:
            if url in self._in_flight:
                raise PilotError(f"{url} is already being processed")
            self._in_flight.add(url)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(url)

    def stats(self) -> Dict[str, int]:
        pages = self.snapshot()
        return {
            "total": len(pages),
            "opportunities": sum(p.monetization_status == MonetizationStatus.OPPORTUNITY for p in pages),
            "monetized": sum(p.monetization_status == MonetizationStatus.MONETIZED for p in pages),
            "found": sum(p.pilot_status == PilotStatus.FOUND for p in pages),
            "published": sum(p.pilot_status == PilotStatus.PUBLISHED for p in pages),
            "failed": sum(p.pilot_status == PilotStatus.FAILED for p in pages),
        }

    def reset(self) -> None:
        """Forget every page. The cache is left alone."""
        with self._lock:
            self._pages.clear()
        self.stop_token.reset()
        self.progress.flush()

    def stop(self) -> None:
        """Ask a running batch to stop dispatching new pages."""
        logger.info("Stop requested")
        self.stop_token.stop()

    async def close(self) -> None:
        self.progress.cancel()
        self.cache.flush()
        await self.fetcher.close()
        await self.intelligence.close()
        await self.gateway.client.close()

    # -- Ingestion & triage -------------------------------------------------

    def load_entries(self, entries: Iterable[SitemapEntry]) -> List[PageRecord]:
        """Replace the pipeline state with fresh, title-classified records."""
        pages: Dict[str, PageRecord] = {}
        for entry in entries:
            record = PageRecord(url=entry.url, title=entry.title, lastmod=entry.lastmod)
            record.apply(classify(record.title))
            pages[entry.url] = record
        with self._lock:
            self._pages = pages
        logger.info("Loaded %d pages", len(pages))
        self.progress.flush()
        return self.snapshot()

    async def ingest_sitemap(self, sitemap_url: str) -> List[PageRecord]:
        """Fetch a sitemap and rebuild the pipeline state from it."""
        return self.load_entries(await self.fetcher.fetch_sitemap(sitemap_url))

    async def triage(self, deep: bool = True) -> List[PageRecord]:
        """
        Two-phase classification.

        Phase 1 classifies every page from its title (or its cached
        snapshot) with no network access. Phase 2 fetches only the
        review/listicle pages that are not yet verified as monetized and
        have no snapshot, and re-classifies them on real content.
        """
        with self._lock:
            for record in self._pages.values():
                record.apply(classify(record.title, record.content_snapshot))
            candidates = [
                record.url for record in self._pages.values()
                if record.content_type in COMMERCIAL_TYPES
                and record.monetization_status != MonetizationStatus.MONETIZED
                and record.content_snapshot is None
            ]
        self.progress.notify()

        if deep and candidates:
            logger.info("Deep-scanning %d of %d pages", len(candidates), len(self._pages))
            self.stop_token.reset()
            await self.runner.run(
                candidates, self.config.concurrency_limit, self._deep_scan, stop_token=self.stop_token,
            )
            self.cache.flush()
        self.progress.flush()
        return self.snapshot()

    async def _deep_scan(self, url: str) -> str:
        with self._claim(url):
            try:
                page = await self.fetcher.fetch_by_url(url)
            except PilotError as exc:
                self._update(url, last_error=str(exc))
                raise
            with self._lock:
                record = self._pages[url]
                if page.id:
                    record.id = page.id
                record.set_snapshot(page.html)
                record.apply(classify(record.title, page.html))
                record.last_error = ""
            self.progress.notify()
            return url

    # -- Autopilot ----------------------------------------------------------

    def autopilot_targets(self) -> List[PageRecord]:
        """Open opportunities, highest priority first."""
        pages = [
            p for p in self.snapshot()
            if p.monetization_status == MonetizationStatus.OPPORTUNITY
            and p.pilot_status != PilotStatus.PUBLISHED
        ]
        return sorted(pages, key=lambda p: p.priority.rank, reverse=True)

    async def run_autopilot(self, auto_publish: bool = False) -> Dict[str, int]:
        """
        Process every open opportunity with bounded concurrency.

        Returns
        -------
        dict
            Count of final pilot statuses (``monetized`` for pages found to
            be already linked) across the processed pages.
        """
        if not self.config.is_configured:
            raise PilotError("Configure the WordPress URL and credentials before running autopilot")

        targets = self.autopilot_targets()
        logger.info(
            "Autopilot starting: %d targets, concurrency %d, auto-publish %s (threshold %d)",
            len(targets), self.config.concurrency_limit, auto_publish, self.config.auto_publish_threshold,
        )
        self.stop_token.reset()

        async def worker(record: PageRecord) -> str:
            return await self._process_page(record, auto_publish)

        try:
            outcomes = await self.runner.run(
                targets, self.config.concurrency_limit, worker, stop_token=self.stop_token,
            )
        finally:
            self.cache.flush()
            self.progress.flush()

        summary = dict(Counter(outcomes))
        logger.info("Autopilot finished: %s", summary)
        return summary

    async def _process_page(self, record: PageRecord, auto_publish: bool) -> str:
        url = record.url
        with self._claim(url):
            try:
                self._update(url, pilot_status=PilotStatus.ANALYZING, last_error="")
                post = await self.fetcher.fetch_by_cms_id(record.id, fallback_url=url)
                post_id = post.resolved_id or record.id
                with self._lock:
                    self._pages[url].id = post_id
                    self._pages[url].set_snapshot(post.html)

                if has_affiliate_markers(post.html):
                    self._update(url, monetization_status=MonetizationStatus.MONETIZED,
                                 pilot_status=PilotStatus.IDLE)
                    return MonetizationStatus.MONETIZED.value

                analysis = await self.intelligence.analyze(
                    post.title or record.title, post.html, fallback_image=post.featured_image,
                )
                if analysis.confidence <= MIN_PROPOSAL_CONFIDENCE or not analysis.product.asin:
                    self._update(url, pilot_status=PilotStatus.FAILED, confidence=analysis.confidence,
                                 last_error="No confident product match")
                    return PilotStatus.FAILED.value

                self._update(
                    url,
                    proposed_product=analysis.product,
                    detected_products=list(analysis.detected_products),
                    confidence=analysis.confidence,
                )
                if not (auto_publish and analysis.confidence >= self.config.auto_publish_threshold):
                    self._update(url, pilot_status=PilotStatus.FOUND)
                    return PilotStatus.FOUND.value

                self._update(url, pilot_status=PilotStatus.PUBLISHING)
                link = await self._publish(url, post_id, post.html, analysis.product, InsertionStrategy.SMART_MIDDLE)
                self._update(url, pilot_status=PilotStatus.PUBLISHED, published_link=link,
                             monetization_status=MonetizationStatus.MONETIZED)
                return PilotStatus.PUBLISHED.value

            except Exception as exc:
                logger.error("Autopilot failed for %s: %s", url, exc)
                self._update(url, pilot_status=PilotStatus.FAILED, last_error=str(exc))
                return PilotStatus.FAILED.value

    async def _publish(
        self,
        url: str,
        post_id: int,
        html: str,
        product: ProductCandidate,
        strategy: Union[InsertionStrategy, str],
        context_snippet: Optional[str] = None,
    ) -> str:
        box = render_product_box(
            product,
            self.config.amazon_tag,
            enable_sticky_bar=self.config.enable_sticky_bar,
            enable_schema=self.config.enable_schema,
        )
        content = insert_into_content(html, box, strategy, context_snippet or product.context_snippet)
        link = await self.gateway.publish(post_id, content)
        self.fetcher.invalidate(post_id, url)
        with self._lock:
            self._pages[url].set_snapshot(content)
        return link

    # -- Manual actions -----------------------------------------------------

    async def analyze_page(
        self,
        url: str,
        manual_asin: Optional[str] = None,
        manual_image: Optional[str] = None,
        deep_scan: bool = False,
    ) -> AnalysisResult:
        """
        Analyze one page on demand. Errors propagate to the caller.

        A page not yet in the state is added first.
        """
        record = self._ensure_record(url)
        with self._claim(url):
            self._update(url, pilot_status=PilotStatus.ANALYZING, last_error="")
            try:
                post = await self.fetcher.fetch_by_cms_id(record.id, fallback_url=url)
                analysis = await self.intelligence.analyze(
                    post.title or record.title,
                    post.html,
                    manual_asin=manual_asin,
                    manual_image=manual_image,
                    deep_scan=deep_scan,
                    fallback_image=post.featured_image,
                )
            except Exception as exc:
                self._update(url, pilot_status=PilotStatus.FAILED, last_error=str(exc))
                raise
            finally:
                self.progress.flush()

            with self._lock:
                page = self._pages[url]
                page.id = post.resolved_id or page.id
                page.set_snapshot(post.html)
            self._update(
                url,
                proposed_product=analysis.product if analysis.found else None,
                detected_products=list(analysis.detected_products),
                confidence=analysis.confidence,
                pilot_status=PilotStatus.FOUND if analysis.found else PilotStatus.FAILED,
                last_error="" if analysis.found else "No product identified",
            )
            self.progress.flush()
            return analysis

    async def publish_page(
        self,
        url: str,
        product: ProductCandidate,
        strategy: Union[InsertionStrategy, str] = InsertionStrategy.SMART_MIDDLE,
        context_snippet: Optional[str] = None,
    ) -> str:
        """
        Insert *product* into the page and publish it. Errors propagate.

        Content is re-read from WordPress, bypassing the cache, so the write
        starts from the current post body.
        """
        record = self._ensure_record(url)
        with self._claim(url):
            self._update(url, pilot_status=PilotStatus.PUBLISHING, last_error="")
            try:
                post = await self.fetcher.fetch_by_cms_id(record.id, fallback_url=url, use_cache=False)
                post_id = post.resolved_id or record.id
                link = await self._publish(url, post_id, post.html, product, strategy, context_snippet)
            except Exception as exc:
                self._update(url, pilot_status=PilotStatus.FAILED, last_error=str(exc))
                self.progress.flush()
                raise

            self._update(
                url,
                id=post_id,
                proposed_product=product,
                pilot_status=PilotStatus.PUBLISHED,
                monetization_status=MonetizationStatus.MONETIZED,
                published_link=link,
            )
            self.progress.flush()
            return link

    # -- Sync wrappers ------------------------------------------------------

    def _sync(self, coro):
        async def runner():
            try:
                return await coro
            finally:
                await self.close()
        return _run_sync(runner())

    def ingest_sitemap_sync(self, sitemap_url: str) -> List[PageRecord]:
        """Synchronous wrapper for ingest_sitemap()."""
        return self._sync(self.ingest_sitemap(sitemap_url))

    def triage_sync(self, deep: bool = True) -> List[PageRecord]:
        """Synchronous wrapper for triage()."""
        return self._sync(self.triage(deep=deep))

    def run_autopilot_sync(self, auto_publish: bool = False) -> Dict[str, int]:
        """Synchronous wrapper for run_autopilot()."""
        return self._sync(self.run_autopilot(auto_publish=auto_publish))

    def analyze_page_sync(self, url: str, **kwargs: Any) -> AnalysisResult:
        """Synchronous wrapper for analyze_page()."""
        return self._sync(self.analyze_page(url, **kwargs))

    def publish_page_sync(self, url: str, product: ProductCandidate, **kwargs: Any) -> str:
        """Synchronous wrapper for publish_page()."""
        return self._sync(self.publish_page(url, product, **kwargs))
