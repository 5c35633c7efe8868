"""
Command-line interface.

    python -m amzpilot scan --sitemap URL [--deep]
    python -m amzpilot run --sitemap URL [--auto] [--concurrency N] [--threshold N]
    python -m amzpilot analyze --url URL [--asin ASIN] [--image URL] [--deep]
                               [--publish] [--strategy smart_middle]
    python -m amzpilot check
    python -m amzpilot cache clear|stats

Exit status is 1 when the command reports a failure.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from amzpilot.config import PilotConfig, load_config
from amzpilot.errors import PilotError
from amzpilot.fetch_cache import FetchCache
from amzpilot.models import InsertionStrategy, PageRecord
from amzpilot.orchestrator import PipelineOrchestrator
from amzpilot.wordpress_client import PublishGateway

logger = logging.getLogger("cli")


def _print_pages(pages: List[PageRecord]) -> None:
    ordered = sorted(pages, key=lambda p: p.priority.rank, reverse=True)
    print(f"{'PRIORITY':<9} {'TYPE':<9} {'STATUS':<12} {'PILOT':<11} URL")
    print("=" * 78)
    for page in ordered:
        print(f"{page.priority.value:<9} {page.content_type.value:<9} "
              f"{page.monetization_status.value:<12} {page.pilot_status.value:<11} {page.url}")


def _print_stats(stats: dict) -> None:
    print("  ".join(f"{k}: {v}" for k, v in stats.items()))


async def _scan(config: PilotConfig, args: argparse.Namespace) -> int:
    orchestrator = PipelineOrchestrator(config)
    try:
        await orchestrator.ingest_sitemap(args.sitemap)
        pages = await orchestrator.triage(deep=args.deep)
    finally:
        await orchestrator.close()
    _print_pages(pages)
    _print_stats(orchestrator.stats())
    return 0


async def _run(config: PilotConfig, args: argparse.Namespace) -> int:
    orchestrator = PipelineOrchestrator(config)
    try:
        await orchestrator.ingest_sitemap(args.sitemap)
        await orchestrator.triage()
        summary = await orchestrator.run_autopilot(auto_publish=args.auto)
    finally:
        await orchestrator.close()
    _print_pages(orchestrator.snapshot())
    print(f"Autopilot: {summary}")
    return 1 if summary.get("failed") else 0


async def _analyze(config: PilotConfig, args: argparse.Namespace) -> int:
    orchestrator = PipelineOrchestrator(config)
    try:
        result = await orchestrator.analyze_page(
            args.url, manual_asin=args.asin, manual_image=args.image, deep_scan=args.deep,
        )
        for product in result.detected_products or [result.product]:
            print(f"  {product.asin or '-':<12} {product.price:<12} {product.title}")
        print(f"Confidence: {result.confidence}%")
        if not result.found:
            return 1
        if args.publish:
            link = await orchestrator.publish_page(args.url, result.product, strategy=args.strategy)
            print(f"Published: {link}")
    finally:
        await orchestrator.close()
    return 0


async def _check(config: PilotConfig, args: argparse.Namespace) -> int:
    gateway = PublishGateway(config)
    try:
        result = await gateway.check_connection()
    finally:
        await gateway.client.close()
    print(result.message)
    return 0 if result.success else 1


def _cache(config: PilotConfig, args: argparse.Namespace) -> int:
    cache = FetchCache(config.cache_path)
    if args.action == "clear":
        cache.clear()
        print(f"Cache cleared ({config.cache_path})")
    else:
        _print_stats(cache.stats())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="amzpilot",
        description="AmzPilot -- Amazon affiliate monetization autopilot for WordPress",
    )
    parser.add_argument("--config", type=Path, help="Settings JSON (default: ~/.amzpilot/config.json)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- scan ---
    p_scan = subparsers.add_parser("scan", help="Ingest a sitemap and triage its pages")
    p_scan.add_argument("--sitemap", required=True, help="Sitemap URL")
    p_scan.add_argument("--deep", action="store_true", help="Fetch unverified review/listicle pages")

    # --- run ---
    p_run = subparsers.add_parser("run", help="Scan, triage and run the autopilot")
    p_run.add_argument("--sitemap", required=True, help="Sitemap URL")
    p_run.add_argument("--auto", action="store_true", help="Publish matches above the threshold")
    p_run.add_argument("--concurrency", type=int, help="Pages processed in parallel")
    p_run.add_argument("--threshold", type=int, help="Auto-publish confidence threshold (0-100)")

    # --- analyze ---
    p_analyze = subparsers.add_parser("analyze", help="Find the product for one page")
    p_analyze.add_argument("--url", required=True, help="Page URL")
    p_analyze.add_argument("--asin", help="Known ASIN (treated as ground truth)")
    p_analyze.add_argument("--image", help="Product image URL override")
    p_analyze.add_argument("--deep", action="store_true", help="List every product on the page")
    p_analyze.add_argument("--publish", action="store_true", help="Publish the match")
    p_analyze.add_argument("--strategy", default=InsertionStrategy.SMART_MIDDLE.value,
                           choices=[s.value for s in InsertionStrategy],
                           help="Insertion strategy (default: smart_middle)")

    # --- check ---
    subparsers.add_parser("check", help="Test the WordPress connection")

    # --- cache ---
    p_cache = subparsers.add_parser("cache", help="Inspect or clear the fetch cache")
    p_cache.add_argument("action", choices=["clear", "stats"])

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config = load_config(args.config)
        if getattr(args, "concurrency", None) is not None:
            config.concurrency_limit = max(1, args.concurrency)
        if getattr(args, "threshold", None) is not None:
            config.auto_publish_threshold = max(0, min(100, args.threshold))

        if args.command == "cache":
            return _cache(config, args)
        handler = {"scan": _scan, "run": _run, "analyze": _analyze, "check": _check}[args.command]
        return asyncio.run(handler(config, args))
    except PilotError as exc:
        logger.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
