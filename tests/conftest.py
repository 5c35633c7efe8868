"""
Shared fixtures for the AmzPilot test suite.

Provides sample configs, page payloads in both content dialects, and
reusable aiohttp/Anthropic mocks so that no test touches the network or
the real home directory.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from amzpilot.config import PilotConfig
from amzpilot.fetch_cache import FetchCache


# ---------------------------------------------------------------------------
# Config / cache fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def pilot_config(tmp_path):
    """A fully configured PilotConfig whose cache lives in tmp_path."""
    return PilotConfig(
        wp_url="testsite.com",
        wp_user="editor",
        wp_app_password="abcd efgh ijkl mnop",
        amazon_tag="testsite-20",
        ai_provider="gemini",
        ai_api_key="test-key",
        origin="https://pilot.local",
        cache_path=tmp_path / "cache.json",
    )


@pytest.fixture
def memory_cache():
    """FetchCache with no backing file."""
    return FetchCache(path=None)


# ---------------------------------------------------------------------------
# Content fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def block_html():
    """Gutenberg (block dialect) post body with one heading and four blocks."""
    return (
        "<!-- wp:paragraph -->\n<p>Intro paragraph.</p>\n<!-- /wp:paragraph -->\n\n"
        "<!-- wp:heading -->\n<h2>Dyson V15: Best Overall</h2>\n<!-- /wp:heading -->\n\n"
        "<!-- wp:paragraph -->\n<p>Body paragraph one.</p>\n<!-- /wp:paragraph -->\n\n"
        "<!-- wp:paragraph -->\n<p>Body paragraph two.</p>\n<!-- /wp:paragraph -->"
    )


@pytest.fixture
def plain_html():
    """Classic editor (plain dialect) post body."""
    return (
        "<p>First paragraph.</p>\n"
        "<h2>Why It Matters</h2>\n"
        "<p>Second paragraph.</p>\n"
        "<p>Third paragraph.</p>\n"
        "<p>Fourth paragraph.</p>"
    )


@pytest.fixture
def sample_page_html():
    """A rendered WordPress page as fetched from the public site."""
    return (
        "<html><head><title>Best Coffee Grinders 2025</title>"
        '<link rel="shortlink" href="https://testsite.com/?p=321" /></head>'
        '<body class="post-template-default single postid-321">'
        '<nav class="main-nav">Home | Reviews</nav>'
        '<article><div class="entry-content">'
        + "<p>Grinding fresh beans changes everything about the cup.</p>" * 12
        + "</div></article><footer>Copyright</footer></body></html>"
    )


@pytest.fixture
def sample_wp_post():
    """A WP REST post object in edit context with embedded featured media."""
    return {
        "id": 321,
        "link": "https://testsite.com/best-coffee-grinders/",
        "title": {"raw": "Best Coffee Grinders", "rendered": "Best Coffee Grinders"},
        "content": {
            "raw": "<!-- wp:paragraph -->\n<p>Raw block content.</p>\n<!-- /wp:paragraph -->",
            "rendered": "<p>Raw block content.</p>",
        },
        "_embedded": {
            "wp:featuredmedia": [{"source_url": "https://testsite.com/uploads/grinder.jpg"}],
        },
    }


@pytest.fixture
def sample_sitemap_xml():
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        "<url><loc>https://testsite.com/best-coffee-grinders/</loc><lastmod>2025-01-02</lastmod></url>"
        "<url><loc>https://testsite.com/10-top-kettles/</loc></url>"
        "<url><loc>https://testsite.com/about-us/</loc></url>"
        "</urlset>"
    )


# ---------------------------------------------------------------------------
# HTTP mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory usable as ``async with``."""

    def _make(status=200, json_data=None, text="", headers=None):
        resp = AsyncMock()
        resp.status = status
        if isinstance(json_data, Exception):
            resp.json = AsyncMock(side_effect=json_data)
        else:
            resp.json = AsyncMock(return_value=json_data if json_data is not None else {})
        resp.text = AsyncMock(return_value=text)
        resp.headers = headers or {"Content-Type": "application/json"}
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


@pytest.fixture
def make_session():
    """Create a mock aiohttp session whose ``.request()`` yields responses in order.

    Items may be response mocks or exceptions; an exception is raised from
    ``__aenter__`` the way aiohttp raises connection errors.
    """

    def _make(*responses):
        session = MagicMock()
        contexts = []
        for item in responses:
            ctx = MagicMock()
            if isinstance(item, BaseException):
                ctx.__aenter__ = AsyncMock(side_effect=item)
            else:
                ctx.__aenter__ = AsyncMock(return_value=item)
            ctx.__aexit__ = AsyncMock(return_value=False)
            contexts.append(ctx)
        session.request = MagicMock(side_effect=contexts)
        session.close = AsyncMock()
        session.closed = False
        return session

    return _make


# ---------------------------------------------------------------------------
# Anthropic mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_anthropic():
    """Mock AsyncAnthropic client returning a single text block."""
    client = MagicMock()
    response = MagicMock()
    block = MagicMock(type="text", text='{"asin": "B000000001"}')
    response.content = [block]
    response.usage = MagicMock(input_tokens=100, output_tokens=200)
    client.messages.create = AsyncMock(return_value=response)
    return client
