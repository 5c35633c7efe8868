"""Tests for the heuristic page classifier."""

import pytest

from amzpilot.classifier import (
    MIN_INFO_CONTENT_LENGTH,
    classify,
    detect_content_type,
    has_affiliate_markers,
)
from amzpilot.models import ContentType, MonetizationStatus, Priority


# ===================================================================
# Content type detection
# ===================================================================

@pytest.mark.unit
class TestDetectContentType:

    @pytest.mark.parametrize("title", [
        "Dyson V15 Review",
        "iPhone vs Pixel",
        "Hands-on with the new Kindle",
        "Espresso Machine Buying Guide",
    ])
    def test_review_titles(self, title):
        assert detect_content_type(title) == ContentType.REVIEW

    @pytest.mark.parametrize("title", [
        "10 Kettles Worth Owning",
        "Best Coffee Grinders",
        "Top 5 Air Fryers",
        "The Ultimate Camping List",
    ])
    def test_listicle_titles(self, title):
        assert detect_content_type(title) == ContentType.LISTICLE

    def test_review_keywords_win_over_listicle(self):
        assert detect_content_type("Best Laptop Buying Guide") == ContentType.REVIEW

    def test_plain_title_is_info(self):
        assert detect_content_type("How Coffee Is Roasted") == ContentType.INFO

    def test_empty_title_is_info(self):
        assert detect_content_type("") == ContentType.INFO


# ===================================================================
# Phase 1 (title only)
# ===================================================================

@pytest.mark.unit
class TestPhaseOne:

    @pytest.mark.parametrize("title", ["7 Ways to Brew", "best mugs", "Top Picks", "Packing List"])
    def test_listicles_are_high_opportunities(self, title):
        result = classify(title)
        assert result.content_type == ContentType.LISTICLE
        assert result.priority == Priority.HIGH
        assert result.monetization_status == MonetizationStatus.OPPORTUNITY

    def test_review_is_high(self):
        assert classify("Breville Barista Review").priority == Priority.HIGH

    def test_info_is_low(self):
        result = classify("About Us")
        assert result.priority == Priority.LOW
        assert result.monetization_status == MonetizationStatus.OPPORTUNITY

    def test_empty_html_behaves_like_phase_one(self):
        assert classify("Best Mugs", "") == classify("Best Mugs")


# ===================================================================
# Phase 2 (with HTML)
# ===================================================================

@pytest.mark.unit
class TestPhaseTwo:

    @pytest.mark.parametrize("html", [
        '<a href="https://www.amazon.com/dp/B000000001">Buy</a>',
        '<a href="https://amzn.to/abc">Buy</a>',
        '<a href="https://shop.example/?tag=mysite-20">Buy</a>',
    ])
    def test_markers_mean_monetized(self, html):
        assert classify("Anything", html).monetization_status == MonetizationStatus.MONETIZED

    def test_commercial_without_links_is_critical(self):
        result = classify("Best Grinders", "<p>No links here.</p>")
        assert result.priority == Priority.CRITICAL
        assert result.monetization_status == MonetizationStatus.OPPORTUNITY

    def test_commercial_with_links_is_medium(self):
        result = classify("Grinder Review", '<a href="https://amazon.com/dp/B000000001">x</a>')
        assert result.priority == Priority.MEDIUM
        assert result.monetization_status == MonetizationStatus.MONETIZED

    def test_long_info_without_links_is_high(self):
        html = "<p>" + "x" * (MIN_INFO_CONTENT_LENGTH + 1) + "</p>"
        assert classify("How Roasting Works", html).priority == Priority.HIGH

    def test_short_info_is_low(self):
        assert classify("How Roasting Works", "<p>short</p>").priority == Priority.LOW

    def test_long_info_with_links_is_low(self):
        html = "<p>" + "x" * 2000 + '</p><a href="https://amzn.to/x">x</a>'
        result = classify("How Roasting Works", html)
        assert result.priority == Priority.LOW
        assert result.monetization_status == MonetizationStatus.MONETIZED

    def test_deterministic(self):
        html = "<p>content</p>"
        assert classify("Best Mugs", html) == classify("Best Mugs", html)


@pytest.mark.unit
def test_has_affiliate_markers_is_case_insensitive():
    assert has_affiliate_markers('<a href="HTTPS://AMAZON.COM/dp/X">')
    assert not has_affiliate_markers(None)
    assert not has_affiliate_markers("<p>plain</p>")
