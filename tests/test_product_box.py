"""Tests for product box rendering and manual products."""

import json
import re

import pytest

from amzpilot.content_mutator import count_boxes
from amzpilot.models import ProductCandidate
from amzpilot.product_box import (
    CHECK_PRICE,
    PLACEHOLDER_IMAGE,
    amazon_image_url,
    build_product_schema,
    display_price,
    make_manual_product,
    render_product_box,
)


@pytest.fixture
def product():
    return ProductCandidate(
        asin="B08N5WRWNW",
        title="Baratza Encore <Grinder>",
        price="$149.99",
        image_url="https://example.com/img.jpg",
        verdict="Consistent grind at a fair price.",
        pros=("Quiet", "Consistent"),
        specs={"Burrs": "Conical", "Settings": "40", "Weight": "3 kg"},
    )


# ===================================================================
# Rendering
# ===================================================================

@pytest.mark.unit
class TestRenderProductBox:

    def test_wrapper_and_marker(self, product):
        html = render_product_box(product, "site-20")
        assert html.startswith("<!-- wp:html -->")
        assert html.endswith("<!-- /wp:html -->")
        assert count_boxes(html) == 1
        assert re.search(r'<div id="amz-[0-9a-f]{9}" class="amz-sota-box"', html)

    def test_ids_are_unique(self, product):
        first = re.search(r'id="(amz-[0-9a-f]+)"', render_product_box(product, "t")).group(1)
        second = re.search(r'id="(amz-[0-9a-f]+)"', render_product_box(product, "t")).group(1)
        assert first != second

    def test_affiliate_link(self, product):
        html = render_product_box(product, "site-20")
        assert 'href="https://www.amazon.com/dp/B08N5WRWNW?tag=site-20"' in html

    def test_no_asin_links_to_hash_and_skips_sticky_bar(self):
        html = render_product_box(ProductCandidate(title="Mystery"), "site-20")
        assert 'href="#"' in html
        assert "-sticky" not in html

    def test_sticky_bar_toggle(self, product):
        assert "-sticky" in render_product_box(product, "t", enable_sticky_bar=True)
        assert "-sticky" not in render_product_box(product, "t", enable_sticky_bar=False)

    def test_schema_toggle(self, product):
        assert "application/ld+json" in render_product_box(product, "t", enable_schema=True)
        assert "application/ld+json" not in render_product_box(product, "t", enable_schema=False)

    def test_text_is_escaped(self, product):
        html = render_product_box(product, "t", enable_schema=False)
        assert "Baratza Encore &lt;Grinder&gt;" in html
        assert "<Grinder>" not in html

    def test_only_two_specs_shown(self, product):
        html = render_product_box(product, "t")
        assert "Burrs" in html and "Settings" in html
        assert "Weight:" not in html

    def test_placeholder_price(self):
        html = render_product_box(ProductCandidate(asin="B000000001", price="Not specified in context"), "t")
        assert CHECK_PRICE in html
        assert "Not specified" not in html


@pytest.mark.unit
@pytest.mark.parametrize("raw, shown", [
    ("", CHECK_PRICE),
    (None, CHECK_PRICE),
    ("check price", CHECK_PRICE),
    ("Not specified", CHECK_PRICE),
    ("$19.99", "$19.99"),
])
def test_display_price(raw, shown):
    assert display_price(raw) == shown


# ===================================================================
# Schema
# ===================================================================

@pytest.mark.unit
class TestSchema:

    def test_product_schema(self, product):
        schema = json.loads(build_product_schema(product))
        assert schema["@type"] == "Product"
        assert schema["offers"]["price"] == "149.99"
        assert schema["offers"]["url"] == "https://amazon.com/dp/B08N5WRWNW"
        assert schema["aggregateRating"]["ratingCount"] == "120"

    def test_price_defaults_to_zero(self):
        schema = json.loads(build_product_schema(ProductCandidate(price="Check Price")))
        assert schema["offers"]["price"] == "0.00"


# ===================================================================
# Manual products
# ===================================================================

@pytest.mark.unit
class TestManualProduct:

    def test_from_asin(self):
        product = make_manual_product("B08N5WRWNW")
        assert product.asin == "B08N5WRWNW"
        assert product.title == "Amazon Product (Check Details)"
        assert product.image_url == amazon_image_url("B08N5WRWNW")
        assert product.pros == ("Verified Quality", "Fast Shipping")

    def test_manual_image_wins(self):
        product = make_manual_product("B08N5WRWNW", image_url="https://cdn.example/x.jpg")
        assert product.image_url == "https://cdn.example/x.jpg"

    def test_without_asin(self):
        product = make_manual_product("")
        assert product.title == "Detected Product"
        assert product.image_url == PLACEHOLDER_IMAGE

    def test_replace_returns_new_value(self):
        product = make_manual_product("B08N5WRWNW")
        edited = product.replace(price="$10.00")
        assert edited.price == "$10.00"
        assert product.price == CHECK_PRICE

    def test_candidate_is_frozen(self):
        product = make_manual_product("B08N5WRWNW")
        with pytest.raises(AttributeError):
            product.title = "changed"
