"""
Product box rendering.

A product box is a self-contained HTML fragment wrapped in a
``<!-- wp:html -->`` block. Its root ``<div>`` carries a unique
``amz-<random>`` id and the ``amz-sota-box`` marker class, which is what
:mod:`amzpilot.content_mutator` uses to find and replace earlier boxes.

Usage:
    from amzpilot.product_box import make_manual_product, render_product_box
    product = make_manual_product("B08N5WRWNW")
    html = render_product_box(product, affiliate_tag="mysite-20")
"""

from __future__ import annotations

import json
import re
import uuid
from html import escape
from typing import Any, Dict, Optional

from amzpilot.content_mutator import BOX_CLASS, WP_HTML_CLOSE, WP_HTML_OPEN
from amzpilot.models import ProductCandidate

PLACEHOLDER_IMAGE = "https://placehold.co/500?text=Product"
AMAZON_IMAGE_TEMPLATE = "https://images-na.ssl-images-amazon.com/images/P/{asin}.01._SS500_.jpg"

MANUAL_TITLE = "Amazon Product (Check Details)"
FALLBACK_TITLE = "Detected Product"
FALLBACK_VERDICT = "A solid choice based on current specifications."
FALLBACK_PROS = ("Verified Quality", "Fast Shipping")

CHECK_PRICE = "Check Price"
MAX_SPECS_SHOWN = 2


def amazon_image_url(asin: str) -> str:
    """Canonical product image URL derived from the ASIN. No network call."""
    return AMAZON_IMAGE_TEMPLATE.format(asin=asin.strip().upper())


def product_link(asin: str, affiliate_tag: str) -> str:
    asin = (asin or "").strip()
    if not asin:
        return "#"
    return f"https://www.amazon.com/dp/{asin}?tag={affiliate_tag}"


def display_price(price: Optional[str]) -> str:
    """Hide placeholder prices behind a plain "Check Price" label."""
    lowered = (price or "").strip().lower()
    if not lowered or "not specified" in lowered or "check price" in lowered:
        return CHECK_PRICE
    return price.strip()


def make_manual_product(
    asin: str = "",
    title: Optional[str] = None,
    image_url: Optional[str] = None,
    price: Optional[str] = None,
    fallback_image: Optional[str] = None,
) -> ProductCandidate:
    """Build a ProductCandidate from operator input, without any AI call."""
    asin = (asin or "").strip()
    if image_url:
        image = image_url.strip()
    elif asin:
        image = amazon_image_url(asin)
    else:
        image = fallback_image or PLACEHOLDER_IMAGE

    return ProductCandidate(
        asin=asin,
        title=title or (MANUAL_TITLE if asin else FALLBACK_TITLE),
        price=price or CHECK_PRICE,
        image_url=image,
        verdict=FALLBACK_VERDICT,
        pros=FALLBACK_PROS,
    )


def build_product_schema(product: ProductCandidate) -> str:
    """schema.org ``Product`` JSON-LD for *product*."""
    price = re.sub(r"[^0-9.]", "", product.price or "") or "0.00"
    schema: Dict[str, Any] = {
        "@context": "https://schema.org/",
        "@type": "Product",
        "name": product.title,
        "image": product.image_url,
        "description": product.verdict or product.title,
        "brand": {"@type": "Brand", "name": "Amazon"},
        "aggregateRating": {
            "@type": "AggregateRating",
            "ratingValue": product.rating,
            "bestRating": "5",
            "ratingCount": "120",
        },
        "offers": {
            "@type": "Offer",
            "url": f"https://amazon.com/dp/{product.asin}",
            "priceCurrency": "USD",
            "price": price,
            "availability": "https://schema.org/InStock",
        },
    }
    return json.dumps(schema)


def _sticky_bar(box_id: str, link: str, price: str) -> str:
    return (
        f'<div id="{box_id}-sticky" class="amz-sticky" style="position:fixed;bottom:0;left:0;right:0;'
        f'display:none;justify-content:space-between;align-items:center;padding:12px 20px;'
        f'background:#fff;border-top:1px solid #eee;z-index:99999;">'
        f'<span class="amz-sticky-price">{escape(price)}</span>'
        f'<a href="{escape(link)}" target="_blank" rel="nofollow sponsored">Check Deal</a>'
        f"</div>\n"
        f"<script>(function(){{var b=document.getElementById('{box_id}-sticky');"
        f"if(b&&window.innerWidth<768){{b.style.display='flex';}}}})();</script>"
    )


def render_product_box(
    product: ProductCandidate,
    affiliate_tag: str,
    enable_sticky_bar: bool = True,
    enable_schema: bool = True,
) -> str:
    """
    Render *product* as a product box fragment.

    Parameters
    ----------
    product : ProductCandidate
        The product to render.
    affiliate_tag : str
        Amazon Associates tag appended to every product link.
    enable_sticky_bar : bool
        Add the mobile sticky call-to-action bar (only when an ASIN exists).
    enable_schema : bool
        Embed schema.org JSON-LD (the product's own blob, or one built here).
    """
    box_id = f"amz-{uuid.uuid4().hex[:9]}"
    link = escape(product_link(product.asin, affiliate_tag))
    price = display_price(product.price)
    title = escape(product.title or FALLBACK_TITLE)

    parts = [f'<div id="{box_id}" class="{BOX_CLASS}" style="margin:3rem auto;max-width:850px;'
             f'border:1px solid #e5e7eb;border-radius:16px;overflow:hidden;">']

    if enable_schema:
        schema = product.schema or build_product_schema(product)
        parts.append('<script type="application/ld+json">' + schema.replace("<", "\\u003c") + "</script>")

    parts.append(f'<div class="amz-header"><span class="amz-badge">Expert Verified</span>'
                 f'<span class="amz-award">{escape(product.award or "Top Choice")}</span></div>')
    parts.append(f'<div class="amz-image"><a href="{link}" target="_blank" rel="nofollow sponsored">'
                 f'<img src="{escape(product.image_url or PLACEHOLDER_IMAGE)}" alt="{title}" '
                 f'style="max-width:100%;max-height:240px;object-fit:contain;" /></a></div>')

    info = [f'<h3 class="amz-title"><a href="{link}" target="_blank" rel="nofollow sponsored">{title}</a></h3>',
            f'<div class="amz-rating">{"&#9733;" * 5}'
            + (' <span class="amz-prime">PRIME</span>' if product.prime else "") + "</div>"]
    if product.verdict:
        info.append(f'<p class="amz-verdict"><strong>The Verdict</strong> {escape(product.verdict)}</p>')
    if product.pros:
        items = "".join(f"<li>{escape(p)}</li>" for p in product.pros)
        info.append(f'<ul class="amz-pros">{items}</ul>')
    if product.specs:
        specs = "".join(
            f'<div class="amz-spec"><strong>{escape(str(k))}:</strong> {escape(str(v))}</div>'
            for k, v in list(product.specs.items())[:MAX_SPECS_SHOWN]
        )
        info.append(f'<div class="amz-specs">{specs}</div>')
    info.append(f'<div class="amz-cta"><span class="amz-price">{escape(price)}</span>'
                f'<a class="amz-button" href="{link}" target="_blank" rel="nofollow sponsored">'
                f"Check Price &rarr;</a></div>")
    parts.append('<div class="amz-info">' + "".join(info) + "</div>")

    if enable_sticky_bar and product.asin.strip():
        parts.append(_sticky_bar(box_id, product_link(product.asin, affiliate_tag), price))

    parts.append("</div>")
    return WP_HTML_OPEN + "\n" + "\n".join(parts) + "\n" + WP_HTML_CLOSE
