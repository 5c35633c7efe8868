"""
AmzPilot -- Amazon affiliate monetization autopilot for WordPress.

Inventories a site's published pages from its sitemap, finds the ones that
lack affiliate links, asks an AI provider which product each page is about,
and inserts a product box into the post before republishing it.
"""

__version__ = "1.0.0"
