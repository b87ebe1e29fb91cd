"""
Knowledge Crawler

Crawls a knowledge site's article listings and stores each article once per URL.
"""

__version__ = "1.0.0"
__description__ = "Queue-driven crawler for article listing and detail pages"
