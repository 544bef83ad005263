"""
catalogcrawl: resumable bulk crawler for paginated catalogs.

Fetches a catalog of works (list pages -> detail pages -> item pages) from a
single remote source with bounded, resource-adaptive concurrency, classified
retries and restart-safe progress cursors.
"""

__version__ = "1.0.0"
