"""
Product price and stock monitoring service package.

This package contains modules for fetching arbitrary shop product pages,
extracting products and their variants, persisting price/stock history,
generating change notifications and coordinating the periodic check loop.
"""

__all__ = [
    "api",
    "config",
    "db",
    "emailer",
    "errors",
    "extractor",
    "fetcher",
    "ingestion",
    "main",
    "models",
    "notifications",
    "notifier",
    "utils",
    "variants",
    "worker",
]
