# backend/konarae/__init__.py
"""Konarae - support-program announcement crawler and search service."""

__version__ = "1.0.0"
__title__ = "Konarae Crawler API"
