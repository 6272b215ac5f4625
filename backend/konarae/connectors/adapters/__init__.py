"""Adapters for external services: browser, HTTP fetching, document analysis, object storage."""

from .browser_pool import BrowserPool, browser_pool, close_browser
from .document_analysis_adapter import (
    AnalysisResult,
    DocumentAnalysisAdapter,
    document_analysis_adapter,
)
from .fetch_adapter import FetchAdapter, FetchResult, is_waf_blocked_domain
from .storage_adapter import StorageAdapter, UploadResult, storage_adapter

__all__ = [
    "AnalysisResult",
    "BrowserPool",
    "DocumentAnalysisAdapter",
    "FetchAdapter",
    "FetchResult",
    "StorageAdapter",
    "UploadResult",
    "browser_pool",
    "close_browser",
    "document_analysis_adapter",
    "is_waf_blocked_domain",
    "storage_adapter",
]
