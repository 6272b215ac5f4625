# ============================================================================
# backend/konarae/core/search/chunking_service.py
# ============================================================================
"""
Chunking Service - splits announcement text into overlapping word windows.

Each chunk holds ``chunk_size`` words; consecutive chunks share ``overlap``
words so phrases crossing a boundary remain searchable. The last window ends
exactly at the end of the text, so a text of N words yields
``ceil((N - overlap) / (chunk_size - overlap))`` chunks (one chunk when
N <= chunk_size).

Usage:
    from konarae.core.search.chunking_service import chunking_service

    chunks = chunking_service.chunk_text(project_text)
    for index, chunk in enumerate(chunks):
        ...
"""

import logging
import math
from typing import List, Optional

from konarae.config import settings

logger = logging.getLogger("konarae.chunking_service")


class ChunkingService:
    """
    Word-window chunking.

    Configuration:
        chunk_size: Words per chunk (default ``search_chunk_size_words``)
        overlap: Words shared between neighbouring chunks
            (default ``search_chunk_overlap_words``)
    """

    def __init__(self, chunk_size: Optional[int] = None, overlap: Optional[int] = None):
        self.chunk_size = chunk_size or settings.search_chunk_size_words
        self.overlap = overlap if overlap is not None else settings.search_chunk_overlap_words

    def _resolve(self, chunk_size: Optional[int], overlap: Optional[int]):
        size = self.chunk_size if chunk_size is None else chunk_size
        shared = self.overlap if overlap is None else overlap
        if size <= 0:
            raise ValueError(f"chunk_size must be positive, got {size}")
        if shared < 0 or shared >= size:
            raise ValueError(f"overlap must be in [0, chunk_size), got {shared} for size {size}")
        return size, shared

    def chunk_text(
        self,
        text: str,
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
    ) -> List[str]:
        """
        Split text into overlapping word windows.

        Args:
            text: Source text (any whitespace separates words)
            chunk_size: Override of the configured words per chunk
            overlap: Override of the configured overlap

        Returns:
            Ordered chunks; empty list for empty or whitespace-only text
        """
        size, shared = self._resolve(chunk_size, overlap)
        words = (text or "").split()
        if not words:
            return []
        if len(words) <= size:
            return [" ".join(words)]

        step = size - shared
        chunks = []
        for start in range(0, len(words) - shared, step):
            chunks.append(" ".join(words[start:start + size]))

        logger.debug(f"Chunked {len(words)} words into {len(chunks)} chunks (size={size}, overlap={shared})")
        return chunks

    def estimate_chunk_count(
        self,
        word_count: int,
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
    ) -> int:
        size, shared = self._resolve(chunk_size, overlap)
        if word_count <= 0:
            return 0
        if word_count <= size:
            return 1
        return math.ceil((word_count - shared) / (size - shared))


# Global service instance
chunking_service = ChunkingService()
