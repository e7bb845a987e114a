"""
Document Processing Package
════════════════════════════

  Extraction (OCR → parser fallback) → Chunking → Embedding → Persist

Modules
───────
  parsers.py    Generic parsers keyed by file extension (PDF, DOCX, text, CSV, JSON, HTML)
  ocr.py        Remote OCR services (Azure-hosted Mistral, Mistral)
  extractor.py  Ordered fallback chain over OCR services and parsers
  chunking.py   Offset-preserving recursive chunker
  embeddings.py Batched embedding client with retry
  processor.py  Per-document unit of work and the document state machine
"""

from knowledge_ingest.processing.chunking import TextChunk, TextChunker
from knowledge_ingest.processing.embeddings import EmbeddingClient
from knowledge_ingest.processing.extractor import ContentExtractor, ExtractionResult
from knowledge_ingest.processing.processor import DocumentProcessor, ProcessingResult

__all__ = [
    "TextChunk",
    "TextChunker",
    "EmbeddingClient",
    "ContentExtractor",
    "ExtractionResult",
    "DocumentProcessor",
    "ProcessingResult",
]
